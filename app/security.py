import secrets
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

from jose import JWTError, jwt
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from passlib.context import CryptContext

from .config import get_settings
from .database import get_db
from .compliance_logger import AuditContext
from .exceptions import Unauthenticated, Forbidden, AccountLocked
from . import models


security_logger = logging.getLogger("security")

# Password hashing for seeded and created users
pwd_context = CryptContext(
    schemes=["argon2"],
    deprecated="auto",
    argon2__rounds=4,
    argon2__memory_cost=65536,
    argon2__parallelism=1,
)

# Bearer tokens are issued elsewhere; this service only decodes them
bearer_scheme = HTTPBearer(auto_error=False)


# Password utilities
def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash"""
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        # Unknown/legacy hash formats should not crash login; treat as non-match
        return False


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


# JWT utilities
def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token (used by seed scripts and tests)."""
    settings = get_settings()
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))

    to_encode.update({
        "exp": expire,
        "type": "access",
        "iat": now,
        "jti": secrets.token_urlsafe(16),
    })
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def verify_token(token: str, token_type: str = "access") -> Optional[Dict[str, Any]]:
    """Verify and decode JWT token"""
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
        if payload.get("type") != token_type:
            return None
        return payload
    except JWTError:
        return None


# Dependencies for FastAPI
def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> models.User:
    """Resolve the bearer token to an active, unlocked user."""
    if credentials is None or not credentials.credentials:
        raise Unauthenticated("Missing bearer token")

    payload = verify_token(credentials.credentials, "access")
    if not payload or not payload.get("sub"):
        security_logger.warning(f"Rejected token on {request.url.path}")
        raise Unauthenticated()

    user = db.get(models.User, payload["sub"])
    if user is None or user.deleted_at is not None:
        raise Unauthenticated()

    if not user.is_active:
        security_logger.warning(f"Inactive user {user.id} attempted access to {request.url.path}")
        raise Forbidden("User account is inactive")

    if user.is_locked():
        raise AccountLocked(details={"lockedUntil": user.account_locked_until.isoformat()})

    request.state.user_id = user.id
    return user


def require_role(*allowed_roles: str):
    """Dependency factory for role-based access control"""
    def role_dependency(current_user: models.User = Depends(get_current_user)) -> models.User:
        if current_user.role.value not in allowed_roles:
            raise Forbidden(f"Access denied. Required roles: {', '.join(allowed_roles)}")
        return current_user

    return role_dependency


# Specific role dependencies
require_admin = require_role("admin")
require_doctor = require_role("doctor")
require_medical_staff = require_role("admin", "doctor", "nurse")


def audit_context(request: Request, current_user: models.User = Depends(get_current_user)) -> AuditContext:
    """Actor and request metadata handed to services for the audit trail."""
    return AuditContext(
        user_id=current_user.id,
        user_role=current_user.role.value,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
        request_id=getattr(request.state, "request_id", None),
    )
