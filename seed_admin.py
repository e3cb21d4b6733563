import os
import sys

from sqlalchemy.orm import Session

# Ensure app package import
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from app.database import SessionLocal, create_tables
from app import models
from app.core.clock import utcnow
from app.security import get_password_hash


def get_env(name: str, default: str | None = None, required: bool = False) -> str:
    val = os.getenv(name, default)
    if required and not val:
        raise RuntimeError(f"Missing required env var: {name}")
    return val or ""


def upsert_admin(db: Session) -> str:
    email = get_env("ADMIN_DEFAULT_EMAIL", "admin@medconsult.local").lower()
    phone = get_env("ADMIN_DEFAULT_PHONE", "0000000000")
    first_name = get_env("ADMIN_DEFAULT_FIRST_NAME", "System")
    last_name = get_env("ADMIN_DEFAULT_LAST_NAME", "Administrator")
    password_hash = get_password_hash(get_env("ADMIN_DEFAULT_PASSWORD", required=True))

    user = db.query(models.User).filter(models.User.email == email).first()
    if user:
        # Update to ensure active, unlocked admin with known password
        user.role = models.UserRole.admin
        user.phone_number = phone
        user.is_active = True
        user.deleted_at = None
        user.account_locked_until = None
        user.failed_login_attempts = 0
        user.password_hash = password_hash
        user.updated_at = utcnow()
        action = "updated"
    else:
        user = models.User(
            first_name=first_name,
            last_name=last_name,
            email=email,
            phone_number=phone,
            role=models.UserRole.admin,
            is_active=True,
            is_email_verified=True,
            password_hash=password_hash,
        )
        db.add(user)
        action = "created"

    db.commit()
    print(f"Admin user {action}: id='{user.id}', email='{email}'")
    return user.id


def main():
    # Validate required env
    _ = get_env("ADMIN_DEFAULT_PASSWORD", required=True)

    create_tables()
    db = SessionLocal()
    try:
        upsert_admin(db)
    finally:
        db.close()


if __name__ == "__main__":
    main()
