# app/routers/users.py
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query, Request, status
from sqlalchemy.orm import Session

from .. import crud, models, schemas, security
from ..compliance_logger import AuditContext, compliance_logger
from ..core.handlers import respond
from ..database import get_db
from ..exceptions import Forbidden

router = APIRouter(
    prefix="/users",
    tags=["Users"],
    responses={404: {"description": "Not found"}},
)

# Front-desk staff may register patients only
STAFF_CREATABLE = ("patient",)


@router.post("", status_code=status.HTTP_201_CREATED)
def create_user(
    request: Request,
    payload: schemas.UserCreate = Body(...),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_role("admin", "staff")),
    ctx: AuditContext = Depends(security.audit_context),
):
    if current_user.role == models.UserRole.staff and payload.role not in STAFF_CREATABLE:
        raise Forbidden("Staff can only register patients")
    user = crud.create_user(db, payload, created_by=current_user.id)
    compliance_logger.log_event("USER_CREATED", "user", user.id, ctx, {"role": user.role.value})
    return respond(request, schemas.UserResponse.model_validate(user), "User created", status.HTTP_201_CREATED)


@router.get("/me")
def read_current_user(
    request: Request,
    current_user: models.User = Depends(security.get_current_user),
):
    return respond(request, schemas.UserResponse.model_validate(current_user), "Current user")


@router.get("")
def list_users(
    request: Request,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    role: Optional[models.UserRole] = None,
    is_active: Optional[bool] = Query(None, alias="isActive"),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
):
    users = crud.get_users(db, skip=skip, limit=limit, role=role, is_active=is_active)
    return respond(request, [schemas.UserResponse.model_validate(u) for u in users], "Users retrieved")


@router.get("/{user_id}")
def read_user(
    request: Request,
    user_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_role("admin", "staff", "nurse", "doctor")),
):
    user = crud.require_user(db, user_id)
    return respond(request, schemas.UserResponse.model_validate(user), "User retrieved")
