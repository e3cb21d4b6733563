# app/routers/logs.py
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..core.handlers import respond
from ..database import get_db
from ..security import require_admin

router = APIRouter(
    tags=["Logs"],
    dependencies=[Depends(require_admin)],
    responses={404: {"description": "Not found"}},
)


@router.get("/logs")
def read_audit_logs(
    request: Request,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    resource: Optional[str] = None,
    resource_id: Optional[str] = Query(None, alias="resourceId"),
    user_id: Optional[str] = Query(None, alias="userId"),
    action: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    newest_first: bool = Query(False, alias="newestFirst"),
    db: Session = Depends(get_db),
):
    """
    Retrieve audit logs by resource, user or time range.
    Only accessible by administrators.
    """
    logs = crud.get_audit_logs(
        db, skip=skip, limit=limit, resource=resource, resource_id=resource_id,
        user_id=user_id, action=action, start=start, end=end, newest_first=newest_first,
    )
    return respond(request, [schemas.AuditLogResponse.model_validate(log) for log in logs], "Audit logs retrieved")
