# app/routers/health.py
import logging

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import text
from sqlalchemy.orm import Session

from .. import crud, schemas, security
from ..config import get_settings
from ..core.handlers import respond
from ..database import get_db

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/health",
    tags=["Health Checks"],
    responses={404: {"description": "Not found"}},
)


@router.get("")
def liveness(request: Request, db: Session = Depends(get_db)):
    settings = get_settings()
    db.execute(text("SELECT 1"))
    return respond(request, {
        "status": "ok",
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
    }, "Service is healthy")


@router.get("/consistency-check", dependencies=[Depends(security.require_admin)])
def check_system_consistency(
    request: Request,
    flag: bool = Query(False, description="Mark offending records for manual review"),
    db: Session = Depends(get_db),
):
    """
    Scans for overlapping live appointments, consultations whose appointment
    does not mirror them, and payment arithmetic errors.
    Accessible only by admin users.
    """
    report = crud.run_consistency_checks(db, flag=flag)
    issues = sum(len(report[key]) for key in
                 ("overlapping_appointments", "consultation_mirror_mismatches", "payment_total_mismatches"))
    logger.info(f"Consistency check found {issues} issues")
    return respond(request, schemas.ConsistencyReport.model_validate(report),
                   "No issues found" if issues == 0 else f"{issues} issues found", metadata={"issues": issues})
