# app/routers/doctors.py
from datetime import date

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from .. import crud, models, schemas, security
from ..compliance_logger import AuditContext, compliance_logger
from ..core.handlers import respond
from ..database import get_db
from ..exceptions import Forbidden

router = APIRouter(
    prefix="/doctors",
    tags=["Doctors"],
    responses={404: {"description": "Not found"}},
)


def _check_owner(doctor_id: str, user: models.User) -> None:
    """Doctors maintain their own calendar; admins and staff maintain anyone's."""
    if user.role in (models.UserRole.admin, models.UserRole.staff):
        return
    if user.role == models.UserRole.doctor and user.id == doctor_id:
        return
    raise Forbidden("You cannot change this doctor's schedule")


@router.get("/{doctor_id}/profile")
def get_doctor_profile(
    request: Request,
    doctor_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    profile = crud.get_doctor_profile(db, doctor_id)
    return respond(request, schemas.DoctorProfileResponse.model_validate(profile), "Doctor profile retrieved")


@router.put("/{doctor_id}/schedule")
def update_schedule(
    request: Request,
    doctor_id: str,
    update: schemas.ScheduleUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    ctx: AuditContext = Depends(security.audit_context),
):
    _check_owner(doctor_id, current_user)
    profile = crud.update_doctor_schedule(db, doctor_id, update)
    compliance_logger.log_event("DOCTOR_SCHEDULE_UPDATED", "doctor", doctor_id, ctx, {
        "days": sorted(t.day_of_week for t in update.schedule),
        "bufferMinutes": profile.appointment_buffer_time,
        "timezone": profile.timezone,
    })
    return respond(request, schemas.DoctorProfileResponse.model_validate(profile), "Schedule updated")


@router.put("/{doctor_id}/availability/{day}")
def set_availability_override(
    request: Request,
    doctor_id: str,
    day: date,
    update: schemas.OverrideUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    ctx: AuditContext = Depends(security.audit_context),
):
    """Replace the slot list for one date. An empty list falls back to the weekly template."""
    _check_owner(doctor_id, current_user)
    overrides = crud.set_date_overrides(db, doctor_id, day, update)
    compliance_logger.log_event("DOCTOR_AVAILABILITY_OVERRIDDEN", "doctor", doctor_id, ctx, {
        "date": day.isoformat(),
        "slots": len(overrides),
    })
    return respond(request, [schemas.OverrideSlotResponse.model_validate(o) for o in overrides],
                   "Availability override saved")


@router.patch("/{doctor_id}/status")
def set_doctor_status(
    request: Request,
    doctor_id: str,
    update: schemas.DoctorStatusUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    ctx: AuditContext = Depends(security.audit_context),
):
    _check_owner(doctor_id, current_user)
    profile = crud.set_doctor_status(db, doctor_id, update)
    compliance_logger.log_event("DOCTOR_STATUS_CHANGED", "doctor", doctor_id, ctx, {
        "isAvailable": profile.is_available,
        "unavailableUntil": profile.unavailable_until,
    })
    return respond(request, schemas.DoctorProfileResponse.model_validate(profile), "Doctor status updated")
