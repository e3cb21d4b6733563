# app/routers/appointments.py
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, status
from sqlalchemy.orm import Session

from .. import crud, models, schemas, security
from ..compliance_logger import AuditContext
from ..core.handlers import respond
from ..database import get_db
from ..exceptions import Forbidden, NotFound, ValidationFailed
from ..limiter import BOOKING_LIMIT, limiter
from ..services import appointment_service, availability_service

router = APIRouter(
    prefix="/appointments",
    tags=["Appointments"],
    responses={404: {"description": "Not found"}},
)

STAFF_ROLES = (models.UserRole.admin, models.UserRole.staff, models.UserRole.nurse)

# Roles allowed to report a cancellation on their own behalf
CANCELLED_BY_FOR_ROLE = {
    models.UserRole.patient: models.CancelledBy.patient,
    models.UserRole.doctor: models.CancelledBy.doctor,
    models.UserRole.admin: models.CancelledBy.admin,
}

PATIENT_STATUS_CHANGES = (models.AppointmentStatus.cancelled, models.AppointmentStatus.rescheduled)


def _visible_appointment(db: Session, appointment_id: str, user: models.User) -> models.Appointment:
    appointment = crud.get_appointment(db, appointment_id, include_deleted=False)
    if not appointment_service.can_view(appointment, user):
        # Don't reveal that someone else's appointment exists
        raise NotFound("Appointment", appointment_id)
    return appointment


def _dump(appointment: models.Appointment) -> schemas.AppointmentResponse:
    return schemas.AppointmentResponse.model_validate(appointment)


# Declared before /{appointment_id} so "availability" is not read as an id
@router.get("/availability")
def get_availability(
    request: Request,
    doctor_id: str = Query(..., alias="doctorId"),
    day: date = Query(..., alias="date"),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    availability = availability_service.compute_availability(db, doctor_id, day)
    return respond(request, schemas.AvailabilityResponse.model_validate(availability.as_dict()), "Availability retrieved")


@router.post("", status_code=status.HTTP_201_CREATED)
@limiter.limit(BOOKING_LIMIT)
def create_appointment(
    request: Request,
    payload: schemas.AppointmentCreate,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    ctx: AuditContext = Depends(security.audit_context),
):
    if current_user.role == models.UserRole.patient:
        if payload.patient_id and payload.patient_id != current_user.id:
            raise Forbidden("Patients can only book appointments for themselves")
        payload.patient_id = current_user.id
    elif not payload.patient_id:
        raise ValidationFailed("patientId is required", {"required": ["patientId"]})
    if current_user.role == models.UserRole.doctor and payload.doctor_id != current_user.id:
        raise Forbidden("Doctors can only book into their own schedule")
    if idempotency_key and not payload.operation_id:
        payload.operation_id = idempotency_key

    appointment = appointment_service.create_appointment(db, payload, current_user, ctx)
    return respond(request, _dump(appointment), "Appointment booked", status.HTTP_201_CREATED)


@router.get("")
def list_appointments(
    request: Request,
    status_filter: Optional[models.AppointmentStatus] = Query(None, alias="status"),
    doctor_id: Optional[str] = Query(None, alias="doctorId"),
    patient_id: Optional[str] = Query(None, alias="patientId"),
    on_date: Optional[date] = Query(None, alias="date"),
    date_from: Optional[date] = Query(None, alias="dateFrom"),
    date_to: Optional[date] = Query(None, alias="dateTo"),
    priority: Optional[models.AppointmentPriority] = None,
    appointment_type: Optional[models.AppointmentType] = Query(None, alias="appointmentType"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort_by: str = Query("appointmentDate", alias="sortBy"),
    sort_order: str = Query("asc", alias="sortOrder", pattern="^(asc|desc)$"),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    if current_user.role == models.UserRole.patient:
        patient_id = current_user.id
    elif current_user.role == models.UserRole.doctor:
        doctor_id = current_user.id

    items, total = crud.list_appointments(
        db,
        status=status_filter,
        doctor_id=doctor_id,
        patient_id=patient_id,
        on_date=on_date,
        date_from=date_from,
        date_to=date_to,
        priority=priority,
        appointment_type=appointment_type,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    pages = (total + limit - 1) // limit
    return respond(request, [_dump(a) for a in items], "Appointments retrieved", metadata={
        "pagination": {"page": page, "limit": limit, "total": total, "pages": pages},
    })


@router.get("/{appointment_id}")
def get_appointment(
    request: Request,
    appointment_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    appointment = _visible_appointment(db, appointment_id, current_user)
    return respond(request, _dump(appointment), "Appointment retrieved")


@router.patch("/{appointment_id}")
def update_appointment(
    request: Request,
    appointment_id: str,
    update: schemas.AppointmentUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    ctx: AuditContext = Depends(security.audit_context),
):
    _visible_appointment(db, appointment_id, current_user)
    appointment = appointment_service.update_details(db, appointment_id, update, current_user, ctx)
    return respond(request, _dump(appointment), "Appointment updated")


@router.patch("/{appointment_id}/status")
def update_appointment_status(
    request: Request,
    appointment_id: str,
    update: schemas.AppointmentStatusUpdate,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    ctx: AuditContext = Depends(security.audit_context),
):
    _visible_appointment(db, appointment_id, current_user)
    if current_user.role == models.UserRole.patient and update.status not in PATIENT_STATUS_CHANGES:
        raise Forbidden("Patients can only cancel or reschedule their appointments")
    if update.status == models.AppointmentStatus.cancelled and update.cancelled_by is None:
        update.cancelled_by = CANCELLED_BY_FOR_ROLE.get(current_user.role, models.CancelledBy.system)
    if idempotency_key and not update.operation_id:
        update.operation_id = idempotency_key

    appointment = appointment_service.change_status(db, appointment_id, update, current_user, ctx)
    return respond(request, _dump(appointment), f"Appointment {update.status.value}")


@router.delete("/{appointment_id}")
def delete_appointment(
    request: Request,
    appointment_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
    ctx: AuditContext = Depends(security.audit_context),
):
    appointment = appointment_service.soft_delete_appointment(db, appointment_id, current_user, ctx)
    return respond(request, _dump(appointment), "Appointment deleted")
