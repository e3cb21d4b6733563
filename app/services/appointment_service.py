# app/services/appointment_service.py
import logging
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .. import models, schemas, crud
from ..compliance_logger import AuditContext, compliance_logger
from ..core.clock import epoch_ms, local_to_utc, to_minutes, utcnow
from ..exceptions import (
    Conflict, ConsultCoreError, DoctorUnavailable, DuplicateKey, NotFound,
    SlotTaken, StaleRevision, ValidationFailed,
)
from . import appointment_state, availability_service, outbox_service, payment_service, slot_service
from .appointment_state import AppointmentEvent, Transition

logger = logging.getLogger(__name__)

# Clinic hours, doctor-local minute of day
DAY_OPENS = 6 * 60
DAY_CLOSES = 22 * 60

MIN_DURATION = 15
MAX_DURATION = 120

MAX_STALE_RETRIES = 3

SUBJECTS = {
    "appointment_booked": "Appointment booked",
    "appointment_confirmed": "Appointment confirmed",
    "appointment_cancelled": "Appointment cancelled",
    "appointment_completed": "Appointment completed",
}


def appointment_payload(appointment: models.Appointment, **extra: Any) -> Dict[str, Any]:
    doctor = appointment.doctor
    profile = doctor.doctor_profile if doctor else None
    payload = {
        "appointment_id": appointment.id,
        "appointment_number": appointment.appointment_number,
        "appointment_date": appointment.appointment_date.isoformat(),
        "appointment_time": appointment.appointment_time,
        "timezone": profile.timezone if profile else "UTC",
        "doctor_name": f"Dr. {doctor.full_name}" if doctor else None,
        "room_id": appointment.room_id,
    }
    payload.update(extra)
    return payload


def _notify_parties(db: Session, appointment: models.Appointment, kind: str, include_doctor: bool = True, **extra: Any) -> None:
    payload = appointment_payload(appointment, **extra)
    subject = SUBJECTS.get(kind, "Appointment update")
    outbox_service.notify_user(db, appointment.patient, kind, subject, payload,
                               resource="appointment", resource_id=appointment.id)
    if include_doctor:
        outbox_service.notify_user(db, appointment.doctor, kind, f"{subject}: {appointment.appointment_number}", payload,
                                   resource="appointment", resource_id=appointment.id)


def _release_override(db: Session, appointment: models.Appointment) -> None:
    booked = db.query(models.AvailabilityOverride).filter(
        models.AvailabilityOverride.appointment_id == appointment.id
    ).all()
    for override in booked:
        override.is_booked = False
        override.appointment_id = None


def _constraint_error(error: IntegrityError) -> ConsultCoreError:
    """Only the live-slot index means the slot was taken; anything else is a plain duplicate."""
    if crud.is_unique_violation(error, "slot_key"):
        return SlotTaken()
    return DuplicateKey("Appointment violates a uniqueness constraint")


def validate_appointment(appointment: models.Appointment) -> None:
    """Row invariants, checked before every insert and mutation."""
    if not MIN_DURATION <= appointment.duration <= MAX_DURATION:
        raise ValidationFailed(f"duration must be between {MIN_DURATION} and {MAX_DURATION} minutes",
                               {"duration": appointment.duration})
    start = to_minutes(appointment.appointment_time)
    if appointment.start_minute != start or appointment.end_minute != start + appointment.duration:
        raise ValidationFailed("Appointment interval does not match its time and duration")
    if start < DAY_OPENS or appointment.end_minute > DAY_CLOSES:
        raise ValidationFailed("Appointments must fall between 06:00 and 22:00")
    if Decimal(appointment.consultation_fee or 0) < 0:
        raise ValidationFailed("consultationFee must be >= 0")


def can_view(appointment: models.Appointment, user: models.User) -> bool:
    if user.role in (models.UserRole.admin, models.UserRole.staff, models.UserRole.nurse):
        return True
    if user.role == models.UserRole.patient:
        return appointment.patient_id == user.id
    return appointment.doctor_id == user.id


# ==================== TRANSITIONS ====================

def apply_event(db: Session, appointment: models.Appointment, event: AppointmentEvent, ctx: Optional[AuditContext]) -> Transition:
    """Run one state-machine step and carry out its effects. Does not commit."""
    transition = appointment_state.apply(appointment, event)
    if transition.noop:
        return transition

    for name, value in transition.changes.items():
        setattr(appointment, name, value)
    if transition.target in models.SLOT_RELEASING_STATUSES:
        _release_override(db, appointment)
    if transition.target == models.AppointmentStatus.completed or transition.target in models.SLOT_RELEASING_STATUSES:
        from .consultation_service import close_for_appointment
        close_for_appointment(db, appointment, transition.target, ctx, reason=event.reason)

    refund_amount = None
    for effect in transition.effects:
        if effect.kind == "refund":
            refund_amount = payment_service.refund_for_cancellation(db, appointment, effect.data.get("reason"), ctx)

    for effect in transition.effects:
        if effect.kind == "audit":
            details = dict(effect.data, appointmentNumber=appointment.appointment_number)
            if refund_amount is not None and effect.name == "APPOINTMENT_CANCELLED":
                details["refundAmount"] = str(refund_amount)
            compliance_logger.record(db, effect.name, "appointment", appointment.id, ctx, details)
        elif effect.kind == "notify":
            extra = dict(effect.data)
            if refund_amount is not None:
                extra["refund_amount"] = str(refund_amount)
            _notify_parties(db, appointment, effect.name, **extra)
        elif effect.kind == "suppress_reminders":
            outbox_service.cancel_pending(db, "appointment", appointment.id, "reminder_")

    logger.info(f"Appointment {appointment.appointment_number}: {transition.source.value} -> {transition.target.value}")
    return transition


def confirm_from_payment(db: Session, appointment: models.Appointment, ctx: Optional[AuditContext]) -> None:
    """Payment completed: confirm a scheduled appointment, otherwise just mark it paid."""
    if appointment.status == models.AppointmentStatus.scheduled:
        apply_event(db, appointment, AppointmentEvent(models.AppointmentStatus.confirmed, at=utcnow(), from_payment=True), ctx)
    elif appointment.holds_slot and appointment.status not in appointment_state.TERMINAL_STATUSES:
        appointment.payment_status = models.AppointmentPaymentStatus.paid


def _run(
    db: Session,
    appointment_id: str,
    step: Callable[[models.Appointment], Any],
    ctx: Optional[AuditContext],
    action: str,
    operation_id: Optional[str] = None,
    expected_revision: Optional[int] = None,
) -> models.Appointment:
    """Load under lock, apply ``step``, commit; retried when a concurrent writer bumps the revision."""
    for attempt in range(1, MAX_STALE_RETRIES + 1):
        try:
            done = crud.get_processed_operation(db, operation_id)
            if done is not None:
                logger.info(f"Operation {operation_id} already applied to {done.resource}:{done.resource_id}")
                return crud.get_appointment(db, done.resource_id)

            appointment = crud.get_appointment(db, appointment_id, for_update=True)
            if appointment.deleted_at is not None:
                raise NotFound("Appointment", appointment_id)
            if expected_revision is not None and appointment.revision != expected_revision:
                raise StaleRevision(details={"expected": expected_revision, "actual": appointment.revision})

            result = step(appointment)
            target = result if isinstance(result, models.Appointment) else appointment
            validate_appointment(target)
            crud.record_operation(db, operation_id, "appointment", target.id, action)
            db.commit()
            db.refresh(target)
            return target
        except StaleDataError:
            db.rollback()
            logger.warning(f"Stale revision on appointment {appointment_id} (attempt {attempt})")
        except ConsultCoreError as e:
            db.rollback()
            compliance_logger.log_failure(action, "appointment", appointment_id, ctx, e)
            raise
    raise StaleRevision()


def change_status(
    db: Session,
    appointment_id: str,
    update: schemas.AppointmentStatusUpdate,
    actor: models.User,
    ctx: Optional[AuditContext],
) -> models.Appointment:
    if update.status == models.AppointmentStatus.rescheduled:
        return reschedule(db, appointment_id, update, actor, ctx)

    def step(appointment):
        event = AppointmentEvent(
            target=update.status,
            at=utcnow(),
            reason=update.reason,
            cancelled_by=update.cancelled_by,
            notes=update.notes,
        )
        apply_event(db, appointment, event, ctx)

    return _run(db, appointment_id, step, ctx, f"APPOINTMENT_{update.status.name.upper()}",
                operation_id=update.operation_id, expected_revision=update.expected_revision)


# ==================== BOOKING ====================

def _resolve_fee(payload: schemas.AppointmentCreate, profile: models.DoctorProfile, actor: models.User) -> Decimal:
    if payload.consultation_fee is not None and actor.role in (models.UserRole.admin, models.UserRole.staff):
        return Decimal(payload.consultation_fee)
    if payload.is_follow_up and profile.follow_up_fee is not None:
        return Decimal(profile.follow_up_fee)
    return Decimal(profile.consultation_fee or 0)


def _book(
    db: Session,
    payload: schemas.AppointmentCreate,
    actor: models.User,
    ctx: Optional[AuditContext],
    original: Optional[models.Appointment] = None,
) -> models.Appointment:
    """Validate, allocate and insert a scheduled appointment. Does not commit."""
    patient = crud.require_user(db, payload.patient_id or actor.id, models.UserRole.patient, "Patient")
    profile = crud.get_doctor_profile(db, payload.doctor_id)
    day = payload.appointment_date
    if original is not None:
        # the slot queries below must see the original as released
        db.flush()

    if profile.is_unavailable_on(day):
        raise DoctorUnavailable(details={"doctorId": payload.doctor_id, "date": day.isoformat()})

    availability = availability_service.compute_availability(db, payload.doctor_id, day)
    start = to_minutes(payload.appointment_time)
    slot = availability.find(start)
    if slot is None:
        raise ValidationFailed(f"{payload.appointment_time} on {day} is not a bookable slot",
                               {"date": day.isoformat(), "time": payload.appointment_time})

    duration = payload.duration or (original.duration if original else slot.end - slot.start)
    end = start + duration
    limit = slot.end if availability.source == "override" else availability.window_end
    if limit is not None and end > limit:
        raise ValidationFailed("Appointment runs past the end of the doctor's schedule")
    if start < DAY_OPENS or end > DAY_CLOSES:
        raise ValidationFailed("Appointments must fall between 06:00 and 22:00")
    if not slot.available and slot.appointment_id not in availability.booked_appointment_ids:
        # booked through an override rather than by a live appointment
        raise SlotTaken(details={"conflictingAppointmentIds": [slot.appointment_id]} if slot.appointment_id else None)

    if local_to_utc(day, start, profile.timezone) <= utcnow():
        raise ValidationFailed("Appointments must be booked in the future")

    reserved = slot_service.reserve(db, payload.doctor_id, day, payload.appointment_time, duration, profile.timezone)

    fee = Decimal(original.consultation_fee) if original else _resolve_fee(payload, profile, actor)
    appointment = models.Appointment(
        patient_id=patient.id,
        doctor_id=payload.doctor_id,
        appointment_date=day,
        appointment_time=payload.appointment_time,
        duration=duration,
        start_minute=reserved.start_minute,
        end_minute=reserved.end_minute,
        starts_at=reserved.starts_at,
        slot_key=reserved.slot_key,
        appointment_type=payload.appointment_type,
        status=models.AppointmentStatus.scheduled,
        priority=payload.priority or models.AppointmentPriority.routine,
        consultation_fee=fee,
        payment_status=models.AppointmentPaymentStatus.free if fee == 0 else models.AppointmentPaymentStatus.pending,
        chief_complaint=payload.chief_complaint,
        symptoms=payload.symptoms,
        patient_notes=payload.patient_notes,
        is_follow_up=payload.is_follow_up,
        created_by=actor.id,
    )
    if payload.appointment_type == models.AppointmentType.video:
        appointment.room_id = f"room-{payload.doctor_id}-{patient.id}-{epoch_ms()}"
    if original is not None:
        appointment.original_appointment_id = original.id
        appointment.reschedule_reason = original.reschedule_reason
    validate_appointment(appointment)

    try:
        crud.assign_sequence_number(db, appointment, "appointment_number", "APT-")
    except IntegrityError as e:
        raise _constraint_error(e) from e

    if original is not None and original.payment_id:
        # The invoice follows the appointment to its new slot
        payment = crud.get_payment(db, original.payment_id, for_update=True)
        payment.appointment_id = appointment.id
        appointment.payment_id = payment.id
        appointment.payment_status = original.payment_status
        if appointment.payment_status == models.AppointmentPaymentStatus.paid:
            appointment.status = models.AppointmentStatus.confirmed
            appointment.confirmed_at = utcnow()
        original.payment_id = None
    elif fee > 0:
        payment = payment_service.open_invoice(db, appointment, payer=patient)
        appointment.payment_id = payment.id

    for override in crud.get_overrides(db, profile, day):
        if to_minutes(override.start_time) == start:
            override.is_booked = True
            override.appointment_id = appointment.id

    db.flush()
    compliance_logger.record(db, "APPOINTMENT_CREATED", "appointment", appointment.id, ctx, {
        "appointmentNumber": appointment.appointment_number,
        "doctorId": appointment.doctor_id,
        "patientId": appointment.patient_id,
        "date": day.isoformat(),
        "time": appointment.appointment_time,
        "originalAppointmentId": appointment.original_appointment_id,
    })
    amount_due = None if appointment.payment_status != models.AppointmentPaymentStatus.pending else str(fee)
    _notify_parties(db, appointment, "appointment_booked", amount_due=amount_due, currency="INR")
    return appointment


def create_appointment(
    db: Session,
    payload: schemas.AppointmentCreate,
    actor: models.User,
    ctx: Optional[AuditContext],
) -> models.Appointment:
    try:
        done = crud.get_processed_operation(db, payload.operation_id)
        if done is not None:
            return crud.get_appointment(db, done.resource_id)

        appointment = _book(db, payload, actor, ctx)
        crud.record_operation(db, payload.operation_id, "appointment", appointment.id, "APPOINTMENT_CREATED")
        db.commit()
        db.refresh(appointment)
        logger.info(f"Booked {appointment.appointment_number} for doctor {appointment.doctor_id} at {appointment.starts_at}")
        return appointment
    except IntegrityError as e:
        db.rollback()
        error = _constraint_error(e)
        compliance_logger.log_failure("APPOINTMENT_CREATE_FAILED", "appointment", None, ctx, error)
        raise error
    except ConsultCoreError as e:
        db.rollback()
        compliance_logger.log_failure("APPOINTMENT_CREATE_FAILED", "appointment", None, ctx, e)
        raise


def reschedule(
    db: Session,
    appointment_id: str,
    update: schemas.AppointmentStatusUpdate,
    actor: models.User,
    ctx: Optional[AuditContext],
) -> models.Appointment:
    """Move an appointment to a new slot; returns the replacement appointment."""
    if not update.new_date or not update.new_time:
        raise ValidationFailed("Rescheduling requires newDate and newTime", {"required": ["newDate", "newTime"]})

    def step(original):
        apply_event(db, original, AppointmentEvent(models.AppointmentStatus.rescheduled, at=utcnow(), reason=update.reason), ctx)
        replacement = _book(db, schemas.AppointmentCreate(
            patient_id=original.patient_id,
            doctor_id=original.doctor_id,
            appointment_date=update.new_date,
            appointment_time=update.new_time,
            duration=update.new_duration or original.duration,
            appointment_type=original.appointment_type,
            priority=original.priority,
            chief_complaint=original.chief_complaint,
            symptoms=original.symptoms or [],
            patient_notes=original.patient_notes,
            is_follow_up=original.is_follow_up,
        ), actor, ctx, original=original)
        original.rescheduled_to_id = replacement.id
        return replacement

    return _run(db, appointment_id, step, ctx, "APPOINTMENT_RESCHEDULED",
                operation_id=update.operation_id, expected_revision=update.expected_revision)


# ==================== MAINTENANCE ====================

def update_details(
    db: Session,
    appointment_id: str,
    update: schemas.AppointmentUpdate,
    actor: models.User,
    ctx: Optional[AuditContext],
) -> models.Appointment:
    changes = update.model_dump(exclude_unset=True)

    def step(appointment):
        if appointment.status in appointment_state.TERMINAL_STATUSES:
            raise Conflict(f"Appointment is {appointment.status.value} and can no longer be edited")
        if "doctor_notes" in changes and actor.role not in (models.UserRole.doctor, models.UserRole.admin):
            changes.pop("doctor_notes")
        for field, value in changes.items():
            setattr(appointment, field, value)
        compliance_logger.record(db, "APPOINTMENT_UPDATED", "appointment", appointment.id, ctx,
                                 {"fields": sorted(changes)})

    return _run(db, appointment_id, step, ctx, "APPOINTMENT_UPDATED")


def soft_delete_appointment(db: Session, appointment_id: str, actor: models.User, ctx: Optional[AuditContext]) -> models.Appointment:
    appointment = crud.get_appointment(db, appointment_id, for_update=True)
    if appointment.deleted_at is not None:
        return appointment
    from .consultation_service import live_for_appointment
    live = live_for_appointment(db, appointment.id)
    if live:
        db.rollback()
        raise Conflict("Cancel the appointment's consultation before deleting it",
                       {"consultationIds": [c.id for c in live]})
    crud.soft_delete(db, appointment, actor.id)
    appointment.slot_key = None
    _release_override(db, appointment)
    outbox_service.cancel_pending(db, "appointment", appointment.id)
    compliance_logger.record(db, "APPOINTMENT_DELETED", "appointment", appointment.id, ctx,
                             {"appointmentNumber": appointment.appointment_number, "status": appointment.status.value})
    db.commit()
    db.refresh(appointment)
    return appointment
