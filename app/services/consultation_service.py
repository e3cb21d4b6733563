# app/services/consultation_service.py
import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .. import models, schemas, crud
from ..compliance_logger import AuditContext, compliance_logger
from ..core.clock import epoch_ms, minutes_between, utcnow
from ..exceptions import (
    Conflict, ConsultCoreError, DoctorUnavailable, Forbidden, IllegalTransition, StaleRevision, ValidationFailed,
)
from . import appointment_service, appointment_state, outbox_service
from .appointment_state import AppointmentEvent

logger = logging.getLogger(__name__)

C = models.ConsultationStatus
A = models.AppointmentStatus

TRANSITIONS = {
    C.scheduled: {C.active, C.waiting, C.cancelled, C.no_show},
    C.waiting: {C.active, C.cancelled},
    C.active: {C.completed, C.ended, C.cancelled},
    C.no_show: {C.rescheduled},
    C.completed: set(),
    C.cancelled: set(),
    C.ended: set(),
    C.rescheduled: set(),
}

LIVE_STATUSES = (C.scheduled, C.active, C.waiting)
CLOSED_STATUSES = (C.completed, C.cancelled, C.ended)

CANCELLED_BY_ROLE = {
    models.UserRole.patient: models.CancelledBy.patient,
    models.UserRole.doctor: models.CancelledBy.doctor,
    models.UserRole.admin: models.CancelledBy.admin,
}

MAX_STALE_RETRIES = 3


def _move(consultation: models.Consultation, target: models.ConsultationStatus) -> None:
    if target not in TRANSITIONS[consultation.status]:
        raise IllegalTransition(consultation.status.value, target.value, resource="consultation")
    consultation.status = target


def validate_consultation(consultation: models.Consultation) -> None:
    start, end = consultation.start_time, consultation.end_time
    if start is None or end is None:
        return
    if end < start:
        raise ValidationFailed("endTime must not precede startTime",
                               {"startTime": start.isoformat(), "endTime": end.isoformat()})
    if consultation.actual_duration != minutes_between(start, end):
        raise ValidationFailed("actualDuration must equal endTime - startTime",
                               {"actualDuration": consultation.actual_duration})


def participant_role(consultation: models.Consultation, user: models.User) -> Optional[models.ParticipantRole]:
    if user.id == consultation.patient_id:
        return models.ParticipantRole.patient
    if user.id == consultation.doctor_id:
        return models.ParticipantRole.doctor
    return None


def can_view(consultation: models.Consultation, user: models.User) -> bool:
    if user.role in (models.UserRole.admin, models.UserRole.staff, models.UserRole.nurse):
        return True
    return participant_role(consultation, user) is not None


def _require_doctor(consultation: models.Consultation, user: models.User) -> None:
    if user.id != consultation.doctor_id:
        raise Forbidden("Only the consultation's doctor can do this")


def _bound_appointment(db: Session, consultation: models.Consultation) -> Optional[models.Appointment]:
    if not consultation.appointment_id:
        return None
    return crud.get_appointment(db, consultation.appointment_id, for_update=True)


def _run(
    db: Session,
    consultation_id: str,
    step: Callable[[models.Consultation], Any],
    ctx: Optional[AuditContext],
    action: str,
):
    for attempt in range(1, MAX_STALE_RETRIES + 1):
        try:
            consultation = crud.get_consultation(db, consultation_id, for_update=True)
            result = step(consultation)
            validate_consultation(consultation)
            db.commit()
            target = result if result is not None else consultation
            db.refresh(target)
            return target
        except StaleDataError:
            db.rollback()
            logger.warning(f"Stale revision on consultation {consultation_id} (attempt {attempt})")
        except ConsultCoreError as e:
            db.rollback()
            compliance_logger.log_failure(action, "consultation", consultation_id, ctx, e)
            raise
    raise StaleRevision()


def _audit(db: Session, consultation: models.Consultation, action: str, ctx: Optional[AuditContext], **details) -> None:
    details.setdefault("consultationNumber", consultation.consultation_number)
    compliance_logger.record(db, action, "consultation", consultation.id, ctx, details)


# ==================== LIFECYCLE ====================

def initiate(db: Session, body: schemas.ConsultationInitiate, actor: models.User, ctx: Optional[AuditContext]) -> models.Consultation:
    try:
        patient = crud.require_user(db, body.patient_id, models.UserRole.patient, "Patient")
        profile = crud.get_doctor_profile(db, body.doctor_id)

        busy = db.query(models.Consultation).filter(
            models.Consultation.status.in_(LIVE_STATUSES),
            models.Consultation.deleted_at.is_(None),
            or_(models.Consultation.patient_id == patient.id, models.Consultation.doctor_id == body.doctor_id),
        ).first()
        if busy is not None:
            raise Conflict("Patient or doctor already has a consultation in progress",
                           {"consultationId": busy.id, "status": busy.status.value})

        if profile.is_unavailable_on(utcnow().date()):
            raise DoctorUnavailable(details={"doctorId": body.doctor_id})

        history = db.query(models.Appointment.id).filter(
            models.Appointment.patient_id == patient.id,
            models.Appointment.doctor_id == body.doctor_id,
        ).first()
        if history is None:
            raise Forbidden("Patient has no appointment history with this doctor")

        if body.appointment_id:
            appointment = crud.get_appointment(db, body.appointment_id)
            if appointment.patient_id != patient.id or appointment.doctor_id != body.doctor_id:
                raise ValidationFailed("appointmentId belongs to a different patient or doctor")
            if appointment.status in appointment_state.TERMINAL_STATUSES or not appointment.holds_slot:
                raise Conflict(f"Appointment is {appointment.status.value}")

        consultation = models.Consultation(
            room_id=f"room-{body.doctor_id}-{patient.id}-{epoch_ms()}",
            patient_id=patient.id,
            doctor_id=body.doctor_id,
            appointment_id=body.appointment_id,
            consultation_type=body.consultation_type,
            status=C.scheduled,
            priority=body.priority,
            is_emergency=body.is_emergency,
            duration=body.duration,
            chief_complaint=body.chief_complaint,
            symptoms=body.symptoms,
            created_by=actor.id,
        )
        validate_consultation(consultation)
        crud.assign_sequence_number(db, consultation, "consultation_number", "CONS-")

        payload = {
            "consultation_number": consultation.consultation_number,
            "consultation_type": consultation.consultation_type.value,
            "room_id": consultation.room_id,
        }
        for user in (patient, profile.user):
            outbox_service.notify_user(db, user, "consultation_scheduled", "Consultation scheduled", payload,
                                       resource="consultation", resource_id=consultation.id)
        _audit(db, consultation, "CONSULTATION_INITIATED", ctx, appointmentId=body.appointment_id,
               type=consultation.consultation_type.value)
        db.commit()
        db.refresh(consultation)
        return consultation
    except ConsultCoreError as e:
        db.rollback()
        compliance_logger.log_failure("CONSULTATION_INITIATED", "consultation", None, ctx, e)
        raise


def _activate(db: Session, consultation: models.Consultation, ctx: Optional[AuditContext]) -> None:
    now = utcnow()
    _move(consultation, C.active)
    consultation.start_time = consultation.start_time or now

    appointment = _bound_appointment(db, consultation)
    if appointment is not None:
        if appointment.status in (A.scheduled, A.confirmed):
            appointment_service.apply_event(db, appointment, AppointmentEvent(A.checked_in, at=now), ctx)
        if appointment.status == A.checked_in:
            appointment_service.apply_event(db, appointment, AppointmentEvent(A.in_progress, at=now), ctx)
        if appointment.status != A.in_progress:
            raise IllegalTransition(appointment.status.value, A.in_progress.value)
    _audit(db, consultation, "CONSULTATION_STARTED", ctx)


def join(db: Session, consultation_id: str, actor: models.User, ctx: Optional[AuditContext]) -> models.Consultation:
    def step(consultation):
        role = participant_role(consultation, actor)
        if role is None:
            raise Forbidden("Only the consultation's patient or doctor can join")
        if consultation.status not in LIVE_STATUSES:
            raise IllegalTransition(consultation.status.value, C.active.value, resource="consultation")

        if not any(p.user_id == actor.id for p in consultation.participants):
            consultation.participants.append(models.ConsultationParticipant(
                user_id=actor.id, role=role, join_time=utcnow(),
            ))
            _audit(db, consultation, "CONSULTATION_JOINED", ctx, role=role.value)
        if consultation.status != C.active:
            _activate(db, consultation, ctx)

    return _run(db, consultation_id, step, ctx, "CONSULTATION_JOINED")


def attach_notes(db: Session, consultation_id: str, body: schemas.ConsultationNotes, actor: models.User, ctx: Optional[AuditContext]) -> models.Consultation:
    changes = body.model_dump(exclude_unset=True)

    def step(consultation):
        _require_doctor(consultation, actor)
        if consultation.status in CLOSED_STATUSES:
            raise Conflict(f"Notes cannot be changed once the consultation is {consultation.status.value}")
        for field, value in changes.items():
            setattr(consultation, field, value)
        _audit(db, consultation, "CONSULTATION_NOTES_UPDATED", ctx, fields=sorted(changes))

    return _run(db, consultation_id, step, ctx, "CONSULTATION_NOTES_UPDATED")


def create_prescription(db: Session, consultation_id: str, body: schemas.PrescriptionCreate, actor: models.User, ctx: Optional[AuditContext]) -> models.Prescription:
    def step(consultation):
        _require_doctor(consultation, actor)
        if consultation.status in (C.cancelled, C.no_show, C.rescheduled):
            raise Conflict(f"Cannot prescribe for a {consultation.status.value} consultation")

        prescription = models.Prescription(
            patient_id=consultation.patient_id,
            doctor_id=consultation.doctor_id,
            appointment_id=consultation.appointment_id,
            consultation_id=consultation.id,
            medications=[m.model_dump(exclude_none=True) for m in body.medications],
            diagnosis=body.diagnosis or consultation.diagnosis,
            instructions=body.instructions,
            notes=body.notes,
            allow_refills=body.allow_refills,
            max_refills=body.max_refills if body.allow_refills else 0,
            refills_remaining=body.max_refills if body.allow_refills else 0,
            status=models.PrescriptionStatus.active,
            prescribed_date=utcnow(),
            attachment_url=body.attachment_url,
            attachment_checksum=body.attachment_checksum,
        )
        crud.assign_sequence_number(db, prescription, "prescription_number", "RX-")
        consultation.prescription_id = prescription.id

        compliance_logger.record(db, "PRESCRIPTION_CREATED", "prescription", prescription.id, ctx, {
            "prescriptionNumber": prescription.prescription_number,
            "consultationId": consultation.id,
            "medicationCount": len(prescription.medications),
        })
        outbox_service.notify_user(db, consultation.patient, "prescription_issued", "Your prescription is ready",
                                   {"message": f"Prescription {prescription.prescription_number} has been issued."},
                                   resource="prescription", resource_id=prescription.id)
        return prescription

    return _run(db, consultation_id, step, ctx, "PRESCRIPTION_CREATED")


def order_lab(db: Session, consultation_id: str, body: schemas.LabOrderCreate, actor: models.User, ctx: Optional[AuditContext]) -> models.LabResult:
    def step(consultation):
        _require_doctor(consultation, actor)
        if consultation.status in (C.cancelled, C.no_show, C.rescheduled):
            raise Conflict(f"Cannot order tests for a {consultation.status.value} consultation")
        lab = models.LabResult(
            patient_id=consultation.patient_id,
            doctor_id=consultation.doctor_id,
            consultation_id=consultation.id,
            test_name=body.test_name,
            test_category=body.test_category,
            priority=body.priority,
            status=models.LabStatus.ordered,
            instructions=body.instructions,
            ordered_at=utcnow(),
        )
        crud.assign_sequence_number(db, lab, "lab_number", "LAB-")
        compliance_logger.record(db, "LAB_ORDERED", "lab_result", lab.id, ctx, {
            "labNumber": lab.lab_number,
            "consultationId": consultation.id,
            "testName": lab.test_name,
        })
        return lab

    return _run(db, consultation_id, step, ctx, "LAB_ORDERED")


def _has_clinical_data(consultation: models.Consultation) -> bool:
    return any([
        consultation.diagnosis, consultation.assessment, consultation.plan,
        consultation.clinical_notes, consultation.vital_signs,
    ])


def _close_record(db: Session, consultation: models.Consultation) -> models.MedicalRecord:
    record = models.MedicalRecord(
        patient_id=consultation.patient_id,
        doctor_id=consultation.doctor_id,
        consultation_id=consultation.id,
        appointment_id=consultation.appointment_id,
        record_type="consultation",
        diagnosis=consultation.diagnosis,
        summary={
            "chiefComplaint": consultation.chief_complaint,
            "assessment": consultation.assessment,
            "plan": consultation.plan,
            "notes": consultation.clinical_notes,
            "recommendations": consultation.recommendations,
        },
        vital_signs=consultation.vital_signs,
        recorded_at=utcnow(),
    )
    crud.assign_sequence_number(db, record, "record_number", "MR-")
    return record


def end(
    db: Session,
    consultation_id: str,
    actor: models.User,
    ctx: Optional[AuditContext],
    reason: Optional[str] = None,
    target: models.ConsultationStatus = C.completed,
    create_medical_record: bool = True,
) -> models.Consultation:
    def step(consultation):
        if participant_role(consultation, actor) is None and actor.role != models.UserRole.admin:
            raise Forbidden("Only the consultation's participants can end it")
        _move(consultation, target)
        now = utcnow()
        consultation.end_time = now
        consultation.actual_duration = max(0, minutes_between(consultation.start_time or now, now))
        consultation.end_reason = reason

        if create_medical_record and _has_clinical_data(consultation):
            record = _close_record(db, consultation)
            consultation.medical_record_id = record.id

        appointment = _bound_appointment(db, consultation)
        if appointment is not None:
            if appointment_state.can_transition(appointment.status, A.completed):
                appointment_service.apply_event(
                    db, appointment, AppointmentEvent(A.completed, at=now, notes=consultation.clinical_notes), ctx
                )
            else:
                logger.warning(
                    f"Consultation {consultation.consultation_number} ended but appointment "
                    f"{appointment.appointment_number} is {appointment.status.value}"
                )
        _audit(db, consultation, f"CONSULTATION_{target.name.upper()}", ctx,
               actualDuration=consultation.actual_duration, reason=reason)

    return _run(db, consultation_id, step, ctx, f"CONSULTATION_{target.name.upper()}")


def cancel(db: Session, consultation_id: str, reason: Optional[str], actor: models.User, ctx: Optional[AuditContext]) -> models.Consultation:
    if not reason:
        raise ValidationFailed("A cancellation reason is required", {"required": ["reason"]})

    def step(consultation):
        if participant_role(consultation, actor) is None and actor.role != models.UserRole.admin:
            raise Forbidden("Only the consultation's participants can cancel it")
        _move(consultation, C.cancelled)
        now = utcnow()
        consultation.cancellation_reason = reason
        consultation.cancelled_at = now
        consultation.cancelled_by = actor.id

        appointment = _bound_appointment(db, consultation)
        if appointment is not None and appointment_state.can_transition(appointment.status, A.cancelled):
            event = AppointmentEvent(
                A.cancelled, at=now, reason=reason,
                cancelled_by=CANCELLED_BY_ROLE.get(actor.role, models.CancelledBy.system),
            )
            appointment_service.apply_event(db, appointment, event, ctx)
        outbox_service.cancel_pending(db, "consultation", consultation.id)
        _audit(db, consultation, "CONSULTATION_CANCELLED", ctx, reason=reason)

    return _run(db, consultation_id, step, ctx, "CONSULTATION_CANCELLED")


def live_for_appointment(db: Session, appointment_id: str) -> List[models.Consultation]:
    """Live consultations bound to an appointment, by their in-session status."""
    bound = db.query(models.Consultation).filter(
        models.Consultation.appointment_id == appointment_id,
        models.Consultation.deleted_at.is_(None),
    ).all()
    return [c for c in bound if c.status in LIVE_STATUSES]


def close_for_appointment(
    db: Session,
    appointment: models.Appointment,
    target: models.AppointmentStatus,
    ctx: Optional[AuditContext],
    reason: Optional[str] = None,
) -> List[models.Consultation]:
    """Settle live consultations of an appointment that just completed, was cancelled, missed or moved.

    An active consultation finishes with its completed appointment; a scheduled
    one follows a no-show. Everything else is cancelled. Does not commit.
    """
    now = utcnow()
    closed = live_for_appointment(db, appointment.id)
    for consultation in closed:
        if target == A.completed and consultation.status == C.active:
            _move(consultation, C.completed)
            consultation.end_time = now
            consultation.actual_duration = max(0, minutes_between(consultation.start_time or now, now))
            consultation.end_reason = reason or "appointment_completed"
            if _has_clinical_data(consultation):
                consultation.medical_record_id = _close_record(db, consultation).id
            _audit(db, consultation, "CONSULTATION_COMPLETED", ctx,
                   actualDuration=consultation.actual_duration, reason=consultation.end_reason)
        elif target == A.no_show and consultation.status == C.scheduled:
            _move(consultation, C.no_show)
            _audit(db, consultation, "CONSULTATION_NO_SHOW", ctx, appointmentId=appointment.id)
        else:
            _move(consultation, C.cancelled)
            consultation.cancellation_reason = reason or f"appointment_{target.value}"
            consultation.cancelled_at = now
            consultation.cancelled_by = ctx.user_id if ctx else None
            outbox_service.cancel_pending(db, "consultation", consultation.id)
            _audit(db, consultation, "CONSULTATION_CANCELLED", ctx,
                   reason=consultation.cancellation_reason, appointmentStatus=target.value)
        validate_consultation(consultation)
        logger.info(f"Consultation {consultation.consultation_number} is {consultation.status.value} "
                    f"following appointment {appointment.appointment_number}")
    return closed


def change_status(db: Session, consultation_id: str, body: schemas.ConsultationStatusUpdate, actor: models.User, ctx: Optional[AuditContext]) -> models.Consultation:
    if body.status in (C.completed, C.ended):
        return end(db, consultation_id, actor, ctx, reason=body.reason, target=body.status,
                   create_medical_record=body.create_medical_record)
    if body.status == C.cancelled:
        return cancel(db, consultation_id, body.reason, actor, ctx)

    def step(consultation):
        if participant_role(consultation, actor) is None and actor.role != models.UserRole.admin:
            raise Forbidden("Only the consultation's participants can change its status")
        if body.status == C.active:
            _activate(db, consultation, ctx)
            return
        source = consultation.status
        _move(consultation, body.status)
        _audit(db, consultation, f"CONSULTATION_{body.status.name.upper()}", ctx,
               **{"from": source.value, "to": body.status.value, "reason": body.reason})

    return _run(db, consultation_id, step, ctx, f"CONSULTATION_{body.status.name.upper()}")


# ==================== READ MODELS ====================

def summary(db: Session, consultation: models.Consultation) -> Dict[str, Any]:
    patient = consultation.patient
    doctor = consultation.doctor
    prescription = crud.get_prescription(db, consultation.prescription_id)
    record = crud.get_medical_record(db, consultation.medical_record_id)
    labs = crud.get_lab_results_for_consultation(db, consultation.id)

    def dump(model, obj):
        return model.model_validate(obj).model_dump(by_alias=True, mode="json") if obj is not None else None

    return {
        "consultationDetails": {
            "id": consultation.id,
            "consultationNumber": consultation.consultation_number,
            "roomId": consultation.room_id,
            "type": consultation.consultation_type.value,
            "status": consultation.status.value,
            "priority": consultation.priority.value,
            "isEmergency": consultation.is_emergency,
            "appointmentId": consultation.appointment_id,
            "startTime": consultation.start_time.isoformat() if consultation.start_time else None,
            "endTime": consultation.end_time.isoformat() if consultation.end_time else None,
            "duration": consultation.duration,
            "actualDuration": consultation.actual_duration,
            "participants": [dump(schemas.ParticipantResponse, p) for p in consultation.participants],
        },
        "patientInfo": {
            "id": patient.id,
            "name": patient.full_name,
            "age": patient.age,
            "gender": patient.gender.value if patient.gender else None,
            "medicalRecordNumber": patient.medical_record_number,
        },
        "doctorInfo": {
            "id": doctor.id,
            "name": f"Dr. {doctor.full_name}",
            "specialization": doctor.specialization,
            "department": doctor.department,
        },
        "clinicalData": {
            "chiefComplaint": consultation.chief_complaint,
            "symptoms": consultation.symptoms or [],
            "vitalSigns": consultation.vital_signs,
            "diagnosis": consultation.diagnosis,
            "assessment": consultation.assessment,
            "plan": consultation.plan,
            "clinicalNotes": consultation.clinical_notes,
            "recommendations": consultation.recommendations or [],
            "followUpRequired": consultation.follow_up_required,
            "followUpDate": consultation.follow_up_date.isoformat() if consultation.follow_up_date else None,
        },
        "outcomes": {
            "prescription": dump(schemas.PrescriptionResponse, prescription),
            "medicalRecord": dump(schemas.MedicalRecordResponse, record),
            "labResults": [dump(schemas.LabResultResponse, lab) for lab in labs],
        },
    }
