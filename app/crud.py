import logging
import secrets
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, aliased, joinedload, selectinload

from . import models, schemas
from .config import get_settings
from .compliance_logger import AuditContext, compliance_logger
from .core.clock import epoch_ms, to_minutes, utcnow
from .exceptions import (
    AccountLocked, DoctorNotFound, DuplicateKey, FatalInvariantViolation, NotFound, ValidationFailed,
)

logger = logging.getLogger(__name__)


class CRUDError(Exception):
    pass


# ==================== IDENTIFIERS ====================

def _value_taken(db: Session, column, value: str) -> bool:
    return db.query(column).filter(column == value).first() is not None


def is_unique_violation(error: IntegrityError, attr: str) -> bool:
    """Whether a flush failed on the unique index over ``attr``."""
    return attr in str(error.orig)


def insert_unique(db: Session, obj, attr: str, candidates: Iterable[str], label: str):
    """Add and flush ``obj`` with the first free value of ``attr`` from ``candidates``.

    Each attempt runs under a SAVEPOINT, so a value won by a concurrent writer
    between the lookup and the flush rolls back only that attempt and the next
    candidate is tried. Violations of any other constraint propagate.
    """
    column = getattr(type(obj), attr)
    for value in candidates:
        if _value_taken(db, column, value):
            continue
        try:
            with db.begin_nested():
                setattr(obj, attr, value)
                db.add(obj)
                db.flush()
            return obj
        except IntegrityError as e:
            if not is_unique_violation(e, attr):
                raise
            logger.warning(f"{label} {value} was taken concurrently; trying the next value")
    raise DuplicateKey(f"Could not allocate a unique {label}")


def assign_sequence_number(db: Session, obj, attr: str, prefix: str, width: int = 6, max_attempts: int = 50):
    """Give ``obj`` the next free ``{prefix}{n:0width}`` value, add and flush it.

    The candidate starts at row count + 1 and moves forward past values already taken.
    """
    column = getattr(type(obj), attr)
    start = (db.query(func.count(column)).scalar() or 0) + 1
    candidates = (f"{prefix}{seq:0{width}d}" for seq in range(start, start + max_attempts))
    return insert_unique(db, obj, attr, candidates, f"{prefix} number")


def invoice_numbers(max_attempts: int = 10) -> Iterator[str]:
    """INV + last six digits of the epoch-ms clock + three random digits."""
    for _ in range(max_attempts):
        yield f"INV{str(epoch_ms())[-6:]}{secrets.randbelow(1000):03d}"


# ==================== OPERATION LEDGER ====================

def get_processed_operation(db: Session, operation_id: Optional[str]) -> Optional[models.ProcessedOperation]:
    if not operation_id:
        return None
    return db.get(models.ProcessedOperation, operation_id)


def record_operation(db: Session, operation_id: Optional[str], resource: str, resource_id: str, action: str) -> None:
    if not operation_id:
        return
    db.add(models.ProcessedOperation(
        operation_id=operation_id, resource=resource, resource_id=resource_id, action=action,
    ))


# ==================== USERS ====================

def get_user(db: Session, user_id: str, include_deleted: bool = False) -> Optional[models.User]:
    try:
        query = db.query(models.User).filter(models.User.id == user_id)
        if not include_deleted:
            query = query.filter(models.User.deleted_at.is_(None))
        return query.first()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching user {user_id}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")


def get_user_by_email(db: Session, email: str) -> Optional[models.User]:
    try:
        return db.query(models.User).filter(
            func.lower(models.User.email) == email.strip().lower(),
            models.User.deleted_at.is_(None)
        ).first()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching user by email '{email}': {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")


def require_user(db: Session, user_id: str, role: Optional[models.UserRole] = None, label: str = "User") -> models.User:
    user = get_user(db, user_id)
    if user is None or (role is not None and user.role != role):
        raise NotFound(label, user_id)
    return user


def get_users(db: Session, skip: int = 0, limit: int = 100, role: Optional[str] = None, is_active: Optional[bool] = None) -> List[models.User]:
    try:
        query = db.query(models.User).filter(models.User.deleted_at.is_(None))
        if role:
            query = query.filter(models.User.role == role)
        if is_active is not None:
            query = query.filter(models.User.is_active == is_active)
        return query.order_by(models.User.created_at).offset(skip).limit(limit).all()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching users: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")


def validate_user(user: models.User) -> None:
    """Role-conditional invariants, checked before every write."""
    missing = []
    if user.role == models.UserRole.patient:
        missing = [f for f in ("date_of_birth", "gender") if getattr(user, f) is None]
    elif user.role == models.UserRole.doctor:
        missing = [f for f in ("specialization", "medical_license", "qualification", "department", "consultation_fee")
                   if getattr(user, f) in (None, "")]
        if user.consultation_fee is not None and Decimal(user.consultation_fee) < 0:
            raise ValidationFailed("consultationFee must be >= 0")
    if missing:
        raise ValidationFailed(f"Missing required fields for role {user.role.value}: {', '.join(missing)}",
                               {"missing": missing})


def create_user(db: Session, payload, created_by: Optional[str] = None) -> models.User:
    """Create a user from one of the role-tagged create schemas and its profile."""
    from .security import get_password_hash

    settings = get_settings()
    email = payload.email.lower()
    if get_user_by_email(db, email):
        raise DuplicateKey("A user with this email already exists", {"field": "email"})

    user = models.User(
        first_name=payload.first_name.strip(),
        last_name=payload.last_name.strip(),
        email=email,
        phone_number=payload.phone_number,
        password_hash=get_password_hash(payload.password) if payload.password else None,
        role=models.UserRole(payload.role),
    )

    if isinstance(payload, schemas.PatientCreate):
        user.date_of_birth = payload.date_of_birth
        user.gender = payload.gender
    elif isinstance(payload, schemas.DoctorCreate):
        if db.query(models.User.id).filter(models.User.medical_license == payload.medical_license).first():
            raise DuplicateKey("A doctor with this medical license already exists", {"field": "medicalLicense"})
        user.specialization = payload.specialization
        user.medical_license = payload.medical_license
        user.qualification = payload.qualification
        user.department = payload.department
        user.consultation_fee = payload.consultation_fee
    elif isinstance(payload, (schemas.NurseCreate, schemas.StaffCreate)):
        user.department = payload.department

    validate_user(user)

    try:
        db.add(user)
        db.flush()
        if user.role == models.UserRole.patient:
            profile = models.PatientProfile(
                user_id=user.id,
                blood_type=payload.blood_type,
                allergies=payload.allergies,
            )
            assign_sequence_number(db, profile, "medical_record_number", f"MRN{utcnow().year}", width=8)
        elif user.role == models.UserRole.doctor:
            profile = models.DoctorProfile(
                user_id=user.id,
                consultation_fee=payload.consultation_fee,
                follow_up_fee=payload.follow_up_fee,
                appointment_buffer_time=payload.appointment_buffer_time,
                timezone=payload.timezone or settings.default_timezone,
            )
            db.add(profile)
            db.flush()
            _replace_templates(profile, payload.schedule)
            validate_doctor_profile(profile)
        db.commit()
        db.refresh(user)
        logger.info(f"Created {user.role.value} user {user.id}")
        return user
    except ValidationFailed:
        db.rollback()
        raise
    except IntegrityError as e:
        db.rollback()
        logger.warning(f"Integrity error creating user {email}: {e}")
        raise DuplicateKey("User violates a uniqueness constraint")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error creating user {email}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")


def authenticate_user(db: Session, email: str, password: str) -> Optional[models.User]:
    """Verify credentials, applying the failed-attempt lockout."""
    from .security import verify_password

    user = get_user_by_email(db, email)
    if user is None:
        return None
    if user.is_locked():
        raise AccountLocked(details={"lockedUntil": user.account_locked_until.isoformat()})
    if not user.password_hash or not verify_password(password, user.password_hash):
        register_failed_authentication(db, user)
        return None
    register_successful_authentication(db, user)
    return user


def register_failed_authentication(db: Session, user: models.User) -> models.User:
    settings = get_settings()
    user.failed_login_attempts = (user.failed_login_attempts or 0) + 1
    if user.failed_login_attempts >= settings.max_failed_logins:
        user.account_locked_until = utcnow() + timedelta(minutes=settings.lockout_minutes)
        user.failed_login_attempts = 0
        logger.warning(f"User {user.id} locked until {user.account_locked_until}")
    db.commit()
    return user


def register_successful_authentication(db: Session, user: models.User) -> models.User:
    user.failed_login_attempts = 0
    user.account_locked_until = None
    user.last_login_at = utcnow()
    db.commit()
    return user


# ==================== DOCTOR PROFILES ====================

def get_doctor_profile(db: Session, doctor_id: str, for_update: bool = False) -> models.DoctorProfile:
    query = (
        db.query(models.DoctorProfile)
        .join(models.User, models.User.id == models.DoctorProfile.user_id)
        .filter(
            models.DoctorProfile.user_id == doctor_id,
            models.User.role == models.UserRole.doctor,
            models.User.deleted_at.is_(None),
        )
        .options(selectinload(models.DoctorProfile.schedule))
    )
    if for_update:
        query = query.with_for_update(of=models.DoctorProfile)
    profile = query.first()
    if profile is None:
        raise DoctorNotFound(doctor_id)
    return profile


def _replace_templates(profile: models.DoctorProfile, templates: List[schemas.ScheduleTemplateIn]) -> None:
    profile.schedule.clear()
    for position, template in enumerate(templates):
        profile.schedule.append(models.ScheduleTemplate(
            position=position,
            day_of_week=template.day_of_week,
            start_time=template.start_time,
            end_time=template.end_time,
            appointment_duration=template.appointment_duration,
            max_patients=template.max_patients,
        ))


def validate_doctor_profile(profile: models.DoctorProfile) -> None:
    """Schedule invariants, checked before every write of the profile."""
    buffer = profile.appointment_buffer_time or 0
    if not 0 <= buffer <= 60:
        raise ValidationFailed("appointmentBufferTime must be between 0 and 60 minutes", {"appointmentBufferTime": buffer})
    if profile.consultation_fee is not None and Decimal(profile.consultation_fee) < 0:
        raise ValidationFailed("consultationFee must be >= 0")
    days = set()
    for template in profile.schedule:
        if to_minutes(template.start_time) >= to_minutes(template.end_time):
            raise ValidationFailed(f"startTime must be before endTime ({template.start_time}-{template.end_time})",
                                   {"dayOfWeek": template.day_of_week})
        if not 15 <= template.appointment_duration <= 120:
            raise ValidationFailed("appointmentDuration must be between 15 and 120 minutes",
                                   {"dayOfWeek": template.day_of_week})
        if template.max_patients is not None and template.max_patients < 1:
            raise ValidationFailed("maxPatients must be at least 1", {"dayOfWeek": template.day_of_week})
        if template.day_of_week in days:
            raise ValidationFailed("Only one schedule template per weekday", {"dayOfWeek": template.day_of_week})
        days.add(template.day_of_week)


def update_doctor_schedule(db: Session, doctor_id: str, update: schemas.ScheduleUpdate) -> models.DoctorProfile:
    profile = get_doctor_profile(db, doctor_id, for_update=True)
    _replace_templates(profile, update.schedule)
    if update.appointment_buffer_time is not None:
        profile.appointment_buffer_time = update.appointment_buffer_time
    if update.timezone:
        profile.timezone = update.timezone
    try:
        validate_doctor_profile(profile)
    except ValidationFailed:
        db.rollback()
        raise
    db.commit()
    db.refresh(profile)
    return profile


def get_overrides(db: Session, profile: models.DoctorProfile, day: date) -> List[models.AvailabilityOverride]:
    return (
        db.query(models.AvailabilityOverride)
        .filter(
            models.AvailabilityOverride.doctor_profile_id == profile.id,
            models.AvailabilityOverride.date == day,
        )
        .order_by(models.AvailabilityOverride.start_time)
        .all()
    )


def set_date_overrides(db: Session, doctor_id: str, day: date, update: schemas.OverrideUpdate) -> List[models.AvailabilityOverride]:
    """Replace the override slots of one date; an empty list removes the override."""
    profile = get_doctor_profile(db, doctor_id, for_update=True)
    for existing in get_overrides(db, profile, day):
        db.delete(existing)
    db.flush()
    for slot in update.slots:
        db.add(models.AvailabilityOverride(
            doctor_profile_id=profile.id,
            date=day,
            start_time=slot.start_time,
            end_time=slot.end_time,
            is_booked=slot.is_booked,
            appointment_id=slot.appointment_id,
        ))
    db.commit()
    return get_overrides(db, profile, day)


def set_doctor_status(db: Session, doctor_id: str, update: schemas.DoctorStatusUpdate) -> models.DoctorProfile:
    profile = get_doctor_profile(db, doctor_id, for_update=True)
    profile.is_available = update.is_available
    profile.unavailable_until = update.unavailable_until
    db.commit()
    db.refresh(profile)
    return profile


# ==================== APPOINTMENTS ====================

def get_appointment(db: Session, appointment_id: str, for_update: bool = False, include_deleted: bool = True) -> models.Appointment:
    query = db.query(models.Appointment).filter(models.Appointment.id == appointment_id)
    if not include_deleted:
        query = query.filter(models.Appointment.deleted_at.is_(None))
    if for_update:
        query = query.with_for_update()
    appointment = query.first()
    if appointment is None:
        raise NotFound("Appointment", appointment_id)
    return appointment


def get_live_appointments_for_day(db: Session, doctor_id: str, day: date) -> List[models.Appointment]:
    """Appointments that still occupy their slot on the doctor's day."""
    return (
        db.query(models.Appointment)
        .filter(
            models.Appointment.doctor_id == doctor_id,
            models.Appointment.appointment_date == day,
            models.Appointment.deleted_at.is_(None),
            models.Appointment.status.notin_(models.SLOT_RELEASING_STATUSES),
        )
        .order_by(models.Appointment.start_minute)
        .all()
    )


APPOINTMENT_SORT_FIELDS = {
    "appointmentDate": (models.Appointment.appointment_date, models.Appointment.start_minute),
    "createdAt": (models.Appointment.created_at,),
    "status": (models.Appointment.status,),
    "priority": (models.Appointment.priority,),
}


def list_appointments(
    db: Session,
    status: Optional[models.AppointmentStatus] = None,
    doctor_id: Optional[str] = None,
    patient_id: Optional[str] = None,
    on_date: Optional[date] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    priority: Optional[models.AppointmentPriority] = None,
    appointment_type: Optional[models.AppointmentType] = None,
    page: int = 1,
    limit: int = 10,
    sort_by: str = "appointmentDate",
    sort_order: str = "asc",
) -> Tuple[List[models.Appointment], int]:
    try:
        query = db.query(models.Appointment).filter(models.Appointment.deleted_at.is_(None))
        if status:
            query = query.filter(models.Appointment.status == status)
        if doctor_id:
            query = query.filter(models.Appointment.doctor_id == doctor_id)
        if patient_id:
            query = query.filter(models.Appointment.patient_id == patient_id)
        if on_date:
            query = query.filter(models.Appointment.appointment_date == on_date)
        if date_from:
            query = query.filter(models.Appointment.appointment_date >= date_from)
        if date_to:
            query = query.filter(models.Appointment.appointment_date <= date_to)
        if priority:
            query = query.filter(models.Appointment.priority == priority)
        if appointment_type:
            query = query.filter(models.Appointment.appointment_type == appointment_type)

        total = query.count()
        columns = APPOINTMENT_SORT_FIELDS.get(sort_by, APPOINTMENT_SORT_FIELDS["appointmentDate"])
        ordering = [c.desc() if sort_order == "desc" else c.asc() for c in columns]
        items = (
            query.options(joinedload(models.Appointment.patient), joinedload(models.Appointment.doctor))
            .order_by(*ordering)
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return items, total
    except SQLAlchemyError as e:
        logger.error(f"Error listing appointments: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")


def soft_delete(db: Session, obj, deleted_by: Optional[str]) -> None:
    obj.deleted_at = utcnow()
    obj.deleted_by = deleted_by


# ==================== CONSULTATIONS ====================

def get_consultation(db: Session, consultation_id: str, for_update: bool = False) -> models.Consultation:
    query = (
        db.query(models.Consultation)
        .filter(models.Consultation.id == consultation_id, models.Consultation.deleted_at.is_(None))
        .options(selectinload(models.Consultation.participants))
    )
    if for_update:
        query = query.with_for_update(of=models.Consultation)
    consultation = query.first()
    if consultation is None:
        raise NotFound("Consultation", consultation_id)
    return consultation


def get_prescription(db: Session, prescription_id: Optional[str]) -> Optional[models.Prescription]:
    if not prescription_id:
        return None
    return db.get(models.Prescription, prescription_id)


def get_medical_record(db: Session, record_id: Optional[str]) -> Optional[models.MedicalRecord]:
    if not record_id:
        return None
    return db.get(models.MedicalRecord, record_id)


def get_lab_results_for_consultation(db: Session, consultation_id: str) -> List[models.LabResult]:
    return (
        db.query(models.LabResult)
        .filter(models.LabResult.consultation_id == consultation_id, models.LabResult.deleted_at.is_(None))
        .order_by(models.LabResult.ordered_at)
        .all()
    )


# ==================== PAYMENTS ====================

def get_payment(db: Session, payment_id: str, for_update: bool = False) -> models.Payment:
    query = (
        db.query(models.Payment)
        .filter(models.Payment.id == payment_id)
        .options(selectinload(models.Payment.refunds))
    )
    if for_update:
        query = query.with_for_update(of=models.Payment)
    payment = query.first()
    if payment is None:
        raise NotFound("Payment", payment_id)
    return payment


# ==================== AUDIT LOGS ====================

def get_audit_logs(
    db: Session,
    skip: int = 0,
    limit: int = 100,
    resource: Optional[str] = None,
    resource_id: Optional[str] = None,
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    newest_first: bool = False,
) -> List[models.AuditLog]:
    try:
        query = db.query(models.AuditLog)
        if resource:
            query = query.filter(models.AuditLog.resource == resource)
        if resource_id:
            query = query.filter(models.AuditLog.resource_id == resource_id)
        if user_id:
            query = query.filter(models.AuditLog.user_id == user_id)
        if action:
            query = query.filter(models.AuditLog.action == action)
        if start:
            query = query.filter(models.AuditLog.timestamp >= start)
        if end:
            query = query.filter(models.AuditLog.timestamp < end)
        order = models.AuditLog.timestamp.desc() if newest_first else models.AuditLog.timestamp.asc()
        return query.order_by(order).offset(skip).limit(limit).all()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching audit logs: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")


# ==================== HEALTH CHECK FUNCTIONS ====================

def run_consistency_checks(db: Session, flag: bool = False) -> Dict[str, Any]:
    """Scan for invariant violations; with ``flag`` mark offenders for manual review."""
    report = {
        "checked_at": utcnow(),
        "overlapping_appointments": [],
        "consultation_mirror_mismatches": [],
        "payment_total_mismatches": [],
        "flagged_for_review": 0,
    }
    flagged = []

    # Check 1: two live appointments of one doctor overlapping on the same day
    a = aliased(models.Appointment)
    b = aliased(models.Appointment)
    live = lambda t: and_(t.deleted_at.is_(None), t.status.notin_(models.SLOT_RELEASING_STATUSES))
    pairs = db.query(a, b).filter(
        a.doctor_id == b.doctor_id,
        a.appointment_date == b.appointment_date,
        a.id < b.id,
        a.start_minute < b.end_minute,
        b.start_minute < a.end_minute,
        live(a),
        live(b),
    ).all()
    for first, second in pairs:
        report["overlapping_appointments"].append({
            "resource": "appointment",
            "resource_id": first.id,
            "related_ids": [second.id],
            "issue": f"Overlaps {second.appointment_number} for doctor {first.doctor_id} on {first.appointment_date}",
        })
        issue = report["overlapping_appointments"][-1]["issue"]
        flagged.extend([(first, issue), (second, issue)])

    # Check 2: bound consultations whose appointment does not mirror their state
    expected = {
        models.ConsultationStatus.active: (models.AppointmentStatus.in_progress,),
        models.ConsultationStatus.completed: (models.AppointmentStatus.completed,),
        models.ConsultationStatus.ended: (models.AppointmentStatus.completed,),
        models.ConsultationStatus.cancelled: (models.AppointmentStatus.cancelled, models.AppointmentStatus.completed),
    }
    bound = db.query(models.Consultation, models.Appointment).join(
        models.Appointment, models.Appointment.id == models.Consultation.appointment_id
    ).filter(models.Consultation.status.in_(list(expected.keys()))).all()
    for consultation, appointment in bound:
        if appointment.status not in expected[consultation.status]:
            report["consultation_mirror_mismatches"].append({
                "resource": "consultation",
                "resource_id": consultation.id,
                "related_ids": [appointment.id],
                "issue": f"Consultation is '{consultation.status.value}' but appointment is '{appointment.status.value}'",
            })
            flagged.append((consultation, report["consultation_mirror_mismatches"][-1]["issue"]))

    # Check 3: payment arithmetic and refund ceilings
    for payment in db.query(models.Payment).options(selectinload(models.Payment.refunds)).all():
        computed = Decimal(payment.amount) + Decimal(payment.tax_amount) - Decimal(payment.discount_amount)
        problems = []
        if Decimal(payment.total_amount) != computed:
            problems.append(f"totalAmount {payment.total_amount} != amount + tax - discount ({computed})")
        if payment.refunded_total > Decimal(payment.total_amount):
            problems.append(f"refunds {payment.refunded_total} exceed totalAmount {payment.total_amount}")
        if payment.status == models.PaymentStatus.refunded and payment.refunded_total != Decimal(payment.total_amount):
            problems.append("status is refunded but refunds do not cover totalAmount")
        if problems:
            report["payment_total_mismatches"].append({
                "resource": "payment",
                "resource_id": payment.id,
                "related_ids": [payment.appointment_id] if payment.appointment_id else [],
                "issue": "; ".join(problems),
            })
            flagged.append((payment, report["payment_total_mismatches"][-1]["issue"]))

    if flag and flagged:
        offenders = {}
        for entity, issue in flagged:
            entity.needs_review = True
            offenders.setdefault(entity.id, (entity, []))[1].append(issue)
        db.commit()
        for entity_id, (entity, issues) in offenders.items():
            error = FatalInvariantViolation("; ".join(issues), {"issues": issues})
            compliance_logger.log_failure("INVARIANT_VIOLATION", type(entity).__name__.lower(), entity_id,
                                          AuditContext.system(check="consistency"), error)
        report["flagged_for_review"] = len(offenders)
        logger.error(f"Consistency check flagged {report['flagged_for_review']} records for review")
    return report
