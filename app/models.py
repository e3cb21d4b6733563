# app/models.py
import enum
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Text, Date,
    Enum as SQLAlchemyEnum, Boolean, JSON, Numeric, Index,
    UniqueConstraint, TypeDecorator
)
from sqlalchemy.orm import relationship

from .core.clock import new_id, utcnow, local_to_utc, day_of_week
from .database import Base


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend (SQLite drops tzinfo)."""
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            value = value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _enum(enum_cls, name):
    # persist enum values ("checked-in"), not member names
    return SQLAlchemyEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


def _id_column():
    return Column(String(32), primary_key=True, default=new_id)


def _fk(target, nullable=True, index=True):
    return Column(String(32), ForeignKey(target), nullable=nullable, index=index)


# --- Enum classes ---

class UserRole(str, enum.Enum):
    patient = "patient"
    doctor = "doctor"
    admin = "admin"
    nurse = "nurse"
    staff = "staff"


class Gender(str, enum.Enum):
    male = "male"
    female = "female"
    other = "other"


class AppointmentType(str, enum.Enum):
    in_person = "in-person"
    video = "video"
    phone = "phone"
    chat = "chat"


class AppointmentStatus(str, enum.Enum):
    scheduled = "scheduled"
    confirmed = "confirmed"
    checked_in = "checked-in"
    in_progress = "in-progress"
    completed = "completed"
    cancelled = "cancelled"
    no_show = "no-show"
    rescheduled = "rescheduled"


class AppointmentPriority(str, enum.Enum):
    routine = "routine"
    urgent = "urgent"
    emergency = "emergency"


class AppointmentPaymentStatus(str, enum.Enum):
    pending = "pending"
    paid = "paid"
    failed = "failed"
    refunded = "refunded"
    free = "free"


class CancelledBy(str, enum.Enum):
    patient = "patient"
    doctor = "doctor"
    system = "system"
    admin = "admin"


class ConsultationType(str, enum.Enum):
    video = "video"
    audio = "audio"
    chat = "chat"
    in_person = "in_person"


class ConsultationStatus(str, enum.Enum):
    scheduled = "scheduled"
    active = "active"
    waiting = "waiting"
    completed = "completed"
    cancelled = "cancelled"
    ended = "ended"
    no_show = "no_show"
    rescheduled = "rescheduled"


class ParticipantRole(str, enum.Enum):
    patient = "patient"
    doctor = "doctor"


class PaymentStatus(str, enum.Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    refunded = "refunded"
    partially_refunded = "partially-refunded"


class PaymentMethod(str, enum.Enum):
    card = "card"
    upi = "upi"
    netbanking = "netbanking"
    wallet = "wallet"
    cash = "cash"
    insurance = "insurance"


class PrescriptionStatus(str, enum.Enum):
    active = "active"
    completed = "completed"
    cancelled = "cancelled"
    expired = "expired"


class LabStatus(str, enum.Enum):
    ordered = "ordered"
    collected = "collected"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"


class AuditStatus(str, enum.Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class OutboxStatus(str, enum.Enum):
    pending = "pending"
    sent = "sent"
    failed = "failed"
    cancelled = "cancelled"


class CommunicationType(str, enum.Enum):
    email = "email"
    sms = "sms"


# Appointment statuses that no longer hold their slot
SLOT_RELEASING_STATUSES = (
    AppointmentStatus.cancelled,
    AppointmentStatus.no_show,
    AppointmentStatus.rescheduled,
)


# --- Users and profiles ---

class User(Base):
    """Account for every role; role-specific columns are nullable."""
    __tablename__ = "users"
    __table_args__ = (
        Index('idx_users_email', 'email'),
        Index('idx_users_role_active', 'role', 'is_active'),
    )

    id = _id_column()
    first_name = Column(String(50), nullable=False)
    last_name = Column(String(50), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    phone_number = Column(String(20), nullable=True)
    password_hash = Column(String(255), nullable=True)
    role = Column(_enum(UserRole, 'user_role'), nullable=False, default=UserRole.patient)

    is_active = Column(Boolean, default=True, nullable=False)
    is_email_verified = Column(Boolean, default=False, nullable=False)
    is_phone_verified = Column(Boolean, default=False, nullable=False)
    failed_login_attempts = Column(Integer, default=0, nullable=False)
    account_locked_until = Column(UTCDateTime, nullable=True)
    last_login_at = Column(UTCDateTime, nullable=True)

    # patient
    date_of_birth = Column(Date, nullable=True)
    gender = Column(_enum(Gender, 'gender'), nullable=True)

    # doctor
    specialization = Column(String(100), nullable=True)
    medical_license = Column(String(100), unique=True, nullable=True)
    qualification = Column(String(255), nullable=True)
    department = Column(String(100), nullable=True)
    consultation_fee = Column(Numeric(10, 2), nullable=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)
    deleted_at = Column(UTCDateTime, nullable=True)
    deleted_by = Column(String(32), nullable=True)

    doctor_profile = relationship("DoctorProfile", back_populates="user", uselist=False)
    patient_profile = relationship("PatientProfile", back_populates="user", uselist=False)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def age(self):
        if not self.date_of_birth:
            return None
        today = utcnow().date()
        dob = self.date_of_birth
        return today.year - dob.year - ((today.month, today.day) < (dob.month, dob.day))

    @property
    def medical_record_number(self):
        return self.patient_profile.medical_record_number if self.patient_profile else None

    def is_locked(self, now: datetime = None) -> bool:
        now = now or utcnow()
        return bool(self.account_locked_until and self.account_locked_until > now)


class DoctorProfile(Base):
    __tablename__ = "doctor_profiles"

    id = _id_column()
    user_id = Column(String(32), ForeignKey("users.id"), unique=True, nullable=False)
    consultation_fee = Column(Numeric(10, 2), nullable=False, default=0)
    follow_up_fee = Column(Numeric(10, 2), nullable=True)
    is_available = Column(Boolean, default=True, nullable=False)
    unavailable_until = Column(UTCDateTime, nullable=True)
    appointment_buffer_time = Column(Integer, default=0, nullable=False)
    timezone = Column(String(64), nullable=False, default="UTC")
    bio = Column(Text, nullable=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="doctor_profile")
    schedule = relationship(
        "ScheduleTemplate",
        order_by="ScheduleTemplate.position",
        cascade="all, delete-orphan",
        back_populates="profile",
    )
    overrides = relationship(
        "AvailabilityOverride",
        order_by="AvailabilityOverride.start_time",
        cascade="all, delete-orphan",
        back_populates="profile",
    )

    def template_for(self, day: date):
        """Earliest-defined weekly template for the day, or None."""
        weekday = day_of_week(day)
        for template in self.schedule:
            if template.day_of_week == weekday:
                return template
        return None

    def is_unavailable_on(self, day: date) -> bool:
        if not self.is_available:
            return True
        if self.unavailable_until is None:
            return False
        return self.unavailable_until > local_to_utc(day, 0, self.timezone)


class ScheduleTemplate(Base):
    """Weekly recurring availability; day_of_week uses Sunday = 0."""
    __tablename__ = "doctor_schedule_templates"
    __table_args__ = (
        Index('idx_schedule_profile_day', 'doctor_profile_id', 'day_of_week'),
    )

    id = _id_column()
    doctor_profile_id = Column(String(32), ForeignKey("doctor_profiles.id"), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    day_of_week = Column(Integer, nullable=False)
    start_time = Column(String(5), nullable=False)
    end_time = Column(String(5), nullable=False)
    appointment_duration = Column(Integer, nullable=False, default=30)
    max_patients = Column(Integer, nullable=False, default=1)

    profile = relationship("DoctorProfile", back_populates="schedule")


class AvailabilityOverride(Base):
    """Per-date slot list; when present for a date it replaces the template."""
    __tablename__ = "doctor_availability_overrides"
    __table_args__ = (
        Index('idx_override_profile_date', 'doctor_profile_id', 'date'),
    )

    id = _id_column()
    doctor_profile_id = Column(String(32), ForeignKey("doctor_profiles.id"), nullable=False)
    date = Column(Date, nullable=False)
    start_time = Column(String(5), nullable=False)
    end_time = Column(String(5), nullable=False)
    is_booked = Column(Boolean, default=False, nullable=False)
    appointment_id = Column(String(32), nullable=True)

    profile = relationship("DoctorProfile", back_populates="overrides")


class PatientProfile(Base):
    __tablename__ = "patient_profiles"

    id = _id_column()
    user_id = Column(String(32), ForeignKey("users.id"), unique=True, nullable=False)
    medical_record_number = Column(String(20), unique=True, nullable=False)
    blood_type = Column(String(5), nullable=True)
    allergies = Column(JSON, nullable=True)
    emergency_contact = Column(JSON, nullable=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="patient_profile")


# --- Scheduling ---

class SlotLock(Base):
    """One row per doctor-day, locked FOR UPDATE while a slot is allocated."""
    __tablename__ = "slot_locks"

    doctor_id = Column(String(32), primary_key=True)
    date = Column(Date, primary_key=True)
    locked_at = Column(UTCDateTime, default=utcnow)


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        Index('idx_appointments_doctor_date', 'doctor_id', 'appointment_date'),
        Index('idx_appointments_patient_date', 'patient_id', 'appointment_date'),
        Index('idx_appointments_status_start', 'status', 'starts_at'),
    )

    id = _id_column()
    appointment_number = Column(String(20), unique=True, nullable=False)
    patient_id = _fk("users.id", nullable=False)
    doctor_id = _fk("users.id", nullable=False)

    # Timing: date + HH:MM in the doctor's local time, plus the derived UTC instant
    appointment_date = Column(Date, nullable=False)
    appointment_time = Column(String(5), nullable=False)
    duration = Column(Integer, nullable=False, default=30)
    start_minute = Column(Integer, nullable=False)
    end_minute = Column(Integer, nullable=False)
    starts_at = Column(UTCDateTime, nullable=False)
    # Unique while the appointment holds its slot; cleared when the slot is released
    slot_key = Column(String(80), unique=True, nullable=True)

    appointment_type = Column(_enum(AppointmentType, 'appointment_type'), nullable=False, default=AppointmentType.in_person)
    status = Column(_enum(AppointmentStatus, 'appointment_status'), nullable=False, default=AppointmentStatus.scheduled, index=True)
    priority = Column(_enum(AppointmentPriority, 'appointment_priority'), nullable=False, default=AppointmentPriority.routine)
    room_id = Column(String(120), nullable=True)

    consultation_fee = Column(Numeric(10, 2), nullable=False, default=0)
    payment_status = Column(_enum(AppointmentPaymentStatus, 'appointment_payment_status'), nullable=False, default=AppointmentPaymentStatus.pending)
    payment_id = Column(String(32), nullable=True, index=True)

    chief_complaint = Column(Text, nullable=True)
    symptoms = Column(JSON, nullable=True)
    patient_notes = Column(Text, nullable=True)
    doctor_notes = Column(Text, nullable=True)
    instructions = Column(Text, nullable=True)

    cancellation_reason = Column(Text, nullable=True)
    cancelled_by = Column(_enum(CancelledBy, 'cancelled_by'), nullable=True)
    cancellation_date = Column(UTCDateTime, nullable=True)

    confirmed_at = Column(UTCDateTime, nullable=True)
    check_in_time = Column(UTCDateTime, nullable=True)
    consultation_start_time = Column(UTCDateTime, nullable=True)
    consultation_end_time = Column(UTCDateTime, nullable=True)
    no_show_marked_at = Column(UTCDateTime, nullable=True)
    actual_duration = Column(Integer, nullable=True)
    wait_time = Column(Integer, nullable=True)

    is_follow_up = Column(Boolean, default=False, nullable=False)
    follow_up_date = Column(Date, nullable=True)
    original_appointment_id = Column(String(32), nullable=True, index=True)
    rescheduled_to_id = Column(String(32), nullable=True)
    reschedule_reason = Column(Text, nullable=True)

    reminder_24h_sent = Column(Boolean, default=False, nullable=False)
    reminder_2h_sent = Column(Boolean, default=False, nullable=False)
    reminder_30m_sent = Column(Boolean, default=False, nullable=False)

    needs_review = Column(Boolean, default=False, nullable=False)
    revision = Column(Integer, nullable=False, default=1)

    created_by = Column(String(32), nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)
    deleted_at = Column(UTCDateTime, nullable=True)
    deleted_by = Column(String(32), nullable=True)

    patient = relationship("User", foreign_keys=[patient_id])
    doctor = relationship("User", foreign_keys=[doctor_id])

    __mapper_args__ = {"version_id_col": revision}

    @property
    def ends_at(self) -> datetime:
        return self.starts_at + timedelta(minutes=self.duration)

    @property
    def holds_slot(self) -> bool:
        return self.deleted_at is None and self.status not in SLOT_RELEASING_STATUSES

    @property
    def is_upcoming(self) -> bool:
        return self.starts_at > utcnow() and self.status in (AppointmentStatus.scheduled, AppointmentStatus.confirmed)

    @property
    def is_past(self) -> bool:
        return self.ends_at <= utcnow()


# --- Consultations and clinical outputs ---

class Consultation(Base):
    __tablename__ = "consultations"
    __table_args__ = (
        Index('idx_consultations_patient_status', 'patient_id', 'status'),
        Index('idx_consultations_doctor_status', 'doctor_id', 'status'),
        Index('idx_consultations_appointment', 'appointment_id'),
    )

    id = _id_column()
    consultation_number = Column(String(20), unique=True, nullable=False)
    room_id = Column(String(120), nullable=False)
    patient_id = _fk("users.id", nullable=False, index=False)
    doctor_id = _fk("users.id", nullable=False, index=False)
    appointment_id = Column(String(32), ForeignKey("appointments.id"), nullable=True)

    consultation_type = Column(_enum(ConsultationType, 'consultation_type'), nullable=False, default=ConsultationType.video)
    status = Column(_enum(ConsultationStatus, 'consultation_status'), nullable=False, default=ConsultationStatus.scheduled)
    priority = Column(_enum(AppointmentPriority, 'consultation_priority'), nullable=False, default=AppointmentPriority.routine)
    is_emergency = Column(Boolean, default=False, nullable=False)

    start_time = Column(UTCDateTime, nullable=True)
    end_time = Column(UTCDateTime, nullable=True)
    duration = Column(Integer, nullable=False, default=30)
    actual_duration = Column(Integer, nullable=True)
    end_reason = Column(Text, nullable=True)

    chief_complaint = Column(Text, nullable=True)
    symptoms = Column(JSON, nullable=True)
    vital_signs = Column(JSON, nullable=True)
    diagnosis = Column(Text, nullable=True)
    assessment = Column(Text, nullable=True)
    plan = Column(Text, nullable=True)
    clinical_notes = Column(Text, nullable=True)
    recommendations = Column(JSON, nullable=True)
    follow_up_required = Column(Boolean, default=False, nullable=False)
    follow_up_date = Column(Date, nullable=True)

    prescription_id = Column(String(32), nullable=True)
    medical_record_id = Column(String(32), nullable=True)

    cancellation_reason = Column(Text, nullable=True)
    cancelled_at = Column(UTCDateTime, nullable=True)
    cancelled_by = Column(String(32), nullable=True)

    needs_review = Column(Boolean, default=False, nullable=False)
    revision = Column(Integer, nullable=False, default=1)

    created_by = Column(String(32), nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)
    deleted_at = Column(UTCDateTime, nullable=True)
    deleted_by = Column(String(32), nullable=True)

    participants = relationship(
        "ConsultationParticipant",
        order_by="ConsultationParticipant.join_time",
        cascade="all, delete-orphan",
        back_populates="consultation",
    )
    patient = relationship("User", foreign_keys=[patient_id])
    doctor = relationship("User", foreign_keys=[doctor_id])

    __mapper_args__ = {"version_id_col": revision}


class ConsultationParticipant(Base):
    """Join ledger; one row per user per consultation."""
    __tablename__ = "consultation_participants"
    __table_args__ = (
        UniqueConstraint('consultation_id', 'user_id', name='uq_consultation_participant'),
    )

    id = _id_column()
    consultation_id = Column(String(32), ForeignKey("consultations.id"), nullable=False)
    user_id = Column(String(32), ForeignKey("users.id"), nullable=False)
    role = Column(_enum(ParticipantRole, 'participant_role'), nullable=False)
    join_time = Column(UTCDateTime, nullable=False, default=utcnow)

    consultation = relationship("Consultation", back_populates="participants")


class Prescription(Base):
    __tablename__ = "prescriptions"
    __table_args__ = (
        Index('idx_prescriptions_patient', 'patient_id'),
        Index('idx_prescriptions_doctor', 'doctor_id'),
    )

    id = _id_column()
    prescription_number = Column(String(20), unique=True, nullable=False)
    patient_id = Column(String(32), ForeignKey("users.id"), nullable=False)
    doctor_id = Column(String(32), ForeignKey("users.id"), nullable=False)
    appointment_id = Column(String(32), nullable=True)
    consultation_id = Column(String(32), ForeignKey("consultations.id"), nullable=True)

    medications = Column(JSON, nullable=False)
    diagnosis = Column(Text, nullable=True)
    instructions = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    allow_refills = Column(Boolean, default=False, nullable=False)
    max_refills = Column(Integer, default=0, nullable=False)
    refills_remaining = Column(Integer, default=0, nullable=False)
    status = Column(_enum(PrescriptionStatus, 'prescription_status'), nullable=False, default=PrescriptionStatus.active)
    prescribed_date = Column(UTCDateTime, default=utcnow, nullable=False)

    # Location and checksum returned by the external storage service
    attachment_url = Column(String(500), nullable=True)
    attachment_checksum = Column(String(128), nullable=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)
    deleted_at = Column(UTCDateTime, nullable=True)
    deleted_by = Column(String(32), nullable=True)


class MedicalRecord(Base):
    __tablename__ = "medical_records"
    __table_args__ = (
        Index('idx_medical_records_patient', 'patient_id', 'recorded_at'),
    )

    id = _id_column()
    record_number = Column(String(20), unique=True, nullable=False)
    patient_id = Column(String(32), ForeignKey("users.id"), nullable=False)
    doctor_id = Column(String(32), ForeignKey("users.id"), nullable=False)
    consultation_id = Column(String(32), nullable=True)
    appointment_id = Column(String(32), nullable=True)
    record_type = Column(String(30), nullable=False, default="consultation")
    diagnosis = Column(Text, nullable=True)
    summary = Column(JSON, nullable=True)
    vital_signs = Column(JSON, nullable=True)
    recorded_at = Column(UTCDateTime, default=utcnow, nullable=False)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)
    deleted_at = Column(UTCDateTime, nullable=True)
    deleted_by = Column(String(32), nullable=True)


class LabResult(Base):
    __tablename__ = "lab_results"
    __table_args__ = (
        Index('idx_lab_results_patient', 'patient_id', 'ordered_at'),
        Index('idx_lab_results_consultation', 'consultation_id'),
    )

    id = _id_column()
    lab_number = Column(String(20), unique=True, nullable=False)
    patient_id = Column(String(32), ForeignKey("users.id"), nullable=False)
    doctor_id = Column(String(32), ForeignKey("users.id"), nullable=False)
    consultation_id = Column(String(32), nullable=True)
    test_name = Column(String(200), nullable=False)
    test_category = Column(String(100), nullable=True)
    priority = Column(_enum(AppointmentPriority, 'lab_priority'), nullable=False, default=AppointmentPriority.routine)
    status = Column(_enum(LabStatus, 'lab_status'), nullable=False, default=LabStatus.ordered)
    instructions = Column(Text, nullable=True)
    ordered_at = Column(UTCDateTime, default=utcnow, nullable=False)
    report_url = Column(String(500), nullable=True)
    report_checksum = Column(String(128), nullable=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)
    deleted_at = Column(UTCDateTime, nullable=True)
    deleted_by = Column(String(32), nullable=True)


# --- Payments ---

class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        Index('idx_payments_appointment', 'appointment_id'),
        Index('idx_payments_patient_status', 'patient_id', 'status'),
    )

    id = _id_column()
    payer_id = Column(String(32), ForeignKey("users.id"), nullable=False)
    patient_id = Column(String(32), ForeignKey("users.id"), nullable=False)
    appointment_id = Column(String(32), ForeignKey("appointments.id"), nullable=True)
    consultation_id = Column(String(32), nullable=True)

    amount = Column(Numeric(10, 2), nullable=False, default=0)
    tax_amount = Column(Numeric(10, 2), nullable=False, default=0)
    discount_amount = Column(Numeric(10, 2), nullable=False, default=0)
    total_amount = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="INR")

    status = Column(_enum(PaymentStatus, 'payment_status'), nullable=False, default=PaymentStatus.pending)
    transaction_id = Column(String(120), unique=True, nullable=True)
    payment_method = Column(_enum(PaymentMethod, 'payment_method'), nullable=True)

    processing_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)
    failed_at = Column(UTCDateTime, nullable=True)
    failure_reason = Column(Text, nullable=True)
    refunded_at = Column(UTCDateTime, nullable=True)

    invoice_number = Column(String(20), unique=True, nullable=False)
    invoice_date = Column(UTCDateTime, nullable=False, default=utcnow)
    due_date = Column(UTCDateTime, nullable=False)
    line_items = Column(JSON, nullable=True)

    needs_review = Column(Boolean, default=False, nullable=False)
    revision = Column(Integer, nullable=False, default=1)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)
    deleted_at = Column(UTCDateTime, nullable=True)
    deleted_by = Column(String(32), nullable=True)

    refunds = relationship(
        "PaymentRefund",
        order_by="PaymentRefund.created_at",
        cascade="all, delete-orphan",
        back_populates="payment",
    )

    __mapper_args__ = {"version_id_col": revision}

    @property
    def refunded_total(self) -> Decimal:
        return sum((Decimal(r.amount) for r in self.refunds), Decimal("0"))

    @property
    def refundable_amount(self) -> Decimal:
        return Decimal(self.total_amount) - self.refunded_total


class PaymentRefund(Base):
    __tablename__ = "payment_refunds"

    id = _id_column()
    payment_id = Column(String(32), ForeignKey("payments.id"), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    reason = Column(Text, nullable=True)
    refund_method = Column(String(30), nullable=True)
    refunded_by = Column(String(32), nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    payment = relationship("Payment", back_populates="refunds")


# --- Audit, outbox, idempotency ---

class AuditLog(Base):
    """Append-only audit trail"""
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index('idx_audit_user_date', 'user_id', 'timestamp'),
        Index('idx_audit_action_date', 'action', 'timestamp'),
        Index('idx_audit_resource', 'resource', 'resource_id', 'timestamp'),
    )

    id = _id_column()
    action = Column(String(64), nullable=False)
    resource = Column(String(50), nullable=False)
    resource_id = Column(String(32), nullable=True)
    user_id = Column(String(32), nullable=True)
    user_role = Column(String(20), nullable=True)
    status = Column(_enum(AuditStatus, 'audit_status'), nullable=False, default=AuditStatus.SUCCESS)
    details = Column(JSON, nullable=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    request_id = Column(String(64), nullable=True)
    timestamp = Column(UTCDateTime, nullable=False, default=utcnow, index=True)


class OutboxMessage(Base):
    """Durable queue of outbound notifications, written with the transition that caused them."""
    __tablename__ = "outbox_messages"
    __table_args__ = (
        Index('idx_outbox_status_next', 'status', 'next_attempt_at'),
        Index('idx_outbox_resource', 'resource', 'resource_id'),
    )

    id = _id_column()
    kind = Column(String(50), nullable=False)  # appointment_booked, reminder_24h, ...
    channel = Column(_enum(CommunicationType, 'communication_type'), nullable=False)
    recipient = Column(String(255), nullable=False)
    subject = Column(String(255), nullable=True)
    payload = Column(JSON, nullable=True)
    dedupe_key = Column(String(160), unique=True, nullable=True)

    status = Column(_enum(OutboxStatus, 'outbox_status'), nullable=False, default=OutboxStatus.pending)
    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=5, nullable=False)
    next_attempt_at = Column(UTCDateTime, nullable=False, default=utcnow)
    last_attempt_at = Column(UTCDateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    sent_at = Column(UTCDateTime, nullable=True)

    resource = Column(String(50), nullable=True)
    resource_id = Column(String(32), nullable=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)


class ProcessedOperation(Base):
    """Client-supplied operation ids already applied; makes retries no-ops."""
    __tablename__ = "processed_operations"

    operation_id = Column(String(128), primary_key=True)
    resource = Column(String(50), nullable=False)
    resource_id = Column(String(32), nullable=False)
    action = Column(String(50), nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
