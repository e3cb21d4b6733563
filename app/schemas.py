# app/schemas.py
from datetime import datetime, date
from decimal import Decimal
from typing import Annotated, List, Optional, Dict, Any, Union, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, EmailStr, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .core.clock import to_minutes
from .models import (
    UserRole, Gender, AppointmentType, AppointmentStatus, AppointmentPriority,
    AppointmentPaymentStatus, CancelledBy, ConsultationType, ConsultationStatus,
    ParticipantRole, PaymentStatus, PaymentMethod, PrescriptionStatus, LabStatus,
    AuditStatus,
)

HHMM_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


# --- Base Schemas ---
class BaseSchema(BaseModel):
    """camelCase on the wire, snake_case in Python; readable from ORM rows."""
    model_config = ConfigDict(
        from_attributes=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


def _check_timezone(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"Unknown timezone '{value}'")
    return value


# --- Doctor schedule ---
class ScheduleTemplateIn(BaseSchema):
    day_of_week: int = Field(..., ge=0, le=6, description="0 = Sunday")
    start_time: str = Field(..., pattern=HHMM_PATTERN)
    end_time: str = Field(..., pattern=HHMM_PATTERN)
    appointment_duration: int = Field(30, ge=15, le=120)
    max_patients: int = Field(1, ge=1)

    @model_validator(mode="after")
    def check_order(self):
        if to_minutes(self.start_time) >= to_minutes(self.end_time):
            raise ValueError("startTime must be before endTime")
        return self


class ScheduleTemplateResponse(ScheduleTemplateIn):
    id: str
    position: int


class ScheduleUpdate(BaseSchema):
    schedule: List[ScheduleTemplateIn]
    appointment_buffer_time: Optional[int] = Field(None, ge=0, le=60)
    timezone: Optional[str] = None

    @field_validator("timezone")
    @classmethod
    def valid_timezone(cls, v):
        return _check_timezone(v)

    @field_validator("schedule")
    @classmethod
    def unique_weekdays(cls, v):
        days = [t.day_of_week for t in v]
        if len(days) != len(set(days)):
            raise ValueError("Only one schedule template per dayOfWeek is allowed")
        return v


class OverrideSlotIn(BaseSchema):
    start_time: str = Field(..., pattern=HHMM_PATTERN)
    end_time: str = Field(..., pattern=HHMM_PATTERN)
    is_booked: bool = False
    appointment_id: Optional[str] = None

    @model_validator(mode="after")
    def check_order(self):
        if to_minutes(self.start_time) >= to_minutes(self.end_time):
            raise ValueError("startTime must be before endTime")
        return self


class OverrideUpdate(BaseSchema):
    slots: List[OverrideSlotIn] = Field(default_factory=list)

    @field_validator("slots")
    @classmethod
    def no_overlap(cls, v):
        ordered = sorted(v, key=lambda s: to_minutes(s.start_time))
        for prev, cur in zip(ordered, ordered[1:]):
            if to_minutes(cur.start_time) < to_minutes(prev.end_time):
                raise ValueError(f"Override slots {prev.start_time}-{prev.end_time} and {cur.start_time}-{cur.end_time} overlap")
        return v


class OverrideSlotResponse(BaseSchema):
    id: str
    date: date
    start_time: str
    end_time: str
    is_booked: bool
    appointment_id: Optional[str] = None


class DoctorStatusUpdate(BaseSchema):
    is_available: bool
    unavailable_until: Optional[datetime] = None


class DoctorProfileResponse(BaseSchema):
    id: str
    user_id: str
    consultation_fee: float
    follow_up_fee: Optional[float] = None
    is_available: bool
    unavailable_until: Optional[datetime] = None
    appointment_buffer_time: int
    timezone: str
    schedule: List[ScheduleTemplateResponse] = []


# --- Users (one variant per role) ---
class UserBase(BaseSchema):
    first_name: str = Field(..., min_length=1, max_length=50)
    last_name: str = Field(..., min_length=1, max_length=50)
    email: EmailStr
    phone_number: Optional[str] = Field(None, max_length=20)
    password: Optional[str] = Field(None, min_length=8)

    @field_validator("email")
    @classmethod
    def lower_email(cls, v):
        return v.lower()


class PatientCreate(UserBase):
    role: Literal["patient"]
    date_of_birth: date
    gender: Gender
    blood_type: Optional[str] = Field(None, max_length=5)
    allergies: List[str] = Field(default_factory=list)

    @field_validator("date_of_birth")
    @classmethod
    def not_in_future(cls, v):
        if v > date.today():
            raise ValueError("dateOfBirth cannot be in the future")
        return v


class DoctorCreate(UserBase):
    role: Literal["doctor"]
    specialization: str = Field(..., min_length=1, max_length=100)
    medical_license: str = Field(..., min_length=1, max_length=100)
    qualification: str = Field(..., min_length=1, max_length=255)
    department: str = Field(..., min_length=1, max_length=100)
    consultation_fee: Decimal = Field(..., ge=0)
    follow_up_fee: Optional[Decimal] = Field(None, ge=0)
    appointment_buffer_time: int = Field(0, ge=0, le=60)
    timezone: Optional[str] = None
    schedule: List[ScheduleTemplateIn] = Field(default_factory=list)

    @field_validator("timezone")
    @classmethod
    def valid_timezone(cls, v):
        return _check_timezone(v)


class NurseCreate(UserBase):
    role: Literal["nurse"]
    department: Optional[str] = Field(None, max_length=100)


class StaffCreate(UserBase):
    role: Literal["staff"]
    department: Optional[str] = Field(None, max_length=100)


class AdminCreate(UserBase):
    role: Literal["admin"]


UserCreate = Annotated[
    Union[PatientCreate, DoctorCreate, NurseCreate, StaffCreate, AdminCreate],
    Field(discriminator="role"),
]


class UserResponse(BaseSchema):
    id: str
    first_name: str
    last_name: str
    full_name: str
    email: str
    phone_number: Optional[str] = None
    role: UserRole
    is_active: bool
    is_email_verified: bool
    date_of_birth: Optional[date] = None
    gender: Optional[Gender] = None
    age: Optional[int] = None
    medical_record_number: Optional[str] = None
    specialization: Optional[str] = None
    medical_license: Optional[str] = None
    qualification: Optional[str] = None
    department: Optional[str] = None
    consultation_fee: Optional[float] = None
    created_at: datetime


class UserBrief(BaseSchema):
    id: str
    full_name: str
    email: str
    role: UserRole


# --- Availability ---
class AvailabilitySlot(BaseSchema):
    start: str
    end: str
    available: bool
    appointment_id: Optional[str] = None


class AvailabilityResponse(BaseSchema):
    doctor_id: str
    date: date
    timezone: str
    source: str
    slots: List[AvailabilitySlot]
    booked_appointment_ids: List[str]


# --- Appointments ---
class AppointmentCreate(BaseSchema):
    patient_id: Optional[str] = None
    doctor_id: str
    appointment_date: date
    appointment_time: str = Field(..., pattern=HHMM_PATTERN)
    duration: Optional[int] = Field(None, ge=15, le=120)
    appointment_type: AppointmentType = AppointmentType.in_person
    priority: AppointmentPriority = AppointmentPriority.routine
    consultation_fee: Optional[Decimal] = Field(None, ge=0)
    chief_complaint: Optional[str] = Field(None, max_length=500)
    symptoms: List[str] = Field(default_factory=list)
    patient_notes: Optional[str] = Field(None, max_length=1000)
    is_follow_up: bool = False
    operation_id: Optional[str] = Field(None, max_length=128)


class AppointmentUpdate(BaseSchema):
    chief_complaint: Optional[str] = Field(None, max_length=500)
    symptoms: Optional[List[str]] = None
    patient_notes: Optional[str] = Field(None, max_length=1000)
    doctor_notes: Optional[str] = Field(None, max_length=2000)
    instructions: Optional[str] = Field(None, max_length=2000)
    priority: Optional[AppointmentPriority] = None
    follow_up_date: Optional[date] = None


class AppointmentStatusUpdate(BaseSchema):
    status: AppointmentStatus
    reason: Optional[str] = Field(None, max_length=500)
    notes: Optional[str] = Field(None, max_length=2000)
    cancelled_by: Optional[CancelledBy] = None
    new_date: Optional[date] = None
    new_time: Optional[str] = Field(None, pattern=HHMM_PATTERN)
    new_duration: Optional[int] = Field(None, ge=15, le=120)
    operation_id: Optional[str] = Field(None, max_length=128)
    expected_revision: Optional[int] = None


class AppointmentResponse(BaseSchema):
    id: str
    appointment_number: str
    patient_id: str
    doctor_id: str
    appointment_date: date
    appointment_time: str
    duration: int
    starts_at: datetime
    appointment_type: AppointmentType
    status: AppointmentStatus
    priority: AppointmentPriority
    room_id: Optional[str] = None
    consultation_fee: float
    payment_status: AppointmentPaymentStatus
    payment_id: Optional[str] = None
    chief_complaint: Optional[str] = None
    symptoms: Optional[List[str]] = None
    patient_notes: Optional[str] = None
    doctor_notes: Optional[str] = None
    instructions: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[CancelledBy] = None
    cancellation_date: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    check_in_time: Optional[datetime] = None
    consultation_start_time: Optional[datetime] = None
    consultation_end_time: Optional[datetime] = None
    actual_duration: Optional[int] = None
    wait_time: Optional[int] = None
    is_follow_up: bool
    follow_up_date: Optional[date] = None
    original_appointment_id: Optional[str] = None
    rescheduled_to_id: Optional[str] = None
    reminder_24h_sent: bool
    reminder_2h_sent: bool
    reminder_30m_sent: bool
    is_upcoming: bool
    is_past: bool
    revision: int
    created_at: datetime
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None


# --- Consultations ---
class ConsultationInitiate(BaseSchema):
    patient_id: str
    doctor_id: str
    consultation_type: ConsultationType = ConsultationType.video
    duration: int = Field(30, ge=5, le=180)
    appointment_id: Optional[str] = None
    priority: AppointmentPriority = AppointmentPriority.routine
    is_emergency: bool = False
    chief_complaint: Optional[str] = Field(None, max_length=500)
    symptoms: List[str] = Field(default_factory=list)


class ConsultationStatusUpdate(BaseSchema):
    status: ConsultationStatus
    reason: Optional[str] = Field(None, max_length=500)
    create_medical_record: bool = True


class ConsultationNotes(BaseSchema):
    chief_complaint: Optional[str] = Field(None, max_length=500)
    symptoms: Optional[List[str]] = None
    vital_signs: Optional[Dict[str, Any]] = None
    diagnosis: Optional[str] = Field(None, max_length=1000)
    assessment: Optional[str] = Field(None, max_length=2000)
    plan: Optional[str] = Field(None, max_length=2000)
    clinical_notes: Optional[str] = Field(None, max_length=5000)
    recommendations: Optional[List[str]] = None
    follow_up_required: Optional[bool] = None
    follow_up_date: Optional[date] = None


class MedicationItem(BaseSchema):
    name: str = Field(..., min_length=1, max_length=200)
    dosage: str = Field(..., min_length=1, max_length=100)
    frequency: str = Field(..., min_length=1, max_length=100)
    duration: str = Field(..., min_length=1, max_length=100)
    instructions: Optional[str] = Field(None, max_length=500)
    quantity: Optional[int] = Field(None, ge=1)


class PrescriptionCreate(BaseSchema):
    medications: List[MedicationItem] = Field(..., min_length=1)
    diagnosis: Optional[str] = Field(None, max_length=1000)
    instructions: Optional[str] = Field(None, max_length=2000)
    notes: Optional[str] = Field(None, max_length=2000)
    allow_refills: bool = False
    max_refills: int = Field(0, ge=0, le=12)
    attachment_url: Optional[str] = Field(None, max_length=500)
    attachment_checksum: Optional[str] = Field(None, max_length=128)


class PrescriptionResponse(BaseSchema):
    id: str
    prescription_number: str
    patient_id: str
    doctor_id: str
    consultation_id: Optional[str] = None
    appointment_id: Optional[str] = None
    medications: List[Dict[str, Any]]
    diagnosis: Optional[str] = None
    instructions: Optional[str] = None
    allow_refills: bool
    max_refills: int
    refills_remaining: int
    status: PrescriptionStatus
    prescribed_date: datetime
    attachment_url: Optional[str] = None
    attachment_checksum: Optional[str] = None


class LabOrderCreate(BaseSchema):
    test_name: str = Field(..., min_length=1, max_length=200)
    test_category: Optional[str] = Field(None, max_length=100)
    priority: AppointmentPriority = AppointmentPriority.routine
    instructions: Optional[str] = Field(None, max_length=1000)


class LabResultResponse(BaseSchema):
    id: str
    lab_number: str
    patient_id: str
    doctor_id: str
    consultation_id: Optional[str] = None
    test_name: str
    test_category: Optional[str] = None
    priority: AppointmentPriority
    status: LabStatus
    ordered_at: datetime
    report_url: Optional[str] = None


class MedicalRecordResponse(BaseSchema):
    id: str
    record_number: str
    patient_id: str
    doctor_id: str
    consultation_id: Optional[str] = None
    appointment_id: Optional[str] = None
    record_type: str
    diagnosis: Optional[str] = None
    summary: Optional[Dict[str, Any]] = None
    vital_signs: Optional[Dict[str, Any]] = None
    recorded_at: datetime


class ParticipantResponse(BaseSchema):
    user_id: str
    role: ParticipantRole
    join_time: datetime


class ConsultationResponse(BaseSchema):
    id: str
    consultation_number: str
    room_id: str
    patient_id: str
    doctor_id: str
    appointment_id: Optional[str] = None
    consultation_type: ConsultationType
    status: ConsultationStatus
    priority: AppointmentPriority
    is_emergency: bool
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: int
    actual_duration: Optional[int] = None
    chief_complaint: Optional[str] = None
    symptoms: Optional[List[str]] = None
    vital_signs: Optional[Dict[str, Any]] = None
    diagnosis: Optional[str] = None
    assessment: Optional[str] = None
    plan: Optional[str] = None
    clinical_notes: Optional[str] = None
    recommendations: Optional[List[str]] = None
    follow_up_required: bool
    follow_up_date: Optional[date] = None
    prescription_id: Optional[str] = None
    medical_record_id: Optional[str] = None
    cancellation_reason: Optional[str] = None
    participants: List[ParticipantResponse] = []
    revision: int
    created_at: datetime


# --- Payments ---
class PaymentComplete(BaseSchema):
    transaction_id: str = Field(..., min_length=1, max_length=120)
    payment_method: PaymentMethod = PaymentMethod.card


class PaymentFail(BaseSchema):
    reason: str = Field(..., min_length=1, max_length=500)


class RefundRequest(BaseSchema):
    amount: Optional[Decimal] = Field(None, gt=0)
    reason: str = Field(..., min_length=1, max_length=500)
    refund_method: Optional[str] = Field(None, max_length=30)


class RefundResponse(BaseSchema):
    id: str
    amount: float
    reason: Optional[str] = None
    refund_method: Optional[str] = None
    created_at: datetime


class PaymentResponse(BaseSchema):
    id: str
    payer_id: str
    patient_id: str
    appointment_id: Optional[str] = None
    amount: float
    tax_amount: float
    discount_amount: float
    total_amount: float
    currency: str
    status: PaymentStatus
    transaction_id: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    refunded_at: Optional[datetime] = None
    refunded_total: float
    refundable_amount: float
    refunds: List[RefundResponse] = []
    invoice_number: str
    invoice_date: datetime
    due_date: datetime
    line_items: Optional[List[Dict[str, Any]]] = None
    revision: int


# --- Audit ---
class AuditLogResponse(BaseSchema):
    id: str
    action: str
    resource: str
    resource_id: Optional[str] = None
    user_id: Optional[str] = None
    user_role: Optional[str] = None
    status: AuditStatus
    details: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    request_id: Optional[str] = None
    timestamp: datetime


# --- Health / consistency ---
class ConsistencyIssue(BaseSchema):
    resource: str
    resource_id: str
    issue: str
    related_ids: List[str] = []


class ConsistencyReport(BaseSchema):
    checked_at: datetime
    overlapping_appointments: List[ConsistencyIssue] = []
    consultation_mirror_mismatches: List[ConsistencyIssue] = []
    payment_total_mismatches: List[ConsistencyIssue] = []
    flagged_for_review: int = 0
