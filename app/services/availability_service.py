# app/services/availability_service.py
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional

from sqlalchemy.orm import Session

from .. import models, crud
from ..core.clock import to_minutes, from_minutes

logger = logging.getLogger(__name__)


@dataclass
class CandidateSlot:
    start: int  # minute of day, doctor-local
    end: int
    available: bool = True
    appointment_id: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "start": from_minutes(self.start),
            "end": from_minutes(self.end),
            "available": self.available,
            "appointment_id": self.appointment_id,
        }


@dataclass
class DayAvailability:
    doctor_id: str
    date: date
    timezone: str
    source: str  # template | override | unavailable | none
    slots: List[CandidateSlot] = field(default_factory=list)
    booked_appointment_ids: List[str] = field(default_factory=list)
    window_end: Optional[int] = None

    def find(self, start_minute: int) -> Optional[CandidateSlot]:
        for slot in self.slots:
            if slot.start == start_minute:
                return slot
        return None

    def as_dict(self) -> dict:
        return {
            "doctor_id": self.doctor_id,
            "date": self.date,
            "timezone": self.timezone,
            "source": self.source,
            "slots": [s.as_dict() for s in self.slots],
            "booked_appointment_ids": list(self.booked_appointment_ids),
        }


def template_slots(template: models.ScheduleTemplate, buffer_minutes: int) -> List[CandidateSlot]:
    """Walk a weekly template from its start time, one slot per duration + buffer."""
    duration = template.appointment_duration
    start = to_minutes(template.start_time)
    end = to_minutes(template.end_time)
    step = duration + (buffer_minutes or 0)

    slots = []
    current = start
    while current + duration <= end:
        slots.append(CandidateSlot(start=current, end=current + duration))
        current += step
    return slots


def override_slots(overrides: List[models.AvailabilityOverride]) -> List[CandidateSlot]:
    slots = [
        CandidateSlot(
            start=to_minutes(o.start_time),
            end=to_minutes(o.end_time),
            available=not o.is_booked,
            appointment_id=o.appointment_id if o.is_booked else None,
        )
        for o in overrides
    ]
    return sorted(slots, key=lambda s: s.start)


def compute_availability(db: Session, doctor_id: str, day: date) -> DayAvailability:
    """Candidate slots for one doctor-day, in ascending start order.

    Raises DoctorNotFound when there is no doctor profile. An unavailable doctor
    yields an empty day rather than an error. Per-date overrides, when any exist,
    replace the weekly template for that date. Any live appointment overlapping a
    slot marks it unavailable.
    """
    profile = crud.get_doctor_profile(db, doctor_id)
    result = DayAvailability(doctor_id=doctor_id, date=day, timezone=profile.timezone, source="none")

    if profile.is_unavailable_on(day):
        result.source = "unavailable"
        return result

    overrides = crud.get_overrides(db, profile, day)
    if overrides:
        result.source = "override"
        result.slots = override_slots(overrides)
    else:
        template = profile.template_for(day)
        if template is None:
            return result
        result.source = "template"
        result.slots = template_slots(template, profile.appointment_buffer_time)
        result.window_end = to_minutes(template.end_time)

    live = crud.get_live_appointments_for_day(db, doctor_id, day)
    result.booked_appointment_ids = [a.id for a in live]
    for slot in result.slots:
        for appointment in live:
            if slot.start < appointment.end_minute and appointment.start_minute < slot.end:
                slot.available = False
                slot.appointment_id = appointment.id
                break

    logger.debug(
        f"Availability for doctor {doctor_id} on {day}: {len(result.slots)} slots from {result.source}"
    )
    return result
