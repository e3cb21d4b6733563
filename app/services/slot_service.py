# app/services/slot_service.py
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import List, Optional

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from .. import models
from ..core.clock import to_minutes, local_to_utc, utcnow
from ..exceptions import SlotTaken

logger = logging.getLogger(__name__)


@dataclass
class ReservedSlot:
    """A slot that no live appointment overlaps, held under the doctor-day lock."""
    doctor_id: str
    date: date
    start_minute: int
    end_minute: int
    starts_at: datetime
    slot_key: str


def slot_key(doctor_id: str, day: date, hhmm: str) -> str:
    return f"{doctor_id}:{day.isoformat()}:{hhmm}"


def lock_doctor_day(db: Session, doctor_id: str, day: date) -> models.SlotLock:
    """Take the per-(doctor, date) allocation lock for the rest of the transaction."""
    dialect = db.get_bind().dialect.name
    values = dict(doctor_id=doctor_id, date=day, locked_at=utcnow())
    if dialect == "postgresql":
        db.execute(postgresql.insert(models.SlotLock).values(**values).on_conflict_do_nothing())
    elif dialect == "sqlite":
        db.execute(sqlite.insert(models.SlotLock).values(**values).on_conflict_do_nothing())
    elif db.get(models.SlotLock, (doctor_id, day)) is None:
        db.add(models.SlotLock(**values))
        db.flush()

    return (
        db.query(models.SlotLock)
        .filter(models.SlotLock.doctor_id == doctor_id, models.SlotLock.date == day)
        .with_for_update()
        .one()
    )


def find_overlapping(
    db: Session,
    doctor_id: str,
    day: date,
    start_minute: int,
    end_minute: int,
    exclude_id: Optional[str] = None,
) -> List[models.Appointment]:
    """Live appointments of the doctor on ``day`` whose interval meets [start, end)."""
    query = db.query(models.Appointment).filter(
        models.Appointment.doctor_id == doctor_id,
        models.Appointment.appointment_date == day,
        models.Appointment.start_minute < end_minute,
        models.Appointment.end_minute > start_minute,
        models.Appointment.deleted_at.is_(None),
        models.Appointment.status.notin_(models.SLOT_RELEASING_STATUSES),
    )
    if exclude_id:
        query = query.filter(models.Appointment.id != exclude_id)
    return query.all()


def reserve(
    db: Session,
    doctor_id: str,
    day: date,
    hhmm: str,
    duration: int,
    tz_name: str,
    exclude_id: Optional[str] = None,
) -> ReservedSlot:
    """Serialize on the doctor-day and confirm no live appointment overlaps.

    Raises SlotTaken without writing anything. The caller inserts the
    appointment in the same transaction; the unique ``slot_key`` backs this up
    when two writers race past the lock.
    """
    start = to_minutes(hhmm)
    end = start + duration

    lock_doctor_day(db, doctor_id, day)
    clashes = find_overlapping(db, doctor_id, day, start, end, exclude_id=exclude_id)
    if clashes:
        logger.info(
            f"Slot {hhmm} ({duration}m) for doctor {doctor_id} on {day} clashes with "
            f"{[a.appointment_number for a in clashes]}"
        )
        raise SlotTaken(details={"conflictingAppointmentIds": [a.id for a in clashes]})

    return ReservedSlot(
        doctor_id=doctor_id,
        date=day,
        start_minute=start,
        end_minute=end,
        starts_at=local_to_utc(day, start, tz_name),
        slot_key=slot_key(doctor_id, day, hhmm),
    )
