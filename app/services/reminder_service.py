"""Appointment reminder sweep.

Reminders fire 24 hours, 2 hours and 30 minutes before an appointment that is
still scheduled or confirmed. The sweep only enqueues outbox messages; the
``reminder_*_sent`` flag is set when the outbox reports the message delivered.
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session, joinedload

from .. import models
from ..core.clock import utcnow
from . import outbox_service
from .appointment_service import appointment_payload

logger = logging.getLogger(__name__)

REMINDER_WINDOWS = (
    ("24h", timedelta(hours=24)),
    ("2h", timedelta(hours=2)),
    ("30m", timedelta(minutes=30)),
)

REMINDABLE = (models.AppointmentStatus.scheduled, models.AppointmentStatus.confirmed)


def flag_name(window: str) -> str:
    return f"reminder_{window}_sent"


def due_windows(appointment: models.Appointment, now: datetime):
    """Windows whose trigger time has passed and whose flag is still unset."""
    if appointment.status not in REMINDABLE or appointment.deleted_at is not None:
        return []
    if appointment.starts_at <= now:
        return []
    return [
        window for window, lead in REMINDER_WINDOWS
        if now >= appointment.starts_at - lead and not getattr(appointment, flag_name(window))
    ]


def run_reminder_sweep(db: Session, now: Optional[datetime] = None) -> Dict[str, int]:
    now = now or utcnow()
    horizon = now + max(lead for _, lead in REMINDER_WINDOWS)
    candidates = (
        db.query(models.Appointment)
        .options(joinedload(models.Appointment.patient), joinedload(models.Appointment.doctor))
        .filter(
            models.Appointment.status.in_(REMINDABLE),
            models.Appointment.deleted_at.is_(None),
            models.Appointment.starts_at > now,
            models.Appointment.starts_at <= horizon,
            or_(
                models.Appointment.reminder_24h_sent.is_(False),
                models.Appointment.reminder_2h_sent.is_(False),
                models.Appointment.reminder_30m_sent.is_(False),
            ),
        )
        .all()
    )

    enqueued = 0
    for appointment in candidates:
        for window in due_windows(appointment, now):
            payload = appointment_payload(appointment, template="appointment_reminder", window=window)
            messages = outbox_service.notify_user(
                db,
                appointment.patient,
                f"reminder_{window}",
                f"Reminder: appointment {appointment.appointment_number}",
                payload,
                resource="appointment",
                resource_id=appointment.id,
                dedupe_key=f"reminder:{appointment.id}:{window}",
                channels=(models.CommunicationType.email, models.CommunicationType.sms),
            )
            enqueued += len([m for m in messages if m.attempts == 0 and m.status == models.OutboxStatus.pending])
    db.commit()
    logger.info(f"Reminder sweep at {now.isoformat()}: {len(candidates)} appointments, {enqueued} messages queued")
    return {"appointments": len(candidates), "enqueued": enqueued}


def acknowledge_reminder(db: Session, appointment_id: Optional[str], window: str) -> bool:
    """Delivery hook: flip the reminder flag if the appointment still wants reminders."""
    if window not in dict(REMINDER_WINDOWS) or not appointment_id:
        return False
    appointment = db.get(models.Appointment, appointment_id)
    if appointment is None or appointment.status not in REMINDABLE or appointment.deleted_at is not None:
        return False
    setattr(appointment, flag_name(window), True)
    return True
