"""Transactional outbox for patient and doctor notifications.

Services enqueue rows in the same session as the state change that caused
them, so a rolled-back transition never notifies anyone. ``drain_outbox``
hands due rows to the transports, retrying failures with exponential backoff
until ``max_attempts``. Delivery is at-least-once.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional

from sqlalchemy.orm import Session

from .. import models
from ..config import get_settings
from ..core.clock import utcnow
from ..exceptions import UpstreamError
from .email_service import EmailService
from .sms_service import SMSService

logger = logging.getLogger(__name__)


def enqueue(
    db: Session,
    kind: str,
    channel: models.CommunicationType,
    recipient: Optional[str],
    subject: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
    dedupe_key: Optional[str] = None,
    resource: Optional[str] = None,
    resource_id: Optional[str] = None,
    available_at: Optional[datetime] = None,
) -> Optional[models.OutboxMessage]:
    """Add one outbound message to the session; returns the existing row for a repeated dedupe key."""
    if not recipient:
        logger.info(f"Skipping {kind} {channel.value}: no recipient for {resource}:{resource_id}")
        return None
    if dedupe_key:
        existing = db.query(models.OutboxMessage).filter(models.OutboxMessage.dedupe_key == dedupe_key).first()
        if existing is not None:
            return existing

    message = models.OutboxMessage(
        kind=kind,
        channel=channel,
        recipient=recipient,
        subject=subject,
        payload=payload or {},
        dedupe_key=dedupe_key,
        status=models.OutboxStatus.pending,
        attempts=0,
        max_attempts=get_settings().outbox_max_attempts,
        next_attempt_at=available_at or utcnow(),
        resource=resource,
        resource_id=resource_id,
    )
    db.add(message)
    return message


def notify_user(
    db: Session,
    user: Optional[models.User],
    kind: str,
    subject: str,
    payload: Optional[Dict[str, Any]] = None,
    resource: Optional[str] = None,
    resource_id: Optional[str] = None,
    dedupe_key: Optional[str] = None,
    channels: Iterable[models.CommunicationType] = (models.CommunicationType.email,),
) -> list:
    if user is None:
        return []
    payload = dict(payload or {})
    payload.setdefault("recipient_name", user.full_name)
    messages = []
    for channel in channels:
        recipient = user.email if channel == models.CommunicationType.email else user.phone_number
        key = f"{dedupe_key}:{channel.value}" if dedupe_key else None
        message = enqueue(db, kind, channel, recipient, subject=subject, payload=payload,
                          dedupe_key=key, resource=resource, resource_id=resource_id)
        if message is not None:
            messages.append(message)
    return messages


def cancel_pending(db: Session, resource: str, resource_id: str, kind_prefix: Optional[str] = None) -> int:
    """Withdraw messages for a resource that have not been delivered yet."""
    query = db.query(models.OutboxMessage).filter(
        models.OutboxMessage.resource == resource,
        models.OutboxMessage.resource_id == resource_id,
        models.OutboxMessage.status == models.OutboxStatus.pending,
    )
    if kind_prefix:
        query = query.filter(models.OutboxMessage.kind.like(f"{kind_prefix}%"))
    count = 0
    for message in query.all():
        message.status = models.OutboxStatus.cancelled
        count += 1
    return count


class NotificationDispatcher:
    """Routes an outbox row to the email or SMS transport."""

    def __init__(self, email: Optional[EmailService] = None, sms: Optional[SMSService] = None):
        self.email = email or EmailService()
        self.sms = sms or SMSService()

    def dispatch(self, message: models.OutboxMessage) -> Dict[str, Any]:
        payload = dict(message.payload or {})
        template = payload.pop("template", None) or message.kind
        if message.channel == models.CommunicationType.email:
            return self.email.send_templated_email(message.recipient, template, {**payload, "subject": message.subject})
        return self.sms.send_sms(message.recipient, template, {**payload, "subject": message.subject})


def backoff_delay(attempts: int, base_seconds: Optional[int] = None) -> timedelta:
    base = base_seconds if base_seconds is not None else get_settings().outbox_backoff_seconds
    return timedelta(seconds=base * (2 ** max(0, attempts - 1)))


def _acknowledge(db: Session, message: models.OutboxMessage) -> None:
    if message.kind.startswith("reminder_") and message.resource == "appointment":
        from .reminder_service import acknowledge_reminder
        acknowledge_reminder(db, message.resource_id, message.kind[len("reminder_"):])


def drain_outbox(
    db: Session,
    dispatcher: Optional[NotificationDispatcher] = None,
    now: Optional[datetime] = None,
    batch_size: Optional[int] = None,
) -> Dict[str, int]:
    """Deliver due messages once. Each message commits on its own."""
    settings = get_settings()
    dispatcher = dispatcher or NotificationDispatcher()
    now = now or utcnow()
    stats = {"sent": 0, "retried": 0, "failed": 0}

    due = (
        db.query(models.OutboxMessage)
        .filter(
            models.OutboxMessage.status == models.OutboxStatus.pending,
            models.OutboxMessage.next_attempt_at <= now,
        )
        .order_by(models.OutboxMessage.next_attempt_at, models.OutboxMessage.created_at)
        .limit(batch_size or settings.outbox_batch_size)
        .with_for_update(skip_locked=True)
        .all()
    )

    for message in due:
        message.attempts += 1
        message.last_attempt_at = now
        try:
            dispatcher.dispatch(message)
        except Exception as e:
            # any transport failure counts as an attempt
            error = e.message if isinstance(e, UpstreamError) else f"{type(e).__name__}: {e}"
            message.last_error = error
            if message.attempts >= message.max_attempts:
                message.status = models.OutboxStatus.failed
                stats["failed"] += 1
                logger.error(f"Outbox message {message.id} ({message.kind}) gave up after {message.attempts} attempts: {error}")
            else:
                message.next_attempt_at = now + backoff_delay(message.attempts)
                stats["retried"] += 1
                logger.warning(f"Outbox message {message.id} ({message.kind}) failed ({error}), retrying at {message.next_attempt_at}")
        else:
            message.status = models.OutboxStatus.sent
            message.sent_at = now
            message.last_error = None
            _acknowledge(db, message)
            stats["sent"] += 1
        db.commit()

    if due:
        logger.info(f"Outbox drain: {stats}")
    return stats
