# app/services/appointment_state.py
"""Appointment lifecycle as a pure function.

``apply(appointment, event)`` never touches the database or mutates its input;
it returns the column changes and the side effects (audit entries, outbound
notices, refunds, reminder suppression) that the persistence adapter in
``appointment_service`` carries out.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ..core.clock import minutes_between
from ..exceptions import IllegalTransition, OutOfWindow, PaymentRequired, ValidationFailed
from ..models import AppointmentStatus as S, AppointmentPaymentStatus, CancelledBy

TRANSITIONS = {
    S.scheduled: {S.confirmed, S.checked_in, S.cancelled, S.no_show, S.rescheduled},
    S.confirmed: {S.checked_in, S.in_progress, S.cancelled, S.no_show},
    S.checked_in: {S.in_progress, S.cancelled, S.no_show},
    S.in_progress: {S.completed, S.cancelled},
    S.completed: set(),
    S.cancelled: set(),
    S.no_show: {S.rescheduled},
    S.rescheduled: set(),
}

TERMINAL_STATUSES = frozenset(s for s, nxt in TRANSITIONS.items() if not nxt)

# Re-requesting these while already in them is a no-op rather than an error
IDEMPOTENT_TARGETS = frozenset({S.checked_in, S.confirmed})

CHECK_IN_LEAD = timedelta(minutes=30)


@dataclass
class AppointmentEvent:
    target: S
    at: datetime
    reason: Optional[str] = None
    cancelled_by: Optional[CancelledBy] = None
    notes: Optional[str] = None
    from_payment: bool = False
    refund: bool = True
    lead: timedelta = CHECK_IN_LEAD


@dataclass
class Effect:
    kind: str  # audit | notify | refund | suppress_reminders
    name: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Transition:
    source: S
    target: S
    changes: Dict[str, Any] = field(default_factory=dict)
    effects: List[Effect] = field(default_factory=list)
    noop: bool = False

    def audit_actions(self) -> List[str]:
        return [e.name for e in self.effects if e.kind == "audit"]


def can_transition(source: S, target: S) -> bool:
    return target in TRANSITIONS.get(source, set())


def apply(appointment, event: AppointmentEvent) -> Transition:
    source = S(appointment.status)
    target = S(event.target)

    if source == target and target in IDEMPOTENT_TARGETS:
        return Transition(source=source, target=target, noop=True)
    if not can_transition(source, target):
        raise IllegalTransition(source.value, target.value)

    transition = Transition(source=source, target=target, changes={"status": target})
    _HANDLERS[target](appointment, event, transition)
    return transition


def _audit(transition: Transition, action: str, **data) -> None:
    data.setdefault("from", transition.source.value)
    data.setdefault("to", transition.target.value)
    transition.effects.append(Effect("audit", action, data))


def _confirm(appointment, event, t):
    paid = appointment.payment_status in (AppointmentPaymentStatus.paid, AppointmentPaymentStatus.free)
    if not paid and not event.from_payment:
        raise PaymentRequired(details={"paymentStatus": appointment.payment_status.value})
    t.changes["confirmed_at"] = event.at
    if event.from_payment:
        t.changes["payment_status"] = AppointmentPaymentStatus.paid
    _audit(t, "APPOINTMENT_CONFIRMED", fromPayment=event.from_payment)
    t.effects.append(Effect("notify", "appointment_confirmed"))


def _check_in(appointment, event, t):
    t.changes["check_in_time"] = event.at
    _audit(t, "APPOINTMENT_CHECKED_IN")


def _start(appointment, event, t):
    opens = appointment.starts_at - event.lead
    closes = appointment.starts_at + timedelta(minutes=appointment.duration)
    if not (opens <= event.at < closes):
        raise OutOfWindow(
            "Consultation can only start between 30 minutes before the appointment and its end",
            {"opensAt": opens.isoformat(), "closesAt": closes.isoformat()},
        )
    t.changes["consultation_start_time"] = event.at
    _audit(t, "APPOINTMENT_STARTED")


def _complete(appointment, event, t):
    started = appointment.consultation_start_time or event.at
    t.changes["consultation_end_time"] = event.at
    t.changes["actual_duration"] = max(0, minutes_between(started, event.at))
    arrived = appointment.check_in_time or appointment.starts_at
    t.changes["wait_time"] = max(0, minutes_between(arrived, started))
    if event.notes:
        t.changes["doctor_notes"] = event.notes
    _audit(t, "APPOINTMENT_COMPLETED", actualDuration=t.changes["actual_duration"])
    t.effects.append(Effect("notify", "appointment_completed"))


def _cancel(appointment, event, t):
    if not event.reason or not event.cancelled_by:
        raise ValidationFailed("Cancellation requires a reason and who cancelled",
                               {"required": ["reason", "cancelledBy"]})
    t.changes.update(
        cancellation_reason=event.reason,
        cancelled_by=CancelledBy(event.cancelled_by),
        cancellation_date=event.at,
        slot_key=None,
    )
    if event.refund and appointment.payment_status == AppointmentPaymentStatus.paid and appointment.payment_id:
        t.effects.append(Effect("refund", data={"payment_id": appointment.payment_id, "reason": event.reason}))
    t.effects.append(Effect("suppress_reminders"))
    _audit(t, "APPOINTMENT_CANCELLED", reason=event.reason, cancelledBy=CancelledBy(event.cancelled_by).value)
    t.effects.append(Effect("notify", "appointment_cancelled", {"reason": event.reason}))


def _no_show(appointment, event, t):
    if event.at < appointment.starts_at:
        raise OutOfWindow("An appointment cannot be marked no-show before it starts",
                          {"startsAt": appointment.starts_at.isoformat()})
    t.changes.update(no_show_marked_at=event.at, slot_key=None)
    if event.notes:
        t.changes["doctor_notes"] = event.notes
    t.effects.append(Effect("suppress_reminders"))
    _audit(t, "APPOINTMENT_NO_SHOW")


def _reschedule(appointment, event, t):
    t.changes.update(slot_key=None, reschedule_reason=event.reason)
    t.effects.append(Effect("suppress_reminders"))
    _audit(t, "APPOINTMENT_RESCHEDULED", reason=event.reason)


_HANDLERS = {
    S.confirmed: _confirm,
    S.checked_in: _check_in,
    S.in_progress: _start,
    S.completed: _complete,
    S.cancelled: _cancel,
    S.no_show: _no_show,
    S.rescheduled: _reschedule,
}
