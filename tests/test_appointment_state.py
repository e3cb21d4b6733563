# tests/test_appointment_state.py
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from app.exceptions import IllegalTransition, OutOfWindow, PaymentRequired, ValidationFailed
from app.models import AppointmentPaymentStatus as Pay, AppointmentStatus as S, CancelledBy
from app.services import appointment_state
from app.services.appointment_state import AppointmentEvent

STARTS_AT = datetime(2025, 1, 6, 10, 0, tzinfo=timezone.utc)

ALL_PAIRS = [(source, target) for source in S for target in S]


def appointment(status=S.scheduled, payment_status=Pay.paid, **extra):
    values = dict(
        status=status,
        payment_status=payment_status,
        payment_id="p" * 32,
        starts_at=STARTS_AT,
        duration=30,
        check_in_time=None,
        consultation_start_time=None,
    )
    values.update(extra)
    return SimpleNamespace(**values)


def event_for(target, at=STARTS_AT + timedelta(minutes=5)):
    return AppointmentEvent(target=target, at=at, reason="patient_unavailable", cancelled_by=CancelledBy.patient)


@pytest.mark.parametrize("source,target", ALL_PAIRS)
def test_every_pair_is_either_allowed_or_illegal(source, target):
    """Total over status x status: a legal pair applies, anything else raises."""
    appt = appointment(status=source)
    event = event_for(target)

    if source == target and target in appointment_state.IDEMPOTENT_TARGETS:
        assert appointment_state.apply(appt, event).noop
    elif appointment_state.can_transition(source, target):
        transition = appointment_state.apply(appt, event)
        assert transition.changes["status"] == target
        assert transition.audit_actions(), "every transition is audited"
    else:
        with pytest.raises(IllegalTransition) as exc:
            appointment_state.apply(appt, event)
        assert exc.value.details == {"resource": "appointment", "from": source.value, "to": target.value}


@pytest.mark.parametrize("terminal", [S.completed, S.cancelled, S.rescheduled])
def test_terminal_states_have_no_exits(terminal):
    assert terminal in appointment_state.TERMINAL_STATUSES
    assert appointment_state.TRANSITIONS[terminal] == set()


def test_apply_does_not_mutate_the_appointment():
    appt = appointment(status=S.scheduled)
    appointment_state.apply(appt, event_for(S.cancelled))
    assert appt.status == S.scheduled


def test_confirm_requires_payment():
    with pytest.raises(PaymentRequired):
        appointment_state.apply(appointment(payment_status=Pay.pending), event_for(S.confirmed))


def test_confirm_from_payment_marks_paid():
    transition = appointment_state.apply(
        appointment(payment_status=Pay.pending),
        AppointmentEvent(S.confirmed, at=STARTS_AT, from_payment=True),
    )
    assert transition.changes["payment_status"] == Pay.paid
    assert "APPOINTMENT_CONFIRMED" in transition.audit_actions()


def test_free_appointment_confirms_without_payment():
    transition = appointment_state.apply(appointment(payment_status=Pay.free), event_for(S.confirmed))
    assert transition.target == S.confirmed


@pytest.mark.parametrize("minutes,allowed", [
    (-31, False),
    (-30, True),
    (0, True),
    (29, True),
    (30, False),
])
def test_start_window(minutes, allowed):
    appt = appointment(status=S.checked_in)
    event = AppointmentEvent(S.in_progress, at=STARTS_AT + timedelta(minutes=minutes))
    if allowed:
        assert appointment_state.apply(appt, event).changes["consultation_start_time"] == event.at
    else:
        with pytest.raises(OutOfWindow):
            appointment_state.apply(appt, event)


def test_no_show_only_after_start():
    with pytest.raises(OutOfWindow):
        appointment_state.apply(appointment(), AppointmentEvent(S.no_show, at=STARTS_AT - timedelta(minutes=1)))
    transition = appointment_state.apply(appointment(), AppointmentEvent(S.no_show, at=STARTS_AT + timedelta(minutes=15)))
    assert transition.changes["slot_key"] is None


@pytest.mark.parametrize("reason,by", [(None, CancelledBy.patient), ("moving", None)])
def test_cancel_requires_reason_and_actor(reason, by):
    with pytest.raises(ValidationFailed):
        appointment_state.apply(appointment(), AppointmentEvent(S.cancelled, at=STARTS_AT, reason=reason, cancelled_by=by))


def test_cancel_of_paid_appointment_requests_refund():
    transition = appointment_state.apply(appointment(payment_status=Pay.paid), event_for(S.cancelled))
    kinds = [e.kind for e in transition.effects]
    assert kinds.count("refund") == 1
    assert "suppress_reminders" in kinds
    assert transition.changes["slot_key"] is None


def test_cancel_of_unpaid_appointment_skips_refund():
    transition = appointment_state.apply(appointment(payment_status=Pay.pending), event_for(S.cancelled))
    assert "refund" not in [e.kind for e in transition.effects]


def test_complete_records_durations():
    check_in = STARTS_AT - timedelta(minutes=10)
    started = STARTS_AT + timedelta(minutes=5)
    appt = appointment(status=S.in_progress, check_in_time=check_in, consultation_start_time=started)
    transition = appointment_state.apply(
        appt, AppointmentEvent(S.completed, at=started + timedelta(minutes=25), notes="BP normal")
    )
    assert transition.changes["actual_duration"] == 25
    assert transition.changes["wait_time"] == 15
    assert transition.changes["doctor_notes"] == "BP normal"
