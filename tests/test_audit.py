# tests/test_audit.py
from datetime import date
from decimal import Decimal

import pytest

from app import crud, models, schemas
from app.compliance_logger import AuditContext, ComplianceLogger, _jsonable, compliance_logger
from app.exceptions import SlotTaken
from app.services import appointment_service, payment_service

from conftest import book, make_patient


def test_every_transition_leaves_one_entry_in_order(db, doctor, patient, ctx):
    appointment = book(db, doctor, patient, ctx=ctx)
    payment_service.complete_payment(db, appointment.payment_id, schemas.PaymentComplete(transaction_id="tx_9"), ctx)
    appointment_service.change_status(db, appointment.id, schemas.AppointmentStatusUpdate(
        status=models.AppointmentStatus.cancelled,
        reason="travel",
        cancelled_by=models.CancelledBy.patient,
    ), patient, ctx)

    entries = crud.get_audit_logs(db, resource="appointment", resource_id=appointment.id)
    assert [e.action for e in entries] == ["APPOINTMENT_CREATED", "APPOINTMENT_CONFIRMED", "APPOINTMENT_CANCELLED"]
    # the clock is frozen, yet timestamps per resource stay strictly increasing
    stamps = [e.timestamp for e in entries]
    assert stamps == sorted(stamps)
    assert len(set(stamps)) == len(stamps)
    assert entries[-1].details["refundAmount"] == "500.00"
    assert all(e.request_id == "test-request" for e in entries)


def test_failed_booking_is_audited(db, doctor, patient, ctx):
    book(db, doctor, patient, time="10:00")
    rival = make_patient(db, email="rival@medconsult.io")

    with pytest.raises(SlotTaken):
        book(db, doctor, rival, time="10:00", ctx=ctx)

    [failure] = crud.get_audit_logs(db, action="APPOINTMENT_CREATE_FAILED")
    assert failure.status == models.AuditStatus.FAILED
    assert failure.details["error"] == "SLOT_TAKEN"
    assert failure.resource_id is None


def test_rolled_back_entries_are_never_written(db):
    compliance_logger.record(db, "NOTE_ADDED", "note", "p1")
    db.rollback()
    compliance_logger.record(db, "NOTE_ADDED", "note", "p2")
    db.commit()

    assert [e.resource_id for e in crud.get_audit_logs(db, action="NOTE_ADDED")] == ["p2"]


def test_savepoint_rollback_keeps_entries_of_the_enclosing_transaction(db):
    compliance_logger.record(db, "NOTE_ADDED", "note", "n1")
    db.begin_nested().rollback()
    db.commit()

    assert [e.resource_id for e in crud.get_audit_logs(db, action="NOTE_ADDED")] == ["n1"]


def test_log_event_defaults_to_system_actor(db):
    entry_id = compliance_logger.log_event("NOTE_ADDED", "note", "p3")
    entry = db.get(models.AuditLog, entry_id)
    assert entry.user_role == "system"
    assert entry.user_id is None


def test_unwritable_entry_is_reported_not_raised():
    recorder = ComplianceLogger(session_factory=_BrokenSession)
    assert recorder.log_event("NOTE_ADDED", "note", "p4", ctx=AuditContext(user_id="u1")) is None


class _BrokenSession:
    def query(self, *args, **kwargs):
        from sqlalchemy.exc import OperationalError
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    def rollback(self):
        pass

    def close(self):
        pass


def test_details_are_made_json_safe():
    details = _jsonable({
        "day": date(2025, 1, 6),
        "status": models.AppointmentStatus.confirmed,
        "amount": Decimal("12.50"),
        "count": 2,
        "none": None,
    })
    assert details == {"day": "2025-01-06", "status": "confirmed", "amount": "12.50", "count": 2, "none": None}
