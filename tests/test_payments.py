# tests/test_payments.py
from datetime import timedelta
from decimal import Decimal

import pytest

from app import crud, models, schemas
from app.exceptions import Conflict, DuplicateKey, IllegalTransition, OutOfWindow, ValidationFailed
from app.services import appointment_service, payment_service

from conftest import book, make_patient


def complete(db, appointment, ctx, tx="tx_1"):
    return payment_service.complete_payment(
        db, appointment.payment_id, schemas.PaymentComplete(transaction_id=tx), ctx
    )


def test_completed_payment_confirms_appointment(db, doctor, patient, ctx):
    appointment = book(db, doctor, patient)
    payment = complete(db, appointment, ctx)

    db.expire_all()
    appointment = crud.get_appointment(db, appointment.id)
    assert payment.status == models.PaymentStatus.completed
    assert payment.transaction_id == "tx_1"
    assert appointment.status == models.AppointmentStatus.confirmed
    assert appointment.payment_status == models.AppointmentPaymentStatus.paid
    assert appointment.confirmed_at is not None


def test_replaying_completion_is_a_noop(db, doctor, patient, ctx):
    appointment = book(db, doctor, patient)
    first = complete(db, appointment, ctx)
    revision = first.revision

    again = complete(db, appointment, ctx)

    assert again.status == models.PaymentStatus.completed
    assert again.revision == revision
    completed = crud.get_audit_logs(db, resource="payment", resource_id=first.id, action="PAYMENT_COMPLETED")
    assert len(completed) == 1


def test_completion_with_another_transaction_conflicts(db, doctor, patient, ctx):
    appointment = book(db, doctor, patient)
    complete(db, appointment, ctx)
    with pytest.raises(Conflict):
        complete(db, appointment, ctx, tx="tx_2")


def test_transaction_id_is_unique_across_payments(db, doctor, patient, ctx):
    first = book(db, doctor, patient, time="09:00")
    other = make_patient(db, email="payer2@medconsult.io")
    second = book(db, doctor, other, time="09:30")
    complete(db, first, ctx, tx="tx_shared")
    with pytest.raises(DuplicateKey):
        complete(db, second, ctx, tx="tx_shared")


def test_failed_payment_cannot_complete(db, doctor, patient, ctx):
    appointment = book(db, doctor, patient)
    failed = payment_service.fail_payment(db, appointment.payment_id, schemas.PaymentFail(reason="card declined"), ctx)
    assert failed.status == models.PaymentStatus.failed
    assert crud.get_appointment(db, appointment.id).payment_status == models.AppointmentPaymentStatus.failed

    with pytest.raises(IllegalTransition):
        complete(db, appointment, ctx)


def test_partial_then_full_refund(db, doctor, patient, ctx):
    appointment = book(db, doctor, patient)
    complete(db, appointment, ctx)

    partial = payment_service.refund_payment(db, appointment.payment_id, schemas.RefundRequest(
        amount=Decimal("200.00"), reason="goodwill"), ctx)
    assert partial.status == models.PaymentStatus.partially_refunded
    assert partial.refundable_amount == Decimal("300.00")

    with pytest.raises(ValidationFailed):
        payment_service.refund_payment(db, appointment.payment_id, schemas.RefundRequest(
            amount=Decimal("300.01"), reason="too much"), ctx)

    full = payment_service.refund_payment(db, appointment.payment_id, schemas.RefundRequest(reason="rest"), ctx)
    assert full.status == models.PaymentStatus.refunded
    assert full.refunded_total == full.total_amount
    assert len(full.refunds) == 2


def test_refund_also_cancels_an_open_appointment(db, doctor, patient, ctx):
    appointment = book(db, doctor, patient)
    complete(db, appointment, ctx)
    payment_service.refund_payment(db, appointment.payment_id, schemas.RefundRequest(reason="doctor away"), ctx)

    db.expire_all()
    appointment = crud.get_appointment(db, appointment.id)
    assert appointment.status == models.AppointmentStatus.cancelled
    assert appointment.cancelled_by == models.CancelledBy.system
    assert appointment.payment_status == models.AppointmentPaymentStatus.refunded


def test_refund_window_is_enforced(db, doctor, patient, ctx, clock):
    appointment = book(db, doctor, patient)
    complete(db, appointment, ctx)
    clock.advance(days=91)
    with pytest.raises(OutOfWindow):
        payment_service.refund_payment(db, appointment.payment_id, schemas.RefundRequest(reason="late"), ctx)


def test_pending_payment_cannot_be_refunded(db, doctor, patient, ctx):
    appointment = book(db, doctor, patient)
    with pytest.raises(IllegalTransition):
        payment_service.refund_payment(db, appointment.payment_id, schemas.RefundRequest(reason="n/a"), ctx)


def test_invoice_totals_must_add_up():
    payment = models.Payment(amount=Decimal("100"), tax_amount=Decimal("18"),
                             discount_amount=Decimal("10"), total_amount=Decimal("108"))
    payment_service.validate_payment(payment)
    payment.total_amount = Decimal("118")
    with pytest.raises(ValidationFailed):
        payment_service.validate_payment(payment)


def test_cancelling_a_paid_appointment_refunds_in_full(db, doctor, patient, ctx, clock):
    appointment = book(db, doctor, patient)
    complete(db, appointment, ctx)
    clock.advance(days=4)

    appointment_service.change_status(db, appointment.id, schemas.AppointmentStatusUpdate(
        status=models.AppointmentStatus.cancelled,
        reason="patient_unavailable",
        cancelled_by=models.CancelledBy.patient,
    ), patient, ctx)

    db.expire_all()
    payment = crud.get_payment(db, appointment.payment_id)
    assert payment.status == models.PaymentStatus.refunded
    assert payment.refunded_total == Decimal("500.00")
    assert payment.refunded_at - payment.completed_at == timedelta(days=4)


def test_invoice_number_taken_concurrently_moves_to_the_next_value(db, doctor, patient, monkeypatch):
    first = book(db, doctor, patient, time="09:00")
    taken = db.get(models.Payment, first.payment_id).invoice_number
    monkeypatch.setattr(crud, "_value_taken", lambda db, column, value: False)
    monkeypatch.setattr(crud, "invoice_numbers", lambda: iter([taken, "INV000000001"]))

    second = book(db, doctor, patient, time="10:00")

    assert db.get(models.Payment, second.payment_id).invoice_number == "INV000000001"
