# app/services/payment_service.py
import logging
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .. import models, schemas, crud
from ..compliance_logger import AuditContext, compliance_logger
from ..config import get_settings
from ..core.clock import utcnow
from ..exceptions import (
    Conflict, ConsultCoreError, DuplicateKey, IllegalTransition, OutOfWindow, StaleRevision, ValidationFailed,
)
from . import appointment_service, appointment_state
from .appointment_state import AppointmentEvent

logger = logging.getLogger(__name__)

P = models.PaymentStatus

PAYMENT_TRANSITIONS = {
    P.pending: {P.processing, P.failed},
    P.processing: {P.completed, P.failed},
    P.completed: {P.refunded, P.partially_refunded},
    P.partially_refunded: {P.refunded, P.partially_refunded},
    P.failed: set(),
    P.refunded: set(),
}

SETTLED = (P.completed, P.partially_refunded, P.refunded)


def _move(payment: models.Payment, target: models.PaymentStatus) -> None:
    if target not in PAYMENT_TRANSITIONS[payment.status]:
        raise IllegalTransition(payment.status.value, target.value, resource="payment")
    payment.status = target


def validate_payment(payment: models.Payment) -> None:
    computed = Decimal(payment.amount) + Decimal(payment.tax_amount or 0) - Decimal(payment.discount_amount or 0)
    if computed < 0:
        raise ValidationFailed("totalAmount cannot be negative")
    if Decimal(payment.total_amount) != computed:
        raise ValidationFailed("totalAmount must equal amount + taxAmount - discountAmount")


def open_invoice(
    db: Session,
    appointment: models.Appointment,
    payer: models.User,
    amount: Optional[Decimal] = None,
    tax_amount: Decimal = Decimal("0"),
    discount_amount: Decimal = Decimal("0"),
) -> models.Payment:
    """Pending payment and invoice for an appointment's fee. Does not commit."""
    settings = get_settings()
    amount = Decimal(amount if amount is not None else appointment.consultation_fee)
    now = utcnow()
    payment = models.Payment(
        payer_id=payer.id,
        patient_id=appointment.patient_id,
        appointment_id=appointment.id,
        amount=amount,
        tax_amount=tax_amount,
        discount_amount=discount_amount,
        total_amount=amount + tax_amount - discount_amount,
        status=P.pending,
        invoice_date=now,
        due_date=now + timedelta(days=settings.invoice_due_days),
        line_items=[{
            "description": f"Consultation {appointment.appointment_number}",
            "quantity": 1,
            "unitPrice": float(amount),
            "total": float(amount),
        }],
    )
    validate_payment(payment)
    crud.insert_unique(db, payment, "invoice_number", crud.invoice_numbers(), "invoice number")
    logger.info(f"Opened invoice {payment.invoice_number} ({payment.total_amount}) for {appointment.appointment_number}")
    return payment


def _within_refund_window(payment: models.Payment) -> bool:
    if payment.completed_at is None:
        return False
    return utcnow() <= payment.completed_at + timedelta(days=get_settings().refund_window_days)


def _apply_refund(
    db: Session,
    payment: models.Payment,
    amount: Optional[Decimal],
    reason: Optional[str],
    ctx: Optional[AuditContext],
    refund_method: Optional[str] = None,
) -> models.PaymentRefund:
    if payment.status not in (P.completed, P.partially_refunded):
        raise IllegalTransition(payment.status.value, P.refunded.value, resource="payment")
    if not _within_refund_window(payment):
        raise OutOfWindow(f"Refunds are only allowed within {get_settings().refund_window_days} days of payment")

    remaining = payment.refundable_amount
    amount = Decimal(amount) if amount is not None else remaining
    if amount <= 0 or amount > remaining:
        raise ValidationFailed(f"Refund amount must be between 0 and the remaining {remaining}",
                               {"remaining": str(remaining)})

    refund = models.PaymentRefund(
        amount=amount,
        reason=reason,
        refund_method=refund_method or "original",
        refunded_by=ctx.user_id if ctx else None,
        created_at=utcnow(),
    )
    payment.refunds.append(refund)
    _move(payment, P.refunded if amount == remaining else P.partially_refunded)
    payment.refunded_at = utcnow()

    compliance_logger.record(db, "PAYMENT_REFUNDED", "payment", payment.id, ctx, {
        "amount": str(amount),
        "remaining": str(remaining - amount),
        "status": payment.status.value,
        "reason": reason,
    })
    return refund


def refund_for_cancellation(db: Session, appointment: models.Appointment, reason: Optional[str], ctx: Optional[AuditContext]) -> Optional[Decimal]:
    """Full refund of what is left on a cancelled appointment's payment, when still refundable."""
    payment = crud.get_payment(db, appointment.payment_id, for_update=True)
    if payment.status not in (P.completed, P.partially_refunded) or payment.refundable_amount <= 0:
        return None
    if not _within_refund_window(payment):
        logger.info(f"Payment {payment.id} is past the refund window; cancellation is record-only")
        return None
    remaining = payment.refundable_amount
    _apply_refund(db, payment, remaining, reason, ctx)
    appointment.payment_status = models.AppointmentPaymentStatus.refunded
    return remaining


def _settle(db: Session, payment_id: str, ctx: Optional[AuditContext], action: str, step) -> models.Payment:
    try:
        payment = crud.get_payment(db, payment_id, for_update=True)
        result = step(payment)
        db.commit()
        db.refresh(payment)
        return result or payment
    except StaleDataError:
        db.rollback()
        error = StaleRevision()
        compliance_logger.log_failure(action, "payment", payment_id, ctx, error)
        raise error
    except ConsultCoreError as e:
        db.rollback()
        compliance_logger.log_failure(action, "payment", payment_id, ctx, e)
        raise


def complete_payment(db: Session, payment_id: str, body: schemas.PaymentComplete, ctx: Optional[AuditContext]) -> models.Payment:
    """Gateway success callback. Replays with the same transaction id are no-ops."""
    def step(payment):
        if payment.status in SETTLED:
            if payment.transaction_id == body.transaction_id:
                logger.info(f"Payment {payment.id} already completed with {body.transaction_id}; ignoring replay")
                return payment
            raise Conflict("Payment already completed with a different transaction",
                           {"transactionId": payment.transaction_id})

        clash = db.query(models.Payment.id).filter(
            models.Payment.transaction_id == body.transaction_id,
            models.Payment.id != payment.id,
        ).first()
        if clash:
            raise DuplicateKey("transactionId is already used by another payment", {"field": "transactionId"})

        now = utcnow()
        if payment.status == P.pending:
            _move(payment, P.processing)
            payment.processing_at = now
        _move(payment, P.completed)
        payment.transaction_id = body.transaction_id
        payment.payment_method = body.payment_method
        payment.completed_at = now
        payment.failure_reason = None

        compliance_logger.record(db, "PAYMENT_COMPLETED", "payment", payment.id, ctx, {
            "transactionId": body.transaction_id,
            "totalAmount": str(payment.total_amount),
            "appointmentId": payment.appointment_id,
        })
        if payment.appointment_id:
            appointment = crud.get_appointment(db, payment.appointment_id, for_update=True)
            appointment_service.confirm_from_payment(db, appointment, ctx)

    return _settle(db, payment_id, ctx, "PAYMENT_COMPLETED", step)


def fail_payment(db: Session, payment_id: str, body: schemas.PaymentFail, ctx: Optional[AuditContext]) -> models.Payment:
    def step(payment):
        _move(payment, P.failed)
        payment.failed_at = utcnow()
        payment.failure_reason = body.reason
        compliance_logger.record(db, "PAYMENT_FAILED", "payment", payment.id, ctx, {"reason": body.reason})
        if payment.appointment_id:
            appointment = crud.get_appointment(db, payment.appointment_id, for_update=True)
            if appointment.status == models.AppointmentStatus.scheduled:
                appointment.payment_status = models.AppointmentPaymentStatus.failed

    return _settle(db, payment_id, ctx, "PAYMENT_FAILED", step)


def refund_payment(db: Session, payment_id: str, body: schemas.RefundRequest, ctx: Optional[AuditContext]) -> models.Payment:
    """Manual refund. Cancels the appointment when it can still be cancelled; otherwise record-only."""
    def step(payment):
        _apply_refund(db, payment, body.amount, body.reason, ctx, refund_method=body.refund_method)
        if not payment.appointment_id:
            return
        appointment = crud.get_appointment(db, payment.appointment_id, for_update=True)
        if appointment.deleted_at is None and appointment_state.can_transition(appointment.status, models.AppointmentStatus.cancelled):
            event = AppointmentEvent(
                target=models.AppointmentStatus.cancelled,
                at=utcnow(),
                reason=body.reason,
                cancelled_by=models.CancelledBy.system,
                refund=False,
            )
            appointment_service.apply_event(db, appointment, event, ctx)
        if payment.status == P.refunded:
            appointment.payment_status = models.AppointmentPaymentStatus.refunded

    return _settle(db, payment_id, ctx, "PAYMENT_REFUNDED", step)
