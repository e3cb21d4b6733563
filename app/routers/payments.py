# app/routers/payments.py
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from .. import crud, models, schemas, security
from ..compliance_logger import AuditContext
from ..core.handlers import respond
from ..database import get_db
from ..exceptions import NotFound
from ..services import payment_service

router = APIRouter(
    prefix="/payments",
    tags=["Payments"],
    responses={404: {"description": "Not found"}},
)

# Gateway callbacks are relayed by the billing desk or the gateway's service account
require_billing = security.require_role("admin", "staff")


def _dump(payment: models.Payment) -> schemas.PaymentResponse:
    return schemas.PaymentResponse.model_validate(payment)


@router.get("/{payment_id}")
def get_payment(
    request: Request,
    payment_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    payment = crud.get_payment(db, payment_id)
    if current_user.role not in (models.UserRole.admin, models.UserRole.staff) and \
            current_user.id not in (payment.payer_id, payment.patient_id):
        raise NotFound("Payment", payment_id)
    return respond(request, _dump(payment), "Payment retrieved")


@router.post("/{payment_id}/complete")
def complete_payment(
    request: Request,
    payment_id: str,
    body: schemas.PaymentComplete,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_billing),
    ctx: AuditContext = Depends(security.audit_context),
):
    payment = payment_service.complete_payment(db, payment_id, body, ctx)
    return respond(request, _dump(payment), "Payment completed")


@router.post("/{payment_id}/fail")
def fail_payment(
    request: Request,
    payment_id: str,
    body: schemas.PaymentFail,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_billing),
    ctx: AuditContext = Depends(security.audit_context),
):
    payment = payment_service.fail_payment(db, payment_id, body, ctx)
    return respond(request, _dump(payment), "Payment marked as failed")


@router.post("/{payment_id}/refund")
def refund_payment(
    request: Request,
    payment_id: str,
    body: schemas.RefundRequest,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
    ctx: AuditContext = Depends(security.audit_context),
):
    payment = payment_service.refund_payment(db, payment_id, body, ctx)
    return respond(request, _dump(payment), "Refund recorded")
