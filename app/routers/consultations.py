# app/routers/consultations.py
from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from .. import crud, models, schemas, security
from ..compliance_logger import AuditContext
from ..core.handlers import respond
from ..database import get_db
from ..exceptions import Forbidden, NotFound
from ..services import consultation_service

router = APIRouter(
    prefix="/consultations",
    tags=["Consultations"],
    dependencies=[Depends(security.get_current_user)],
    responses={404: {"description": "Not found"}},
)

INITIATOR_ROLES = (models.UserRole.admin, models.UserRole.staff, models.UserRole.nurse)


def _dump(consultation: models.Consultation) -> schemas.ConsultationResponse:
    return schemas.ConsultationResponse.model_validate(consultation)


@router.post("/initiate", status_code=status.HTTP_201_CREATED)
def initiate_consultation(
    request: Request,
    body: schemas.ConsultationInitiate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    ctx: AuditContext = Depends(security.audit_context),
):
    """Open a consultation room between a patient and a doctor who already share an appointment."""
    if current_user.role not in INITIATOR_ROLES and current_user.id not in (body.patient_id, body.doctor_id):
        raise Forbidden("You can only initiate consultations you take part in")
    consultation = consultation_service.initiate(db, body, current_user, ctx)
    return respond(request, _dump(consultation), "Consultation initiated", status.HTTP_201_CREATED)


@router.get("/{consultation_id}")
def get_consultation(
    request: Request,
    consultation_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    consultation = crud.get_consultation(db, consultation_id)
    if not consultation_service.can_view(consultation, current_user):
        raise NotFound("Consultation", consultation_id)
    return respond(request, _dump(consultation), "Consultation retrieved")


@router.post("/{consultation_id}/join")
def join_consultation(
    request: Request,
    consultation_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    ctx: AuditContext = Depends(security.audit_context),
):
    consultation = consultation_service.join(db, consultation_id, current_user, ctx)
    return respond(request, _dump(consultation), "Joined consultation")


@router.patch("/{consultation_id}/status")
def update_consultation_status(
    request: Request,
    consultation_id: str,
    body: schemas.ConsultationStatusUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    ctx: AuditContext = Depends(security.audit_context),
):
    consultation = consultation_service.change_status(db, consultation_id, body, current_user, ctx)
    return respond(request, _dump(consultation), f"Consultation {consultation.status.value}")


@router.post("/{consultation_id}/notes")
def add_consultation_notes(
    request: Request,
    consultation_id: str,
    body: schemas.ConsultationNotes,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_doctor),
    ctx: AuditContext = Depends(security.audit_context),
):
    consultation = consultation_service.attach_notes(db, consultation_id, body, current_user, ctx)
    return respond(request, _dump(consultation), "Notes saved")


@router.post("/{consultation_id}/prescription", status_code=status.HTTP_201_CREATED)
def create_prescription(
    request: Request,
    consultation_id: str,
    body: schemas.PrescriptionCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_doctor),
    ctx: AuditContext = Depends(security.audit_context),
):
    prescription = consultation_service.create_prescription(db, consultation_id, body, current_user, ctx)
    return respond(request, schemas.PrescriptionResponse.model_validate(prescription),
                   "Prescription created", status.HTTP_201_CREATED)


@router.post("/{consultation_id}/lab-orders", status_code=status.HTTP_201_CREATED)
def order_lab_test(
    request: Request,
    consultation_id: str,
    body: schemas.LabOrderCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_doctor),
    ctx: AuditContext = Depends(security.audit_context),
):
    lab = consultation_service.order_lab(db, consultation_id, body, current_user, ctx)
    return respond(request, schemas.LabResultResponse.model_validate(lab), "Lab test ordered", status.HTTP_201_CREATED)


@router.get("/{consultation_id}/summary")
def consultation_summary(
    request: Request,
    consultation_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    consultation = crud.get_consultation(db, consultation_id)
    if not consultation_service.can_view(consultation, current_user):
        raise NotFound("Consultation", consultation_id)
    return respond(request, consultation_service.summary(db, consultation), "Consultation summary")
