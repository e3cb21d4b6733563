# tests/test_consultations.py
from datetime import datetime, timezone

import pytest

from app import crud, models, schemas
from app.exceptions import Conflict, Forbidden, IllegalTransition, ValidationFailed
from app.services import appointment_service, consultation_service

from conftest import book, make_doctor, make_patient

JOIN_TIME = datetime(2025, 1, 6, 9, 45, tzinfo=timezone.utc)


def initiate(db, doctor, patient, appointment=None, ctx=None, actor=None):
    body = schemas.ConsultationInitiate(
        patient_id=patient.id,
        doctor_id=doctor.id,
        appointment_id=appointment.id if appointment else None,
        chief_complaint="Persistent cough",
    )
    return consultation_service.initiate(db, body, actor or doctor, ctx)


@pytest.fixture
def booked(db, doctor, patient):
    return book(db, doctor, patient, time="10:00")


def test_initiate_assigns_room_and_number(db, doctor, patient, booked, ctx):
    consultation = initiate(db, doctor, patient, booked, ctx)

    assert consultation.status == models.ConsultationStatus.scheduled
    assert consultation.consultation_number == "CONS-000001"
    assert consultation.room_id.startswith(f"room-{doctor.id}-{patient.id}-")
    kinds = {m.kind for m in db.query(models.OutboxMessage).all()}
    assert "consultation_scheduled" in kinds


def test_initiate_without_appointment_history_is_forbidden(db, doctor, ctx):
    stranger = make_patient(db, email="stranger@medconsult.io")
    with pytest.raises(Forbidden):
        initiate(db, doctor, stranger, ctx=ctx)


def test_second_live_consultation_conflicts(db, doctor, patient, booked, ctx):
    initiate(db, doctor, patient, booked, ctx)
    with pytest.raises(Conflict):
        initiate(db, doctor, patient, ctx=ctx)


def test_appointment_of_another_pair_is_rejected(db, doctor, patient, booked, ctx):
    other = make_doctor(db, email="wilson@medconsult.io")
    book(db, other, patient, time="09:00")
    with pytest.raises(ValidationFailed):
        initiate(db, other, patient, booked, ctx)


def test_joining_activates_consultation_and_appointment(db, doctor, patient, booked, ctx, clock):
    consultation = initiate(db, doctor, patient, booked, ctx)
    clock.set(JOIN_TIME)

    consultation_service.join(db, consultation.id, doctor, ctx)
    consultation = consultation_service.join(db, consultation.id, patient, ctx)

    db.expire_all()
    consultation = crud.get_consultation(db, consultation.id)
    appointment = crud.get_appointment(db, booked.id)
    assert consultation.status == models.ConsultationStatus.active
    assert {p.role for p in consultation.participants} == {
        models.ParticipantRole.doctor, models.ParticipantRole.patient,
    }
    assert consultation.start_time is not None
    assert appointment.status == models.AppointmentStatus.in_progress
    assert appointment.check_in_time is not None


def test_joining_twice_adds_no_participant(db, doctor, patient, booked, ctx, clock):
    consultation = initiate(db, doctor, patient, booked, ctx)
    clock.set(JOIN_TIME)
    consultation_service.join(db, consultation.id, patient, ctx)
    consultation = consultation_service.join(db, consultation.id, patient, ctx)
    assert len(consultation.participants) == 1


def test_outsider_cannot_join(db, doctor, patient, booked, ctx, clock):
    consultation = initiate(db, doctor, patient, booked, ctx)
    clock.set(JOIN_TIME)
    outsider = make_patient(db, email="outsider@medconsult.io")
    with pytest.raises(Forbidden):
        consultation_service.join(db, consultation.id, outsider, ctx)


def test_ending_completes_both_and_files_a_record(db, doctor, patient, booked, ctx, clock):
    consultation = initiate(db, doctor, patient, booked, ctx)
    clock.set(JOIN_TIME)
    consultation_service.join(db, consultation.id, doctor, ctx)
    consultation_service.attach_notes(db, consultation.id, schemas.ConsultationNotes(
        diagnosis="Acute bronchitis", plan="Rest and fluids",
    ), doctor, ctx)
    clock.advance(minutes=20)

    ended = consultation_service.end(db, consultation.id, doctor, ctx)

    db.expire_all()
    appointment = crud.get_appointment(db, booked.id)
    assert ended.status == models.ConsultationStatus.completed
    assert ended.actual_duration == 20
    assert appointment.status == models.AppointmentStatus.completed
    record = crud.get_medical_record(db, ended.medical_record_id)
    assert record.record_number == "MR-000001"
    assert record.diagnosis == "Acute bronchitis"


def test_notes_are_frozen_once_closed(db, doctor, patient, booked, ctx, clock):
    consultation = initiate(db, doctor, patient, booked, ctx)
    clock.set(JOIN_TIME)
    consultation_service.join(db, consultation.id, doctor, ctx)
    consultation_service.end(db, consultation.id, doctor, ctx)
    with pytest.raises(Conflict):
        consultation_service.attach_notes(db, consultation.id, schemas.ConsultationNotes(plan="late"), doctor, ctx)


def test_only_the_doctor_writes_notes(db, doctor, patient, booked, ctx):
    consultation = initiate(db, doctor, patient, booked, ctx)
    with pytest.raises(Forbidden):
        consultation_service.attach_notes(db, consultation.id, schemas.ConsultationNotes(plan="x"), patient, ctx)


def test_cancel_mirrors_to_appointment(db, doctor, patient, booked, ctx):
    consultation = initiate(db, doctor, patient, booked, ctx)
    cancelled = consultation_service.cancel(db, consultation.id, "doctor called away", doctor, ctx)

    db.expire_all()
    appointment = crud.get_appointment(db, booked.id)
    assert cancelled.status == models.ConsultationStatus.cancelled
    assert appointment.status == models.AppointmentStatus.cancelled
    assert appointment.cancelled_by == models.CancelledBy.doctor
    assert appointment.slot_key is None


def test_cancel_requires_reason(db, doctor, patient, booked, ctx):
    consultation = initiate(db, doctor, patient, booked, ctx)
    with pytest.raises(ValidationFailed):
        consultation_service.cancel(db, consultation.id, None, doctor, ctx)


def test_closed_consultation_cannot_restart(db, doctor, patient, booked, ctx):
    consultation = initiate(db, doctor, patient, booked, ctx)
    consultation_service.cancel(db, consultation.id, "duplicate", doctor, ctx)
    with pytest.raises(IllegalTransition):
        consultation_service.join(db, consultation.id, doctor, ctx)


def test_prescriptions_are_numbered_and_linked(db, doctor, patient, booked, ctx, clock):
    consultation = initiate(db, doctor, patient, booked, ctx)
    clock.set(JOIN_TIME)
    consultation_service.join(db, consultation.id, doctor, ctx)
    body = schemas.PrescriptionCreate(
        medications=[{"name": "Amoxicillin", "dosage": "500mg", "frequency": "TID", "duration": "7 days"}],
        allow_refills=True,
        max_refills=2,
    )

    prescription = consultation_service.create_prescription(db, consultation.id, body, doctor, ctx)

    assert prescription.prescription_number == "RX-000001"
    assert prescription.refills_remaining == 2
    db.expire_all()
    assert crud.get_consultation(db, consultation.id).prescription_id == prescription.id


def test_lab_order_and_summary(db, doctor, patient, booked, ctx, clock):
    consultation = initiate(db, doctor, patient, booked, ctx)
    clock.set(JOIN_TIME)
    consultation_service.join(db, consultation.id, doctor, ctx)
    lab = consultation_service.order_lab(db, consultation.id, schemas.LabOrderCreate(test_name="CBC"), doctor, ctx)
    assert lab.lab_number == "LAB-000001"

    db.expire_all()
    summary = consultation_service.summary(db, crud.get_consultation(db, consultation.id))
    assert summary["consultationDetails"]["status"] == "active"
    assert summary["doctorInfo"]["name"] == "Dr. Gregory House"
    assert summary["clinicalData"]["chiefComplaint"] == "Persistent cough"
    assert [r["labNumber"] for r in summary["outcomes"]["labResults"]] == ["LAB-000001"]
    assert summary["outcomes"]["prescription"] is None


def status_update(status, **fields):
    return schemas.AppointmentStatusUpdate(status=status, **fields)


def test_cancelling_the_appointment_cancels_its_active_consultation(db, doctor, patient, booked, ctx, clock):
    consultation = initiate(db, doctor, patient, booked, ctx)
    clock.set(JOIN_TIME)
    consultation_service.join(db, consultation.id, doctor, ctx)

    appointment_service.change_status(db, booked.id, status_update(
        models.AppointmentStatus.cancelled, reason="doctor_emergency", cancelled_by=models.CancelledBy.doctor,
    ), doctor, ctx)

    db.expire_all()
    consultation = crud.get_consultation(db, consultation.id)
    assert consultation.status == models.ConsultationStatus.cancelled
    assert consultation.cancellation_reason == "doctor_emergency"
    assert crud.get_appointment(db, booked.id).status == models.AppointmentStatus.cancelled
    assert crud.run_consistency_checks(db)["consultation_mirror_mismatches"] == []


def test_completing_the_appointment_completes_its_active_consultation(db, doctor, patient, booked, ctx, clock):
    consultation = initiate(db, doctor, patient, booked, ctx)
    clock.set(JOIN_TIME)
    consultation_service.join(db, consultation.id, doctor, ctx)
    clock.advance(minutes=25)

    appointment_service.change_status(db, booked.id, status_update(models.AppointmentStatus.completed), doctor, ctx)

    db.expire_all()
    consultation = crud.get_consultation(db, consultation.id)
    assert consultation.status == models.ConsultationStatus.completed
    assert consultation.actual_duration == 25
    assert consultation.end_time is not None
    assert crud.run_consistency_checks(db)["consultation_mirror_mismatches"] == []


def test_missed_appointment_marks_scheduled_consultation_no_show(db, doctor, patient, booked, ctx, clock):
    consultation = initiate(db, doctor, patient, booked, ctx)
    clock.set(datetime(2025, 1, 6, 10, 15, tzinfo=timezone.utc))

    appointment_service.change_status(db, booked.id, status_update(models.AppointmentStatus.no_show), doctor, ctx)

    db.expire_all()
    assert crud.get_consultation(db, consultation.id).status == models.ConsultationStatus.no_show


def test_appointment_with_live_consultation_cannot_be_deleted(db, doctor, patient, booked, admin, ctx):
    initiate(db, doctor, patient, booked, ctx)

    with pytest.raises(Conflict):
        appointment_service.soft_delete_appointment(db, booked.id, admin, ctx)

    db.expire_all()
    assert crud.get_appointment(db, booked.id).deleted_at is None


@pytest.mark.parametrize("start, end, actual, valid", [
    (JOIN_TIME, None, None, True),
    (JOIN_TIME, datetime(2025, 1, 6, 10, 5, tzinfo=timezone.utc), 20, True),
    (JOIN_TIME, datetime(2025, 1, 6, 10, 5, tzinfo=timezone.utc), 15, False),
    (JOIN_TIME, datetime(2025, 1, 6, 9, 30, tzinfo=timezone.utc), 0, False),
])
def test_validate_consultation_times(start, end, actual, valid):
    consultation = models.Consultation(start_time=start, end_time=end, actual_duration=actual)
    if valid:
        consultation_service.validate_consultation(consultation)
    else:
        with pytest.raises(ValidationFailed):
            consultation_service.validate_consultation(consultation)
