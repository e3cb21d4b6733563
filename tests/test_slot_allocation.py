# tests/test_slot_allocation.py
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from app import crud, models, schemas
from app.exceptions import DoctorUnavailable, DuplicateKey, SlotTaken, ValidationFailed
from app.services import appointment_service, slot_service

from conftest import MONDAY, book, make_doctor, make_patient


def test_booking_creates_scheduled_appointment_with_pending_invoice(db, doctor, patient):
    appointment = book(db, doctor, patient, time="10:00")

    assert appointment.status == models.AppointmentStatus.scheduled
    assert appointment.appointment_number == "APT-000001"
    assert appointment.duration == 30
    assert (appointment.start_minute, appointment.end_minute) == (600, 630)
    assert appointment.slot_key == slot_service.slot_key(doctor.id, MONDAY, "10:00")
    assert appointment.payment_status == models.AppointmentPaymentStatus.pending

    payment = crud.get_payment(db, appointment.payment_id)
    assert payment.status == models.PaymentStatus.pending
    assert payment.total_amount == appointment.consultation_fee
    assert payment.invoice_number.startswith("INV")


def test_second_booking_of_same_slot_is_rejected(db, doctor, patient):
    first = book(db, doctor, patient, time="10:00")
    other = make_patient(db, email="second@medconsult.io")

    with pytest.raises(SlotTaken) as exc:
        book(db, doctor, other, time="10:00")

    assert exc.value.details["conflictingAppointmentIds"] == [first.id]


def test_longer_booking_collides_with_the_next_slot(db, doctor, patient):
    book(db, doctor, patient, time="10:30")
    other = make_patient(db, email="long@medconsult.io")
    with pytest.raises(SlotTaken):
        book(db, doctor, other, time="10:00", duration=60)


def test_overlap_is_half_open(db, doctor, patient):
    book(db, doctor, patient, time="10:00")
    other = make_patient(db, email="adjacent@medconsult.io")
    adjacent = book(db, doctor, other, time="10:30")
    assert adjacent.start_minute == 630


def test_cancelled_appointment_releases_its_slot(db, doctor, patient, ctx):
    first = book(db, doctor, patient, time="10:00")
    appointment_service.change_status(db, first.id, schemas.AppointmentStatusUpdate(
        status=models.AppointmentStatus.cancelled,
        reason="schedule_conflict",
        cancelled_by=models.CancelledBy.patient,
    ), patient, ctx)

    again = book(db, doctor, patient, time="10:00")
    db.expire_all()
    assert again.status == models.AppointmentStatus.scheduled
    assert crud.get_appointment(db, first.id).slot_key is None


def test_time_off_the_slot_grid_is_rejected(db, doctor, patient):
    with pytest.raises(ValidationFailed):
        book(db, doctor, patient, time="10:15")


def test_booking_past_the_schedule_window_is_rejected(db, doctor, patient):
    with pytest.raises(ValidationFailed):
        book(db, doctor, patient, time="11:30", duration=60)


def test_past_slot_is_rejected(db, doctor, patient, clock):
    clock.set(clock.current.replace(year=2025, month=1, day=6, hour=10, minute=5))
    with pytest.raises(ValidationFailed):
        book(db, doctor, patient, time="10:00")


def test_unavailable_doctor_cannot_be_booked(db, doctor, patient):
    crud.set_doctor_status(db, doctor.id, schemas.DoctorStatusUpdate(is_available=False))
    with pytest.raises(DoctorUnavailable):
        book(db, doctor, patient, time="10:00")


def test_free_doctor_books_without_payment(db, patient):
    free = make_doctor(db, email="free@medconsult.io", fee=0)
    appointment = book(db, free, patient, time="09:00")
    assert appointment.payment_status == models.AppointmentPaymentStatus.free
    assert appointment.payment_id is None


def test_override_slot_is_marked_booked(db, doctor, patient):
    crud.set_date_overrides(db, doctor.id, MONDAY, schemas.OverrideUpdate(slots=[
        {"start_time": "15:00", "end_time": "15:30"},
    ]))
    appointment = book(db, doctor, patient, time="15:00")

    profile = crud.get_doctor_profile(db, doctor.id)
    [override] = crud.get_overrides(db, profile, MONDAY)
    assert override.is_booked is True
    assert override.appointment_id == appointment.id


def test_operation_id_makes_booking_idempotent(db, doctor, patient):
    first = book(db, doctor, patient, time="11:00", operation_id="op-book-1")
    again = book(db, doctor, patient, time="11:00", operation_id="op-book-1")
    assert again.id == first.id
    assert db.query(models.Appointment).count() == 1


def test_sequence_numbers_increase(db, doctor, patient):
    numbers = [book(db, doctor, patient, time=t).appointment_number for t in ("09:00", "09:30", "10:00")]
    assert numbers == ["APT-000001", "APT-000002", "APT-000003"]


def test_day_lock_row_is_created_once_per_doctor_day(db, doctor):
    slot_service.lock_doctor_day(db, doctor.id, MONDAY)
    slot_service.lock_doctor_day(db, doctor.id, MONDAY)
    slot_service.lock_doctor_day(db, doctor.id, date(2025, 1, 13))
    db.commit()
    assert db.query(models.SlotLock).count() == 2


def test_override_booked_elsewhere_cannot_be_taken(db, doctor, patient):
    crud.set_date_overrides(db, doctor.id, MONDAY, schemas.OverrideUpdate(slots=[
        {"start_time": "10:00", "end_time": "10:30", "is_booked": True, "appointment_id": "external-booking"},
        {"start_time": "11:00", "end_time": "11:30"},
    ]))

    with pytest.raises(SlotTaken) as exc:
        book(db, doctor, patient, time="10:00")

    assert exc.value.details["conflictingAppointmentIds"] == ["external-booking"]
    assert db.query(models.Appointment).count() == 0
    assert book(db, doctor, patient, time="11:00").appointment_number == "APT-000001"


def test_override_slot_shorter_than_minimum_duration_is_rejected(db, doctor, patient):
    crud.set_date_overrides(db, doctor.id, MONDAY, schemas.OverrideUpdate(slots=[
        {"start_time": "16:00", "end_time": "16:10"},
    ]))
    with pytest.raises(ValidationFailed):
        book(db, doctor, patient, time="16:00")
    assert db.query(models.Appointment).count() == 0


def test_number_taken_concurrently_moves_to_the_next_value(db, doctor, patient, monkeypatch):
    first = book(db, doctor, patient, time="09:00")
    db.query(models.Appointment).filter(models.Appointment.id == first.id).update(
        {"appointment_number": "APT-000002"}, synchronize_session=False
    )
    db.commit()
    # a writer racing past the lookup only finds out at flush time
    monkeypatch.setattr(crud, "_value_taken", lambda db, column, value: False)

    second = book(db, doctor, patient, time="10:00")

    assert second.appointment_number == "APT-000003"
    assert second.status == models.AppointmentStatus.scheduled
    db.expire_all()
    assert {e.resource_id for e in crud.get_audit_logs(db, action="APPOINTMENT_CREATED")} == {first.id, second.id}


@pytest.mark.parametrize("message, expected", [
    ("UNIQUE constraint failed: appointments.slot_key", SlotTaken),
    ("UNIQUE constraint failed: appointments.appointment_number", DuplicateKey),
])
def test_only_the_slot_index_reports_a_taken_slot(message, expected):
    error = IntegrityError("INSERT INTO appointments", {}, Exception(message))
    assert type(appointment_service._constraint_error(error)) is expected


@pytest.mark.parametrize("time, duration, fee", [
    ("10:00", 10, "500"),
    ("10:00", 150, "500"),
    ("05:30", 30, "500"),
    ("21:45", 30, "500"),
    ("10:00", 30, "-1"),
])
def test_validate_appointment_rejects_broken_rows(time, duration, fee):
    start = int(time[:2]) * 60 + int(time[3:])
    appointment = models.Appointment(
        appointment_time=time, duration=duration, start_minute=start, end_minute=start + duration,
        consultation_fee=Decimal(fee),
    )
    with pytest.raises(ValidationFailed):
        appointment_service.validate_appointment(appointment)


def test_validate_appointment_checks_the_stored_interval():
    appointment = models.Appointment(
        appointment_time="10:00", duration=30, start_minute=600, end_minute=640, consultation_fee=Decimal("0"),
    )
    with pytest.raises(ValidationFailed):
        appointment_service.validate_appointment(appointment)
    appointment.end_minute = 630
    appointment_service.validate_appointment(appointment)
