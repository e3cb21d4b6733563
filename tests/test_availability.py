# tests/test_availability.py
from datetime import date, datetime, timezone

import pytest

from app import crud, models, schemas
from app.exceptions import DoctorNotFound, ValidationFailed
from app.services import availability_service

from conftest import MONDAY, book, make_doctor


def starts(day_availability):
    return [s.as_dict()["start"] for s in day_availability.slots]


def test_monday_template_yields_six_half_hour_slots(db, doctor):
    result = availability_service.compute_availability(db, doctor.id, MONDAY)

    assert result.source == "template"
    assert starts(result) == ["09:00", "09:30", "10:00", "10:30", "11:00", "11:30"]
    assert all(s.available for s in result.slots)
    assert result.booked_appointment_ids == []


def test_booking_marks_only_that_slot_unavailable(db, doctor, patient):
    appointment = book(db, doctor, patient, time="10:00")

    result = availability_service.compute_availability(db, doctor.id, MONDAY)
    by_start = {s.as_dict()["start"]: s for s in result.slots}

    assert by_start["10:00"].available is False
    assert by_start["10:00"].appointment_id == appointment.id
    assert [k for k, s in by_start.items() if s.available] == ["09:00", "09:30", "10:30", "11:00", "11:30"]
    assert result.booked_appointment_ids == [appointment.id]


def test_availability_is_idempotent(db, doctor, patient):
    book(db, doctor, patient, time="09:30")
    first = availability_service.compute_availability(db, doctor.id, MONDAY).as_dict()
    second = availability_service.compute_availability(db, doctor.id, MONDAY).as_dict()
    assert first == second


def test_buffer_spaces_slots_apart(db):
    doctor = make_doctor(db, email="buffer@medconsult.io", appointment_buffer_time=15)
    result = availability_service.compute_availability(db, doctor.id, MONDAY)
    # 30 minute slots every 45 minutes; 11:15 would end at 11:45 and still fits
    assert starts(result) == ["09:00", "09:45", "10:30", "11:15"]


def test_day_without_template_is_empty(db, doctor):
    tuesday = date(2025, 1, 7)
    result = availability_service.compute_availability(db, doctor.id, tuesday)
    assert result.source == "none"
    assert result.slots == []


def test_override_replaces_template(db, doctor):
    crud.set_date_overrides(db, doctor.id, MONDAY, schemas.OverrideUpdate(slots=[
        {"start_time": "14:00", "end_time": "14:20"},
        {"start_time": "13:00", "end_time": "13:30", "is_booked": True},
    ]))

    result = availability_service.compute_availability(db, doctor.id, MONDAY)

    assert result.source == "override"
    assert [(s.as_dict()["start"], s.available) for s in result.slots] == [("13:00", False), ("14:00", True)]


def test_unavailable_doctor_has_no_slots(db, doctor):
    crud.set_doctor_status(db, doctor.id, schemas.DoctorStatusUpdate(is_available=False))
    result = availability_service.compute_availability(db, doctor.id, MONDAY)
    assert result.source == "unavailable"
    assert result.slots == []


def test_unavailable_until_only_blocks_earlier_days(db, doctor):
    crud.set_doctor_status(db, doctor.id, schemas.DoctorStatusUpdate(
        is_available=True,
        unavailable_until=datetime(2025, 1, 10, tzinfo=timezone.utc),
    ))
    assert availability_service.compute_availability(db, doctor.id, MONDAY).slots == []
    later_monday = date(2025, 1, 13)
    assert len(availability_service.compute_availability(db, doctor.id, later_monday).slots) == 6


def test_unknown_doctor_raises(db, patient):
    with pytest.raises(DoctorNotFound):
        availability_service.compute_availability(db, "0" * 32, MONDAY)
    # a patient id is not a doctor either
    with pytest.raises(DoctorNotFound):
        availability_service.compute_availability(db, patient.id, MONDAY)


def template(day=1, start="09:00", end="12:00", duration=30, max_patients=1):
    return models.ScheduleTemplate(day_of_week=day, start_time=start, end_time=end,
                                   appointment_duration=duration, max_patients=max_patients)


@pytest.mark.parametrize("buffer, templates", [
    (75, [template()]),
    (0, [template(start="12:00", end="09:00")]),
    (0, [template(duration=10)]),
    (0, [template(max_patients=0)]),
    (0, [template(day=2), template(day=2, start="14:00", end="16:00")]),
])
def test_validate_doctor_profile_rejects_broken_schedules(buffer, templates):
    profile = models.DoctorProfile(appointment_buffer_time=buffer, schedule=templates)
    with pytest.raises(ValidationFailed):
        crud.validate_doctor_profile(profile)


def test_validate_doctor_profile_accepts_a_weekly_schedule():
    profile = models.DoctorProfile(appointment_buffer_time=60, schedule=[template(day=1), template(day=3)])
    crud.validate_doctor_profile(profile)


def test_invalid_schedule_update_leaves_the_profile_untouched(db, doctor):
    update = schemas.ScheduleUpdate.model_construct(
        schedule=[schemas.ScheduleTemplateIn.model_construct(
            day_of_week=2, start_time="09:00", end_time="12:00", appointment_duration=30, max_patients=1,
        )],
        appointment_buffer_time=75,
        timezone=None,
    )
    with pytest.raises(ValidationFailed):
        crud.update_doctor_schedule(db, doctor.id, update)

    db.expire_all()
    profile = crud.get_doctor_profile(db, doctor.id)
    assert profile.appointment_buffer_time == 0
    assert [(t.day_of_week, t.start_time) for t in profile.schedule] == [(1, "09:00")]
