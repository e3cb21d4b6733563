# tests/test_users.py
from datetime import date, timedelta

import pytest
from pydantic import TypeAdapter, ValidationError

from app import crud, models, schemas
from app.exceptions import AccountLocked, DuplicateKey

from conftest import make_doctor, make_patient

user_create = TypeAdapter(schemas.UserCreate)


def test_patient_gets_medical_record_number(db):
    patient = make_patient(db)
    assert patient.role == models.UserRole.patient
    assert patient.medical_record_number == "MRN202500000001"


def test_doctor_gets_profile_and_schedule(db):
    doctor = make_doctor(db)
    profile = crud.get_doctor_profile(db, doctor.id)
    assert profile.timezone == "UTC"
    assert [(t.day_of_week, t.start_time, t.end_time) for t in profile.schedule] == [(1, "09:00", "12:00")]


def test_email_is_unique_case_insensitively(db):
    make_patient(db, email="dup@medconsult.io")
    with pytest.raises(DuplicateKey):
        make_patient(db, email="DUP@medconsult.io")


def test_medical_license_is_unique(db):
    make_doctor(db, email="one@medconsult.io", medical_license="LIC-1")
    with pytest.raises(DuplicateKey):
        make_doctor(db, email="two@medconsult.io", medical_license="LIC-1")


def test_role_selects_the_create_schema():
    payload = user_create.validate_python({
        "role": "nurse", "firstName": "Nia", "lastName": "Ward", "email": "Nia@MedConsult.io",
    })
    assert isinstance(payload, schemas.NurseCreate)
    assert payload.email == "nia@medconsult.io"


@pytest.mark.parametrize("body", [
    # patient without gender
    {"role": "patient", "firstName": "A", "lastName": "B", "email": "a@medconsult.io", "dateOfBirth": "1990-01-01"},
    # doctor with a negative fee
    {"role": "doctor", "firstName": "A", "lastName": "B", "email": "d@medconsult.io", "specialization": "GP",
     "medicalLicense": "L", "qualification": "MD", "department": "GP", "consultationFee": -1},
    # unknown role
    {"role": "janitor", "firstName": "A", "lastName": "B", "email": "j@medconsult.io"},
])
def test_invalid_users_are_rejected(body):
    with pytest.raises(ValidationError):
        user_create.validate_python(body)


def test_future_birth_date_is_rejected():
    with pytest.raises(ValidationError):
        schemas.PatientCreate(role="patient", first_name="A", last_name="B", email="f@medconsult.io",
                              date_of_birth=date.today() + timedelta(days=1), gender="male")


def test_one_schedule_template_per_weekday():
    with pytest.raises(ValidationError):
        schemas.ScheduleUpdate(schedule=[
            {"day_of_week": 1, "start_time": "09:00", "end_time": "12:00"},
            {"day_of_week": 1, "start_time": "13:00", "end_time": "15:00"},
        ])


def test_repeated_failures_lock_the_account(db, clock):
    patient = make_patient(db, email="locked@medconsult.io", password="correct-horse")

    for _ in range(4):
        assert crud.authenticate_user(db, patient.email, "wrong-password") is None
    assert crud.authenticate_user(db, patient.email, "wrong-password") is None

    with pytest.raises(AccountLocked):
        crud.authenticate_user(db, patient.email, "correct-horse")

    clock.advance(minutes=16)
    user = crud.authenticate_user(db, patient.email, "correct-horse")
    assert user.id == patient.id
    assert user.failed_login_attempts == 0
    assert user.last_login_at == clock.current


def test_success_resets_failure_count(db):
    patient = make_patient(db, email="reset@medconsult.io", password="correct-horse")
    crud.authenticate_user(db, patient.email, "nope-nope")
    crud.authenticate_user(db, patient.email, "nope-nope")
    crud.authenticate_user(db, patient.email, "correct-horse")
    db.expire_all()
    assert crud.get_user(db, patient.id).failed_login_attempts == 0
