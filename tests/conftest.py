# tests/conftest.py
import os
import tempfile
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

# Settings are cached on first import, so the environment must be in place first
_DB_DIR = tempfile.mkdtemp(prefix="medconsult-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["SECRET_KEY"] = "test-secret-key-that-is-long-enough-0123456789"
os.environ["ENVIRONMENT"] = "testing"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["LOG_FORMAT"] = "console"
os.environ.pop("SENDGRID_API_KEY", None)
os.environ.pop("TWILIO_ACCOUNT_SID", None)

from fastapi.testclient import TestClient  # noqa: E402

from app import crud, models, schemas, security  # noqa: E402
from app.compliance_logger import AuditContext  # noqa: E402
from app.core.clock import FrozenClock, set_clock  # noqa: E402
from app.database import Base, SessionLocal, engine  # noqa: E402
from app.main import app  # noqa: E402

# Wednesday; the doctor's template day (Monday 2025-01-06) is five days out
START = datetime(2025, 1, 1, 8, 0, tzinfo=timezone.utc)
MONDAY = date(2025, 1, 6)


@pytest.fixture(autouse=True)
def fresh_schema():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clock():
    frozen = FrozenClock(START)
    set_clock(frozen)
    yield frozen
    set_clock(None)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def ctx():
    return AuditContext(user_role="admin", request_id="test-request")


def auth_headers(user: models.User) -> dict:
    token = security.create_access_token({"sub": user.id, "role": user.role.value})
    return {"Authorization": f"Bearer {token}"}


def make_doctor(db, email="house@medconsult.io", fee=Decimal("500.00"), **overrides) -> models.User:
    payload = dict(
        role="doctor",
        first_name="Gregory",
        last_name="House",
        email=email,
        phone_number="+15550001000",
        specialization="Diagnostics",
        medical_license=f"LIC-{email.split('@')[0]}",
        qualification="MD",
        department="Internal Medicine",
        consultation_fee=fee,
        appointment_buffer_time=0,
        timezone="UTC",
        schedule=[{"day_of_week": 1, "start_time": "09:00", "end_time": "12:00", "appointment_duration": 30}],
    )
    payload.update(overrides)
    return crud.create_user(db, schemas.DoctorCreate(**payload))


def make_patient(db, email="pat@medconsult.io", **overrides) -> models.User:
    payload = dict(
        role="patient",
        first_name="Pat",
        last_name="Lee",
        email=email,
        phone_number="+15550002000",
        date_of_birth=date(1990, 5, 17),
        gender="female",
    )
    payload.update(overrides)
    return crud.create_user(db, schemas.PatientCreate(**payload))


def make_admin(db, email="admin@medconsult.io") -> models.User:
    return crud.create_user(db, schemas.AdminCreate(
        role="admin", first_name="Ada", last_name="Admin", email=email,
    ))


def book(db, doctor, patient, time="10:00", day=MONDAY, ctx=None, **extra) -> models.Appointment:
    from app.services import appointment_service

    payload = schemas.AppointmentCreate(
        patient_id=patient.id,
        doctor_id=doctor.id,
        appointment_date=day,
        appointment_time=time,
        **extra,
    )
    return appointment_service.create_appointment(db, payload, patient, ctx)


@pytest.fixture
def doctor(db):
    return make_doctor(db)


@pytest.fixture
def patient(db):
    return make_patient(db)


@pytest.fixture
def admin(db):
    return make_admin(db)
