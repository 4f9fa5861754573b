"""Shared fixtures: a file-backed SQLite database per test and a small clinic."""

import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("DB_LOG_SLOW_QUERIES", "false")

from datetime import date
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from clinic_booking.core.security import create_access_token
from clinic_booking.database import build_engine, get_db, init_db
from clinic_booking.models.schedule import DayOfWeek, WorkingHours
from clinic_booking.models.service import Service
from clinic_booking.models.user import User, UserRole
from clinic_booking.services.bookings import BookingService

TODAY = date(2030, 1, 1)
MONDAY = date(2030, 1, 7)
THURSDAY = date(2030, 1, 3)
SATURDAY = date(2030, 1, 12)

WEEKDAYS = [
    DayOfWeek.MONDAY,
    DayOfWeek.TUESDAY,
    DayOfWeek.WEDNESDAY,
    DayOfWeek.THURSDAY,
    DayOfWeek.FRIDAY,
]


@pytest.fixture
def engine(tmp_path):
    """Create a fresh SQLite database file with every table."""
    engine = build_engine(f"sqlite:///{tmp_path / 'clinic.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clinic(db):
    """One doctor working 09:00-17:00 on weekdays, five patients and two services."""
    doctor = User(email="house@clinic.test", full_name="Dr. House", role=UserRole.DOCTOR)
    idle_doctor = User(email="wilson@clinic.test", full_name="Dr. Wilson", role=UserRole.DOCTOR)
    patients = [
        User(email=f"patient{i}@clinic.test", full_name=f"Patient {i}", role=UserRole.PATIENT)
        for i in range(1, 6)
    ]
    receptionist = User(email="desk@clinic.test", full_name="Front Desk", role=UserRole.RECEPTIONIST)
    consult = Service(name="Consultation", duration_minutes=30, max_slots_per_hour=2)
    extended = Service(name="Extended visit", duration_minutes=45, max_slots_per_hour=1)

    db.add_all([doctor, idle_doctor, *patients, receptionist, consult, extended])
    db.flush()
    for day in WEEKDAYS:
        db.add(WorkingHours(doctor_id=doctor.id, day_of_week=day, start_time="09:00", end_time="17:00"))
    db.commit()

    return SimpleNamespace(
        doctor=doctor,
        idle_doctor=idle_doctor,
        patients=patients,
        receptionist=receptionist,
        consult=consult,
        extended=extended,
    )


@pytest.fixture
def service(db):
    return BookingService(db, today=TODAY)


@pytest.fixture
def book(service, clinic):
    """Create a booking for patient ``index`` (0-based) with sensible defaults."""

    def _book(index, start_time="10:00", booking_date=MONDAY, catalog_service=None, notes=None):
        catalog_service = catalog_service or clinic.consult
        return service.create_booking(
            patient_id=clinic.patients[index].id,
            doctor_id=clinic.doctor.id,
            service_id=catalog_service.id,
            booking_date=booking_date,
            start_time=start_time,
            notes=notes,
        )

    return _book


@pytest.fixture
def client(session_factory):
    """TestClient wired to the per-test database."""
    from clinic_booking.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth_headers(user) -> dict:
    token = create_access_token({"sub": str(user.id), "role": user.role.value})
    return {"Authorization": f"Bearer {token}"}
