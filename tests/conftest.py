import os
from datetime import date, datetime, time
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')
os.environ.setdefault('SWEEPER_ENABLED', 'false')
os.environ.setdefault('JWT_SECRET_KEY', 'test-secret-key-with-at-least-32-bytes')

from clinic_booking.database import Base  # noqa: E402
from clinic_booking.models.appointment import Appointment  # noqa: E402
from clinic_booking.models.availability import DoctorAvailability  # noqa: E402
from clinic_booking.models.doctor import Doctor  # noqa: E402
from clinic_booking.models.user import ADMIN_ROLE, DOCTOR_ROLE, PATIENT_ROLE, User  # noqa: E402
from clinic_booking.scheduling import events  # noqa: E402

MONDAY = date(2026, 1, 5)
NOW = datetime(2026, 1, 1, 8, 0)

TABLES = [User.__table__, Doctor.__table__, DoctorAvailability.__table__, Appointment.__table__]


def seed_clinic(db) -> SimpleNamespace:
    patient = User(email='patient@example.com', full_name='Pat Ient', role=PATIENT_ROLE)
    other_patient = User(email='other@example.com', full_name='Other Patient', role=PATIENT_ROLE)
    admin = User(email='admin@example.com', full_name='Ad Min', role=ADMIN_ROLE)
    doctor_user = User(email='doctor@example.com', full_name='Dr Who', role=DOCTOR_ROLE)
    db.add_all([patient, other_patient, admin, doctor_user])
    db.flush()

    doctor = Doctor(user_id=doctor_user.id, full_name='Dr Who', specialization='General', is_available=True)
    db.add(doctor)
    db.flush()

    db.add(DoctorAvailability(
        doctor_id=doctor.id,
        day_of_week=0,
        start_time=time(9, 0),
        end_time=time(12, 0),
        is_available=True,
        slot_duration_minutes=30,
    ))
    db.commit()

    return SimpleNamespace(
        patient=patient,
        other_patient=other_patient,
        admin=admin,
        doctor_user=doctor_user,
        doctor=doctor,
    )


@pytest.fixture
def engine():
    engine = create_engine('sqlite:///:memory:')
    Base.metadata.create_all(bind=engine, tables=TABLES)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine, tables=list(reversed(TABLES)))
        engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def clinic(db):
    return seed_clinic(db)


@pytest.fixture(autouse=True)
def isolated_listeners():
    events.clear_listeners()
    yield
    events.clear_listeners()
