from datetime import datetime
from threading import Barrier, Thread

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from clinic_booking.database import Base
from clinic_booking.models.appointment import Appointment, AppointmentStatus
from clinic_booking.scheduling.errors import SlotUnavailable
from clinic_booking.scheduling.reservations import reserve_slot

from conftest import TABLES, seed_clinic

NOW = datetime(2026, 1, 1, 8, 0)
MONDAY_TEN = datetime(2026, 1, 5, 10, 0)
CONTENDERS = 6


@pytest.fixture
def file_session_factory(tmp_path):
    engine = create_engine(
        f'sqlite:///{tmp_path / "booking.db"}',
        connect_args={'check_same_thread': False, 'timeout': 30},
    )
    Base.metadata.create_all(bind=engine, tables=TABLES)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    finally:
        engine.dispose()


def test_concurrent_reservations_for_one_slot_admit_exactly_one(file_session_factory) -> None:
    seed_db = file_session_factory()
    clinic = seed_clinic(seed_db)
    doctor_id, patient_id = clinic.doctor.id, clinic.patient.id
    seed_db.close()

    barrier = Barrier(CONTENDERS)
    outcomes: list[object] = []

    def contend() -> None:
        session = file_session_factory()
        try:
            barrier.wait()
            outcomes.append(reserve_slot(session, doctor_id, MONDAY_TEN, 30, patient_id, now=NOW))
        except SlotUnavailable as exc:
            outcomes.append(exc)
        finally:
            session.close()

    threads = [Thread(target=contend) for _ in range(CONTENDERS)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    successes = [outcome for outcome in outcomes if not isinstance(outcome, SlotUnavailable)]
    assert len(outcomes) == CONTENDERS
    assert len(successes) == 1

    check_db = file_session_factory()
    try:
        holds = check_db.query(Appointment).filter(Appointment.status == AppointmentStatus.RESERVED.value).all()
        assert len(holds) == 1
    finally:
        check_db.close()
