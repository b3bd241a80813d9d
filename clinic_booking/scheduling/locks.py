"""Per-doctor write serialization.

Every write that creates or changes an appointment runs inside
`booking_transaction`, which holds an in-process mutex for the doctor and a
row lock on the doctor record (``SELECT ... FOR UPDATE``; SQLite ignores it)
from before the conflict check until after the commit.
"""

import logging
from contextlib import contextmanager
from threading import Lock
from typing import Iterator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_booking.core import config
from clinic_booking.models.appointment import Appointment
from clinic_booking.models.doctor import Doctor
from clinic_booking.scheduling.errors import NotFound, StoreUnavailable

logger = logging.getLogger(__name__)

_registry_lock = Lock()
_doctor_locks: dict[int, Lock] = {}


def get_doctor_lock(doctor_id: int) -> Lock:
    with _registry_lock:
        lock = _doctor_locks.get(doctor_id)
        if lock is None:
            lock = Lock()
            _doctor_locks[doctor_id] = lock
        return lock


def lock_appointment(db: Session, appointment_id: int) -> Appointment:
    """Reload an appointment with a row lock, discarding any stale in-session state."""
    appointment = (
        db.query(Appointment)
        .filter(Appointment.id == appointment_id)
        .populate_existing()
        .with_for_update()
        .first()
    )
    if appointment is None:
        raise NotFound(f'Appointment {appointment_id} not found.')
    return appointment


@contextmanager
def booking_transaction(db: Session, doctor_id: int, timeout: float | None = None) -> Iterator[Doctor]:
    if db.query(Doctor.id).filter(Doctor.id == doctor_id).first() is None:
        raise NotFound(f'Doctor {doctor_id} not found.')

    lock = get_doctor_lock(doctor_id)
    wait_seconds = config.LOCK_TIMEOUT_SECONDS if timeout is None else timeout

    if not lock.acquire(timeout=wait_seconds):
        logger.warning('Timed out after %.1fs waiting for schedule lock of doctor %s', wait_seconds, doctor_id)
        raise StoreUnavailable('The schedule is busy. Please retry shortly.')

    try:
        try:
            doctor = db.query(Doctor).filter(Doctor.id == doctor_id).with_for_update().first()
            if doctor is None:
                raise NotFound(f'Doctor {doctor_id} not found.')

            yield doctor

            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise StoreUnavailable('Database unavailable. Please retry.') from exc
        except Exception:
            db.rollback()
            raise
    finally:
        lock.release()
