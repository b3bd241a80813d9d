"""
Background tasks.

- sweep_expired_reservations: cancels Reserved appointments whose hold has
  lapsed, freeing their slot.
- ExpirySweeper: runs the sweep on a fixed interval in a daemon thread.
"""

import logging
from datetime import datetime
from threading import Event, Thread
from typing import Callable

from sqlalchemy.orm import Session

from clinic_booking.core import config
from clinic_booking.database import SessionLocal
from clinic_booking.models.appointment import EXPIRED_REASON, Appointment, AppointmentStatus
from clinic_booking.scheduling import events
from clinic_booking.scheduling.locks import booking_transaction, lock_appointment
from clinic_booking.scheduling.state_machine import BookingEvent, mark_cancelled, plan_transition

logger = logging.getLogger(__name__)


def _expire_one(db: Session, appointment_id: int, doctor_id: int, now: datetime) -> bool:
    with booking_transaction(db, doctor_id):
        appointment = lock_appointment(db, appointment_id)

        # Confirmed or released while waiting for the lock.
        if appointment.status != AppointmentStatus.RESERVED.value or not appointment.hold_expired(now):
            return False

        plan_transition(appointment, BookingEvent.EXPIRE, now)
        mark_cancelled(appointment, EXPIRED_REASON, now)
        appointment.updated_at = now

    events.emit_appointment_event(events.EVENT_EXPIRED, appointment)
    events.record_audit('appointment.expired', appointment_id, None)
    return True


def sweep_expired_reservations(
    session_factory: Callable[[], Session] = SessionLocal,
    now: datetime | None = None,
    batch_size: int | None = None,
) -> int:
    """
    Cancel every Reserved appointment whose hold expired at or before `now`.

    Rows are read in id order in batches of `batch_size` and each one is
    re-checked under its doctor's lock, so a concurrent confirmation wins.
    A row that fails is logged and skipped. Returns the number cancelled;
    a second run over the same data returns 0.
    """
    current_time = now or datetime.now()
    batch_size = batch_size or config.SWEEP_BATCH_SIZE
    expired_count = 0
    last_id = 0

    db = session_factory()
    try:
        while True:
            batch = db.query(Appointment.id, Appointment.doctor_id).filter(
                Appointment.id > last_id,
                Appointment.status == AppointmentStatus.RESERVED.value,
                Appointment.is_reserved.is_(True),
                Appointment.reservation_expires_at.is_not(None),
                Appointment.reservation_expires_at <= current_time,
            ).order_by(Appointment.id.asc()).limit(batch_size).all()
            db.rollback()

            if not batch:
                break

            for appointment_id, doctor_id in batch:
                last_id = appointment_id
                try:
                    if _expire_one(db, appointment_id, doctor_id, current_time):
                        expired_count += 1
                        logger.info('Expired reservation cancelled: %s (doctor %s)', appointment_id, doctor_id)
                except Exception:
                    logger.exception('Error cancelling expired reservation %s', appointment_id)
    finally:
        db.close()

    if expired_count > 0:
        logger.info('Cleaned up %s expired reservations', expired_count)

    return expired_count


class ExpirySweeper:
    """Periodically runs `sweep_expired_reservations` off the request threads."""

    def __init__(
        self,
        interval_seconds: float | None = None,
        session_factory: Callable[[], Session] = SessionLocal,
        batch_size: int | None = None,
    ):
        self.interval_seconds = interval_seconds or config.SWEEP_INTERVAL_SECONDS
        self.session_factory = session_factory
        self.batch_size = batch_size
        self._stop_event = Event()
        self._thread: Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> int:
        try:
            return sweep_expired_reservations(self.session_factory, batch_size=self.batch_size)
        except Exception:
            logger.exception('Expired reservation sweep failed')
            return 0

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            self.run_once()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = Thread(target=self._run, name='reservation-expiry-sweeper', daemon=True)
        self._thread.start()
        logger.info('Reservation expiry sweeper started (every %ss)', self.interval_seconds)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info('Reservation expiry sweeper stopped')
