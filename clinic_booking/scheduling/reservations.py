"""Temporary holds on a doctor's slot and their confirmation."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from clinic_booking.core import config
from clinic_booking.models.appointment import (
    EXPIRED_REASON,
    RELEASED_REASON,
    Appointment,
    AppointmentStatus,
)
from clinic_booking.models.doctor import Doctor
from clinic_booking.models.user import User
from clinic_booking.scheduling import events
from clinic_booking.scheduling.errors import (
    Forbidden,
    InvalidRequest,
    NotFound,
    PolicyViolation,
    ReservationExpired,
    SlotUnavailable,
)
from clinic_booking.scheduling.locks import booking_transaction, lock_appointment
from clinic_booking.scheduling.overlap import active_appointment_filter, find_conflicts
from clinic_booking.scheduling.slots import fits_schedule
from clinic_booking.scheduling.state_machine import BookingEvent, mark_cancelled, plan_transition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReservationResult:
    appointment_id: int
    expires_at: datetime


def get_appointment(db: Session, appointment_id: int) -> Appointment:
    appointment = db.query(Appointment).filter(Appointment.id == appointment_id).first()
    if appointment is None:
        raise NotFound(f'Appointment {appointment_id} not found.')
    return appointment


def list_appointments(
    db: Session,
    patient_id: int | None = None,
    doctor_id: int | None = None,
    upcoming: bool = False,
    now: datetime | None = None,
) -> list[Appointment]:
    """
    Appointments of a patient and/or doctor.

    With `upcoming`, only future appointments that still hold their window
    (booked, or reserved with a live hold) are returned, soonest first.
    Otherwise the full history is returned, newest first.
    """
    query = db.query(Appointment)
    if patient_id is not None:
        query = query.filter(Appointment.patient_id == patient_id)
    if doctor_id is not None:
        query = query.filter(Appointment.doctor_id == doctor_id)

    if upcoming:
        current_time = now or datetime.now()
        return query.filter(
            Appointment.start_time > current_time,
            active_appointment_filter(current_time),
        ).order_by(Appointment.start_time.asc(), Appointment.id.asc()).all()

    return query.order_by(Appointment.start_time.desc(), Appointment.id.desc()).all()


def require_patient_owner(appointment: Appointment, patient_id: int | None) -> None:
    if patient_id is not None and appointment.patient_id != patient_id:
        raise Forbidden('Only the patient who booked this appointment can change it.')


def validate_window(start: datetime, duration_minutes: int, now: datetime) -> None:
    if not config.MIN_APPOINTMENT_MINUTES <= duration_minutes <= config.MAX_APPOINTMENT_MINUTES:
        raise InvalidRequest(
            f'Appointment duration must be between {config.MIN_APPOINTMENT_MINUTES} '
            f'and {config.MAX_APPOINTMENT_MINUTES} minutes.'
        )
    if start <= now:
        raise InvalidRequest('Appointments must be scheduled in the future.')


def require_open_window(
    db: Session,
    doctor: Doctor,
    start: datetime,
    duration_minutes: int,
    now: datetime,
    exclude_appointment_id: int | None = None,
) -> None:
    """Raise unless the window is on the doctor's schedule and free. Call under `booking_transaction`."""
    if not doctor.is_available:
        raise PolicyViolation('This doctor is not accepting appointments.')

    if not fits_schedule(db, doctor.id, start, duration_minutes):
        raise SlotUnavailable('The selected time is not an open slot on this doctor\'s schedule.')

    conflicts = find_conflicts(db, doctor.id, start, duration_minutes, exclude_appointment_id, now)
    if conflicts:
        logger.info('Window %s (+%s min) for doctor %s conflicts with %s', start, duration_minutes, doctor.id, sorted(conflicts))
        raise SlotUnavailable(
            'The selected time slot conflicts with an existing appointment. Please choose a different time.'
        )


def _require_patient(db: Session, patient_id: int) -> None:
    if db.query(User.id).filter(User.id == patient_id).first() is None:
        raise NotFound(f'Patient {patient_id} not found.')


def _create_appointment(
    db: Session,
    doctor_id: int,
    patient_id: int,
    start: datetime,
    duration_minutes: int,
    reason: str | None,
    notes: str | None,
    now: datetime,
    expires_at: datetime | None = None,
) -> Appointment:
    appointment = Appointment(
        doctor_id=doctor_id,
        patient_id=patient_id,
        start_time=start,
        end_time=start + timedelta(minutes=duration_minutes),
        duration_minutes=duration_minutes,
        status=(AppointmentStatus.RESERVED if expires_at else AppointmentStatus.SCHEDULED).value,
        is_reserved=expires_at is not None,
        reservation_expires_at=expires_at,
        reason=reason,
        notes=notes,
        created_at=now,
        updated_at=now,
    )
    db.add(appointment)
    db.flush()
    return appointment


def reserve_slot(
    db: Session,
    doctor_id: int,
    start: datetime,
    duration_minutes: int,
    patient_id: int,
    hold_seconds: int | None = None,
    reason: str | None = None,
    now: datetime | None = None,
) -> ReservationResult:
    now = now or datetime.now()
    start = start.replace(second=0, microsecond=0)
    hold_seconds = config.RESERVATION_HOLD_SECONDS if hold_seconds is None else hold_seconds

    if hold_seconds <= 0:
        raise InvalidRequest('Hold duration must be positive.')
    validate_window(start, duration_minutes, now)
    _require_patient(db, patient_id)

    logger.info('Reserving time slot for patient %s with doctor %s at %s', patient_id, doctor_id, start)
    expires_at = now + timedelta(seconds=hold_seconds)

    with booking_transaction(db, doctor_id) as doctor:
        require_open_window(db, doctor, start, duration_minutes, now)
        appointment = _create_appointment(
            db, doctor_id, patient_id, start, duration_minutes, reason, None, now, expires_at=expires_at,
        )

    logger.info('Time slot reserved with ID %s until %s', appointment.id, expires_at)
    events.emit_appointment_event(events.EVENT_RESERVED, appointment)
    events.record_audit('appointment.reserved', appointment.id, patient_id, {'start': start.isoformat()})

    return ReservationResult(appointment_id=appointment.id, expires_at=expires_at)


def confirm_reservation(
    db: Session,
    appointment_id: int,
    patient_id: int | None,
    reason: str | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> Appointment:
    now = now or datetime.now()
    doctor_id = get_appointment(db, appointment_id).doctor_id

    with booking_transaction(db, doctor_id):
        appointment = lock_appointment(db, appointment_id)
        require_patient_owner(appointment, patient_id)

        swept = (
            appointment.status == AppointmentStatus.CANCELLED.value
            and appointment.cancellation_reason == EXPIRED_REASON
        )
        if swept or (appointment.status == AppointmentStatus.RESERVED.value and appointment.hold_expired(now)):
            raise ReservationExpired('Reservation has expired. Please select a new time slot.')

        target = plan_transition(appointment, BookingEvent.CONFIRM, now)

        if find_conflicts(db, doctor_id, appointment.start_time, appointment.duration_minutes, appointment.id, now):
            raise SlotUnavailable('The reserved time slot is no longer available. Please choose a different time.')

        appointment.status = target.value
        appointment.is_reserved = False
        appointment.reservation_expires_at = None
        if reason is not None:
            appointment.reason = reason
        if notes is not None:
            appointment.notes = notes
        appointment.updated_at = now

    logger.info('Reservation %s confirmed', appointment_id)
    events.emit_appointment_event(events.EVENT_CONFIRMED, appointment)
    events.record_audit('appointment.confirmed', appointment_id, patient_id)
    return appointment


def release_reservation(
    db: Session,
    appointment_id: int,
    patient_id: int | None = None,
    now: datetime | None = None,
) -> Appointment:
    now = now or datetime.now()
    doctor_id = get_appointment(db, appointment_id).doctor_id

    with booking_transaction(db, doctor_id):
        appointment = lock_appointment(db, appointment_id)
        require_patient_owner(appointment, patient_id)
        plan_transition(appointment, BookingEvent.RELEASE, now)
        mark_cancelled(appointment, RELEASED_REASON, now)
        appointment.updated_at = now

    logger.info('Reservation %s released', appointment_id)
    events.emit_appointment_event(events.EVENT_CANCELLED, appointment)
    events.record_audit('appointment.released', appointment_id, patient_id)
    return appointment


def book_appointment(
    db: Session,
    doctor_id: int,
    start: datetime,
    duration_minutes: int,
    patient_id: int,
    reason: str | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> Appointment:
    """Book a slot in one step, skipping the hold."""
    now = now or datetime.now()
    start = start.replace(second=0, microsecond=0)

    validate_window(start, duration_minutes, now)
    _require_patient(db, patient_id)

    logger.info('Booking time slot for patient %s with doctor %s at %s', patient_id, doctor_id, start)

    with booking_transaction(db, doctor_id) as doctor:
        require_open_window(db, doctor, start, duration_minutes, now)
        appointment = _create_appointment(db, doctor_id, patient_id, start, duration_minutes, reason, notes, now)

    logger.info('Appointment booked with ID %s', appointment.id)
    events.emit_appointment_event(events.EVENT_CONFIRMED, appointment)
    events.record_audit('appointment.booked', appointment.id, patient_id, {'start': start.isoformat()})
    return appointment
