"""Cancel, reschedule and attendance transitions for booked appointments."""

import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from clinic_booking.models.appointment import Appointment
from clinic_booking.scheduling import events
from clinic_booking.scheduling.errors import Forbidden
from clinic_booking.scheduling.locks import booking_transaction, lock_appointment
from clinic_booking.scheduling.reservations import (
    get_appointment,
    require_open_window,
    require_patient_owner,
    validate_window,
)
from clinic_booking.scheduling.state_machine import (
    NOTIFICATION_EVENTS,
    BookingEvent,
    mark_cancelled,
    plan_transition,
)

logger = logging.getLogger(__name__)


def cancel_appointment(
    db: Session,
    appointment_id: int,
    actor_id: int | None = None,
    reason: str | None = None,
    patient_id: int | None = None,
    now: datetime | None = None,
) -> Appointment:
    now = now or datetime.now()
    doctor_id = get_appointment(db, appointment_id).doctor_id
    logger.info('Cancelling appointment with ID %s', appointment_id)

    with booking_transaction(db, doctor_id):
        appointment = lock_appointment(db, appointment_id)
        require_patient_owner(appointment, patient_id)
        plan_transition(appointment, BookingEvent.CANCEL, now)
        mark_cancelled(appointment, reason, now)
        appointment.updated_at = now

    logger.info('Appointment cancelled successfully with ID %s', appointment_id)
    events.emit_appointment_event(events.EVENT_CANCELLED, appointment)
    events.record_audit('appointment.cancelled', appointment_id, actor_id, {'reason': reason})
    return appointment


def reschedule_appointment(
    db: Session,
    appointment_id: int,
    new_start: datetime,
    actor_id: int | None = None,
    reason: str | None = None,
    patient_id: int | None = None,
    now: datetime | None = None,
) -> Appointment:
    now = now or datetime.now()
    new_start = new_start.replace(second=0, microsecond=0)
    doctor_id = get_appointment(db, appointment_id).doctor_id
    logger.info('Rescheduling appointment %s to new time: %s', appointment_id, new_start)

    with booking_transaction(db, doctor_id) as doctor:
        appointment = lock_appointment(db, appointment_id)
        require_patient_owner(appointment, patient_id)
        target = plan_transition(appointment, BookingEvent.RESCHEDULE, now)

        validate_window(new_start, appointment.duration_minutes, now)
        require_open_window(db, doctor, new_start, appointment.duration_minutes, now, exclude_appointment_id=appointment.id)

        appointment.previous_start_time = appointment.start_time
        appointment.start_time = new_start
        appointment.end_time = new_start + timedelta(minutes=appointment.duration_minutes)
        appointment.status = target.value
        if reason and reason.strip():
            appointment.reason = reason.strip()
        appointment.updated_at = now

    logger.info('Appointment rescheduled successfully with ID %s', appointment_id)
    events.emit_appointment_event(events.EVENT_RESCHEDULED, appointment)
    events.record_audit(
        'appointment.rescheduled',
        appointment_id,
        actor_id,
        {'previous_start': appointment.previous_start_time.isoformat(), 'start': new_start.isoformat()},
    )
    return appointment


def _record_attendance(
    db: Session,
    appointment_id: int,
    event: BookingEvent,
    actor_id: int | None,
    doctor_id: int | None,
    now: datetime | None,
) -> Appointment:
    now = now or datetime.now()
    appointment_doctor_id = get_appointment(db, appointment_id).doctor_id
    if doctor_id is not None and appointment_doctor_id != doctor_id:
        raise Forbidden('Only the treating doctor can record attendance for this appointment.')

    with booking_transaction(db, appointment_doctor_id):
        appointment = lock_appointment(db, appointment_id)
        target = plan_transition(appointment, event, now)
        appointment.status = target.value
        appointment.updated_at = now

    notification = NOTIFICATION_EVENTS[event]
    logger.info('Appointment %s marked %s', appointment_id, notification)
    events.emit_appointment_event(notification, appointment)
    events.record_audit(f'appointment.{event.value}', appointment_id, actor_id)
    return appointment


def mark_completed(
    db: Session,
    appointment_id: int,
    actor_id: int | None = None,
    doctor_id: int | None = None,
    now: datetime | None = None,
) -> Appointment:
    return _record_attendance(db, appointment_id, BookingEvent.COMPLETE, actor_id, doctor_id, now)


def mark_no_show(
    db: Session,
    appointment_id: int,
    actor_id: int | None = None,
    doctor_id: int | None = None,
    now: datetime | None = None,
) -> Appointment:
    return _record_attendance(db, appointment_id, BookingEvent.NO_SHOW, actor_id, doctor_id, now)
