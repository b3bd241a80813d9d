"""
Conflict detection.

A proposed window conflicts with an existing appointment of the same doctor
when ``proposed.start < existing.end AND proposed.end > existing.start`` and
the existing appointment is active:

- Scheduled or Rescheduled
- Reserved with a hold that has not yet expired

Cancelled, Completed, NoShow and expired holds never conflict.
"""

from datetime import datetime, timedelta

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from clinic_booking.models.appointment import BOOKED_STATUSES, Appointment, AppointmentStatus


def active_appointment_filter(now: datetime):
    """SQL criterion matching appointments whose window blocks other bookings."""
    return or_(
        Appointment.status.in_(BOOKED_STATUSES),
        and_(
            Appointment.status == AppointmentStatus.RESERVED.value,
            or_(
                Appointment.reservation_expires_at.is_(None),
                Appointment.reservation_expires_at > now,
            ),
        ),
    )


def find_conflicts(
    db: Session,
    doctor_id: int,
    start: datetime,
    duration_minutes: int,
    exclude_appointment_id: int | None = None,
    now: datetime | None = None,
) -> set[int]:
    """
    Return the ids of active appointments overlapping the proposed window.

    `exclude_appointment_id` leaves one appointment out of the check, which
    lets a reschedule or confirmation ignore its own current window.
    """
    current_time = now or datetime.now()
    end = start + timedelta(minutes=duration_minutes)

    query = db.query(Appointment.id).filter(
        Appointment.doctor_id == doctor_id,
        Appointment.start_time < end,
        Appointment.end_time > start,
        active_appointment_filter(current_time),
    )
    if exclude_appointment_id is not None:
        query = query.filter(Appointment.id != exclude_appointment_id)

    return {appointment_id for (appointment_id,) in query.all()}


def has_conflict(
    db: Session,
    doctor_id: int,
    start: datetime,
    duration_minutes: int,
    exclude_appointment_id: int | None = None,
    now: datetime | None = None,
) -> bool:
    return bool(find_conflicts(db, doctor_id, start, duration_minutes, exclude_appointment_id, now))
