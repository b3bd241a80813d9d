"""
Appointment lifecycle.

    Reserved ──confirm──▶ Scheduled ──reschedule──▶ Rescheduled
       │                    │  │  │                   (accepts the same
       │ release/expire     │  │  └─no_show─▶ NoShow   events as Scheduled)
       ▼                    │  └─complete──▶ Completed
    Cancelled ◀──cancel─────┘

Completed, Cancelled and NoShow are terminal. Transitions are validated
before any field is changed, so a rejected event leaves the record as it was.
"""

from datetime import datetime, timedelta
from enum import Enum

from clinic_booking.core import config
from clinic_booking.models.appointment import Appointment, AppointmentStatus
from clinic_booking.scheduling import events
from clinic_booking.scheduling.errors import InvalidStateTransition, PolicyViolation


class BookingEvent(str, Enum):
    CONFIRM = 'confirm'
    RELEASE = 'release'
    EXPIRE = 'expire'
    CANCEL = 'cancel'
    RESCHEDULE = 'reschedule'
    COMPLETE = 'complete'
    NO_SHOW = 'no_show'


_BOOKED_TRANSITIONS = {
    BookingEvent.CANCEL: AppointmentStatus.CANCELLED,
    BookingEvent.RESCHEDULE: AppointmentStatus.RESCHEDULED,
    BookingEvent.COMPLETE: AppointmentStatus.COMPLETED,
    BookingEvent.NO_SHOW: AppointmentStatus.NO_SHOW,
}

TRANSITIONS: dict[tuple[AppointmentStatus, BookingEvent], AppointmentStatus] = {
    (AppointmentStatus.RESERVED, BookingEvent.CONFIRM): AppointmentStatus.SCHEDULED,
    (AppointmentStatus.RESERVED, BookingEvent.RELEASE): AppointmentStatus.CANCELLED,
    (AppointmentStatus.RESERVED, BookingEvent.EXPIRE): AppointmentStatus.CANCELLED,
    **{(AppointmentStatus.SCHEDULED, event): target for event, target in _BOOKED_TRANSITIONS.items()},
    **{(AppointmentStatus.RESCHEDULED, event): target for event, target in _BOOKED_TRANSITIONS.items()},
}

TERMINAL_STATUSES = frozenset({
    AppointmentStatus.COMPLETED,
    AppointmentStatus.CANCELLED,
    AppointmentStatus.NO_SHOW,
})

NOTIFICATION_EVENTS = {
    BookingEvent.CONFIRM: events.EVENT_CONFIRMED,
    BookingEvent.RELEASE: events.EVENT_CANCELLED,
    BookingEvent.EXPIRE: events.EVENT_EXPIRED,
    BookingEvent.CANCEL: events.EVENT_CANCELLED,
    BookingEvent.RESCHEDULE: events.EVENT_RESCHEDULED,
    BookingEvent.COMPLETE: events.EVENT_COMPLETED,
    BookingEvent.NO_SHOW: events.EVENT_NO_SHOW,
}


def next_status(current: str, event: BookingEvent) -> AppointmentStatus:
    try:
        current_status = AppointmentStatus(current)
    except ValueError as exc:
        raise InvalidStateTransition(f'Unknown appointment status {current!r}.') from exc

    target = TRANSITIONS.get((current_status, event))
    if target is None:
        raise InvalidStateTransition(
            f'Cannot {event.value.replace("_", " ")} an appointment that is {current_status.value}.'
        )
    return target


def check_policy(
    appointment: Appointment,
    event: BookingEvent,
    now: datetime,
    cancellation_window_hours: int | None = None,
) -> None:
    if event in (BookingEvent.CANCEL, BookingEvent.RESCHEDULE):
        window_hours = config.CANCELLATION_WINDOW_HOURS if cancellation_window_hours is None else cancellation_window_hours
        if now > appointment.start_time - timedelta(hours=window_hours):
            raise PolicyViolation(
                f'Appointments can only be cancelled or rescheduled at least {window_hours} hours in advance.'
            )
    elif event in (BookingEvent.COMPLETE, BookingEvent.NO_SHOW):
        if now < appointment.start_time:
            raise PolicyViolation('Attendance can only be recorded after the appointment has started.')


def mark_cancelled(appointment: Appointment, reason: str | None, now: datetime) -> None:
    appointment.status = AppointmentStatus.CANCELLED.value
    appointment.is_reserved = False
    appointment.reservation_expires_at = None
    appointment.cancellation_reason = reason
    appointment.cancelled_at = now


def plan_transition(appointment: Appointment, event: BookingEvent, now: datetime) -> AppointmentStatus:
    """Validate `event` against the current state and time policies and return the target status."""
    target = next_status(appointment.status, event)
    check_policy(appointment, event, now)
    return target
