"""Best-effort hooks for the notification and audit collaborators.

Listeners run after the state change has been committed. A listener that
raises is logged and skipped; it never changes the outcome of the booking
operation that triggered it.
"""

import logging
from typing import Any, Callable

from clinic_booking.models.appointment import Appointment

logger = logging.getLogger(__name__)

EVENT_RESERVED = 'Reserved'
EVENT_CONFIRMED = 'Confirmed'
EVENT_CANCELLED = 'Cancelled'
EVENT_RESCHEDULED = 'Rescheduled'
EVENT_COMPLETED = 'Completed'
EVENT_NO_SHOW = 'NoShow'
EVENT_EXPIRED = 'Expired'

NotificationListener = Callable[[str, Appointment], None]
AuditListener = Callable[[str, int, int | None, dict[str, Any]], None]

_notification_listeners: list[NotificationListener] = []
_audit_listeners: list[AuditListener] = []


def register_notification_listener(listener: NotificationListener) -> None:
    if listener not in _notification_listeners:
        _notification_listeners.append(listener)


def register_audit_listener(listener: AuditListener) -> None:
    if listener not in _audit_listeners:
        _audit_listeners.append(listener)


def clear_listeners() -> None:
    _notification_listeners.clear()
    _audit_listeners.clear()


def emit_appointment_event(event_type: str, appointment: Appointment) -> None:
    for listener in list(_notification_listeners):
        try:
            listener(event_type, appointment)
        except Exception:
            logger.warning(
                'Notification listener failed for %s event on appointment %s',
                event_type,
                appointment.id,
                exc_info=True,
            )


def record_audit(action: str, entity_id: int, actor_id: int | None, details: dict[str, Any] | None = None) -> None:
    for listener in list(_audit_listeners):
        try:
            listener(action, entity_id, actor_id, details or {})
        except Exception:
            logger.warning('Audit listener failed for %s on appointment %s', action, entity_id, exc_info=True)


def log_notification(event_type: str, appointment: Appointment) -> None:
    logger.info(
        'Appointment %s %s (doctor=%s patient=%s start=%s)',
        appointment.id,
        event_type,
        appointment.doctor_id,
        appointment.patient_id,
        appointment.start_time,
    )
