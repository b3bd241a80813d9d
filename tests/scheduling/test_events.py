from datetime import datetime
from types import SimpleNamespace

from clinic_booking.scheduling import events
from clinic_booking.scheduling.reservations import confirm_reservation, reserve_slot

NOW = datetime(2026, 1, 1, 8, 0)
MONDAY_TEN = datetime(2026, 1, 5, 10, 0)


def test_listeners_receive_each_committed_transition(db, clinic) -> None:
    notifications = []
    audits = []
    events.register_notification_listener(lambda event_type, appointment: notifications.append((event_type, appointment.status)))
    events.register_audit_listener(lambda action, entity_id, actor_id, details: audits.append((action, entity_id, actor_id)))

    result = reserve_slot(db, clinic.doctor.id, MONDAY_TEN, 30, clinic.patient.id, now=NOW)
    confirm_reservation(db, result.appointment_id, clinic.patient.id, now=NOW)

    assert notifications == [('Reserved', 'Reserved'), ('Confirmed', 'Scheduled')]
    assert [action for action, _, _ in audits] == ['appointment.reserved', 'appointment.confirmed']
    assert all(entity_id == result.appointment_id for _, entity_id, _ in audits)


def test_failing_listeners_do_not_affect_the_booking(db, clinic, caplog) -> None:
    def broken_notifier(event_type, appointment):
        raise ConnectionError('smtp down')

    def broken_auditor(action, entity_id, actor_id, details):
        raise ConnectionError('audit store down')

    events.register_notification_listener(broken_notifier)
    events.register_audit_listener(broken_auditor)

    result = reserve_slot(db, clinic.doctor.id, MONDAY_TEN, 30, clinic.patient.id, now=NOW)
    appointment = confirm_reservation(db, result.appointment_id, clinic.patient.id, now=NOW)

    assert appointment.status == 'Scheduled'
    assert 'Notification listener failed' in caplog.text
    assert 'Audit listener failed' in caplog.text


def test_listener_is_registered_once() -> None:
    calls = []

    def listener(event_type, appointment):
        calls.append(event_type)

    events.register_notification_listener(listener)
    events.register_notification_listener(listener)

    events.emit_appointment_event('Reserved', SimpleNamespace(id=1))

    assert calls == ['Reserved']
