from datetime import date, datetime, time, timedelta, timezone

import pytest
from fastapi import HTTPException
from pydantic import ValidationError

from clinic_booking.models.appointment import AppointmentStatus
from clinic_booking.routes.appointment_routes import (
    BookAppointmentRequest,
    CancelAppointmentRequest,
    ConfirmReservationRequest,
    ReserveSlotRequest,
    RescheduleAppointmentRequest,
    book_appointment,
    cancel_appointment,
    confirm_reservation,
    get_appointment,
    get_doctor_calendar,
    list_doctor_appointments,
    list_doctor_slots,
    list_my_appointments,
    mark_completed,
    release_reservation,
    reschedule_appointment,
    reserve_slot,
)


def _upcoming_monday() -> date:
    today = date.today()
    return today + timedelta(days=7 - today.weekday() + 7)


MONDAY = _upcoming_monday()
TEN = datetime.combine(MONDAY, time(10, 0))
ELEVEN = datetime.combine(MONDAY, time(11, 0))


@pytest.fixture(autouse=True)
def skip_schema_checks(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr('clinic_booking.routes.appointment_routes.ensure_database_ready', lambda: None)


def _reserve(db, clinic, user=None, start=TEN):
    return reserve_slot(ReserveSlotRequest(doctor_id=clinic.doctor.id, start_time=start), db=db, current_user=user or clinic.patient)


def test_reserve_slot_request_normalizes_reason() -> None:
    request = ReserveSlotRequest(doctor_id=1, start_time=TEN, reason='  Back pain  ')

    assert request.reason == 'Back pain'
    assert request.duration_minutes == 30


def test_book_request_rejects_long_notes() -> None:
    with pytest.raises(ValidationError):
        BookAppointmentRequest(doctor_id=1, start_time=TEN, notes='x' * 1001)


def test_list_doctor_slots_returns_open_slots(db, clinic) -> None:
    slots = list_doctor_slots(clinic.doctor.id, start_date=MONDAY, end_date=None, include_unavailable=False, db=db)

    assert [slot.start_time.time() for slot in slots] == [
        time(9, 0), time(9, 30), time(10, 0), time(10, 30), time(11, 0), time(11, 30),
    ]


def test_list_doctor_slots_unknown_doctor_is_not_found(db, clinic) -> None:
    with pytest.raises(HTTPException) as exception_info:
        list_doctor_slots(999, start_date=MONDAY, end_date=None, include_unavailable=False, db=db)

    assert exception_info.value.status_code == 404
    assert exception_info.value.detail['error'] == 'NotFound'


def test_reserve_then_slot_is_hidden_and_second_patient_gets_conflict(db, clinic) -> None:
    reservation = _reserve(db, clinic)
    assert reservation.expires_at > datetime.now()

    slots = list_doctor_slots(clinic.doctor.id, start_date=MONDAY, end_date=None, include_unavailable=False, db=db)
    assert TEN not in {slot.start_time for slot in slots}

    with pytest.raises(HTTPException) as exception_info:
        _reserve(db, clinic, user=clinic.other_patient)

    assert exception_info.value.status_code == 409
    assert exception_info.value.detail['error'] == 'SlotUnavailable'


def test_patient_cannot_reserve_for_someone_else(db, clinic) -> None:
    request = ReserveSlotRequest(doctor_id=clinic.doctor.id, start_time=TEN, patient_id=clinic.other_patient.id)

    with pytest.raises(HTTPException) as exception_info:
        reserve_slot(request, db=db, current_user=clinic.patient)

    assert exception_info.value.status_code == 403


def test_admin_must_name_the_patient(db, clinic) -> None:
    with pytest.raises(HTTPException) as exception_info:
        _reserve(db, clinic, user=clinic.admin)

    assert exception_info.value.status_code == 400


def test_confirm_by_owner_and_rejection_for_others(db, clinic) -> None:
    reservation = _reserve(db, clinic)

    with pytest.raises(HTTPException) as exception_info:
        confirm_reservation(reservation.appointment_id, ConfirmReservationRequest(), db=db, current_user=clinic.other_patient)
    assert exception_info.value.status_code == 403

    confirmed = confirm_reservation(
        reservation.appointment_id,
        ConfirmReservationRequest(notes=' Fasting '),
        db=db,
        current_user=clinic.patient,
    )
    assert confirmed.status == AppointmentStatus.SCHEDULED.value
    assert confirmed.notes == 'Fasting'


def test_release_reservation_frees_slot(db, clinic) -> None:
    reservation = _reserve(db, clinic)

    release_reservation(reservation.appointment_id, db=db, current_user=clinic.patient)

    _reserve(db, clinic, user=clinic.other_patient)


def test_book_cancel_and_reschedule_flow(db, clinic) -> None:
    booked = book_appointment(
        BookAppointmentRequest(doctor_id=clinic.doctor.id, start_time=TEN, reason='Checkup'),
        db=db,
        current_user=clinic.patient,
    )
    assert booked.status == AppointmentStatus.SCHEDULED.value

    moved = reschedule_appointment(
        booked.id,
        RescheduleAppointmentRequest(start_time=ELEVEN),
        db=db,
        current_user=clinic.patient,
    )
    assert moved.status == AppointmentStatus.RESCHEDULED.value
    assert moved.previous_start_time == TEN

    cancelled = cancel_appointment(moved.id, CancelAppointmentRequest(reason='Travel'), db=db, current_user=clinic.admin)
    assert cancelled.status == AppointmentStatus.CANCELLED.value
    assert cancelled.cancellation_reason == 'Travel'


def test_doctor_cannot_cancel_bookings(db, clinic) -> None:
    booked = book_appointment(
        BookAppointmentRequest(doctor_id=clinic.doctor.id, start_time=TEN),
        db=db,
        current_user=clinic.patient,
    )

    with pytest.raises(HTTPException) as exception_info:
        cancel_appointment(booked.id, CancelAppointmentRequest(), db=db, current_user=clinic.doctor_user)

    assert exception_info.value.status_code == 403


def test_complete_before_start_is_a_policy_violation(db, clinic) -> None:
    booked = book_appointment(
        BookAppointmentRequest(doctor_id=clinic.doctor.id, start_time=TEN),
        db=db,
        current_user=clinic.patient,
    )

    with pytest.raises(HTTPException) as exception_info:
        mark_completed(booked.id, db=db, current_user=clinic.doctor_user)

    assert exception_info.value.status_code == 422
    assert exception_info.value.detail['error'] == 'PolicyViolation'


def test_patient_cannot_record_attendance(db, clinic) -> None:
    with pytest.raises(HTTPException) as exception_info:
        mark_completed(1, db=db, current_user=clinic.patient)

    assert exception_info.value.status_code == 403


def test_get_appointment_hides_other_patients_records(db, clinic) -> None:
    booked = book_appointment(
        BookAppointmentRequest(doctor_id=clinic.doctor.id, start_time=TEN),
        db=db,
        current_user=clinic.patient,
    )

    assert get_appointment(booked.id, db=db, current_user=clinic.patient).id == booked.id
    assert get_appointment(booked.id, db=db, current_user=clinic.doctor_user).id == booked.id

    with pytest.raises(HTTPException) as exception_info:
        get_appointment(booked.id, db=db, current_user=clinic.other_patient)

    assert exception_info.value.status_code == 404


def test_calendar_counts_booked_slots(db, clinic) -> None:
    book_appointment(
        BookAppointmentRequest(doctor_id=clinic.doctor.id, start_time=TEN),
        db=db,
        current_user=clinic.patient,
    )

    days = get_doctor_calendar(clinic.doctor.id, start_date=MONDAY, end_date=MONDAY, db=db)

    assert [(day.total_slots, day.available_slots, day.unavailable_slots) for day in days] == [(6, 5, 1)]


def test_start_time_with_offset_is_converted_to_local_time(db, clinic) -> None:
    request = ReserveSlotRequest(doctor_id=clinic.doctor.id, start_time=TEN.astimezone(timezone.utc))

    assert request.start_time == TEN
    assert request.start_time.tzinfo is None

    reservation = reserve_slot(request, db=db, current_user=clinic.patient)
    confirmed = confirm_reservation(reservation.appointment_id, ConfirmReservationRequest(), db=db, current_user=clinic.patient)
    assert confirmed.start_time == TEN

    moved = reschedule_appointment(
        confirmed.id,
        RescheduleAppointmentRequest(start_time=ELEVEN.astimezone(timezone.utc)),
        db=db,
        current_user=clinic.patient,
    )
    assert moved.start_time == ELEVEN


def test_patient_lists_only_own_appointments(db, clinic) -> None:
    booked = book_appointment(
        BookAppointmentRequest(doctor_id=clinic.doctor.id, start_time=TEN),
        db=db,
        current_user=clinic.patient,
    )
    held = _reserve(db, clinic, user=clinic.other_patient, start=ELEVEN)

    mine = list_my_appointments(upcoming=False, db=db, current_user=clinic.patient)
    theirs = list_my_appointments(upcoming=True, db=db, current_user=clinic.other_patient)

    assert [appointment.id for appointment in mine] == [booked.id]
    assert [appointment.id for appointment in theirs] == [held.appointment_id]

    with pytest.raises(HTTPException) as exception_info:
        list_my_appointments(upcoming=False, db=db, current_user=clinic.admin)

    assert exception_info.value.status_code == 403


def test_doctor_lists_own_schedule(db, clinic) -> None:
    book_appointment(
        BookAppointmentRequest(doctor_id=clinic.doctor.id, start_time=TEN),
        db=db,
        current_user=clinic.patient,
    )
    _reserve(db, clinic, user=clinic.other_patient, start=ELEVEN)

    by_doctor = list_doctor_appointments(clinic.doctor.id, upcoming=True, db=db, current_user=clinic.doctor_user)
    by_admin = list_doctor_appointments(clinic.doctor.id, upcoming=False, db=db, current_user=clinic.admin)

    assert [appointment.start_time for appointment in by_doctor] == [TEN, ELEVEN]
    assert [appointment.start_time for appointment in by_admin] == [ELEVEN, TEN]


@pytest.mark.parametrize(('user_name', 'status_code'), [('doctor_user', 403), ('patient', 403), ('admin', 404)])
def test_listing_another_or_unknown_doctor_is_refused(db, clinic, user_name, status_code) -> None:
    with pytest.raises(HTTPException) as exception_info:
        list_doctor_appointments(999, upcoming=False, db=db, current_user=getattr(clinic, user_name))

    assert exception_info.value.status_code == status_code
