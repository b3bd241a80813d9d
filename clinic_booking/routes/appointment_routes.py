from contextlib import contextmanager
from datetime import date, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_booking.auth.dependencies import get_current_user
from clinic_booking.core import config
from clinic_booking.database import ensure_appointment_schema, ensure_availability_schema, get_db
from clinic_booking.models.doctor import Doctor
from clinic_booking.models.user import ADMIN_ROLE, DOCTOR_ROLE, PATIENT_ROLE, User
from clinic_booking.scheduling import lifecycle, reservations, slots
from clinic_booking.scheduling.errors import BookingError, to_http_exception

router = APIRouter(tags=['appointments'])

MAX_REASON_LENGTH = 500
MAX_NOTES_LENGTH = 1000


def _normalize_text(value: str | None, max_length: int, label: str) -> str | None:
    if value is None:
        return None

    normalized = value.strip()
    if not normalized:
        return None

    if len(normalized) > max_length:
        raise ValueError(f'{label} must be {max_length} characters or fewer.')

    return normalized


def _to_local_naive(value: datetime) -> datetime:
    """Convert an offset-aware datetime to the naive local time appointments are stored in."""
    if value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


class ReserveSlotRequest(BaseModel):
    doctor_id: int
    start_time: datetime
    duration_minutes: int = config.DEFAULT_SLOT_DURATION_MINUTES
    patient_id: int | None = None
    reason: str | None = None

    @field_validator('start_time')
    @classmethod
    def validate_start_time(cls, value: datetime) -> datetime:
        return _to_local_naive(value)

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str | None) -> str | None:
        return _normalize_text(value, MAX_REASON_LENGTH, 'Reason')


class BookAppointmentRequest(ReserveSlotRequest):
    notes: str | None = None

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        return _normalize_text(value, MAX_NOTES_LENGTH, 'Notes')


class ConfirmReservationRequest(BaseModel):
    reason: str | None = None
    notes: str | None = None

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str | None) -> str | None:
        return _normalize_text(value, MAX_REASON_LENGTH, 'Reason')

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        return _normalize_text(value, MAX_NOTES_LENGTH, 'Notes')


class CancelAppointmentRequest(BaseModel):
    reason: str | None = None

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str | None) -> str | None:
        return _normalize_text(value, MAX_REASON_LENGTH, 'Cancellation reason')


class RescheduleAppointmentRequest(BaseModel):
    start_time: datetime
    reason: str | None = None

    @field_validator('start_time')
    @classmethod
    def validate_start_time(cls, value: datetime) -> datetime:
        return _to_local_naive(value)

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str | None) -> str | None:
        return _normalize_text(value, MAX_REASON_LENGTH, 'Reason')


class SlotResponse(BaseModel):
    doctor_id: int
    start_time: datetime
    end_time: datetime
    duration_minutes: int
    is_available: bool


class CalendarDayResponse(BaseModel):
    date: date
    total_slots: int
    available_slots: int
    unavailable_slots: int


class ReservationResponse(BaseModel):
    appointment_id: int
    expires_at: datetime


class AppointmentResponse(BaseModel):
    id: int
    patient_id: int
    doctor_id: int
    start_time: datetime
    end_time: datetime
    duration_minutes: int
    status: str
    is_reserved: bool
    reservation_expires_at: datetime | None = None
    reason: str | None = None
    notes: str | None = None
    cancellation_reason: str | None = None
    previous_start_time: datetime | None = None

    class Config:
        from_attributes = True


def ensure_database_ready() -> None:
    try:
        ensure_availability_schema()
        ensure_appointment_schema()
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail='Database unavailable. Verify DATABASE_URL and database credentials.',
        ) from exc


@contextmanager
def translate_booking_errors(db: Session):
    try:
        yield
    except BookingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail='Database unavailable. Verify DATABASE_URL and database credentials.',
        ) from exc


def patient_scope(current_user: User, requested_patient_id: int | None = None) -> int | None:
    """Patient id a caller may act for; None lets admins act on any patient's records."""
    if current_user.role == PATIENT_ROLE:
        if requested_patient_id is not None and requested_patient_id != current_user.id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail='Patients can only book appointments for themselves.',
            )
        return current_user.id

    if current_user.role == ADMIN_ROLE:
        return requested_patient_id

    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail='Only patients and admins can manage bookings.',
    )


def doctor_scope(current_user: User, db: Session) -> int | None:
    if current_user.role == ADMIN_ROLE:
        return None

    if current_user.role == DOCTOR_ROLE:
        doctor = db.query(Doctor).filter(Doctor.user_id == current_user.id).first()
        if doctor is not None:
            return doctor.id

    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail='Only the treating doctor or an admin can record attendance.',
    )


@router.get('/doctors/{doctor_id}/slots', response_model=list[SlotResponse])
def list_doctor_slots(
    doctor_id: int,
    start_date: date = Query(...),
    end_date: date | None = Query(default=None),
    include_unavailable: bool = Query(default=False),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    with translate_booking_errors(db):
        slot_sequence = slots.iter_slots(db, doctor_id, start_date, end_date)
        return [
            SlotResponse(
                doctor_id=slot.doctor_id,
                start_time=slot.start,
                end_time=slot.end,
                duration_minutes=slot.duration_minutes,
                is_available=slot.is_available,
            )
            for slot in slot_sequence
            if include_unavailable or slot.is_available
        ]


@router.get('/doctors/{doctor_id}/calendar', response_model=list[CalendarDayResponse])
def get_doctor_calendar(
    doctor_id: int,
    start_date: date = Query(...),
    end_date: date = Query(...),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    with translate_booking_errors(db):
        return [
            CalendarDayResponse(
                date=day.date,
                total_slots=day.total_slots,
                available_slots=day.available_slots,
                unavailable_slots=day.unavailable_slots,
            )
            for day in slots.calendar_view(db, doctor_id, start_date, end_date)
        ]


@router.post('/reservations', response_model=ReservationResponse, status_code=status.HTTP_201_CREATED)
def reserve_slot(
    data: ReserveSlotRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    patient_id = patient_scope(current_user, data.patient_id)
    if patient_id is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='patient_id is required.')

    ensure_database_ready()

    with translate_booking_errors(db):
        result = reservations.reserve_slot(
            db,
            doctor_id=data.doctor_id,
            start=data.start_time,
            duration_minutes=data.duration_minutes,
            patient_id=patient_id,
            reason=data.reason,
        )
        return ReservationResponse(appointment_id=result.appointment_id, expires_at=result.expires_at)


@router.post('/reservations/{appointment_id}/confirm', response_model=AppointmentResponse)
def confirm_reservation(
    appointment_id: int,
    data: ConfirmReservationRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    patient_id = patient_scope(current_user)
    ensure_database_ready()

    with translate_booking_errors(db):
        appointment = reservations.confirm_reservation(
            db,
            appointment_id,
            patient_id,
            reason=data.reason,
            notes=data.notes,
        )
        return AppointmentResponse.model_validate(appointment)


@router.delete('/reservations/{appointment_id}', status_code=status.HTTP_204_NO_CONTENT)
def release_reservation(
    appointment_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    patient_id = patient_scope(current_user)
    ensure_database_ready()

    with translate_booking_errors(db):
        reservations.release_reservation(db, appointment_id, patient_id)


@router.post('', response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def book_appointment(
    data: BookAppointmentRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    patient_id = patient_scope(current_user, data.patient_id)
    if patient_id is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='patient_id is required.')

    ensure_database_ready()

    with translate_booking_errors(db):
        appointment = reservations.book_appointment(
            db,
            doctor_id=data.doctor_id,
            start=data.start_time,
            duration_minutes=data.duration_minutes,
            patient_id=patient_id,
            reason=data.reason,
            notes=data.notes,
        )
        return AppointmentResponse.model_validate(appointment)


@router.get('/mine', response_model=list[AppointmentResponse])
def list_my_appointments(
    upcoming: bool = Query(default=False),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    if current_user.role != PATIENT_ROLE:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Only patients have their own appointments.')

    ensure_database_ready()

    with translate_booking_errors(db):
        appointments = reservations.list_appointments(db, patient_id=current_user.id, upcoming=upcoming)
        return [AppointmentResponse.model_validate(appointment) for appointment in appointments]


@router.get('/doctors/{doctor_id}', response_model=list[AppointmentResponse])
def list_doctor_appointments(
    doctor_id: int,
    upcoming: bool = Query(default=False),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    own_doctor_id = doctor_scope(current_user, db)
    if own_doctor_id is not None and own_doctor_id != doctor_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Doctors can only list their own appointments.')

    ensure_database_ready()

    with translate_booking_errors(db):
        if db.query(Doctor.id).filter(Doctor.id == doctor_id).first() is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Doctor not found.')

        appointments = reservations.list_appointments(db, doctor_id=doctor_id, upcoming=upcoming)
        return [AppointmentResponse.model_validate(appointment) for appointment in appointments]


@router.get('/{appointment_id}', response_model=AppointmentResponse)
def get_appointment(
    appointment_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    ensure_database_ready()

    with translate_booking_errors(db):
        appointment = reservations.get_appointment(db, appointment_id)

    if current_user.role == PATIENT_ROLE and appointment.patient_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Appointment not found.')
    if current_user.role == DOCTOR_ROLE and doctor_scope(current_user, db) != appointment.doctor_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Appointment not found.')

    return AppointmentResponse.model_validate(appointment)


@router.post('/{appointment_id}/cancel', response_model=AppointmentResponse)
def cancel_appointment(
    appointment_id: int,
    data: CancelAppointmentRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    patient_id = patient_scope(current_user)
    ensure_database_ready()

    with translate_booking_errors(db):
        appointment = lifecycle.cancel_appointment(
            db,
            appointment_id,
            actor_id=current_user.id,
            reason=data.reason,
            patient_id=patient_id,
        )
        return AppointmentResponse.model_validate(appointment)


@router.post('/{appointment_id}/reschedule', response_model=AppointmentResponse)
def reschedule_appointment(
    appointment_id: int,
    data: RescheduleAppointmentRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    patient_id = patient_scope(current_user)
    ensure_database_ready()

    with translate_booking_errors(db):
        appointment = lifecycle.reschedule_appointment(
            db,
            appointment_id,
            data.start_time,
            actor_id=current_user.id,
            reason=data.reason,
            patient_id=patient_id,
        )
        return AppointmentResponse.model_validate(appointment)


@router.post('/{appointment_id}/complete', response_model=AppointmentResponse)
def mark_completed(
    appointment_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    doctor_id = doctor_scope(current_user, db)
    ensure_database_ready()

    with translate_booking_errors(db):
        appointment = lifecycle.mark_completed(db, appointment_id, actor_id=current_user.id, doctor_id=doctor_id)
        return AppointmentResponse.model_validate(appointment)


@router.post('/{appointment_id}/no-show', response_model=AppointmentResponse)
def mark_no_show(
    appointment_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    doctor_id = doctor_scope(current_user, db)
    ensure_database_ready()

    with translate_booking_errors(db):
        appointment = lifecycle.mark_no_show(db, appointment_id, actor_id=current_user.id, doctor_id=doctor_id)
        return AppointmentResponse.model_validate(appointment)
