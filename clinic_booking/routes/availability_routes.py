from datetime import date, datetime, time

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator, model_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_booking.auth.dependencies import get_current_user
from clinic_booking.core import config
from clinic_booking.database import get_db
from clinic_booking.models.availability import DoctorAvailability
from clinic_booking.models.doctor import Doctor
from clinic_booking.models.user import ADMIN_ROLE, DOCTOR_ROLE, User
from clinic_booking.routes.appointment_routes import ensure_database_ready

router = APIRouter(tags=['availability'])


class AvailabilityWindow(BaseModel):
    start_time: time
    end_time: time
    slot_duration_minutes: int = Field(
        default=config.DEFAULT_SLOT_DURATION_MINUTES,
        ge=config.MIN_APPOINTMENT_MINUTES,
        le=config.MAX_APPOINTMENT_MINUTES,
    )

    @field_validator('start_time', 'end_time')
    @classmethod
    def strip_seconds(cls, value: time) -> time:
        return value.replace(second=0, microsecond=0)

    @model_validator(mode='after')
    def validate_window(self):
        if self.start_time >= self.end_time:
            raise ValueError('Start time must be before end time.')

        window_minutes = (
            datetime.combine(date.min, self.end_time) - datetime.combine(date.min, self.start_time)
        ).seconds // 60
        if window_minutes % self.slot_duration_minutes != 0:
            raise ValueError('The availability window must divide evenly into slots.')
        return self


class CreateRecurringRuleRequest(AvailabilityWindow):
    day_of_week: int = Field(ge=0, le=6)


class CreateDateOverrideRequest(AvailabilityWindow):
    date: date
    is_available: bool = True


class AvailabilityRuleResponse(BaseModel):
    id: int
    doctor_id: int
    day_of_week: int | None = None
    available_date: date | None = None
    start_time: time
    end_time: time
    is_available: bool
    slot_duration_minutes: int

    class Config:
        from_attributes = True


def require_schedule_manager(current_user: User, doctor_id: int, db: Session) -> None:
    if current_user.role == ADMIN_ROLE:
        return

    if current_user.role == DOCTOR_ROLE:
        doctor = db.query(Doctor).filter(Doctor.user_id == current_user.id).first()
        if doctor is not None and doctor.id == doctor_id:
            return

    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail='Only admins or the doctor can change this schedule.',
    )


def _require_doctor(doctor_id: int, db: Session) -> Doctor:
    doctor = db.query(Doctor).filter(Doctor.id == doctor_id).first()
    if doctor is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Doctor not found.')
    return doctor


def _reject_overlap(db: Session, doctor_id: int, data: AvailabilityWindow, **same_day) -> None:
    overlapping_rule = db.query(DoctorAvailability).filter_by(doctor_id=doctor_id, **same_day).filter(
        DoctorAvailability.start_time < data.end_time,
        DoctorAvailability.end_time > data.start_time,
    ).first()

    if overlapping_rule:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail='Overlapping availability already exists for this time slot.',
        )


def _save_rule(db: Session, rule: DoctorAvailability) -> DoctorAvailability:
    db.add(rule)
    db.commit()
    db.refresh(rule)
    return rule


@router.get('/doctors/{doctor_id}/rules', response_model=list[AvailabilityRuleResponse])
def list_availability_rules(doctor_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        _require_doctor(doctor_id, db)
        return db.query(DoctorAvailability).filter(
            DoctorAvailability.doctor_id == doctor_id,
        ).order_by(
            DoctorAvailability.available_date.asc(),
            DoctorAvailability.day_of_week.asc(),
            DoctorAvailability.start_time.asc(),
        ).all()
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail='Database unavailable. Verify DATABASE_URL and database credentials.',
        ) from exc


@router.post(
    '/doctors/{doctor_id}/recurring',
    response_model=AvailabilityRuleResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_recurring_rule(
    doctor_id: int,
    data: CreateRecurringRuleRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    require_schedule_manager(current_user, doctor_id, db)
    ensure_database_ready()

    try:
        _require_doctor(doctor_id, db)
        _reject_overlap(db, doctor_id, data, day_of_week=data.day_of_week, available_date=None)

        return _save_rule(db, DoctorAvailability(
            doctor_id=doctor_id,
            day_of_week=data.day_of_week,
            start_time=data.start_time,
            end_time=data.end_time,
            is_available=True,
            slot_duration_minutes=data.slot_duration_minutes,
        ))
    except SQLAlchemyError as exc:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail='Database unavailable. Verify DATABASE_URL and database credentials.',
        ) from exc


@router.post(
    '/doctors/{doctor_id}/overrides',
    response_model=AvailabilityRuleResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_date_override(
    doctor_id: int,
    data: CreateDateOverrideRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    require_schedule_manager(current_user, doctor_id, db)
    ensure_database_ready()

    try:
        _require_doctor(doctor_id, db)
        _reject_overlap(db, doctor_id, data, available_date=data.date)

        return _save_rule(db, DoctorAvailability(
            doctor_id=doctor_id,
            available_date=data.date,
            start_time=data.start_time,
            end_time=data.end_time,
            is_available=data.is_available,
            slot_duration_minutes=data.slot_duration_minutes,
        ))
    except SQLAlchemyError as exc:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail='Database unavailable. Verify DATABASE_URL and database credentials.',
        ) from exc


@router.delete('/rules/{rule_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_availability_rule(
    rule_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    ensure_database_ready()

    try:
        rule = db.query(DoctorAvailability).filter(DoctorAvailability.id == rule_id).first()

        if not rule:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail='Availability rule not found.',
            )

        require_schedule_manager(current_user, rule.doctor_id, db)

        db.delete(rule)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail='Database unavailable. Verify DATABASE_URL and database credentials.',
        ) from exc
