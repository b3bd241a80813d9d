"""Availability model definitions.

Recurring weekly rules and date-specific overrides share one table. Rows are
converted into the tagged `RecurringRule` / `DateOverride` values before the
slot model uses them.
"""

from dataclasses import dataclass
from datetime import date, datetime, time

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, Time
from clinic_booking.database import Base


@dataclass(frozen=True)
class RecurringRule:
    day_of_week: int  # 0 = Monday
    start: time
    end: time
    slot_duration_minutes: int


@dataclass(frozen=True)
class DateOverride:
    date: date
    start: time
    end: time
    is_available: bool
    slot_duration_minutes: int


class DoctorAvailability(Base):
    """Represents one availability rule for a doctor."""
    __tablename__ = "doctor_availability"

    id = Column(Integer, primary_key=True)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False, index=True)
    day_of_week = Column(Integer, nullable=True)
    available_date = Column(Date, nullable=True)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    is_available = Column(Boolean, default=True, nullable=False)
    slot_duration_minutes = Column(Integer, default=30, nullable=False)
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    @property
    def is_override(self) -> bool:
        return self.available_date is not None

    def to_rule(self) -> RecurringRule | DateOverride:
        if self.is_override:
            return DateOverride(
                date=self.available_date,
                start=self.start_time,
                end=self.end_time,
                is_available=bool(self.is_available),
                slot_duration_minutes=self.slot_duration_minutes,
            )
        return RecurringRule(
            day_of_week=self.day_of_week,
            start=self.start_time,
            end=self.end_time,
            slot_duration_minutes=self.slot_duration_minutes,
        )
