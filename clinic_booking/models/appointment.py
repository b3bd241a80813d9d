"""Appointment model definitions."""

from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from clinic_booking.database import Base


class AppointmentStatus(str, Enum):
    RESERVED = "Reserved"
    SCHEDULED = "Scheduled"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    RESCHEDULED = "Rescheduled"
    NO_SHOW = "NoShow"


# Booked statuses always block their window. Reserved blocks only while its
# hold is unexpired.
BOOKED_STATUSES = (
    AppointmentStatus.SCHEDULED.value,
    AppointmentStatus.RESCHEDULED.value,
)

EXPIRED_REASON = "expired"
RELEASED_REASON = "released"


class Appointment(Base):
    """Represents a hold on, or a booking of, a doctor's time window."""
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True)
    patient_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False, index=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=30)
    status = Column(String(20), nullable=False, default=AppointmentStatus.SCHEDULED.value)
    is_reserved = Column(Boolean, nullable=False, default=False)
    reservation_expires_at = Column(DateTime, nullable=True)
    reason = Column(Text)
    notes = Column(Text)
    cancellation_reason = Column(String(500))
    cancelled_at = Column(DateTime)
    previous_start_time = Column(DateTime)
    created_at = Column(DateTime, default=datetime.now, nullable=False)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now, nullable=False)

    def hold_expired(self, now: datetime) -> bool:
        return (
            bool(self.is_reserved)
            and self.reservation_expires_at is not None
            and self.reservation_expires_at <= now
        )

    def __repr__(self) -> str:
        return (
            f"<Appointment id={self.id} doctor={self.doctor_id} "
            f"start={self.start_time} status={self.status}>"
        )
