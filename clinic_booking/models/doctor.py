"""Doctor model definitions."""

from sqlalchemy import Boolean, Column, ForeignKey, Integer, String
from clinic_booking.database import Base


class Doctor(Base):
    """A bookable doctor. `is_available` disables booking without deleting history."""
    __tablename__ = "doctors"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True)
    full_name = Column(String)
    specialization = Column(String)
    is_available = Column(Boolean, default=True, nullable=False)
