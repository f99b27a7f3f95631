"""Therapist directory model definitions. Read-only to the booking core."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Time
from sqlalchemy.orm import relationship
from therapy_booking.database import Base


class Therapist(Base):
    """A therapist and the granularity their sessions are offered at."""
    __tablename__ = "therapists"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id"), nullable=True)
    display_name = Column(String)
    session_minutes = Column(Integer, default=60)
    is_active = Column(Boolean, default=True)

    working_hours = relationship(
        "TherapistAvailability",
        back_populates="therapist",
        cascade="all, delete-orphan",
    )


class TherapistAvailability(Base):
    """A weekly working window. day_of_week follows date.weekday() (Monday=0)."""
    __tablename__ = "therapist_availability"

    id = Column(Integer, primary_key=True)
    therapist_id = Column(String(36), ForeignKey("therapists.id"), index=True, nullable=False)
    day_of_week = Column(Integer, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    is_available = Column(Boolean, default=True)

    therapist = relationship("Therapist", back_populates="working_hours")


class TherapistBlockedTime(Base):
    """Time off; slots overlapping it are never offered."""
    __tablename__ = "therapist_blocked_times"

    id = Column(Integer, primary_key=True)
    therapist_id = Column(String(36), ForeignKey("therapists.id"), index=True, nullable=False)
    start_datetime = Column(DateTime, nullable=False)
    end_datetime = Column(DateTime, nullable=False)
    reason = Column(String)
