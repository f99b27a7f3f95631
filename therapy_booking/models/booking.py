"""Booking model definitions."""

import uuid

from sqlalchemy import Column, DateTime, Index, Integer, String, text
from therapy_booking.database import Base

BOOKING_STATUSES = ("pending", "confirmed", "completed", "cancelled", "no_show")
INACTIVE_BOOKING_STATUSES = ("cancelled", "no_show")

_ACTIVE_BOOKING_CLAUSE = text("status NOT IN ('cancelled', 'no_show')")


class Booking(Base):
    """A committed therapy session.

    At most one booking per (therapist_id, scheduled_at) may be in an
    active status; the partial unique index enforces it in storage.
    """
    __tablename__ = "bookings"
    __table_args__ = (
        Index(
            "uq_bookings_active_slot",
            "therapist_id",
            "scheduled_at",
            unique=True,
            sqlite_where=_ACTIVE_BOOKING_CLAUSE,
            postgresql_where=_ACTIVE_BOOKING_CLAUSE,
        ),
        Index("idx_bookings_therapist_start", "therapist_id", "scheduled_at"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    therapist_id = Column(String(36), nullable=False)
    client_id = Column(String(36), nullable=False, index=True)
    scheduled_at = Column(DateTime, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default="confirmed")
    service_type = Column(String, nullable=False)
    session_mode = Column(String, default="video")
    notes = Column(String)
    created_at = Column(DateTime)
    cancelled_at = Column(DateTime)
    cancelled_by = Column(String(36))
    cancellation_reason = Column(String)
