"""Slot lock model definitions."""

from sqlalchemy import Column, DateTime, Index, Integer, String, UniqueConstraint
from therapy_booking.database import Base


class SlotLock(Base):
    """A short-lived exclusive hold on one therapist slot.

    The unique key on (therapist_id, slot_datetime) is what makes lock
    acquisition a single conditional write: a second holder can only
    appear by updating the existing row, never by inserting beside it.
    """
    __tablename__ = "slot_locks"
    __table_args__ = (
        UniqueConstraint("therapist_id", "slot_datetime", name="uq_slot_locks_therapist_slot"),
        Index("idx_slot_locks_expires_at", "expires_at"),
    )

    id = Column(Integer, primary_key=True)
    therapist_id = Column(String(36), nullable=False)
    slot_datetime = Column(DateTime, nullable=False)
    locked_by = Column(String(36), nullable=False)
    acquired_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
