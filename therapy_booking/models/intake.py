"""Intake questionnaire model definitions."""

from sqlalchemy import JSON, Column, DateTime, Integer, String, UniqueConstraint
from therapy_booking.database import Base


class IntakeQuestionnaire(Base):
    """A client's completed intake form for one service type."""
    __tablename__ = "intake_questionnaires"
    __table_args__ = (
        UniqueConstraint("user_id", "service_type", name="uq_intake_user_service"),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(String(36), nullable=False, index=True)
    service_type = Column(String, nullable=False)
    responses = Column(JSON, nullable=False, default=dict)
    completed_at = Column(DateTime, nullable=False)
