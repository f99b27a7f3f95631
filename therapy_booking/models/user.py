"""User model definitions."""

import uuid

from sqlalchemy import Column, String
from therapy_booking.database import Base


class User(Base):
    """Represents an application user (client, therapist or admin)."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, index=True)
    full_name = Column(String)
    role = Column(String, default="client")  # client/therapist/admin
