"""Value types shared by the booking services and the HTTP layer."""

from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, field_validator


class ChangeType(str, Enum):
    LOCKED = 'locked'
    UNLOCKED = 'unlocked'
    BOOKED = 'booked'
    CANCELLED = 'cancelled'


class Slot(BaseModel):
    therapist_id: str
    start: datetime
    end: datetime
    duration_minutes: int
    available: bool
    held_by_requester: bool = False


class SlotLockView(BaseModel):
    therapist_id: str
    slot_datetime: datetime
    locked_by: str
    acquired_at: datetime
    expires_at: datetime

    class Config:
        from_attributes = True


class LockResult(BaseModel):
    success: bool
    lock: SlotLockView | None = None
    error: str | None = None
    message: str | None = None


class AvailabilityChangeEvent(BaseModel):
    therapist_id: str
    slot_datetime: datetime
    change_type: ChangeType
    actor_id: str | None = None
    occurred_at: datetime | None = None

    @property
    def topic(self) -> tuple[str, date]:
        return self.therapist_id, self.slot_datetime.date()


class ServiceTypeOption(BaseModel):
    service_type: str
    name: str
    duration_minutes: int
    requires_questionnaire: bool


class BookingRequest(BaseModel):
    client_id: str
    therapist_id: str
    service_type: str
    scheduled_at: datetime
    duration_minutes: int | None = None
    session_mode: str = 'video'
    notes: str | None = None
    questionnaire_completed: bool = False

    @field_validator('service_type')
    @classmethod
    def normalize_service_type(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator('scheduled_at')
    @classmethod
    def truncate_seconds(cls, value: datetime) -> datetime:
        if value.tzinfo is not None:
            value = value.astimezone().replace(tzinfo=None)
        return value.replace(second=0, microsecond=0)

    @field_validator('notes')
    @classmethod
    def normalize_notes(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


class BookingView(BaseModel):
    id: str
    therapist_id: str
    client_id: str
    scheduled_at: datetime
    duration_minutes: int
    status: str
    service_type: str
    session_mode: str | None = None
    notes: str | None = None
    created_at: datetime | None = None

    class Config:
        from_attributes = True
