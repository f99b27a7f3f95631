from datetime import date, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator

from therapy_booking.auth.dependencies import get_current_user_id
from therapy_booking.core.errors import BookingError, booking_error_to_http
from therapy_booking.routes.deps import ensure_database_ready, get_lock_manager
from therapy_booking.schemas import LockResult, SlotLockView
from therapy_booking.services.lock_manager import LockManager

router = APIRouter(tags=['locks'])

MAX_LOCK_TTL_SECONDS = 900


class AcquireLockRequest(BaseModel):
    therapist_id: str
    slot_datetime: datetime
    ttl_seconds: int | None = Field(default=None, ge=1, le=MAX_LOCK_TTL_SECONDS)

    @field_validator('therapist_id')
    @classmethod
    def validate_therapist_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Please select a therapist.')
        return normalized


@router.post('', response_model=LockResult)
def acquire_slot_lock(
    data: AcquireLockRequest,
    requester_id: str = Depends(get_current_user_id),
    lock_manager: LockManager = Depends(get_lock_manager),
):
    """Take or renew the caller's hold on a slot. 409 when another client has it."""
    ensure_database_ready()
    try:
        result = lock_manager.acquire_lock(data.therapist_id, data.slot_datetime, requester_id, data.ttl_seconds)
    except BookingError as exc:
        raise booking_error_to_http(exc) from exc

    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={'code': result.error, 'message': result.message},
        )
    return result


@router.delete('', response_model=LockResult)
def release_slot_lock(
    therapist_id: str,
    slot_datetime: datetime,
    requester_id: str = Depends(get_current_user_id),
    lock_manager: LockManager = Depends(get_lock_manager),
):
    ensure_database_ready()
    try:
        return lock_manager.release_lock(therapist_id, slot_datetime, requester_id)
    except BookingError as exc:
        raise booking_error_to_http(exc) from exc


@router.get('/therapists/{therapist_id}', response_model=list[SlotLockView])
def list_active_locks(
    therapist_id: str,
    slot_date: date = Query(alias='date'),
    requester_id: str = Depends(get_current_user_id),
    lock_manager: LockManager = Depends(get_lock_manager),
):
    ensure_database_ready()
    try:
        return lock_manager.active_locks(therapist_id, slot_date)
    except BookingError as exc:
        raise booking_error_to_http(exc) from exc
