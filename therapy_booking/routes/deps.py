"""Process-wide service instances for the HTTP layer.

One notifier per process means every lock, release and booking made through
this app reaches every open event stream. Tests swap these out through
``app.dependency_overrides``.
"""
from functools import lru_cache

from fastapi import HTTPException, status
from sqlalchemy.exc import SQLAlchemyError

from therapy_booking.database import ensure_booking_schema
from therapy_booking.services.availability_notifier import AvailabilityNotifier
from therapy_booking.services.availability_resolver import AvailabilityResolver
from therapy_booking.services.booking_committer import BookingCommitter
from therapy_booking.services.catalog import IntakeRecords
from therapy_booking.services.lock_manager import LockManager


@lru_cache
def get_notifier() -> AvailabilityNotifier:
    return AvailabilityNotifier()


@lru_cache
def get_resolver() -> AvailabilityResolver:
    return AvailabilityResolver()


@lru_cache
def get_lock_manager() -> LockManager:
    return LockManager(notifier=get_notifier())


@lru_cache
def get_committer() -> BookingCommitter:
    return BookingCommitter(notifier=get_notifier())


@lru_cache
def get_intake_records() -> IntakeRecords:
    return IntakeRecords()


def ensure_database_ready() -> None:
    try:
        ensure_booking_schema()
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail='Database unavailable. Verify DATABASE_URL.',
        ) from exc
