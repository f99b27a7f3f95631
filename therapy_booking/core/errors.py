"""
Booking error taxonomy.

Services raise these; the HTTP layer turns them into responses through
booking_error_to_http so routes stay thin.
"""
from __future__ import annotations

from fastapi import HTTPException, status

SLOT_CONTENDED = 'SLOT_CONTENDED'
SLOT_ALREADY_BOOKED = 'SLOT_ALREADY_BOOKED'
VALIDATION_FAILED = 'VALIDATION_FAILED'
TRANSIENT_STORAGE_FAILURE = 'TRANSIENT_STORAGE_FAILURE'
SUBSCRIPTION_ERROR = 'SUBSCRIPTION_ERROR'
NOT_FOUND = 'NOT_FOUND'
FORBIDDEN = 'FORBIDDEN'

MSG_SLOT_CONTENDED = 'This time is being booked by someone else. Please choose a different time.'
MSG_SLOT_ALREADY_BOOKED = 'This time was just booked. Please pick another time.'
MSG_TRANSIENT_STORAGE_FAILURE = 'Booking storage is temporarily unavailable. Please try again.'
MSG_SUBSCRIPTION_ERROR = 'Live availability updates were interrupted.'


class BookingError(Exception):
    code = 'BOOKING_ERROR'
    default_message = 'Booking failed.'

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class SlotContended(BookingError):
    code = SLOT_CONTENDED
    default_message = MSG_SLOT_CONTENDED


class SlotAlreadyBooked(BookingError):
    code = SLOT_ALREADY_BOOKED
    default_message = MSG_SLOT_ALREADY_BOOKED


class ValidationFailed(BookingError):
    code = VALIDATION_FAILED
    default_message = 'Please complete all steps before confirming.'

    def __init__(self, errors: list[str] | str | None = None):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors or [])
        super().__init__('; '.join(self.errors) if self.errors else None)


class TransientStorageFailure(BookingError):
    code = TRANSIENT_STORAGE_FAILURE
    default_message = MSG_TRANSIENT_STORAGE_FAILURE


class SubscriptionError(BookingError):
    code = SUBSCRIPTION_ERROR
    default_message = MSG_SUBSCRIPTION_ERROR


class BookingNotFound(BookingError):
    code = NOT_FOUND
    default_message = 'Booking not found.'


class BookingForbidden(BookingError):
    code = FORBIDDEN
    default_message = 'You do not have access to this booking.'


# First match wins.
BOOKING_ERROR_STATUS: list[tuple[type[BookingError], int]] = [
    (SlotContended, status.HTTP_409_CONFLICT),
    (SlotAlreadyBooked, status.HTTP_409_CONFLICT),
    (ValidationFailed, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (TransientStorageFailure, status.HTTP_503_SERVICE_UNAVAILABLE),
    (SubscriptionError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (BookingNotFound, status.HTTP_404_NOT_FOUND),
    (BookingForbidden, status.HTTP_403_FORBIDDEN),
]


def booking_error_to_http(exc: BookingError) -> HTTPException:
    """Map a BookingError to an HTTPException carrying its code and message."""
    for error_type, status_code in BOOKING_ERROR_STATUS:
        if isinstance(exc, error_type):
            detail: dict = {'code': exc.code, 'message': exc.message}
            if isinstance(exc, ValidationFailed):
                detail['errors'] = exc.errors
            return HTTPException(status_code=status_code, detail=detail)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={'code': exc.code, 'message': exc.message},
    )
