"""Turns a held slot into a durable booking in one transaction."""

import logging
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from therapy_booking.core import config
from therapy_booking.core.clock import Clock, system_clock
from therapy_booking.core.errors import (
    BookingForbidden,
    BookingNotFound,
    SlotAlreadyBooked,
    SlotContended,
    ValidationFailed,
)
from therapy_booking.database import SessionLocal, session_scope
from therapy_booking.models.booking import INACTIVE_BOOKING_STATUSES, Booking
from therapy_booking.models.slot_lock import SlotLock
from therapy_booking.models.therapist import Therapist, TherapistAvailability, TherapistBlockedTime
from therapy_booking.schemas import AvailabilityChangeEvent, BookingRequest, BookingView, ChangeType
from therapy_booking.services.availability_notifier import AvailabilityNotifier
from therapy_booking.services.availability_resolver import MAX_SESSION_MINUTES, is_offered_start, overlaps
from therapy_booking.services.catalog import get_service_type
from therapy_booking.services.lock_manager import claim_slot_lock

logger = logging.getLogger(__name__)

MIN_SESSION_MINUTES = 15
MAX_NOTES_LENGTH = 1000
SESSION_MODES = ('video', 'audio', 'chat', 'in_person')
INITIAL_BOOKING_STATUS = 'confirmed'


def validate_booking_request(
    request: BookingRequest,
    duration_minutes: int | None,
    now: datetime,
    *,
    min_notice_minutes: int = config.MIN_BOOKING_NOTICE_MINUTES,
    booking_window_days: int = config.BOOKING_WINDOW_DAYS,
) -> list[str]:
    """Every reason the request cannot be sent to storage."""
    errors: list[str] = []

    if not request.client_id.strip():
        errors.append('Please log in to book an appointment.')
    if not request.therapist_id.strip():
        errors.append('Please select a therapist.')

    service = get_service_type(request.service_type)
    if service is None:
        errors.append('Please select a service.')
    elif service.requires_questionnaire and not request.questionnaire_completed:
        errors.append(f'Please complete the intake questionnaire for {service.name}.')

    if request.scheduled_at <= now + timedelta(minutes=min_notice_minutes):
        errors.append(f'Please select a time at least {min_notice_minutes} minutes from now.')
    elif request.scheduled_at > now + timedelta(days=booking_window_days):
        errors.append(f'Bookings cannot be made more than {booking_window_days} days in advance.')

    if duration_minutes is None:
        errors.append('Session duration is required.')
    elif not MIN_SESSION_MINUTES <= duration_minutes <= MAX_SESSION_MINUTES:
        errors.append(
            f'Session duration must be between {MIN_SESSION_MINUTES} and {MAX_SESSION_MINUTES} minutes.'
        )

    if request.session_mode not in SESSION_MODES:
        errors.append('Invalid session mode.')

    if request.notes and len(request.notes) > MAX_NOTES_LENGTH:
        errors.append(f'Notes must be {MAX_NOTES_LENGTH} characters or fewer.')

    return errors


class BookingCommitter:
    def __init__(
        self,
        session_factory: sessionmaker = SessionLocal,
        notifier: AvailabilityNotifier | None = None,
        clock: Clock = system_clock,
        *,
        ttl_seconds: int = config.SLOT_LOCK_TTL_SECONDS,
        min_notice_minutes: int = config.MIN_BOOKING_NOTICE_MINUTES,
        booking_window_days: int = config.BOOKING_WINDOW_DAYS,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.clock = clock
        self.ttl_seconds = ttl_seconds
        self.min_notice_minutes = min_notice_minutes
        self.booking_window_days = booking_window_days

    def _publish(self, booking: BookingView, change_type: ChangeType, actor_id: str) -> None:
        if self.notifier is None:
            return
        self.notifier.publish(
            AvailabilityChangeEvent(
                therapist_id=booking.therapist_id,
                slot_datetime=booking.scheduled_at,
                change_type=change_type,
                actor_id=actor_id,
                occurred_at=self.clock(),
            )
        )

    def commit_booking(self, request: BookingRequest) -> BookingView:
        """Create the booking and retire the client's lock, or change nothing.

        The client's lock is claimed (or re-validated), the booking
        inserted and the lock row deleted in a single transaction. Any
        failure rolls all of it back, so a lock held before the call is
        still held afterwards.

        The start must be one the resolver would offer for the session
        length: inside a working window, on the therapist's granularity and
        clear of blocked time. That is checked in the same transaction.
        """
        now = self.clock()
        service = get_service_type(request.service_type)
        duration_minutes = request.duration_minutes or (service.duration_minutes if service else None)

        errors = validate_booking_request(
            request,
            duration_minutes,
            now,
            min_notice_minutes=self.min_notice_minutes,
            booking_window_days=self.booking_window_days,
        )
        if errors:
            raise ValidationFailed(errors)

        scheduled_at = request.scheduled_at
        scheduled_end = scheduled_at + timedelta(minutes=duration_minutes)

        try:
            with session_scope(self.session_factory) as db:
                therapist = db.get(Therapist, request.therapist_id)
                if therapist is None or not therapist.is_active:
                    raise ValidationFailed('This therapist is not accepting bookings.')

                windows = db.query(TherapistAvailability.start_time, TherapistAvailability.end_time).filter(
                    TherapistAvailability.therapist_id == request.therapist_id,
                    TherapistAvailability.day_of_week == scheduled_at.weekday(),
                    TherapistAvailability.is_available.is_(True),
                ).all()
                granularity = therapist.session_minutes or config.DEFAULT_SESSION_MINUTES
                if not is_offered_start(scheduled_at, duration_minutes, windows, granularity):
                    raise ValidationFailed('Please choose one of the offered times.')

                blocked = db.query(TherapistBlockedTime.id).filter(
                    TherapistBlockedTime.therapist_id == request.therapist_id,
                    TherapistBlockedTime.start_datetime < scheduled_end,
                    TherapistBlockedTime.end_datetime > scheduled_at,
                ).first()
                if blocked is not None:
                    raise ValidationFailed('The therapist is unavailable at this time.')

                claim_slot_lock(
                    db,
                    request.therapist_id,
                    scheduled_at,
                    request.client_id,
                    now,
                    now + timedelta(seconds=self.ttl_seconds),
                )

                nearby_bookings = db.query(Booking.scheduled_at, Booking.duration_minutes).filter(
                    Booking.therapist_id == request.therapist_id,
                    Booking.status.not_in(INACTIVE_BOOKING_STATUSES),
                    Booking.scheduled_at < scheduled_end,
                    Booking.scheduled_at >= scheduled_at - timedelta(minutes=MAX_SESSION_MINUTES),
                ).all()
                if any(
                    overlaps(scheduled_at, scheduled_end, booked_start, booked_start + timedelta(minutes=booked_minutes))
                    for booked_start, booked_minutes in nearby_bookings
                ):
                    raise SlotAlreadyBooked()

                booking = Booking(
                    therapist_id=request.therapist_id,
                    client_id=request.client_id,
                    scheduled_at=scheduled_at,
                    duration_minutes=duration_minutes,
                    status=INITIAL_BOOKING_STATUS,
                    service_type=request.service_type,
                    session_mode=request.session_mode,
                    notes=request.notes,
                    created_at=now,
                )
                db.add(booking)
                try:
                    db.flush()
                except IntegrityError as exc:
                    raise SlotAlreadyBooked() from exc

                db.query(SlotLock).filter(
                    SlotLock.therapist_id == request.therapist_id,
                    SlotLock.slot_datetime == scheduled_at,
                ).delete(synchronize_session=False)

                view = BookingView.model_validate(booking)
                db.commit()
        except (SlotContended, SlotAlreadyBooked) as exc:
            logger.info(
                'Booking for %s at %s by %s rejected: %s',
                request.therapist_id,
                scheduled_at,
                request.client_id,
                exc.code,
            )
            raise

        logger.info('Booking %s committed for %s at %s', view.id, view.therapist_id, view.scheduled_at)
        self._publish(view, ChangeType.BOOKED, request.client_id)
        return view

    def cancel_booking(self, booking_id: str, actor_id: str, reason: str | None = None) -> BookingView:
        """Cancel a booking and free its slot. Cancelling twice is a no-op."""
        with session_scope(self.session_factory) as db:
            booking = db.get(Booking, booking_id)
            if booking is None:
                raise BookingNotFound()

            therapist = db.get(Therapist, booking.therapist_id)
            therapist_user_id = therapist.user_id if therapist else None
            if actor_id not in (booking.client_id, therapist_user_id):
                raise BookingForbidden('Only the client or therapist can cancel this booking.')

            if booking.status in INACTIVE_BOOKING_STATUSES:
                return BookingView.model_validate(booking)

            booking.status = 'cancelled'
            booking.cancelled_at = self.clock()
            booking.cancelled_by = actor_id
            booking.cancellation_reason = (reason or '').strip() or None
            db.commit()
            view = BookingView.model_validate(booking)

        logger.info('Booking %s cancelled by %s', booking_id, actor_id)
        self._publish(view, ChangeType.CANCELLED, actor_id)
        return view
