"""Slot availability: working hours minus bookings, blocked time and other users' locks."""

import logging
from datetime import date, datetime, time, timedelta

from sqlalchemy.orm import sessionmaker

from therapy_booking.core import config
from therapy_booking.core.clock import Clock, system_clock
from therapy_booking.database import SessionLocal, session_scope
from therapy_booking.models.booking import INACTIVE_BOOKING_STATUSES, Booking
from therapy_booking.models.slot_lock import SlotLock
from therapy_booking.models.therapist import Therapist, TherapistAvailability, TherapistBlockedTime
from therapy_booking.schemas import Slot

logger = logging.getLogger(__name__)

# Longest session a booking can run; bounds the look-back for bookings
# that start on the previous day and spill into this one.
MAX_SESSION_MINUTES = 180


def iterate_window_starts(
    slot_date: date,
    window_start: time,
    window_end: time,
    granularity_minutes: int,
    duration_minutes: int,
) -> list[datetime]:
    """Start times aligned to the granularity whose session fits inside the window."""
    starts: list[datetime] = []
    current = datetime.combine(slot_date, window_start).replace(second=0, microsecond=0)
    end = datetime.combine(slot_date, window_end)

    if current.minute % granularity_minutes != 0:
        current += timedelta(minutes=granularity_minutes - (current.minute % granularity_minutes))

    while current + timedelta(minutes=duration_minutes) <= end:
        starts.append(current)
        current += timedelta(minutes=granularity_minutes)

    return starts


def is_offered_start(
    start: datetime,
    duration_minutes: int,
    windows: list[tuple[time, time]],
    granularity_minutes: int,
) -> bool:
    """Whether the resolver would offer ``start`` for a session of this length."""
    return any(
        start in iterate_window_starts(start.date(), window_start, window_end, granularity_minutes, duration_minutes)
        for window_start, window_end in windows
    )


def overlaps(start: datetime, end: datetime, other_start: datetime, other_end: datetime) -> bool:
    return start < other_end and end > other_start


class AvailabilityResolver:
    """Computes the bookable slots for a therapist on a date.

    Bookings, locks and blocked time are read in one session so the join
    happens against a single snapshot instead of in the client.
    """

    def __init__(
        self,
        session_factory: sessionmaker = SessionLocal,
        clock: Clock = system_clock,
        *,
        min_notice_minutes: int = config.MIN_BOOKING_NOTICE_MINUTES,
        booking_window_days: int = config.BOOKING_WINDOW_DAYS,
        default_session_minutes: int = config.DEFAULT_SESSION_MINUTES,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.min_notice_minutes = min_notice_minutes
        self.booking_window_days = booking_window_days
        self.default_session_minutes = default_session_minutes

    def _in_booking_window(self, slot_date: date, today: date) -> bool:
        return today <= slot_date <= today + timedelta(days=self.booking_window_days)

    def resolve_slots(
        self,
        therapist_id: str,
        slot_date: date,
        requester_id: str | None = None,
        duration_minutes: int | None = None,
    ) -> list[Slot]:
        now = self.clock()
        if not self._in_booking_window(slot_date, now.date()):
            return []

        day_start = datetime.combine(slot_date, time.min)
        day_end = day_start + timedelta(days=1)

        with session_scope(self.session_factory) as db:
            therapist = db.get(Therapist, therapist_id)
            if therapist is None or not therapist.is_active:
                return []

            windows = db.query(TherapistAvailability).filter(
                TherapistAvailability.therapist_id == therapist_id,
                TherapistAvailability.day_of_week == slot_date.weekday(),
                TherapistAvailability.is_available.is_(True),
            ).order_by(TherapistAvailability.start_time.asc()).all()
            if not windows:
                return []

            granularity = therapist.session_minutes or self.default_session_minutes

            bookings = db.query(Booking.scheduled_at, Booking.duration_minutes).filter(
                Booking.therapist_id == therapist_id,
                Booking.status.not_in(INACTIVE_BOOKING_STATUSES),
                Booking.scheduled_at < day_end,
                Booking.scheduled_at >= day_start - timedelta(minutes=MAX_SESSION_MINUTES),
            ).all()

            locks = db.query(SlotLock.slot_datetime, SlotLock.locked_by).filter(
                SlotLock.therapist_id == therapist_id,
                SlotLock.slot_datetime >= day_start,
                SlotLock.slot_datetime < day_end,
                SlotLock.expires_at > now,
            ).all()

            blocked_ranges = db.query(TherapistBlockedTime.start_datetime, TherapistBlockedTime.end_datetime).filter(
                TherapistBlockedTime.therapist_id == therapist_id,
                TherapistBlockedTime.start_datetime < day_end,
                TherapistBlockedTime.end_datetime > day_start,
            ).all()

            window_bounds = [(window.start_time, window.end_time) for window in windows]

        session_length = duration_minutes or granularity
        booked_ranges = [
            (booked_start, booked_start + timedelta(minutes=booked_minutes or granularity))
            for booked_start, booked_minutes in bookings
        ]
        lock_owners = {slot_datetime: locked_by for slot_datetime, locked_by in locks}
        earliest_start = now + timedelta(minutes=self.min_notice_minutes)

        slots: list[Slot] = []
        seen: set[datetime] = set()
        for window_start, window_end in window_bounds:
            for start in iterate_window_starts(slot_date, window_start, window_end, granularity, session_length):
                if start in seen or start < earliest_start:
                    continue
                seen.add(start)

                end = start + timedelta(minutes=session_length)
                is_booked = any(overlaps(start, end, b_start, b_end) for b_start, b_end in booked_ranges)
                is_blocked = any(overlaps(start, end, b_start, b_end) for b_start, b_end in blocked_ranges)
                owner = lock_owners.get(start)
                held_by_requester = owner is not None and requester_id is not None and owner == requester_id

                slots.append(
                    Slot(
                        therapist_id=therapist_id,
                        start=start,
                        end=end,
                        duration_minutes=session_length,
                        available=not is_booked and not is_blocked and (owner is None or held_by_requester),
                        held_by_requester=held_by_requester,
                    )
                )

        slots.sort(key=lambda slot: slot.start)
        return slots

    def resolve_available_dates(
        self,
        therapist_id: str,
        start_date: date | None = None,
        days: int | None = None,
    ) -> list[date]:
        """Dates with working hours that are not entirely blocked off."""
        today = self.clock().date()
        first_day = max(start_date or today, today)
        last_day = today + timedelta(days=self.booking_window_days)
        if days is not None:
            last_day = min(last_day, first_day + timedelta(days=days - 1))
        if first_day > last_day:
            return []

        with session_scope(self.session_factory) as db:
            therapist = db.get(Therapist, therapist_id)
            if therapist is None or not therapist.is_active:
                return []

            windows_by_day: dict[int, list[tuple[time, time]]] = {}
            for window in db.query(TherapistAvailability).filter(
                TherapistAvailability.therapist_id == therapist_id,
                TherapistAvailability.is_available.is_(True),
            ).all():
                windows_by_day.setdefault(window.day_of_week, []).append((window.start_time, window.end_time))

            blocked_ranges = db.query(TherapistBlockedTime.start_datetime, TherapistBlockedTime.end_datetime).filter(
                TherapistBlockedTime.therapist_id == therapist_id,
                TherapistBlockedTime.start_datetime <= datetime.combine(last_day, time.max),
                TherapistBlockedTime.end_datetime >= datetime.combine(first_day, time.min),
            ).all()

        available_dates: list[date] = []
        current_day = first_day
        while current_day <= last_day:
            windows = windows_by_day.get(current_day.weekday(), [])
            if windows and not all(
                any(
                    b_start <= datetime.combine(current_day, w_start) and b_end >= datetime.combine(current_day, w_end)
                    for b_start, b_end in blocked_ranges
                )
                for w_start, w_end in windows
            ):
                available_dates.append(current_day)
            current_day += timedelta(days=1)

        return available_dates
