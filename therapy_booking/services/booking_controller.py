"""Per-session booking wizard.

The controller walks one client through service, questionnaire, therapist,
date, time and confirmation. It owns at most one slot lock at a time and
guarantees the lock is released on every way out of the flow: deselection,
a different selection, a successful booking, or dispose_session().

Slots are sized by the selected service's duration. Recoverable booking
failures (contention, a slot taken or refused at commit, a storage hiccup
that outlived its retries) are reported as notices and do not raise. Guard
violations raise ValidationFailed before anything reaches storage.
"""
from __future__ import annotations

import functools
import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Callable, Protocol

from therapy_booking.core import config
from therapy_booking.core.clock import Clock, system_clock
from therapy_booking.core.errors import (
    SLOT_ALREADY_BOOKED,
    SLOT_CONTENDED,
    SUBSCRIPTION_ERROR,
    TRANSIENT_STORAGE_FAILURE,
    BookingError,
    SlotAlreadyBooked,
    SlotContended,
    SubscriptionError,
    TransientStorageFailure,
    ValidationFailed,
)
from therapy_booking.core.retry import call_with_retries
from therapy_booking.schemas import BookingRequest, BookingView, ChangeType, LockResult, Slot
from therapy_booking.services.availability_notifier import AvailabilityNotifier, Subscription
from therapy_booking.services.availability_resolver import AvailabilityResolver
from therapy_booking.services.booking_committer import BookingCommitter
from therapy_booking.services.catalog import get_service_type, requires_questionnaire
from therapy_booking.services.lock_manager import LockManager, normalize_slot_datetime

logger = logging.getLogger(__name__)

SLOT_TAKEN = 'SLOT_TAKEN'
LOCK_LOST = 'LOCK_LOST'
LOCK_AT_RISK = 'LOCK_AT_RISK'


class BookingStep(str, Enum):
    SELECTING_SERVICE = 'selecting_service'
    ANSWERING_QUESTIONNAIRE = 'answering_questionnaire'
    SELECTING_THERAPIST = 'selecting_therapist'
    SELECTING_DATE = 'selecting_date'
    SELECTING_TIME = 'selecting_time'
    CONFIRMING = 'confirming'
    COMPLETED = 'completed'


STEP_ORDER = list(BookingStep)


@dataclass
class Notice:
    code: str
    message: str
    level: str = 'error'


@dataclass
class HeldSlot:
    therapist_id: str
    slot_datetime: datetime
    expires_at: datetime
    next_renewal_at: datetime


class IntakeStatus(Protocol):
    def has_completed(self, user_id: str, service_type: str) -> bool: ...

    def record(self, user_id: str, service_type: str, responses: dict) -> None: ...


def synchronized(method):
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._state_lock:
            return method(self, *args, **kwargs)
    return wrapper


class BookingController:
    def __init__(
        self,
        user_id_provider: Callable[[], str | None],
        resolver: AvailabilityResolver,
        lock_manager: LockManager,
        committer: BookingCommitter,
        notifier: AvailabilityNotifier,
        intake: IntakeStatus,
        *,
        clock: Clock = system_clock,
        ttl_seconds: int = config.SLOT_LOCK_TTL_SECONDS,
        renewal_ratio: float = config.LOCK_RENEWAL_RATIO,
        retry_sleep: Callable[[float], None] | None = None,
    ):
        if not 0 < renewal_ratio < 1:
            raise ValueError('renewal_ratio must be between 0 and 1')

        self.user_id_provider = user_id_provider
        self.resolver = resolver
        self.lock_manager = lock_manager
        self.committer = committer
        self.notifier = notifier
        self.intake = intake
        self.clock = clock
        self.ttl_seconds = ttl_seconds
        self.renewal_interval = timedelta(seconds=ttl_seconds * renewal_ratio)
        self._retry_kwargs = {'sleep': retry_sleep} if retry_sleep is not None else {}

        self.step = BookingStep.SELECTING_SERVICE
        self.service_type: str | None = None
        self.questionnaire_completed = False
        self.therapist_id: str | None = None
        self.slot_date: date | None = None
        self.selected_slot: datetime | None = None
        self.held: HeldSlot | None = None
        self.slots: list[Slot] = []
        self.booking: BookingView | None = None
        self.notices: list[Notice] = []
        self.realtime_degraded = False
        self.disposed = False

        self._subscription: Subscription | None = None
        self._renewer: LockRenewer | None = None
        self._state_lock = threading.RLock()

    def _current_user_id(self) -> str:
        user_id = self.user_id_provider()
        if not user_id:
            raise ValidationFailed('Please log in to book an appointment.')
        return user_id

    def _ensure_open(self) -> None:
        if self.disposed:
            raise ValidationFailed('This booking session has ended.')
        if self.step == BookingStep.COMPLETED:
            raise ValidationFailed('This booking is already complete.')

    def _require_step(self, *steps: BookingStep) -> None:
        self._ensure_open()
        if self.step not in steps:
            raise ValidationFailed(f'Not available while {self.step.value.replace("_", " ")}.')

    def _at_or_past(self, step: BookingStep) -> bool:
        return STEP_ORDER.index(self.step) >= STEP_ORDER.index(step)

    def _notify(self, code: str, message: str, level: str = 'error') -> None:
        self.notices.append(Notice(code=code, message=message, level=level))

    def _retry(self, fn, max_attempts: int | None = None):
        return call_with_retries(fn, max_attempts=max_attempts, **self._retry_kwargs)

    def _questionnaire_satisfied(self) -> bool:
        option = get_service_type(self.service_type)
        return option is not None and (not option.requires_questionnaire or self.questionnaire_completed)

    def _session_minutes(self) -> int | None:
        option = get_service_type(self.service_type)
        return option.duration_minutes if option else None

    def _hold(self, result: LockResult) -> None:
        lock = result.lock
        self.held = HeldSlot(
            therapist_id=lock.therapist_id,
            slot_datetime=lock.slot_datetime,
            expires_at=lock.expires_at,
            next_renewal_at=self.clock() + self.renewal_interval,
        )
        self.selected_slot = lock.slot_datetime

    def _release_held(self) -> None:
        held = self.held
        self.held = None
        self.selected_slot = None
        if held is None:
            return
        user_id = self.user_id_provider()
        if not user_id:
            return
        try:
            self._retry(lambda: self.lock_manager.release_lock(held.therapist_id, held.slot_datetime, user_id))
        except TransientStorageFailure:
            logger.warning(
                'Could not release lock on %s at %s; it will lapse at %s',
                held.therapist_id,
                held.slot_datetime,
                held.expires_at,
            )

    def _close_subscription(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    def _open_subscription(self) -> None:
        self._close_subscription()
        self._subscription = self.notifier.subscribe(self.therapist_id, self.slot_date)
        self.realtime_degraded = False

    def _leave_time_selection(self) -> None:
        self._release_held()
        self._close_subscription()
        self.slots = []

    def _lose_selection(self, code: str, message: str) -> None:
        self.held = None
        self.selected_slot = None
        if self.step == BookingStep.CONFIRMING:
            self.step = BookingStep.SELECTING_TIME
        self._notify(code, message)

    @synchronized
    def select_service(self, service_type: str | None) -> BookingStep:
        self._ensure_open()
        option = get_service_type(service_type)
        if option is None:
            raise ValidationFailed('Please select a service.')

        user_id = self._current_user_id()
        self._leave_time_selection()
        if option.service_type != self.service_type:
            self.therapist_id = None
            self.slot_date = None

        self.service_type = option.service_type
        self.questionnaire_completed = (
            option.requires_questionnaire and self.intake.has_completed(user_id, option.service_type)
        )
        if option.requires_questionnaire and not self.questionnaire_completed:
            self.step = BookingStep.ANSWERING_QUESTIONNAIRE
        else:
            self.step = BookingStep.SELECTING_THERAPIST
        return self.step

    @synchronized
    def submit_questionnaire(self, responses: dict) -> BookingStep:
        self._require_step(BookingStep.ANSWERING_QUESTIONNAIRE)
        user_id = self._current_user_id()
        self.intake.record(user_id, self.service_type, responses)
        self.questionnaire_completed = True
        self.step = BookingStep.SELECTING_THERAPIST
        return self.step

    @synchronized
    def select_therapist(self, therapist_id: str | None) -> BookingStep:
        self._ensure_open()
        if not self._at_or_past(BookingStep.SELECTING_THERAPIST) or not self._questionnaire_satisfied():
            raise ValidationFailed('Please complete the intake questionnaire first.')
        if not therapist_id:
            raise ValidationFailed('Please select a therapist.')

        self._leave_time_selection()
        if therapist_id != self.therapist_id:
            self.slot_date = None
        self.therapist_id = therapist_id
        self.step = BookingStep.SELECTING_DATE
        return self.step

    @synchronized
    def available_dates(self) -> list[date]:
        if self.therapist_id is None:
            raise ValidationFailed('Please select a therapist.')
        try:
            return self._retry(lambda: self.resolver.resolve_available_dates(self.therapist_id))
        except TransientStorageFailure as exc:
            self._notify(TRANSIENT_STORAGE_FAILURE, exc.message)
            return []

    @synchronized
    def select_date(self, slot_date: date | None) -> BookingStep:
        self._ensure_open()
        if not self._at_or_past(BookingStep.SELECTING_DATE) or self.therapist_id is None:
            raise ValidationFailed('Please select a therapist.')
        if slot_date is None:
            raise ValidationFailed('Please select a date.')

        if slot_date != self.slot_date or self._subscription is None:
            self._leave_time_selection()
            self.slot_date = slot_date
            try:
                self._open_subscription()
            except SubscriptionError as exc:
                self._degrade(exc)

        self.step = BookingStep.SELECTING_TIME
        self._refresh()
        return self.step

    @synchronized
    def select_time(self, slot_datetime: datetime) -> bool:
        """Reserve a slot for this client; False when someone else holds or booked it."""
        self._require_step(BookingStep.SELECTING_TIME, BookingStep.CONFIRMING)
        user_id = self._current_user_id()
        slot_datetime = normalize_slot_datetime(slot_datetime)

        self._pump_events()

        if self.held and self.held.slot_datetime == slot_datetime:
            return self._renew(user_id)

        slot = next((slot for slot in self.slots if slot.start == slot_datetime), None)
        if slot is None:
            raise ValidationFailed('Please choose one of the offered times.')

        self._release_held()
        self.step = BookingStep.SELECTING_TIME

        if not slot.available:
            return self._refuse_unavailable(slot_datetime, user_id)

        try:
            result = self._retry(
                lambda: self.lock_manager.acquire_lock(self.therapist_id, slot_datetime, user_id, self.ttl_seconds)
            )
        except TransientStorageFailure as exc:
            self._notify(TRANSIENT_STORAGE_FAILURE, exc.message)
            self._refresh()
            return False

        if not result.success:
            self._lose_selection(result.error or SLOT_CONTENDED, result.message or SlotContended.default_message)
            self._refresh()
            return False

        self._hold(result)
        self._refresh()
        return True

    def _refuse_unavailable(self, slot_datetime: datetime, user_id: str) -> bool:
        try:
            lock = self._retry(lambda: self.lock_manager.get_lock(self.therapist_id, slot_datetime))
        except TransientStorageFailure as exc:
            self._notify(TRANSIENT_STORAGE_FAILURE, exc.message)
            return False

        if lock is not None and lock.locked_by != user_id:
            self._notify(SLOT_CONTENDED, SlotContended.default_message)
        else:
            self._notify(SLOT_TAKEN, 'This time is not available for the selected service. Please pick another time.')
        self._refresh()
        return False

    @synchronized
    def deselect_time(self) -> None:
        self._require_step(BookingStep.SELECTING_TIME, BookingStep.CONFIRMING)
        self._release_held()
        self.step = BookingStep.SELECTING_TIME
        self._refresh()

    @synchronized
    def proceed_to_confirm(self) -> BookingStep:
        self._require_step(BookingStep.SELECTING_TIME)
        if self.held is None:
            raise ValidationFailed('Please select a time.')
        self.step = BookingStep.CONFIRMING
        return self.step

    @synchronized
    def confirm(self, notes: str | None = None, session_mode: str = 'video') -> BookingView | None:
        """Commit the held slot. None when the slot was lost; see notices."""
        self._require_step(BookingStep.CONFIRMING)
        user_id = self._current_user_id()
        if self.held is None:
            raise ValidationFailed('Please select a time.')

        request = BookingRequest(
            client_id=user_id,
            therapist_id=self.therapist_id,
            service_type=self.service_type,
            scheduled_at=self.held.slot_datetime,
            session_mode=session_mode,
            notes=notes,
            questionnaire_completed=self._questionnaire_satisfied(),
        )

        try:
            booking = self._retry(lambda: self.committer.commit_booking(request))
        except (SlotAlreadyBooked, SlotContended, ValidationFailed) as exc:
            self._release_held()
            self._lose_selection(exc.code, exc.message)
            self._refresh()
            return None
        except TransientStorageFailure as exc:
            self._notify(TRANSIENT_STORAGE_FAILURE, exc.message)
            return None

        self.held = None
        self.booking = booking
        self.step = BookingStep.COMPLETED
        self._close_subscription()
        self._stop_renewer()
        logger.info('Booking flow completed for %s with booking %s', user_id, booking.id)
        return booking

    @synchronized
    def go_back(self) -> BookingStep:
        self._ensure_open()
        if self.step == BookingStep.SELECTING_SERVICE:
            return self.step

        if self.step == BookingStep.CONFIRMING:
            self.step = BookingStep.SELECTING_TIME
        elif self.step == BookingStep.SELECTING_TIME:
            self._leave_time_selection()
            self.step = BookingStep.SELECTING_DATE
        elif self.step == BookingStep.SELECTING_DATE:
            self.step = BookingStep.SELECTING_THERAPIST
        elif self.step == BookingStep.SELECTING_THERAPIST:
            if requires_questionnaire(self.service_type):
                self.step = BookingStep.ANSWERING_QUESTIONNAIRE
            else:
                self.step = BookingStep.SELECTING_SERVICE
        else:
            self.step = BookingStep.SELECTING_SERVICE
        return self.step

    def _refresh(self) -> list[Slot]:
        if self.therapist_id is None or self.slot_date is None:
            self.slots = []
            return self.slots

        try:
            self.slots = self._retry(
                lambda: self.resolver.resolve_slots(
                    self.therapist_id,
                    self.slot_date,
                    requester_id=self.user_id_provider(),
                    duration_minutes=self._session_minutes(),
                )
            )
        except TransientStorageFailure as exc:
            self.slots = []
            self._notify(TRANSIENT_STORAGE_FAILURE, 'Could not load available times. Please try again.')
            logger.warning('Slot resolution failed for %s on %s', self.therapist_id, self.slot_date, exc_info=exc)
            return self.slots

        if self.selected_slot is not None:
            current = next((slot for slot in self.slots if slot.start == self.selected_slot), None)
            if current is None or not current.held_by_requester:
                self._lose_selection(LOCK_LOST, 'Your selected time is no longer reserved. Please pick another time.')
        return self.slots

    @synchronized
    def refresh_slots(self) -> list[Slot]:
        if self.realtime_degraded and self.step == BookingStep.SELECTING_TIME:
            try:
                self._open_subscription()
            except SubscriptionError as exc:
                logger.warning('Resubscribe failed for %s on %s', self.therapist_id, self.slot_date, exc_info=exc)
        return self._refresh()

    def _degrade(self, exc: SubscriptionError) -> None:
        self._close_subscription()
        self.realtime_degraded = True
        self._notify(SUBSCRIPTION_ERROR, exc.message, level='warning')

    def _pump_events(self) -> int:
        if self._subscription is None:
            if self.realtime_degraded:
                self._refresh()
            return 0

        try:
            events = self._subscription.drain()
        except SubscriptionError as exc:
            self._degrade(exc)
            self._refresh()
            return 0

        if not events:
            return 0

        user_id = self.user_id_provider()
        for event in events:
            if (
                event.change_type == ChangeType.BOOKED
                and self.selected_slot is not None
                and event.slot_datetime == self.selected_slot
                and event.actor_id != user_id
            ):
                self._lose_selection(SLOT_TAKEN, 'Your chosen time was just booked by someone else. Please pick another time.')

        self._refresh()
        return len(events)

    @synchronized
    def process_events(self) -> int:
        """Apply pending availability events by re-resolving slots."""
        if self.disposed or self.step not in (BookingStep.SELECTING_TIME, BookingStep.CONFIRMING):
            return 0
        return self._pump_events()

    def _renew(self, user_id: str) -> bool:
        held = self.held
        try:
            result = self._retry(
                lambda: self.lock_manager.renew_lock(held.therapist_id, held.slot_datetime, user_id, self.ttl_seconds),
                max_attempts=config.RENEWAL_RETRY_ATTEMPTS,
            )
        except TransientStorageFailure:
            logger.warning('Renewal failed for lock on %s at %s', held.therapist_id, held.slot_datetime)
            now = self.clock()
            if now >= held.expires_at:
                self._lose_selection(LOCK_LOST, 'Your reservation expired. Please pick the time again.')
                return False
            held.next_renewal_at = now
            self._notify(
                LOCK_AT_RISK,
                'We could not extend your reservation. It will be released at '
                f'{held.expires_at:%H:%M} unless the connection recovers.',
                level='warning',
            )
            return False

        if not result.success:
            code = LOCK_LOST if result.error == SLOT_CONTENDED else result.error or LOCK_LOST
            if code == SLOT_ALREADY_BOOKED:
                message = 'Your chosen time was just booked by someone else. Please pick another time.'
            else:
                message = 'Your reservation expired and another client took this time. Please pick another time.'
            self._lose_selection(code, message)
            self._refresh()
            return False

        self._hold(result)
        return True

    @synchronized
    def tick(self) -> bool:
        """Renew the held lock once its renewal point has passed."""
        if self.disposed or self.held is None or self.clock() < self.held.next_renewal_at:
            return False
        user_id = self.user_id_provider()
        if not user_id:
            return False
        return self._renew(user_id)

    @synchronized
    def start_auto_renew(self, poll_seconds: float = 5.0) -> 'LockRenewer':
        if self._renewer is None:
            self._renewer = LockRenewer(self, poll_seconds)
            self._renewer.start()
        return self._renewer

    def _stop_renewer(self, wait: bool = False) -> None:
        renewer, self._renewer = self._renewer, None
        if renewer is not None:
            renewer.stop(wait=wait)

    def pop_notices(self) -> list[Notice]:
        notices, self.notices = self.notices, []
        return notices

    def dispose_session(self) -> None:
        """Release everything this session holds. Safe to call more than once."""
        # The renewer ticks under the state lock; join it before taking the lock.
        self._stop_renewer(wait=True)
        with self._state_lock:
            if self.disposed:
                return
            self._release_held()
            self._close_subscription()
            self.disposed = True

    def __enter__(self) -> 'BookingController':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.dispose_session()


class LockRenewer(threading.Thread):
    """Background ticker for hosts that have no event loop of their own."""

    def __init__(self, controller: BookingController, poll_seconds: float):
        super().__init__(name='slot-lock-renewer', daemon=True)
        self.controller = controller
        self.poll_seconds = poll_seconds
        self._stopped = threading.Event()

    def run(self) -> None:
        while not self._stopped.wait(self.poll_seconds):
            try:
                self.controller.tick()
            except BookingError:
                logger.exception('Lock renewal tick failed')

    def stop(self, wait: bool = True) -> None:
        self._stopped.set()
        if wait and self.is_alive() and threading.current_thread() is not self:
            self.join(timeout=self.poll_seconds + 1)
