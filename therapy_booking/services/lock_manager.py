"""Short-lived exclusive holds on therapist slots.

Acquisition is one conditional UPDATE followed, only when no row matched,
by an INSERT that the unique key on (therapist_id, slot_datetime) lets
through at most once. The application never reads a lock and then decides
to write one.
"""
import asyncio
import logging
from datetime import date, datetime, time, timedelta

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import case, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from therapy_booking.core import config
from therapy_booking.core.clock import Clock, system_clock
from therapy_booking.core.errors import BookingError, SlotAlreadyBooked, SlotContended, TransientStorageFailure
from therapy_booking.database import SessionLocal, session_scope
from therapy_booking.models.booking import INACTIVE_BOOKING_STATUSES, Booking
from therapy_booking.models.slot_lock import SlotLock
from therapy_booking.schemas import AvailabilityChangeEvent, ChangeType, LockResult, SlotLockView
from therapy_booking.services.availability_notifier import AvailabilityNotifier

logger = logging.getLogger(__name__)


def normalize_slot_datetime(slot_datetime: datetime) -> datetime:
    if slot_datetime.tzinfo is not None:
        slot_datetime = slot_datetime.astimezone().replace(tzinfo=None)
    return slot_datetime.replace(second=0, microsecond=0)


def claim_slot_lock(
    db: Session,
    therapist_id: str,
    slot_datetime: datetime,
    requester_id: str,
    now: datetime,
    expires_at: datetime,
) -> SlotLock:
    """Take or extend the lock inside the caller's transaction.

    Raises SlotContended when another user holds a live lock. The caller
    owns commit and rollback.
    """
    result = db.execute(
        update(SlotLock)
        .where(
            SlotLock.therapist_id == therapist_id,
            SlotLock.slot_datetime == slot_datetime,
            or_(SlotLock.expires_at <= now, SlotLock.locked_by == requester_id),
        )
        .values(
            locked_by=requester_id,
            expires_at=expires_at,
            acquired_at=case((SlotLock.locked_by == requester_id, SlotLock.acquired_at), else_=now),
        )
        .execution_options(synchronize_session=False)
    )

    if result.rowcount == 0:
        db.add(
            SlotLock(
                therapist_id=therapist_id,
                slot_datetime=slot_datetime,
                locked_by=requester_id,
                acquired_at=now,
                expires_at=expires_at,
            )
        )
        try:
            db.flush()
        except IntegrityError as exc:
            raise SlotContended() from exc

    return db.query(SlotLock).filter(
        SlotLock.therapist_id == therapist_id,
        SlotLock.slot_datetime == slot_datetime,
    ).populate_existing().one()


def slot_has_active_booking(db: Session, therapist_id: str, slot_datetime: datetime) -> bool:
    return db.query(Booking.id).filter(
        Booking.therapist_id == therapist_id,
        Booking.scheduled_at == slot_datetime,
        Booking.status.not_in(INACTIVE_BOOKING_STATUSES),
    ).first() is not None


class LockManager:
    def __init__(
        self,
        session_factory: sessionmaker = SessionLocal,
        notifier: AvailabilityNotifier | None = None,
        clock: Clock = system_clock,
        *,
        ttl_seconds: int = config.SLOT_LOCK_TTL_SECONDS,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.clock = clock
        self.ttl_seconds = ttl_seconds

    def _publish(self, therapist_id: str, slot_datetime: datetime, change_type: ChangeType, actor_id: str) -> None:
        if self.notifier is None:
            return
        self.notifier.publish(
            AvailabilityChangeEvent(
                therapist_id=therapist_id,
                slot_datetime=slot_datetime,
                change_type=change_type,
                actor_id=actor_id,
                occurred_at=self.clock(),
            )
        )

    def acquire_lock(
        self,
        therapist_id: str,
        slot_datetime: datetime,
        requester_id: str,
        ttl_seconds: int | None = None,
    ) -> LockResult:
        """Hold the slot for ``requester_id``; the current owner may call this again to renew.

        Contention and already-booked slots come back as unsuccessful
        results. Storage failures raise TransientStorageFailure and leave no
        partial lock behind.
        """
        slot_datetime = normalize_slot_datetime(slot_datetime)
        now = self.clock()
        expires_at = now + timedelta(seconds=ttl_seconds or self.ttl_seconds)

        try:
            with session_scope(self.session_factory) as db:
                lock = claim_slot_lock(db, therapist_id, slot_datetime, requester_id, now, expires_at)
                if slot_has_active_booking(db, therapist_id, slot_datetime):
                    raise SlotAlreadyBooked()
                view = SlotLockView.model_validate(lock)
                db.commit()
        except (SlotContended, SlotAlreadyBooked) as exc:
            logger.info(
                'Lock on %s at %s refused for %s: %s',
                therapist_id,
                slot_datetime,
                requester_id,
                exc.code,
            )
            return lock_error_result(exc)

        logger.info('Lock on %s at %s held by %s until %s', therapist_id, slot_datetime, requester_id, expires_at)
        self._publish(therapist_id, slot_datetime, ChangeType.LOCKED, requester_id)
        return LockResult(success=True, lock=view)

    def renew_lock(
        self,
        therapist_id: str,
        slot_datetime: datetime,
        requester_id: str,
        ttl_seconds: int | None = None,
    ) -> LockResult:
        return self.acquire_lock(therapist_id, slot_datetime, requester_id, ttl_seconds)

    def release_lock(self, therapist_id: str, slot_datetime: datetime, requester_id: str) -> LockResult:
        """Drop the requester's lock. Absent, expired or foreign locks are a no-op."""
        slot_datetime = normalize_slot_datetime(slot_datetime)

        with session_scope(self.session_factory) as db:
            deleted = db.query(SlotLock).filter(
                SlotLock.therapist_id == therapist_id,
                SlotLock.slot_datetime == slot_datetime,
                SlotLock.locked_by == requester_id,
            ).delete(synchronize_session=False)
            db.commit()

        if deleted:
            logger.info('Lock on %s at %s released by %s', therapist_id, slot_datetime, requester_id)
            self._publish(therapist_id, slot_datetime, ChangeType.UNLOCKED, requester_id)
        return LockResult(success=True)

    def get_lock(self, therapist_id: str, slot_datetime: datetime) -> SlotLockView | None:
        """The live lock on a slot, if any. Expired rows count as absent."""
        slot_datetime = normalize_slot_datetime(slot_datetime)
        with session_scope(self.session_factory) as db:
            lock = db.query(SlotLock).filter(
                SlotLock.therapist_id == therapist_id,
                SlotLock.slot_datetime == slot_datetime,
                SlotLock.expires_at > self.clock(),
            ).first()
            return SlotLockView.model_validate(lock) if lock else None

    def active_locks(self, therapist_id: str, slot_date: date) -> list[SlotLockView]:
        day_start = datetime.combine(slot_date, time.min)
        with session_scope(self.session_factory) as db:
            locks = db.query(SlotLock).filter(
                SlotLock.therapist_id == therapist_id,
                SlotLock.slot_datetime >= day_start,
                SlotLock.slot_datetime < day_start + timedelta(days=1),
                SlotLock.expires_at > self.clock(),
            ).order_by(SlotLock.slot_datetime.asc()).all()
            return [SlotLockView.model_validate(lock) for lock in locks]

    def purge_expired_locks(self) -> int:
        """Physically delete expired rows. Readers already ignore them."""
        with session_scope(self.session_factory) as db:
            purged = db.query(SlotLock).filter(
                SlotLock.expires_at <= self.clock(),
            ).delete(synchronize_session=False)
            db.commit()
        if purged:
            logger.info('Purged %s expired slot lock(s)', purged)
        return purged


def lock_error_result(exc: BookingError) -> LockResult:
    return LockResult(success=False, error=exc.code, message=exc.message)


async def run_lock_purger(
    lock_manager: LockManager,
    interval_seconds: float = config.LOCK_PURGE_INTERVAL_SECONDS,
) -> None:
    """Purge expired locks now and then every ``interval_seconds`` until cancelled."""
    while True:
        try:
            await run_in_threadpool(lock_manager.purge_expired_locks)
        except TransientStorageFailure:
            logger.warning('Expired lock purge failed; retrying in %ss', interval_seconds)
        await asyncio.sleep(interval_seconds)
