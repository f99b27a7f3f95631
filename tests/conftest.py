import os
from datetime import date, datetime, time

import pytest
from sqlalchemy.orm import sessionmaker

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from therapy_booking.core.clock import FrozenClock  # noqa: E402
from therapy_booking.database import Base, create_storage_engine  # noqa: E402
from therapy_booking.models.booking import Booking  # noqa: E402,F401
from therapy_booking.models.intake import IntakeQuestionnaire  # noqa: E402,F401
from therapy_booking.models.slot_lock import SlotLock  # noqa: E402,F401
from therapy_booking.models.therapist import Therapist, TherapistAvailability  # noqa: E402
from therapy_booking.models.user import User  # noqa: E402
from therapy_booking.services.availability_notifier import AvailabilityNotifier  # noqa: E402
from therapy_booking.services.availability_resolver import AvailabilityResolver  # noqa: E402
from therapy_booking.services.booking_committer import BookingCommitter  # noqa: E402
from therapy_booking.services.booking_controller import BookingController  # noqa: E402
from therapy_booking.services.catalog import IntakeRecords  # noqa: E402
from therapy_booking.services.lock_manager import LockManager  # noqa: E402

# Monday morning; slots are resolved for the following day.
NOW = datetime(2026, 3, 2, 8, 0)
SLOT_DATE = date(2026, 3, 3)
THERAPIST_ID = 'therapist-1'
THERAPIST_USER_ID = 'therapist-user-1'


@pytest.fixture
def session_factory(tmp_path):
    engine = create_storage_engine(f"sqlite:///{tmp_path / 'booking.db'}")
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    finally:
        engine.dispose()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture
def seed_therapist(session_factory):
    def _seed(
        therapist_id: str = THERAPIST_ID,
        session_minutes: int = 60,
        windows: tuple[tuple[time, time], ...] = ((time(9, 0), time(12, 0)),),
        weekday: int = SLOT_DATE.weekday(),
        is_active: bool = True,
    ) -> str:
        db = session_factory()
        try:
            if db.get(User, THERAPIST_USER_ID) is None:
                db.add(User(id=THERAPIST_USER_ID, email='therapist@example.com', role='therapist'))
            db.add(
                Therapist(
                    id=therapist_id,
                    user_id=THERAPIST_USER_ID,
                    display_name='Dr. Rivera',
                    session_minutes=session_minutes,
                    is_active=is_active,
                )
            )
            for window_start, window_end in windows:
                db.add(
                    TherapistAvailability(
                        therapist_id=therapist_id,
                        day_of_week=weekday,
                        start_time=window_start,
                        end_time=window_end,
                    )
                )
            db.commit()
        finally:
            db.close()
        return therapist_id

    return _seed


@pytest.fixture
def notifier():
    notifier = AvailabilityNotifier(queue_size=64)
    yield notifier
    notifier.close()


@pytest.fixture
def resolver(session_factory, clock) -> AvailabilityResolver:
    return AvailabilityResolver(session_factory, clock, min_notice_minutes=60, booking_window_days=60)


@pytest.fixture
def lock_manager(session_factory, notifier, clock) -> LockManager:
    return LockManager(session_factory, notifier, clock, ttl_seconds=300)


@pytest.fixture
def committer(session_factory, notifier, clock) -> BookingCommitter:
    return BookingCommitter(
        session_factory,
        notifier,
        clock,
        ttl_seconds=300,
        min_notice_minutes=60,
        booking_window_days=60,
    )


@pytest.fixture
def intake_records(session_factory, clock) -> IntakeRecords:
    return IntakeRecords(session_factory, clock)


@pytest.fixture
def make_controller(resolver, lock_manager, committer, notifier, intake_records, clock):
    controllers: list[BookingController] = []

    def _make(user_id: str | None = 'client-a') -> BookingController:
        controller = BookingController(
            lambda: user_id,
            resolver,
            lock_manager,
            committer,
            notifier,
            intake_records,
            clock=clock,
            ttl_seconds=300,
            renewal_ratio=0.8,
            retry_sleep=lambda _: None,
        )
        controllers.append(controller)
        return controller

    yield _make
    for controller in controllers:
        controller.dispose_session()
