from contextlib import contextmanager
from threading import Lock

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from therapy_booking.core import config
from therapy_booking.core.errors import TransientStorageFailure


def create_storage_engine(url: str, **kwargs) -> Engine:
    """Create an engine whose transactions serialize conditional writes.

    SQLite only takes its write lock at the first write, which lets two
    readers deadlock on upgrade. Starting every transaction with
    BEGIN IMMEDIATE makes lock acquisition wait its turn instead.
    """
    if url.startswith('sqlite'):
        connect_args = kwargs.pop('connect_args', {})
        connect_args.setdefault('check_same_thread', False)
        connect_args.setdefault('timeout', 15)
        engine = create_engine(url, connect_args=connect_args, **kwargs)

        @event.listens_for(engine, 'connect')
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, 'begin')
        def _begin_immediate(connection):
            connection.exec_driver_sql('BEGIN IMMEDIATE')

        return engine

    return create_engine(url, pool_pre_ping=True, **kwargs)


engine = create_storage_engine(config.DATABASE_URL, echo=config.DATABASE_ECHO)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_booking_schema_checked = False


def ensure_booking_schema(bind: Engine | None = None) -> None:
    """Add the uniqueness guarantees to tables created before they existed."""
    global _booking_schema_checked

    target = bind or engine
    if bind is None and _booking_schema_checked:
        return

    with _schema_lock:
        if bind is None and _booking_schema_checked:
            return

        table_names = set(inspect(target).get_table_names())

        with target.begin() as connection:
            if 'slot_locks' in table_names:
                connection.execute(
                    text(
                        'CREATE UNIQUE INDEX IF NOT EXISTS uq_slot_locks_therapist_slot '
                        'ON slot_locks(therapist_id, slot_datetime)'
                    )
                )
                connection.execute(
                    text('CREATE INDEX IF NOT EXISTS idx_slot_locks_expires_at ON slot_locks(expires_at)')
                )
            if 'bookings' in table_names:
                connection.execute(
                    text(
                        'CREATE UNIQUE INDEX IF NOT EXISTS uq_bookings_active_slot '
                        'ON bookings(therapist_id, scheduled_at) '
                        "WHERE status NOT IN ('cancelled', 'no_show')"
                    )
                )
                connection.execute(
                    text('CREATE INDEX IF NOT EXISTS idx_bookings_therapist_start ON bookings(therapist_id, scheduled_at)')
                )

        if bind is None:
            _booking_schema_checked = True


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope(session_factory: sessionmaker = SessionLocal):
    """Yield a session; storage errors roll back and surface as transient failures."""
    db = session_factory()
    try:
        yield db
    except SQLAlchemyError as exc:
        db.rollback()
        raise TransientStorageFailure() from exc
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
