import asyncio
import contextlib
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from therapy_booking.core import config
from therapy_booking.database import Base, engine, ensure_booking_schema
from therapy_booking.models import booking, intake, slot_lock, therapist, user  # noqa: F401
from therapy_booking.routes import auth_routes, availability_routes, booking_routes, lock_routes
from therapy_booking.routes.deps import get_lock_manager, get_notifier
from therapy_booking.services.lock_manager import run_lock_purger

logging.basicConfig(
    level=config.LOG_LEVEL,
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)
logger = logging.getLogger(__name__)

config.validate_runtime_config()

app = FastAPI(title='Therapy Booking API')
_purge_task: asyncio.Task | None = None

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)


@app.on_event('startup')
def initialize_database() -> None:
    try:
        Base.metadata.create_all(bind=engine)
        ensure_booking_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL.')


@app.on_event('startup')
async def start_lock_purger() -> None:
    global _purge_task
    _purge_task = asyncio.create_task(run_lock_purger(get_lock_manager()))


@app.on_event('shutdown')
async def stop_lock_purger() -> None:
    if _purge_task:
        _purge_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _purge_task


@app.on_event('shutdown')
def close_event_streams() -> None:
    get_notifier().close()


@app.get('/')
def root():
    return {'status': 'Therapy Booking API Running'}


app.include_router(auth_routes.router, prefix='/auth')
app.include_router(availability_routes.router, prefix='/availability')
app.include_router(lock_routes.router, prefix='/locks')
app.include_router(booking_routes.router, prefix='/bookings')
