import asyncio
import logging
from datetime import date

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status

from therapy_booking.auth.dependencies import get_current_user, get_stream_user
from therapy_booking.core.errors import BookingError, SubscriptionError, booking_error_to_http
from therapy_booking.models.user import User
from therapy_booking.routes.deps import ensure_database_ready, get_notifier, get_resolver
from therapy_booking.schemas import ServiceTypeOption, Slot
from therapy_booking.services.availability_notifier import AvailabilityNotifier
from therapy_booking.services.availability_resolver import AvailabilityResolver
from therapy_booking.services.catalog import list_service_types

router = APIRouter(tags=['availability'])

logger = logging.getLogger(__name__)

EVENT_POLL_SECONDS = 15.0


@router.get('/services', response_model=list[ServiceTypeOption])
def list_services(current_user: User = Depends(get_current_user)):
    return list_service_types()


@router.get('/therapists/{therapist_id}/slots', response_model=list[Slot])
def list_therapist_slots(
    therapist_id: str,
    slot_date: date = Query(alias='date'),
    duration_minutes: int | None = Query(default=None, ge=15, le=180),
    current_user: User = Depends(get_current_user),
    resolver: AvailabilityResolver = Depends(get_resolver),
):
    ensure_database_ready()
    try:
        return resolver.resolve_slots(
            therapist_id,
            slot_date,
            requester_id=current_user.id,
            duration_minutes=duration_minutes,
        )
    except BookingError as exc:
        raise booking_error_to_http(exc) from exc


@router.get('/therapists/{therapist_id}/dates', response_model=list[date])
def list_therapist_dates(
    therapist_id: str,
    start_date: date | None = None,
    days: int | None = Query(default=None, ge=1),
    current_user: User = Depends(get_current_user),
    resolver: AvailabilityResolver = Depends(get_resolver),
):
    ensure_database_ready()
    try:
        return resolver.resolve_available_dates(therapist_id, start_date=start_date, days=days)
    except BookingError as exc:
        raise booking_error_to_http(exc) from exc


@router.websocket('/therapists/{therapist_id}/events')
async def stream_availability_events(
    websocket: WebSocket,
    therapist_id: str,
    slot_date: date = Query(alias='date'),
    current_user: User = Depends(get_stream_user),
    notifier: AvailabilityNotifier = Depends(get_notifier),
):
    """Push every lock, release, booking and cancellation on the therapist's date.

    Idle streams wait on the event loop and hold no threadpool worker.
    """
    loop = asyncio.get_running_loop()
    pending = asyncio.Event()
    subscription = notifier.subscribe(therapist_id, slot_date)
    subscription.add_listener(lambda: loop.call_soon_threadsafe(pending.set))
    pending.set()

    await websocket.accept()
    logger.debug('Availability stream opened for %s on %s by %s', therapist_id, slot_date, current_user.id)
    try:
        while not subscription.closed:
            try:
                await asyncio.wait_for(pending.wait(), EVENT_POLL_SECONDS)
            except asyncio.TimeoutError:
                await websocket.send_json({'type': 'ping'})
                continue
            pending.clear()
            for event in subscription.drain():
                await websocket.send_json({'type': 'availability_change', **event.model_dump(mode='json')})
    except SubscriptionError as exc:
        await websocket.send_json({'type': 'error', 'code': exc.code, 'message': exc.message})
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
    except WebSocketDisconnect:
        logger.debug('Availability stream for %s on %s disconnected', therapist_id, slot_date)
    finally:
        subscription.close()
