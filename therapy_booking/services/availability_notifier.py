"""In-process fan-out of availability changes, one topic per (therapist, date).

Consumers are expected to re-resolve slots on every event rather than patch
their state, so duplicated events are harmless. Events on one topic reach
every subscriber in the order they were published.
"""
from __future__ import annotations

import logging
import queue
import threading
from datetime import date
from typing import Callable, Iterator

from therapy_booking.core import config
from therapy_booking.core.errors import SubscriptionError
from therapy_booking.schemas import AvailabilityChangeEvent

logger = logging.getLogger(__name__)

Topic = tuple[str, date]

_CLOSED = object()


class Subscription:
    """A single consumer's ordered view of one topic."""

    def __init__(self, notifier: 'AvailabilityNotifier', topic: Topic, maxsize: int):
        self.topic = topic
        self._notifier = notifier
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._closed = False
        self._dropped_reason: str | None = None
        self._listeners: list[Callable[[], None]] = []

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def dropped(self) -> bool:
        return self._dropped_reason is not None

    def _offer(self, event: AvailabilityChangeEvent) -> bool:
        if self._closed or self.dropped:
            return False
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self._drop('subscriber fell behind')
            return False
        self._signal()
        return True

    def _drop(self, reason: str) -> None:
        if self._dropped_reason is None:
            self._dropped_reason = reason
            logger.warning('Availability subscription %s dropped: %s', self.topic, reason)
        self._wake()
        self._signal()

    def _signal(self) -> None:
        for listener in list(self._listeners):
            listener()

    def add_listener(self, listener: Callable[[], None]) -> None:
        """Call ``listener`` from the publishing thread whenever there is something to drain.

        Listeners must not block; they run under the topic's publish lock.
        """
        self._listeners.append(listener)

    def _wake(self) -> None:
        try:
            self._queue.put_nowait(_CLOSED)
        except queue.Full:
            pass

    def _raise_if_dropped(self) -> None:
        if self._dropped_reason is not None:
            raise SubscriptionError(f'Live updates stopped: {self._dropped_reason}.')

    def get(self, timeout: float | None = None) -> AvailabilityChangeEvent | None:
        """Next event, or None on timeout or after close()."""
        self._raise_if_dropped()
        if self._closed:
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            self._raise_if_dropped()
            return None
        return item

    def drain(self) -> list[AvailabilityChangeEvent]:
        """Every event already delivered, without blocking."""
        self._raise_if_dropped()
        events: list[AvailabilityChangeEvent] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            if item is _CLOSED:
                self._raise_if_dropped()
                break
            events.append(item)
        return events

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._notifier._unsubscribe(self)
        self._wake()

    def __iter__(self) -> Iterator[AvailabilityChangeEvent]:
        while not self._closed:
            event = self.get()
            if event is None:
                if self._closed:
                    return
                continue
            yield event

    def __enter__(self) -> 'Subscription':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class AvailabilityNotifier:
    def __init__(self, queue_size: int = config.SUBSCRIPTION_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers: dict[Topic, list[Subscription]] = {}
        self._topic_locks: dict[Topic, threading.Lock] = {}
        self._master_lock = threading.Lock()

    def _topic_lock(self, topic: Topic) -> threading.Lock:
        with self._master_lock:
            if topic not in self._topic_locks:
                self._topic_locks[topic] = threading.Lock()
            return self._topic_locks[topic]

    def subscribe(self, therapist_id: str, slot_date: date) -> Subscription:
        topic = (therapist_id, slot_date)
        subscription = Subscription(self, topic, self.queue_size)
        with self._topic_lock(topic):
            self._subscribers.setdefault(topic, []).append(subscription)
        logger.debug('Subscribed to availability for %s on %s', therapist_id, slot_date)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        with self._topic_lock(subscription.topic):
            subscribers = self._subscribers.get(subscription.topic, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscribers.pop(subscription.topic, None)

    def subscriber_count(self, therapist_id: str, slot_date: date) -> int:
        return len(self._subscribers.get((therapist_id, slot_date), []))

    def publish(self, event: AvailabilityChangeEvent) -> int:
        """Deliver an event to every subscriber of its topic; returns deliveries."""
        topic = event.topic
        delivered = 0
        with self._topic_lock(topic):
            for subscription in list(self._subscribers.get(topic, [])):
                if subscription._offer(event):
                    delivered += 1
                else:
                    self._subscribers[topic].remove(subscription)
        logger.debug(
            'Published %s for %s at %s to %s subscriber(s)',
            event.change_type.value,
            event.therapist_id,
            event.slot_datetime,
            delivered,
        )
        return delivered

    def close(self) -> None:
        """Drop every open subscription; their consumers see SubscriptionError."""
        with self._master_lock:
            topics = list(self._subscribers)
        for topic in topics:
            with self._topic_lock(topic):
                subscriptions = self._subscribers.pop(topic, [])
            for subscription in subscriptions:
                subscription._drop('availability channel closed')
