"""Bounded retries with exponential backoff for storage calls."""

from __future__ import annotations

import logging
import random
import time
from typing import Callable, TypeVar

from therapy_booking.core import config
from therapy_booking.core.errors import TransientStorageFailure

logger = logging.getLogger(__name__)

T = TypeVar('T')


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    delay = min(max_delay, base_delay * (2**attempt))
    if delay:
        delay = delay + random.uniform(0, delay / 2)
    return delay


def call_with_retries(
    fn: Callable[[], T],
    *,
    max_attempts: int | None = None,
    base_delay: float | None = None,
    max_delay: float | None = None,
    retry_on: tuple[type[Exception], ...] = (TransientStorageFailure,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``fn`` until it succeeds or ``max_attempts`` transient failures occur."""
    attempts = max_attempts or config.STORAGE_RETRY_ATTEMPTS
    base = config.STORAGE_RETRY_BASE_DELAY if base_delay is None else base_delay
    ceiling = config.STORAGE_RETRY_MAX_DELAY if max_delay is None else max_delay

    for attempt in range(attempts):
        try:
            return fn()
        except retry_on as exc:
            if attempt >= attempts - 1:
                raise
            delay = backoff_delay(attempt, base, ceiling)
            logger.warning('Storage call failed (attempt %s/%s), retrying', attempt + 1, attempts, exc_info=exc)
            if delay:
                sleep(delay)

    raise RuntimeError('call_with_retries exhausted without a result')
