"""Wall-clock access for lock expiry and slot cut-offs.

Every service takes a ``clock`` callable so tests can move time forward
without sleeping. Datetimes are naive and in the practice's local time, the
same convention the stored slot datetimes use.
"""
from datetime import datetime, timedelta
from typing import Callable

Clock = Callable[[], datetime]


def system_clock() -> datetime:
    return datetime.now().replace(microsecond=0)


class FrozenClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current
