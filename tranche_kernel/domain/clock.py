"""
Clock -- injectable source of "now".

The guard's cooldowns, TTLs and stale-run detection, staging timestamps,
execution lifecycle timestamps and the ``current_*`` template variables all
read time through a Clock.  Tests use DeterministicClock and move time with
``advance()`` instead of sleeping.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    """Returns timezone-aware UTC datetimes."""

    @abstractmethod
    def now_utc(self) -> datetime: ...


class SystemClock(Clock):

    def now_utc(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Frozen clock for tests.

    ``now_utc()`` keeps returning the same instant until ``advance()`` or
    ``set_time()`` moves it.
    """

    def __init__(self, start: datetime | None = None):
        self._current = ensure_utc(start) or datetime(2026, 1, 1, tzinfo=timezone.utc)

    def now_utc(self) -> datetime:
        return self._current

    def set_time(self, value: datetime) -> None:
        self._current = ensure_utc(value)

    def advance(self, seconds: float = 1) -> datetime:
        self._current += timedelta(seconds=seconds)
        return self._current


def ensure_utc(value: datetime | None) -> datetime | None:
    """Normalize a stored timestamp to aware UTC.

    SQLite returns naive datetimes for timezone-aware columns; values written
    by this package are always UTC, so a naive value is read as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
