"""
Clock

Injectable source of "now". Services take a clock instead of calling
datetime.now() so lifecycle windows can be tested at fixed instants.

Usage:
    clock = FixedClock(datetime(2025, 1, 1, tzinfo=timezone.utc))
    clock.advance(days=5)
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, current: datetime):
        if current.tzinfo is None:
            raise ValueError("FixedClock requires a timezone-aware datetime")
        self._current = current

    def now(self) -> datetime:
        return self._current

    def set(self, current: datetime) -> None:
        self._current = current

    def advance(self, **delta) -> datetime:
        self._current = self._current + timedelta(**delta)
        return self._current


def from_unix(value: Optional[int]) -> Optional[datetime]:
    """Convert provider unix seconds to an aware UTC datetime."""
    if value is None or value == '':
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


system_clock = SystemClock()
