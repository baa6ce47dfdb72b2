"""Injectable wall-clock time sources.

Every availability and expiry comparison reads time through a ``Clock`` so
that lifecycle decisions can be replayed deterministically in tests.
"""

from datetime import UTC, datetime, timedelta
from typing import Protocol


class Clock(Protocol):
    """Source of timezone-aware UTC timestamps."""

    def now(self) -> datetime: ...


class SystemClock:
    """Clock backed by the system time."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime.now(UTC)

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value

    def advance(self, seconds: float = 0.0, **kwargs: float) -> datetime:
        """Move the clock forward and return the new time.

        Accepts the same keyword arguments as ``timedelta``.
        """
        self._now = self._now + timedelta(seconds=seconds, **kwargs)
        return self._now


_system_clock = SystemClock()


def get_clock() -> Clock:
    """Return the process-wide system clock."""
    return _system_clock
