"""
Injectable time source.

Services take a ``Clock`` instead of calling ``datetime.now()`` so tests can
pin "now" for daily-cap and sweep cutoffs. Times are naive local datetimes:
the daily cap follows the local calendar day.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta


class Clock(ABC):
    """Abstract clock interface."""

    @abstractmethod
    def now(self) -> datetime:
        """Get the current time."""
        ...


class SystemClock(Clock):
    """Production clock that returns actual system time."""

    def now(self) -> datetime:
        return datetime.now()


class FixedClock(Clock):
    """Test clock with controlled time."""

    def __init__(self, current: datetime):
        self._current = current

    def now(self) -> datetime:
        return self._current

    def set(self, current: datetime) -> None:
        self._current = current

    def advance(self, **kwargs) -> datetime:
        """Move the clock forward by ``timedelta(**kwargs)``."""
        self._current = self._current + timedelta(**kwargs)
        return self._current
