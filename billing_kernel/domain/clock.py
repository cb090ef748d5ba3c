"""
Clock -- injectable time source.

Services receive a Clock instead of calling ``datetime.now()`` so that issue
dates, payment dates and ``{YEAR}``/``{MONTH}`` number rendering are
reproducible under test.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone


class Clock(ABC):
    """Abstract clock.  ``now()`` is always timezone-aware."""

    @abstractmethod
    def now(self) -> datetime:
        ...

    def today(self) -> date:
        """Calendar date of ``now()``."""
        return self.now().date()


class SystemClock(Clock):
    """Production clock returning the current UTC time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Test clock with controlled time.

    ``now()`` returns the same value until ``advance()`` or ``set_time()``
    is called.
    """

    def __init__(self, fixed_time: datetime | None = None):
        self._fixed_time = fixed_time or datetime(
            2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc
        )
        self._advance_seconds = 0

    def now(self) -> datetime:
        return self._fixed_time + timedelta(seconds=self._advance_seconds)

    def set_time(self, time: datetime) -> None:
        self._fixed_time = time
        self._advance_seconds = 0

    def advance(self, seconds: int = 1) -> None:
        self._advance_seconds += seconds

    def advance_days(self, days: int) -> None:
        self.advance(days * 86400)
