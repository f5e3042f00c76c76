"""
Injectable time source.

Session deadlines, sweep cut-offs, due dates and ``paid_at`` stamps are all
read from a ``Clock`` handed to the service, so a test can pin "now" and
walk it past a deadline.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

DEFAULT_TEST_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class Clock(ABC):
    """Source of the current instant. ``now()`` is always UTC-aware."""

    @abstractmethod
    def now(self) -> datetime: ...


class SystemClock(Clock):

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """Frozen clock that only moves when a test moves it."""

    def __init__(self, start: datetime | None = None):
        self._current = start or DEFAULT_TEST_TIME

    def now(self) -> datetime:
        return self._current

    def advance(self, seconds: float = 1) -> None:
        self._current += timedelta(seconds=seconds)

    def advance_hours(self, hours: float) -> datetime:
        """Move forward by ``hours`` and return the new instant."""
        self._current += timedelta(hours=hours)
        return self._current
