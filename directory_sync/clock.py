"""Clock abstraction so ban timestamps never come from a direct wall-clock read."""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional


class Clock(ABC):

    @abstractmethod
    def now(self) -> datetime:
        """Return the current time as a timezone-aware UTC datetime."""
        pass


class RealClock(Clock):

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FakeClock(Clock):
    """Fixed clock that only moves when told to."""

    def __init__(self, current: Optional[datetime] = None):
        self.current = current or datetime(2023, 10, 20, 12, 0, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def set(self, current: datetime):
        self.current = current

    def step(self, delta: timedelta):
        self.current = self.current + delta
