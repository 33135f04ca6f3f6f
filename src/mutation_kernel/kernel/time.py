"""
Time provider abstraction for deterministic testing

Every expiry decision in the kernel (idempotency TTL, dedup window, outbox
sent_at) reads the clock through a TimeProvider, so tests can freeze and
advance time instead of sleeping.
"""

from datetime import datetime, timedelta, timezone
from typing import Protocol


class TimeProvider(Protocol):
    """Protocol for time providers - allows deterministic testing"""

    def now(self) -> datetime:
        """Return current UTC datetime"""
        ...


class RealTimeProvider:
    """Production time provider using system clock"""

    def now(self) -> datetime:
        """Return current UTC time from system clock"""
        return datetime.now(timezone.utc)


class TestTimeProvider:
    """
    Controllable time provider for deterministic tests

    Allows tests to freeze time, advance time, and ensure
    reproducible expiry behaviour.
    """

    __test__ = False  # not a pytest test class

    def __init__(self, initial_time: datetime | None = None) -> None:
        """
        Initialize with optional fixed time

        Args:
            initial_time: Starting time (defaults to Unix epoch)
        """
        self._current_time = initial_time or datetime(1970, 1, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        """Return current test time"""
        return self._current_time

    def set_time(self, dt: datetime) -> None:
        """Set current time to specific value"""
        self._current_time = dt

    def advance(self, delta: timedelta) -> None:
        """Advance time by an arbitrary delta"""
        self._current_time += delta

    def advance_seconds(self, seconds: int) -> None:
        """Advance time by specified seconds"""
        self._current_time += timedelta(seconds=seconds)

    def advance_days(self, days: int) -> None:
        """Advance time by specified days"""
        self._current_time += timedelta(days=days)


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC"""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


default_time_provider: TimeProvider = RealTimeProvider()
