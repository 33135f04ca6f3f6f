"""
Retry logic with exponential backoff for transient failures.

Provides decorators for SQLite lock contention, flaky publishers, and the
optional wait-for-in-flight policy of the idempotent fast path.
"""

import sqlite3
from collections.abc import Callable
from typing import TypeVar

from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from mutation_kernel.kernel.errors import RequestInFlight
from mutation_kernel.kernel.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def retry_on_sqlite_lock(
    max_attempts: int = 3,
    min_wait_ms: int = 100,
    max_wait_ms: int = 1000,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Retry decorator for SQLite lock contention (OperationalError).

    SQLite uses file-based locking and can report "database is locked" when
    the flusher, the consumer and request handlers touch the same file.

    Args:
        max_attempts: Maximum number of attempts (default: 3)
        min_wait_ms: Minimum wait time in milliseconds (default: 100)
        max_wait_ms: Maximum wait time in milliseconds (default: 1000)

    Returns:
        Decorated function that retries on sqlite3.OperationalError
    """
    return retry(
        retry=retry_if_exception_type(sqlite3.OperationalError),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(
            multiplier=1,
            min=min_wait_ms / 1000.0,
            max=max_wait_ms / 1000.0,
        ),
        before_sleep=lambda retry_state: logger.warning(
            "SQLite lock detected, retrying",
            attempt=retry_state.attempt_number,
            exception=str(retry_state.outcome.exception()) if retry_state.outcome else None,
        ),
        reraise=True,
    )


def retry_on_transient_error(
    max_attempts: int = 3,
    min_wait_ms: int = 100,
    max_wait_ms: int = 1000,
    exceptions: tuple[type[Exception], ...] = (ConnectionError, TimeoutError),
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Generic retry decorator for transient errors.

    Publisher adapters wrap their network call with this before the outbox
    flusher gives up on a record and dead-letters it.

    Example:
        @retry_on_transient_error(exceptions=(ConnectionError,))
        def publish(self, envelope):
            self._producer.send(...)
    """
    return retry(
        retry=retry_if_exception_type(exceptions),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(
            multiplier=1,
            min=min_wait_ms / 1000.0,
            max=max_wait_ms / 1000.0,
        ),
        before_sleep=lambda retry_state: logger.warning(
            "Transient error detected, retrying",
            attempt=retry_state.attempt_number,
            exception=str(retry_state.outcome.exception()) if retry_state.outcome else None,
        ),
        reraise=True,
    )


def wait_for_in_flight(
    max_attempts: int = 5,
    max_wait_seconds: float = 1.0,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Retry decorator for replays that hit a pending reservation.

    Used by the "wait" in-flight policy: the replay polls the idempotency
    store until the original request completes, then re-raises
    RequestInFlight if it never does.
    """
    return retry(
        retry=retry_if_exception_type(RequestInFlight),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=0.05, min=0.05, max=max_wait_seconds),
        before_sleep=lambda retry_state: logger.debug(
            "Reservation still in flight, waiting",
            attempt=retry_state.attempt_number,
        ),
        reraise=True,
    )
