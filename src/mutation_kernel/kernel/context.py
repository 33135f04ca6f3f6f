"""
Request context - deadline and cooperative cancellation

Every store, publisher and consumer call made by the kernel receives the
ambient RequestContext of the request or worker tick that caused it. The
kernel checks it at the points where abandoning work is safe: before an
idempotency reservation is taken, before the business effect runs, and
between outbox records.
"""

import threading
import time

from mutation_kernel.kernel.errors import Cancelled


class RequestContext:
    """
    Cancellation signal plus optional deadline

    Contexts form a tree: cancelling a parent cancels every child, so a
    worker shutdown reaches every in-flight receive call.
    """

    def __init__(
        self,
        timeout: float | None = None,
        parent: "RequestContext | None" = None,
    ) -> None:
        """
        Args:
            timeout: Seconds until the deadline (None for no deadline)
            parent: Context whose cancellation also cancels this one
        """
        self._cancelled = threading.Event()
        self._parent = parent
        self._deadline: float | None = None
        if timeout is not None:
            self._deadline = time.monotonic() + timeout
        if parent is not None and parent._deadline is not None:
            if self._deadline is None or parent._deadline < self._deadline:
                self._deadline = parent._deadline

    @classmethod
    def background(cls) -> "RequestContext":
        """A context that is never cancelled unless asked to be"""
        return cls()

    def child(self, timeout: float | None = None) -> "RequestContext":
        """Derive a context that inherits this one's cancellation and deadline"""
        return RequestContext(timeout=timeout, parent=self)

    def cancel(self) -> None:
        """Signal cancellation to everything holding this context"""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        if self._cancelled.is_set():
            return True
        if self._parent is not None and self._parent.cancelled:
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or None without one"""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def check(self, stage: str = "") -> None:
        """
        Raise Cancelled if this context is done

        Args:
            stage: Name of the step about to run, for the error message
        """
        if self.cancelled:
            where = f" before {stage}" if stage else ""
            raise Cancelled(f"request cancelled{where}")

    def wait(self, seconds: float) -> bool:
        """
        Sleep up to ``seconds``, waking early on cancellation

        Returns:
            True if the context was cancelled while waiting
        """
        end = time.monotonic() + seconds
        while not self.cancelled:
            left = end - time.monotonic()
            if left <= 0:
                return False
            remaining = self.remaining()
            if remaining is not None:
                left = min(left, remaining)
            self._cancelled.wait(min(left, 0.05))
        return True
