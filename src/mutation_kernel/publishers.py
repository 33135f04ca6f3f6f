"""
Publisher and consumer adapters

In-process implementations of the broker-facing ports: a recording
publisher (usable for domain, analytics and DLQ traffic), a queue-backed
consumer that honors cancellation, and a publisher that writes every
envelope to the structured log for operator tooling.
"""

import queue
import threading
from typing import Any

from mutation_kernel.kernel.context import RequestContext
from mutation_kernel.kernel.envelope import EventEnvelope
from mutation_kernel.kernel.logging import get_logger
from mutation_kernel.kernel.retry import retry_on_transient_error

logger = get_logger(__name__)


class InMemoryPublisher:
    """
    Records everything published to it

    Set ``fail_with`` to make every publish raise that exception, or
    ``fail_times`` to fail only the next N calls.
    """

    def __init__(self, name: str = "memory", fail_with: Exception | None = None) -> None:
        self.name = name
        self.fail_with = fail_with
        self.fail_times = 0
        self.attempts = 0
        self._lock = threading.Lock()
        self._published: list[Any] = []

    def publish(self, item: Any) -> None:
        with self._lock:
            self.attempts += 1
            if self.fail_times > 0:
                self.fail_times -= 1
                raise ConnectionError(f"{self.name} publisher unavailable")
            if self.fail_with is not None:
                raise self.fail_with
            self._published.append(item)

    @property
    def published(self) -> list[Any]:
        with self._lock:
            return list(self._published)

    def event_types(self) -> list[str]:
        return [
            item.event_type for item in self.published if isinstance(item, EventEnvelope)
        ]

    def clear(self) -> None:
        with self._lock:
            self._published.clear()
            self.attempts = 0


class InMemoryConsumer:
    """
    Queue-backed inbound consumer

    receive() returns None (end of stream) when nothing arrives within
    ``wait_seconds``, and returns promptly once the context is cancelled.
    """

    def __init__(self, wait_seconds: float = 0.0) -> None:
        self.wait_seconds = wait_seconds
        self._queue: "queue.Queue[EventEnvelope]" = queue.Queue()

    def deliver(self, envelope: EventEnvelope) -> None:
        self._queue.put(envelope)

    def receive(self, ctx: RequestContext) -> EventEnvelope | None:
        waited = 0.0
        while not ctx.cancelled:
            try:
                return self._queue.get_nowait()
            except queue.Empty:
                if waited >= self.wait_seconds:
                    return None
            step = min(0.05, self.wait_seconds - waited)
            if ctx.wait(step):
                break
            waited += step
        return None

    def pending(self) -> int:
        return self._queue.qsize()


class LoggingPublisher:
    """
    Publishes by writing the envelope to the structured log

    A log sink that drops the connection (a remote handler) is retried
    like a broker call before the flusher counts the attempt as failed.
    """

    def __init__(self, topic: str) -> None:
        self.topic = topic

    @retry_on_transient_error()
    def publish(self, item: Any) -> None:
        if isinstance(item, EventEnvelope):
            logger.info(
                "Event published",
                topic=self.topic,
                event_id=item.event_id,
                event_type=item.event_type,
                event_class=item.event_class,
                partition_key=item.partition_key,
                trace_id=item.trace_id,
            )
        else:
            logger.warning(
                "Dead-letter record published",
                topic=self.topic,
                record=item.model_dump(mode="json"),
            )
