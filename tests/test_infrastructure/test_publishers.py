"""Tests for the publisher and consumer adapters"""

from datetime import datetime, timezone

import pytest

from mutation_kernel import publishers
from mutation_kernel.kernel.context import RequestContext
from mutation_kernel.kernel.envelope import EventEnvelope
from mutation_kernel.publishers import InMemoryConsumer, InMemoryPublisher, LoggingPublisher


def event() -> EventEnvelope:
    return EventEnvelope(
        event_id="evt-1",
        event_type="payout.paid",
        event_class="domain",
        occurred_at=datetime(2026, 2, 10, tzinfo=timezone.utc),
        partition_key_path="data.payout_id",
        partition_key="po-1",
        data={"payout_id": "po-1"},
    )


class DroppingSink:
    """Stands in for the module logger; drops the first N writes"""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0
        self.messages: list[str] = []

    def info(self, message: str, **fields: object) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("log sink unavailable")
        self.messages.append(message)

    warning = info


def test_logging_publisher_retries_transient_error(monkeypatch: pytest.MonkeyPatch) -> None:
    sink = DroppingSink(failures=1)
    monkeypatch.setattr(publishers, "logger", sink)

    LoggingPublisher("payouts.domain").publish(event())

    assert sink.calls == 2
    assert sink.messages == ["Event published"]


def test_logging_publisher_gives_up_after_retries(monkeypatch: pytest.MonkeyPatch) -> None:
    sink = DroppingSink(failures=10)
    monkeypatch.setattr(publishers, "logger", sink)

    with pytest.raises(ConnectionError):
        LoggingPublisher("payouts.domain").publish(event())
    assert sink.calls == 3


def test_in_memory_publisher_fails_next_calls() -> None:
    publisher = InMemoryPublisher("domain")
    publisher.fail_times = 1

    with pytest.raises(ConnectionError):
        publisher.publish(event())
    publisher.publish(event())

    assert publisher.attempts == 2
    assert publisher.event_types() == ["payout.paid"]


def test_consumer_returns_none_when_cancelled() -> None:
    consumer = InMemoryConsumer(wait_seconds=5)
    ctx = RequestContext.background()
    ctx.cancel()

    assert consumer.receive(ctx) is None
