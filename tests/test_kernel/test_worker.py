"""Tests for the background outbox flusher and consumer worker"""

import time
from datetime import datetime, timezone

from mutation_kernel.kernel.context import RequestContext
from mutation_kernel.kernel.coordinator import MutationCoordinator
from mutation_kernel.kernel.envelope import EventEnvelope
from mutation_kernel.kernel.models import OutboxRecord
from mutation_kernel.kernel.worker import ConsumerWorker, KernelRuntime, OutboxFlusher
from mutation_kernel.publishers import InMemoryConsumer, InMemoryPublisher
from mutation_kernel.stores.memory import MemoryOutbox


def domain_envelope(event_id: str) -> EventEnvelope:
    return EventEnvelope(
        event_id=event_id,
        event_type="escrow.hold_created",
        event_class="domain",
        occurred_at=datetime(2026, 2, 10, tzinfo=timezone.utc),
        partition_key_path="data.escrow_id",
        partition_key="e-1",
        source_service="test-service",
        trace_id="trace-1",
        schema_version="v1",
        data={"escrow_id": "e-1"},
    )


def wait_until(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_flusher_tick_logs_failures_and_continues(
    coordinator: MutationCoordinator,
    outbox: MemoryOutbox,
    domain_publisher: InMemoryPublisher,
) -> None:
    outbox.enqueue(OutboxRecord.for_envelope("r1", domain_envelope("e1"), datetime.now(timezone.utc)))
    domain_publisher.fail_times = 1
    flusher = OutboxFlusher(coordinator, interval=0.01)

    flusher.tick(RequestContext.background())
    flusher.tick(RequestContext.background())

    assert flusher.ticks == 2
    assert flusher.failures == 1
    assert outbox.count_pending() == 0


def test_flusher_thread_drains_outbox(
    coordinator: MutationCoordinator,
    outbox: MemoryOutbox,
    domain_publisher: InMemoryPublisher,
) -> None:
    flusher = OutboxFlusher(coordinator, interval=0.01)
    flusher.start()
    try:
        assert flusher.running
        outbox.enqueue(
            OutboxRecord.for_envelope("r1", domain_envelope("e1"), datetime.now(timezone.utc))
        )
        assert wait_until(lambda: domain_publisher.event_types() == ["escrow.hold_created"])
    finally:
        flusher.stop()
    assert not flusher.running


def test_flusher_interval_defaults_to_config(coordinator: MutationCoordinator) -> None:
    assert OutboxFlusher(coordinator).interval == 2.0


def test_consumer_worker_processes_deliveries(
    coordinator: MutationCoordinator, consumer: InMemoryConsumer
) -> None:
    handled: list[str] = []
    coordinator.register_handler(
        "escrow.hold_created", lambda env, ctx: handled.append(env.event_id)
    )
    worker = ConsumerWorker(coordinator, interval=0.01)
    worker.start()
    try:
        consumer.deliver(domain_envelope("e1"))
        consumer.deliver(domain_envelope("e2"))
        assert wait_until(lambda: handled == ["e1", "e2"])
    finally:
        worker.stop()


def test_runtime_starts_and_stops_both_workers(coordinator: MutationCoordinator) -> None:
    runtime = KernelRuntime(coordinator, flush_interval=0.01, poll_interval=0.01)

    with runtime:
        assert runtime.flusher.running
        assert runtime.consumer_worker is not None
        assert runtime.consumer_worker.running

    assert not runtime.flusher.running
    assert not runtime.consumer_worker.running


def test_runtime_without_consumer_has_no_consumer_worker(coordinator: MutationCoordinator) -> None:
    coordinator.consumer = None
    assert KernelRuntime(coordinator).consumer_worker is None
