"""
Pytest configuration and shared fixtures

Every test gets a frozen clock, deterministic ids, fresh in-memory stores
and recording publishers, wired into a coordinator the same way a host
service wires its own.
"""

import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

import pytest

from mutation_kernel.kernel.config import KernelConfig
from mutation_kernel.kernel.coordinator import MutationCoordinator
from mutation_kernel.kernel.ids import SequentialIdFactory
from mutation_kernel.kernel.models import Actor
from mutation_kernel.kernel.time import TestTimeProvider
from mutation_kernel.publishers import InMemoryConsumer, InMemoryPublisher
from mutation_kernel.stores.memory import (
    MemoryDedupStore,
    MemoryIdempotencyStore,
    MemoryOutbox,
)
from mutation_kernel.stores.sqlite import SQLiteKernelStores


@pytest.fixture
def temp_db() -> Iterator[Path]:
    """Provide a temporary database file that's cleaned up after test"""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    yield db_path

    for suffix in ("", "-wal", "-shm"):
        path = Path(f"{db_path}{suffix}")
        if path.exists():
            path.unlink()


@pytest.fixture
def test_time() -> TestTimeProvider:
    """
    Provide a controllable time provider for deterministic tests

    Default time: 2025-01-15 12:00:00 UTC
    """
    return TestTimeProvider(datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def id_factory() -> SequentialIdFactory:
    return SequentialIdFactory("id")


@pytest.fixture
def config() -> KernelConfig:
    return KernelConfig(service_name="test-service")


@pytest.fixture
def idempotency_store(test_time: TestTimeProvider) -> MemoryIdempotencyStore:
    return MemoryIdempotencyStore(time_provider=test_time)


@pytest.fixture
def dedup_store() -> MemoryDedupStore:
    return MemoryDedupStore()


@pytest.fixture
def outbox() -> MemoryOutbox:
    return MemoryOutbox()


@pytest.fixture
def domain_publisher() -> InMemoryPublisher:
    return InMemoryPublisher("domain")


@pytest.fixture
def analytics_publisher() -> InMemoryPublisher:
    return InMemoryPublisher("analytics")


@pytest.fixture
def dlq_publisher() -> InMemoryPublisher:
    return InMemoryPublisher("dlq")


@pytest.fixture
def consumer() -> InMemoryConsumer:
    return InMemoryConsumer()


@pytest.fixture
def coordinator(
    config: KernelConfig,
    idempotency_store: MemoryIdempotencyStore,
    dedup_store: MemoryDedupStore,
    outbox: MemoryOutbox,
    domain_publisher: InMemoryPublisher,
    analytics_publisher: InMemoryPublisher,
    dlq_publisher: InMemoryPublisher,
    consumer: InMemoryConsumer,
    test_time: TestTimeProvider,
    id_factory: SequentialIdFactory,
) -> MutationCoordinator:
    """Coordinator over in-memory stores and recording publishers"""
    return MutationCoordinator(
        config,
        idempotency=idempotency_store,
        dedup=dedup_store,
        outbox=outbox,
        domain_publisher=domain_publisher,
        analytics_publisher=analytics_publisher,
        dlq_publisher=dlq_publisher,
        consumer=consumer,
        time_provider=test_time,
        id_factory=id_factory,
    )


@pytest.fixture
def sqlite_stores(temp_db: Path, test_time: TestTimeProvider) -> SQLiteKernelStores:
    return SQLiteKernelStores(temp_db, time_provider=test_time)


@pytest.fixture
def user_actor() -> Actor:
    return Actor(subject_id="user-1", role="user", request_id="req-1", idempotency_key="key-1")


@pytest.fixture
def admin_actor() -> Actor:
    return Actor(subject_id="admin-1", role="admin", request_id="req-admin", idempotency_key="key-a")
