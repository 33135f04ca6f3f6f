"""Fixtures running each store test against both adapters"""

from pathlib import Path

import pytest

from mutation_kernel.kernel.time import TestTimeProvider
from mutation_kernel.stores.memory import (
    MemoryDedupStore,
    MemoryIdempotencyStore,
    MemoryOutbox,
)
from mutation_kernel.stores.sqlite import (
    SQLiteDedupStore,
    SQLiteIdempotencyStore,
    SQLiteOutbox,
)


@pytest.fixture(params=["memory", "sqlite"])
def any_idempotency_store(request, temp_db: Path, test_time: TestTimeProvider):
    if request.param == "memory":
        return MemoryIdempotencyStore(time_provider=test_time)
    return SQLiteIdempotencyStore(temp_db, time_provider=test_time)


@pytest.fixture(params=["memory", "sqlite"])
def any_dedup_store(request, temp_db: Path):
    if request.param == "memory":
        return MemoryDedupStore()
    return SQLiteDedupStore(temp_db)


@pytest.fixture(params=["memory", "sqlite"])
def any_outbox(request, temp_db: Path):
    if request.param == "memory":
        return MemoryOutbox()
    return SQLiteOutbox(temp_db)
