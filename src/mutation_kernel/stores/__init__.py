"""Store adapters for the kernel ports: in-memory and SQLite"""

from mutation_kernel.stores.memory import (
    MemoryDedupStore,
    MemoryIdempotencyStore,
    MemoryOutbox,
)
from mutation_kernel.stores.sqlite import (
    SQLiteDedupStore,
    SQLiteIdempotencyStore,
    SQLiteKernelStores,
    SQLiteOutbox,
)

__all__ = [
    "MemoryDedupStore",
    "MemoryIdempotencyStore",
    "MemoryOutbox",
    "SQLiteDedupStore",
    "SQLiteIdempotencyStore",
    "SQLiteKernelStores",
    "SQLiteOutbox",
]
