"""
ID generation using UUIDv7 (time-ordered UUIDs)

Event ids, outbox record ids and entity ids are all UUIDv7-like strings, so
ids minted later sort after ids minted earlier and logs read in order.
"""

import secrets
import time
from typing import Protocol


class IdFactory(Protocol):
    """Protocol for ID generation strategies"""

    def generate(self) -> str:
        """Generate a new unique ID"""
        ...


def generate_id() -> str:
    """
    Generate a UUIDv7-like identifier (time-ordered UUID)

    Format: 8-4-4-4-12 hex characters (36 chars with hyphens)
    First 48 bits: Unix timestamp in milliseconds
    Next 12 bits: Random
    Remaining 62 bits: Random

    Returns:
        Sortable UUID string (e.g., "01908e9a-3b87-7000-8000-123456789abc")
    """
    timestamp_48 = int(time.time() * 1000) & 0xFFFFFFFFFFFF

    rand_12 = secrets.randbits(12)
    rand_62 = secrets.randbits(62)

    # Version 7 (0111) in bits 48-51, variant (10) in bits 64-65
    time_high = (timestamp_48 >> 32) & 0xFFFF
    time_mid = (timestamp_48 >> 16) & 0xFFFF
    time_low_and_version = ((timestamp_48 & 0xFFFF) << 16) | (0x7000 | rand_12)
    clock_seq_and_variant = 0x8000 | ((rand_62 >> 48) & 0x3FFF)
    node = rand_62 & 0xFFFFFFFFFFFF

    return (
        f"{time_high:04x}{time_mid:04x}-"
        f"{(time_low_and_version >> 16) & 0xFFFF:04x}-"
        f"{time_low_and_version & 0xFFFF:04x}-"
        f"{clock_seq_and_variant:04x}-"
        f"{node:012x}"
    )


class DefaultIdFactory:
    """Default ID factory using UUIDv7-like generation"""

    def generate(self) -> str:
        return generate_id()


class SequentialIdFactory:
    """
    Deterministic ID factory for tests

    Produces "<prefix>-1", "<prefix>-2", ... so assertions can name ids.
    """

    def __init__(self, prefix: str = "id") -> None:
        self.prefix = prefix
        self._counter = 0

    def generate(self) -> str:
        self._counter += 1
        return f"{self.prefix}-{self._counter}"


default_id_factory = DefaultIdFactory()
