"""
Ports - the narrow interfaces between the kernel and its collaborators

Stores, publishers and the inbound consumer are structural protocols, so a
host can swap the in-memory adapters for SQLite or a broker client without
touching the coordinator.
"""

from datetime import datetime
from typing import Protocol

from mutation_kernel.kernel.context import RequestContext
from mutation_kernel.kernel.envelope import EventEnvelope
from mutation_kernel.kernel.models import (
    DLQRecord,
    IdempotencyRecord,
    OutboxRecord,
)


class IdempotencyStore(Protocol):
    def get(self, key: str, now: datetime) -> IdempotencyRecord | None:
        """Live record for key, or None (expired records are deleted)"""
        ...

    def reserve(self, key: str, request_hash: str, expires_at: datetime) -> bool:
        """
        Insert a pending record; IdempotencyConflict on a different live hash

        Returns False when a live record with the same hash already exists.
        """
        ...

    def complete(
        self, key: str, response_code: int, response_body: bytes, at: datetime
    ) -> None:
        """Store the response; NotFound if no record exists"""
        ...

    def purge_expired(self, now: datetime) -> int:
        ...

    def count(self) -> int:
        ...


class DedupStore(Protocol):
    def seen(self, event_id: str, now: datetime) -> bool:
        ...

    def mark(self, event_id: str, event_type: str, expires_at: datetime) -> None:
        ...

    def purge_expired(self, now: datetime) -> int:
        ...

    def count(self) -> int:
        ...


class Outbox(Protocol):
    def enqueue(self, record: OutboxRecord) -> None:
        """Append a record; Conflict on a duplicate record_id"""
        ...

    def enqueue_many(self, records: list[OutboxRecord]) -> None:
        """Append records atomically, all or none"""
        ...

    def list_pending(self, limit: int) -> list[OutboxRecord]:
        """Unsent records in insertion order (limit <= 0 means 100)"""
        ...

    def mark_sent(self, record_id: str, at: datetime) -> None:
        """Set sent_at once; NotFound if the record is absent"""
        ...

    def get(self, record_id: str) -> OutboxRecord | None:
        ...

    def count_pending(self) -> int:
        ...


class DomainPublisher(Protocol):
    def publish(self, envelope: EventEnvelope) -> None:
        ...


class AnalyticsPublisher(Protocol):
    def publish(self, envelope: EventEnvelope) -> None:
        ...


class DLQPublisher(Protocol):
    def publish(self, record: DLQRecord) -> None:
        ...


class Consumer(Protocol):
    def receive(self, ctx: RequestContext) -> EventEnvelope | None:
        """
        Next inbound envelope, or None at end of stream

        Must return promptly once ctx is cancelled.
        """
        ...
