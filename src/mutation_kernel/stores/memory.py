"""
In-memory kernel stores

Each store guards its state with a single mutex held only for the duration
of one operation; no lock is ever held across a publisher call. Records are
immutable models, so returning them never exposes mutable internal state.

Suitable for tests, local development and single-process services that
accept losing pending events on restart. Use the SQLite adapter otherwise.
"""

import threading
from datetime import datetime, timedelta

from mutation_kernel.kernel.config import DEFAULT_IDEMPOTENCY_TTL
from mutation_kernel.kernel.errors import Conflict, IdempotencyConflict, NotFound
from mutation_kernel.kernel.models import DedupRecord, IdempotencyRecord, OutboxRecord
from mutation_kernel.kernel.time import TimeProvider, default_time_provider

DEFAULT_LIST_LIMIT = 100


class MemoryIdempotencyStore:
    """Mutex-protected idempotency records keyed by caller key"""

    def __init__(
        self,
        default_ttl: timedelta = DEFAULT_IDEMPOTENCY_TTL,
        time_provider: TimeProvider = default_time_provider,
    ) -> None:
        """
        Args:
            default_ttl: Extension applied when complete() lands after expiry
            time_provider: Clock used to decide whether a record is still live
                during reserve()
        """
        self._lock = threading.Lock()
        self._records: dict[str, IdempotencyRecord] = {}
        self.default_ttl = default_ttl
        self.time_provider = time_provider

    def get(self, key: str, now: datetime) -> IdempotencyRecord | None:
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return None
            if record.is_expired(now):
                del self._records[key]
                return None
            return record

    def reserve(self, key: str, request_hash: str, expires_at: datetime) -> bool:
        """
        Returns:
            True if a new reservation was inserted, False if a live record
            with the same hash already held the key

        Raises:
            IdempotencyConflict: If a live record holds a different request hash
        """
        now = self.time_provider.now()
        with self._lock:
            existing = self._records.get(key)
            if existing is not None and not existing.is_expired(now):
                if existing.request_hash != request_hash:
                    raise IdempotencyConflict(key)
                return False
            self._records[key] = IdempotencyRecord(
                key=key,
                request_hash=request_hash,
                expires_at=expires_at,
            )
            return True

    def complete(
        self, key: str, response_code: int, response_body: bytes, at: datetime
    ) -> None:
        """
        Raises:
            NotFound: If no record exists for key
        """
        with self._lock:
            record = self._records.get(key)
            if record is None:
                raise NotFound(f"idempotency record {key} not found")
            expires_at = record.expires_at
            if at > expires_at:
                expires_at = at + self.default_ttl
            self._records[key] = record.model_copy(
                update={
                    "response_code": response_code,
                    "response_body": bytes(response_body),
                    "expires_at": expires_at,
                }
            )

    def purge_expired(self, now: datetime) -> int:
        with self._lock:
            expired = [k for k, r in self._records.items() if r.is_expired(now)]
            for key in expired:
                del self._records[key]
            return len(expired)

    def count(self) -> int:
        with self._lock:
            return len(self._records)


class MemoryDedupStore:
    """Bounded-TTL set of processed inbound event ids"""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, DedupRecord] = {}

    def seen(self, event_id: str, now: datetime) -> bool:
        with self._lock:
            record = self._records.get(event_id)
            if record is None:
                return False
            if record.is_expired(now):
                del self._records[event_id]
                return False
            return True

    def mark(self, event_id: str, event_type: str, expires_at: datetime) -> None:
        with self._lock:
            self._records[event_id] = DedupRecord(
                event_id=event_id,
                event_type=event_type,
                expires_at=expires_at,
            )

    def get(self, event_id: str) -> DedupRecord | None:
        with self._lock:
            return self._records.get(event_id)

    def purge_expired(self, now: datetime) -> int:
        with self._lock:
            expired = [k for k, r in self._records.items() if r.is_expired(now)]
            for event_id in expired:
                del self._records[event_id]
            return len(expired)

    def count(self) -> int:
        with self._lock:
            return len(self._records)


class MemoryOutbox:
    """
    Append-only outbox preserving insertion order

    Records are never removed; mark_sent stamps sent_at once and later
    calls leave the first timestamp in place.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._order: list[str] = []
        self._records: dict[str, OutboxRecord] = {}

    def enqueue(self, record: OutboxRecord) -> None:
        """
        Raises:
            Conflict: If record_id is already in the outbox
        """
        self.enqueue_many([record])

    def enqueue_many(self, records: list[OutboxRecord]) -> None:
        """
        Append all records or none

        Raises:
            Conflict: If any record_id is already present or repeated
        """
        with self._lock:
            batch_ids: set[str] = set()
            for record in records:
                if record.record_id in self._records or record.record_id in batch_ids:
                    raise Conflict(f"outbox record {record.record_id} already exists")
                batch_ids.add(record.record_id)
            for record in records:
                self._records[record.record_id] = record
                self._order.append(record.record_id)

    def list_pending(self, limit: int = DEFAULT_LIST_LIMIT) -> list[OutboxRecord]:
        if limit <= 0:
            limit = DEFAULT_LIST_LIMIT
        with self._lock:
            pending: list[OutboxRecord] = []
            for record_id in self._order:
                record = self._records[record_id]
                if record.sent_at is None:
                    pending.append(record)
                    if len(pending) >= limit:
                        break
            return pending

    def mark_sent(self, record_id: str, at: datetime) -> None:
        """
        Raises:
            NotFound: If the record is absent
        """
        with self._lock:
            record = self._records.get(record_id)
            if record is None:
                raise NotFound(f"outbox record {record_id} not found")
            if record.sent_at is None:
                self._records[record_id] = record.model_copy(update={"sent_at": at})

    def get(self, record_id: str) -> OutboxRecord | None:
        with self._lock:
            return self._records.get(record_id)

    def all_records(self) -> list[OutboxRecord]:
        """Every record, sent or not, in insertion order"""
        with self._lock:
            return [self._records[record_id] for record_id in self._order]

    def count_pending(self) -> int:
        with self._lock:
            return sum(1 for r in self._records.values() if r.sent_at is None)
