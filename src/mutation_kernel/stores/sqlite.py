"""
SQLite kernel stores - durable idempotency, dedup and outbox tables

All three stores may share one database file (and should, when the host's
domain tables live there too, so the business write and the outbox append
can share a transaction). The database runs in WAL mode for crash safety
and concurrent readers.

Timestamps are stored as UTC ISO-8601 strings, which sort lexically in
time order. The outbox keeps insertion order with an autoincrement
sequence column rather than trusting timestamps.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterator

from mutation_kernel.kernel.config import DEFAULT_IDEMPOTENCY_TTL
from mutation_kernel.kernel.envelope import EventEnvelope
from mutation_kernel.kernel.errors import (
    Conflict,
    IdempotencyConflict,
    NotFound,
    StoreError,
)
from mutation_kernel.kernel.models import DedupRecord, IdempotencyRecord, OutboxRecord
from mutation_kernel.kernel.retry import retry_on_sqlite_lock
from mutation_kernel.kernel.time import TimeProvider, default_time_provider, ensure_utc

DEFAULT_LIST_LIMIT = 100


def _ts(dt: datetime) -> str:
    return ensure_utc(dt).isoformat()


def _parse_ts(raw: str | None) -> datetime | None:
    if raw is None:
        return None
    return ensure_utc(datetime.fromisoformat(raw))


class _SQLiteStore:
    """Connection handling shared by the kernel tables"""

    def __init__(self, db_path: str | Path) -> None:
        """
        Args:
            db_path: Path to SQLite database file (may be shared with other stores)
        """
        self.db_path = Path(db_path)
        self._initialize_schema()

    def _initialize_schema(self) -> None:
        raise NotImplementedError

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """
        Context manager for database connections

        Ensures connections are closed; callers commit explicitly and any
        uncommitted work is rolled back on close.
        """
        conn = sqlite3.connect(str(self.db_path), timeout=5.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _pragmas(self, conn: sqlite3.Connection) -> None:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")


class SQLiteIdempotencyStore(_SQLiteStore):
    """
    Idempotency records in an ``idempotency_keys`` table

    reserve() runs under BEGIN IMMEDIATE so two processes racing on the
    same key serialize on the database write lock.
    """

    def __init__(
        self,
        db_path: str | Path,
        default_ttl: timedelta = DEFAULT_IDEMPOTENCY_TTL,
        time_provider: TimeProvider = default_time_provider,
    ) -> None:
        self.default_ttl = default_ttl
        self.time_provider = time_provider
        super().__init__(db_path)

    def _initialize_schema(self) -> None:
        with self._connect() as conn:
            self._pragmas(conn)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS idempotency_keys (
                    key TEXT PRIMARY KEY,
                    request_hash TEXT NOT NULL,
                    response_code INTEGER NOT NULL DEFAULT 0,
                    response_body BLOB NOT NULL DEFAULT x'',
                    expires_at TEXT NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_idempotency_expiry "
                "ON idempotency_keys(expires_at)"
            )
            conn.commit()

    @retry_on_sqlite_lock()
    def get(self, key: str, now: datetime) -> IdempotencyRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM idempotency_keys WHERE key = ?", (key,)
            ).fetchone()
            if row is None:
                return None
            record = self._row_to_record(row)
            if record.is_expired(now):
                conn.execute(
                    "DELETE FROM idempotency_keys WHERE key = ? AND expires_at = ?",
                    (key, row["expires_at"]),
                )
                conn.commit()
                return None
            return record

    @retry_on_sqlite_lock()
    def reserve(self, key: str, request_hash: str, expires_at: datetime) -> bool:
        """
        Returns:
            True if a new reservation was inserted

        Raises:
            IdempotencyConflict: If a live record holds a different request hash
        """
        now = self.time_provider.now()
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT * FROM idempotency_keys WHERE key = ?", (key,)
                ).fetchone()
                if row is not None:
                    existing = self._row_to_record(row)
                    if not existing.is_expired(now):
                        conn.rollback()
                        if existing.request_hash != request_hash:
                            raise IdempotencyConflict(key)
                        return False
                conn.execute(
                    """
                    INSERT OR REPLACE INTO idempotency_keys
                        (key, request_hash, response_code, response_body, expires_at)
                    VALUES (?, ?, 0, x'', ?)
                """,
                    (key, request_hash, _ts(expires_at)),
                )
                conn.commit()
                return True
            except sqlite3.OperationalError:
                conn.rollback()
                raise
            except sqlite3.DatabaseError as e:
                conn.rollback()
                raise StoreError(f"Failed to reserve idempotency key: {e}") from e

    @retry_on_sqlite_lock()
    def complete(
        self, key: str, response_code: int, response_body: bytes, at: datetime
    ) -> None:
        """
        Raises:
            NotFound: If no record exists for key
        """
        with self._connect() as conn:
            row = conn.execute(
                "SELECT expires_at FROM idempotency_keys WHERE key = ?", (key,)
            ).fetchone()
            if row is None:
                raise NotFound(f"idempotency record {key} not found")
            expires_at = _parse_ts(row["expires_at"])
            if ensure_utc(at) > expires_at:
                expires_at = ensure_utc(at) + self.default_ttl
            conn.execute(
                """
                UPDATE idempotency_keys
                SET response_code = ?, response_body = ?, expires_at = ?
                WHERE key = ?
            """,
                (response_code, bytes(response_body), _ts(expires_at), key),
            )
            conn.commit()

    @retry_on_sqlite_lock()
    def purge_expired(self, now: datetime) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM idempotency_keys WHERE expires_at < ?", (_ts(now),)
            )
            conn.commit()
            return cursor.rowcount

    def count(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM idempotency_keys").fetchone()[0]

    def _row_to_record(self, row: sqlite3.Row) -> IdempotencyRecord:
        return IdempotencyRecord(
            key=row["key"],
            request_hash=row["request_hash"],
            response_code=row["response_code"],
            response_body=bytes(row["response_body"] or b""),
            expires_at=_parse_ts(row["expires_at"]),
        )


class SQLiteDedupStore(_SQLiteStore):
    """Processed inbound event ids in a ``processed_events`` table"""

    def _initialize_schema(self) -> None:
        with self._connect() as conn:
            self._pragmas(conn)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS processed_events (
                    event_id TEXT PRIMARY KEY,
                    event_type TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_processed_expiry "
                "ON processed_events(expires_at)"
            )
            conn.commit()

    @retry_on_sqlite_lock()
    def seen(self, event_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT expires_at FROM processed_events WHERE event_id = ?",
                (event_id,),
            ).fetchone()
            if row is None:
                return False
            if ensure_utc(now) > _parse_ts(row["expires_at"]):
                conn.execute("DELETE FROM processed_events WHERE event_id = ?", (event_id,))
                conn.commit()
                return False
            return True

    @retry_on_sqlite_lock()
    def mark(self, event_id: str, event_type: str, expires_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO processed_events (event_id, event_type, expires_at)
                VALUES (?, ?, ?)
                ON CONFLICT(event_id) DO UPDATE SET
                    event_type = excluded.event_type,
                    expires_at = excluded.expires_at
            """,
                (event_id, event_type, _ts(expires_at)),
            )
            conn.commit()

    def get(self, event_id: str) -> DedupRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM processed_events WHERE event_id = ?", (event_id,)
            ).fetchone()
            if row is None:
                return None
            return DedupRecord(
                event_id=row["event_id"],
                event_type=row["event_type"],
                expires_at=_parse_ts(row["expires_at"]),
            )

    @retry_on_sqlite_lock()
    def purge_expired(self, now: datetime) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM processed_events WHERE expires_at < ?", (_ts(now),)
            )
            conn.commit()
            return cursor.rowcount

    def count(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM processed_events").fetchone()[0]


class SQLiteOutbox(_SQLiteStore):
    """
    Append-only outbox table

    The envelope is stored as JSON next to its raw payload bytes, so a
    record read back carries exactly the data that was enqueued.
    """

    def _initialize_schema(self) -> None:
        with self._connect() as conn:
            self._pragmas(conn)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS outbox (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    record_id TEXT NOT NULL UNIQUE,
                    event_class TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    envelope_json TEXT NOT NULL,
                    data BLOB NOT NULL,
                    created_at TEXT NOT NULL,
                    sent_at TEXT
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_outbox_pending ON outbox(sent_at, seq)"
            )
            conn.commit()

    def enqueue(self, record: OutboxRecord) -> None:
        """
        Raises:
            Conflict: If record_id is already in the outbox
        """
        self.enqueue_many([record])

    def enqueue_many(
        self,
        records: list[OutboxRecord],
        conn: sqlite3.Connection | None = None,
    ) -> None:
        """
        Append all records in one transaction

        Args:
            records: Records to append, in order
            conn: Open connection of a host transaction to join. The rows
                are written on it and left uncommitted; the caller commits
                them together with its own domain rows, or rolls back.

        Raises:
            Conflict: If any record_id already exists (nothing is appended)
            StoreError: On other database errors
        """
        if not records:
            return
        if conn is not None:
            self._insert_records(conn, records)
            return
        self._enqueue_many(records)

    @retry_on_sqlite_lock()
    def _enqueue_many(self, records: list[OutboxRecord]) -> None:
        with self._connect() as conn:
            try:
                self._insert_records(conn, records)
                conn.commit()
            except (Conflict, StoreError, sqlite3.OperationalError):
                conn.rollback()
                raise

    def _insert_records(self, conn: sqlite3.Connection, records: list[OutboxRecord]) -> None:
        try:
            for record in records:
                envelope = record.envelope
                conn.execute(
                    """
                    INSERT INTO outbox (
                        record_id, event_class, event_type,
                        envelope_json, data, created_at, sent_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                    (
                        record.record_id,
                        record.event_class,
                        envelope.event_type,
                        envelope.model_dump_json(exclude={"data"}),
                        envelope.data,
                        _ts(record.created_at),
                        _ts(record.sent_at) if record.sent_at else None,
                    ),
                )
        except sqlite3.IntegrityError as e:
            if "record_id" in str(e).lower():
                raise Conflict(f"outbox record already exists: {e}") from e
            raise StoreError(f"Failed to enqueue outbox records: {e}") from e

    @retry_on_sqlite_lock()
    def list_pending(self, limit: int = DEFAULT_LIST_LIMIT) -> list[OutboxRecord]:
        if limit <= 0:
            limit = DEFAULT_LIST_LIMIT
        with self._connect() as conn:
            cursor = conn.execute(
                "SELECT * FROM outbox WHERE sent_at IS NULL ORDER BY seq ASC LIMIT ?",
                (limit,),
            )
            return [self._row_to_record(row) for row in cursor.fetchall()]

    @retry_on_sqlite_lock()
    def mark_sent(self, record_id: str, at: datetime) -> None:
        """
        Raises:
            NotFound: If the record is absent
        """
        with self._connect() as conn:
            row = conn.execute(
                "SELECT sent_at FROM outbox WHERE record_id = ?", (record_id,)
            ).fetchone()
            if row is None:
                raise NotFound(f"outbox record {record_id} not found")
            conn.execute(
                "UPDATE outbox SET sent_at = ? WHERE record_id = ? AND sent_at IS NULL",
                (_ts(at), record_id),
            )
            conn.commit()

    def get(self, record_id: str) -> OutboxRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM outbox WHERE record_id = ?", (record_id,)
            ).fetchone()
            return self._row_to_record(row) if row else None

    def all_records(self) -> list[OutboxRecord]:
        with self._connect() as conn:
            cursor = conn.execute("SELECT * FROM outbox ORDER BY seq ASC")
            return [self._row_to_record(row) for row in cursor.fetchall()]

    def count_pending(self) -> int:
        with self._connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM outbox WHERE sent_at IS NULL"
            ).fetchone()[0]

    def _row_to_record(self, row: sqlite3.Row) -> OutboxRecord:
        fields = json.loads(row["envelope_json"])
        fields["data"] = bytes(row["data"])
        return OutboxRecord(
            record_id=row["record_id"],
            event_class=row["event_class"],
            envelope=EventEnvelope.model_validate(fields),
            created_at=_parse_ts(row["created_at"]),
            sent_at=_parse_ts(row["sent_at"]),
        )


class SQLiteKernelStores:
    """The three kernel stores opened on one database file"""

    def __init__(
        self,
        db_path: str | Path,
        default_ttl: timedelta = DEFAULT_IDEMPOTENCY_TTL,
        time_provider: TimeProvider = default_time_provider,
    ) -> None:
        self.db_path = Path(db_path)
        self.idempotency = SQLiteIdempotencyStore(
            db_path, default_ttl=default_ttl, time_provider=time_provider
        )
        self.dedup = SQLiteDedupStore(db_path)
        self.outbox = SQLiteOutbox(db_path)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Host transaction on the kernel database

        Domain rows and ``outbox.enqueue_many(records, conn=conn)`` written
        on the yielded connection commit together, or roll back together
        if the block raises.
        """
        conn = sqlite3.connect(str(self.db_path), timeout=5.0)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()
