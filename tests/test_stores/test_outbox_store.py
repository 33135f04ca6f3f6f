"""
Tests for Outbox adapters

Verifies insertion-order listing, mark_sent semantics, all-or-none batch
appends and that a record read back carries the exact enqueued payload.
"""

from datetime import datetime, timedelta, timezone

import pytest

from mutation_kernel.kernel.envelope import EventEnvelope, validate_envelope
from mutation_kernel.kernel.errors import Conflict, NotFound
from mutation_kernel.kernel.models import OutboxRecord
from mutation_kernel.stores.sqlite import SQLiteKernelStores

CREATED = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


def record(n: int, event_class: str = "domain") -> OutboxRecord:
    envelope = EventEnvelope(
        event_id=f"evt-{n}",
        event_type="escrow.partial_release",
        event_class=event_class,
        occurred_at=CREATED,
        partition_key_path="data.escrow_id",
        partition_key="esc-1",
        source_service="escrow-ledger-service",
        trace_id="trace-1",
        schema_version="v1",
        data={"escrow_id": "esc-1", "amount": 40, "remaining_balance": 60.5},
    )
    return OutboxRecord.for_envelope(f"rec-{n}", envelope, CREATED)


def test_list_pending_preserves_enqueue_order(any_outbox) -> None:
    for n in (3, 1, 2):
        any_outbox.enqueue(record(n))

    assert [r.record_id for r in any_outbox.list_pending(10)] == ["rec-3", "rec-1", "rec-2"]


def test_mark_sent_removes_from_pending(any_outbox) -> None:
    for n in (1, 2, 3):
        any_outbox.enqueue(record(n))

    any_outbox.mark_sent("rec-1", CREATED)

    assert [r.record_id for r in any_outbox.list_pending(10)] == ["rec-2", "rec-3"]
    assert any_outbox.count_pending() == 2


def test_list_pending_respects_limit(any_outbox) -> None:
    for n in range(5):
        any_outbox.enqueue(record(n))

    assert len(any_outbox.list_pending(2)) == 2
    assert len(any_outbox.list_pending(0)) == 5


def test_mark_sent_keeps_first_timestamp(any_outbox) -> None:
    any_outbox.enqueue(record(1))

    any_outbox.mark_sent("rec-1", CREATED)
    any_outbox.mark_sent("rec-1", CREATED + timedelta(hours=1))

    assert any_outbox.get("rec-1").sent_at == CREATED


def test_mark_sent_unknown_record(any_outbox) -> None:
    with pytest.raises(NotFound):
        any_outbox.mark_sent("missing", CREATED)


def test_duplicate_record_id_conflicts(any_outbox) -> None:
    any_outbox.enqueue(record(1))
    with pytest.raises(Conflict):
        any_outbox.enqueue(record(1))


def test_enqueue_many_is_all_or_none(any_outbox) -> None:
    any_outbox.enqueue(record(1))

    with pytest.raises(Conflict):
        any_outbox.enqueue_many([record(2), record(1)])

    assert [r.record_id for r in any_outbox.list_pending(10)] == ["rec-1"]


def test_record_round_trips_exactly(any_outbox) -> None:
    original = record(1, "analytics_only")
    any_outbox.enqueue(original)

    [loaded] = any_outbox.list_pending(1)

    assert loaded.event_class == "analytics_only"
    assert loaded.envelope.data == original.envelope.data
    assert loaded.envelope.occurred_at == original.envelope.occurred_at
    assert loaded.created_at == CREATED
    assert loaded.sent_at is None
    validate_envelope(loaded.envelope)


def test_get_missing_returns_none(any_outbox) -> None:
    assert any_outbox.get("missing") is None


class TestHostTransaction:
    """The SQLite outbox joins a transaction the host opened on the same file"""

    def test_commit_publishes_domain_row_and_records_together(self, temp_db) -> None:
        stores = SQLiteKernelStores(temp_db)
        with stores.transaction() as conn:
            conn.execute("CREATE TABLE IF NOT EXISTS holds (escrow_id TEXT PRIMARY KEY)")
        with stores.transaction() as conn:
            conn.execute("INSERT INTO holds VALUES ('esc-1')")
            stores.outbox.enqueue_many([record(1), record(2)], conn=conn)
            assert stores.outbox.count_pending() == 0

        assert [r.record_id for r in stores.outbox.list_pending(10)] == ["rec-1", "rec-2"]

    def test_rollback_discards_records_with_domain_row(self, temp_db) -> None:
        stores = SQLiteKernelStores(temp_db)
        with stores.transaction() as conn:
            conn.execute("CREATE TABLE IF NOT EXISTS holds (escrow_id TEXT PRIMARY KEY)")

        with pytest.raises(RuntimeError):
            with stores.transaction() as conn:
                conn.execute("INSERT INTO holds VALUES ('esc-1')")
                stores.outbox.enqueue_many([record(1)], conn=conn)
                raise RuntimeError("domain write failed")

        assert stores.outbox.count_pending() == 0
        with stores.transaction() as conn:
            assert conn.execute("SELECT COUNT(*) FROM holds").fetchone()[0] == 0

    def test_duplicate_inside_host_transaction_conflicts(self, temp_db) -> None:
        stores = SQLiteKernelStores(temp_db)
        stores.outbox.enqueue(record(1))

        with pytest.raises(Conflict):
            with stores.transaction() as conn:
                stores.outbox.enqueue_many([record(2), record(1)], conn=conn)

        assert [r.record_id for r in stores.outbox.list_pending(10)] == ["rec-1"]
