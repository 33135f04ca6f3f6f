"""
Tests for MutationCoordinator.execute

Verifies the idempotent mutation pipeline:
- Guard ordering (subject, key, host guard)
- Replays return the cached bytes without re-running the effect
- A key reused with another payload is refused with no side effect
- Events reach the outbox before the response is cached
"""

import threading
from datetime import timedelta

import pytest

from mutation_kernel.kernel.context import RequestContext
from mutation_kernel.kernel.coordinator import Mutation, MutationCoordinator
from mutation_kernel.kernel.envelope import EventClass, validate_envelope
from mutation_kernel.kernel.errors import (
    Cancelled,
    Forbidden,
    IdempotencyConflict,
    IdempotencyRequired,
    InvalidInput,
    RequestInFlight,
    Unauthorized,
    UnsupportedEventType,
)
from mutation_kernel.kernel.models import Actor
from mutation_kernel.kernel.time import TestTimeProvider
from mutation_kernel.stores.memory import MemoryIdempotencyStore, MemoryOutbox


class Widgets:
    """Tiny host service used to drive the coordinator"""

    def __init__(self, coordinator: MutationCoordinator) -> None:
        self.coordinator = coordinator
        self.calls = 0
        self.rows: dict[str, dict] = {}
        coordinator.catalog.register("widget.created", EventClass.DOMAIN, "data.widget_id")
        coordinator.catalog.register("widget.viewed", EventClass.ANALYTICS_ONLY, "data.widget_id")

    def create(self, actor: Actor, request: dict, **kwargs):
        def effect(m: Mutation) -> dict:
            self.calls += 1
            widget_id = f"w-{self.calls}"
            row = {"widget_id": widget_id, "name": request["name"]}
            self.rows[widget_id] = row
            m.emit("widget.created", row, widget_id)
            m.emit("widget.viewed", {"widget_id": widget_id}, widget_id)
            return row

        return self.coordinator.execute(actor, "create_widget", request, effect, **kwargs)


@pytest.fixture
def widgets(coordinator: MutationCoordinator) -> Widgets:
    return Widgets(coordinator)


class TestGuard:
    def test_empty_subject_is_unauthorized(self, widgets: Widgets) -> None:
        with pytest.raises(Unauthorized):
            widgets.create(Actor(idempotency_key="k"), {"name": "a"})
        assert widgets.calls == 0

    def test_missing_key_is_refused(self, widgets: Widgets) -> None:
        with pytest.raises(IdempotencyRequired):
            widgets.create(Actor(subject_id="user-1", idempotency_key="  "), {"name": "a"})
        assert widgets.calls == 0

    def test_key_optional_when_not_required(self, widgets: Widgets, outbox: MemoryOutbox) -> None:
        actor = Actor(subject_id="user-1")
        widgets.create(actor, {"name": "a"}, require_key=False)
        widgets.create(actor, {"name": "a"}, require_key=False)

        assert widgets.calls == 2
        assert len(outbox.all_records()) == 4

    def test_host_guard_runs_after_key_check(self, widgets: Widgets) -> None:
        def deny(_: Actor) -> None:
            raise Forbidden("nope")

        with pytest.raises(IdempotencyRequired):
            widgets.create(Actor(subject_id="user-1"), {"name": "a"}, guard=deny)
        with pytest.raises(Forbidden):
            widgets.create(Actor(subject_id="user-1", idempotency_key="k"), {"name": "a"}, guard=deny)

    def test_guard_failure_takes_no_reservation(
        self, widgets: Widgets, idempotency_store: MemoryIdempotencyStore
    ) -> None:
        def invalid(_: Actor) -> None:
            raise InvalidInput("bad")

        with pytest.raises(InvalidInput):
            widgets.create(Actor(subject_id="user-1", idempotency_key="k"), {"name": ""}, guard=invalid)
        assert idempotency_store.count() == 0


class TestReplay:
    def test_replay_returns_identical_body(
        self, widgets: Widgets, user_actor: Actor, outbox: MemoryOutbox
    ) -> None:
        first = widgets.create(user_actor, {"name": "a"})
        second = widgets.create(user_actor, {"name": "a"})

        assert first.replayed is False
        assert second.replayed is True
        assert second.body == first.body
        assert second.value == first.value == {"widget_id": "w-1", "name": "a"}
        assert widgets.calls == 1
        assert len(outbox.all_records()) == 2

    def test_replay_keeps_response_code(self, widgets: Widgets, user_actor: Actor) -> None:
        widgets.create(user_actor, {"name": "a"}, response_code=201)
        assert widgets.create(user_actor, {"name": "a"}, response_code=201).response_code == 201

    def test_semantically_equal_payload_replays(self, widgets: Widgets, user_actor: Actor) -> None:
        widgets.create(user_actor, {"name": "a"})
        assert widgets.create(user_actor, {"name": " a "}).replayed

    def test_different_payload_conflicts_without_side_effect(
        self, widgets: Widgets, user_actor: Actor, outbox: MemoryOutbox
    ) -> None:
        widgets.create(user_actor, {"name": "a"})

        with pytest.raises(IdempotencyConflict):
            widgets.create(user_actor, {"name": "b"})

        assert widgets.calls == 1
        assert len(outbox.all_records()) == 2

    def test_same_payload_under_another_operation_conflicts(
        self, coordinator: MutationCoordinator, user_actor: Actor
    ) -> None:
        coordinator.execute(user_actor, "op_a", {"x": 1}, lambda m: {"ok": True})
        with pytest.raises(IdempotencyConflict):
            coordinator.execute(user_actor, "op_b", {"x": 1}, lambda m: {"ok": True})

    def test_expired_key_executes_again(
        self, widgets: Widgets, user_actor: Actor, test_time: TestTimeProvider
    ) -> None:
        widgets.create(user_actor, {"name": "a"})
        test_time.advance(timedelta(hours=169))

        result = widgets.create(user_actor, {"name": "b"})

        assert result.replayed is False
        assert widgets.calls == 2

    def test_pending_reservation_reports_in_flight(
        self,
        widgets: Widgets,
        user_actor: Actor,
        idempotency_store: MemoryIdempotencyStore,
        coordinator: MutationCoordinator,
        test_time: TestTimeProvider,
    ) -> None:
        from mutation_kernel.kernel.hashing import request_hash

        digest = request_hash({"op": "create_widget", "request": {"name": "a"}})
        idempotency_store.reserve("key-1", digest, test_time.now() + timedelta(hours=1))

        with pytest.raises(RequestInFlight):
            widgets.create(user_actor, {"name": "a"})
        assert widgets.calls == 0


class TestEffect:
    def test_events_are_enqueued_in_emit_order(
        self, widgets: Widgets, user_actor: Actor, outbox: MemoryOutbox
    ) -> None:
        widgets.create(user_actor, {"name": "a"})

        records = outbox.list_pending(10)
        assert [r.envelope.event_type for r in records] == ["widget.created", "widget.viewed"]
        assert [r.event_class for r in records] == ["domain", "analytics_only"]
        for record in records:
            validate_envelope(record.envelope)
            assert record.envelope.trace_id == "req-1"
            assert record.envelope.source_service == "test-service"

    def test_outbox_is_written_before_response_is_cached(
        self,
        coordinator: MutationCoordinator,
        user_actor: Actor,
        outbox: MemoryOutbox,
    ) -> None:
        seen_pending: list[int] = []
        original_complete = coordinator.idempotency.complete

        def spying_complete(*args, **kwargs):
            seen_pending.append(outbox.count_pending())
            return original_complete(*args, **kwargs)

        coordinator.idempotency.complete = spying_complete  # type: ignore[method-assign]
        Widgets(coordinator).create(user_actor, {"name": "a"})

        assert seen_pending == [2]

    def test_enqueue_now_appends_inside_effect_without_duplicates(
        self, coordinator: MutationCoordinator, user_actor: Actor, outbox: MemoryOutbox
    ) -> None:
        coordinator.catalog.register("thing.done", EventClass.DOMAIN, "data.id")
        pending_inside: list[int] = []

        def effect(m: Mutation) -> dict:
            m.emit("thing.done", {"id": "1"}, "1")
            m.enqueue_now()
            pending_inside.append(outbox.count_pending())
            m.emit("thing.done", {"id": "2"}, "2")
            return {}

        coordinator.execute(user_actor, "do_thing", {}, effect)

        assert pending_inside == [1]
        assert [r.envelope.partition_key for r in outbox.list_pending(10)] == ["1", "2"]

    def test_failing_effect_enqueues_nothing(
        self, coordinator: MutationCoordinator, user_actor: Actor, outbox: MemoryOutbox
    ) -> None:
        coordinator.catalog.register("thing.done", EventClass.DOMAIN, "data.id")

        def effect(m: Mutation) -> None:
            m.emit("thing.done", {"id": "1"}, "1")
            raise InvalidInput("business rule")

        with pytest.raises(InvalidInput):
            coordinator.execute(user_actor, "do_thing", {}, effect)
        assert outbox.count_pending() == 0

    def test_reservation_stands_after_failed_effect(
        self,
        coordinator: MutationCoordinator,
        user_actor: Actor,
        idempotency_store: MemoryIdempotencyStore,
    ) -> None:
        def effect(m: Mutation) -> None:
            raise InvalidInput("business rule")

        with pytest.raises(InvalidInput):
            coordinator.execute(user_actor, "do_thing", {}, effect)
        with pytest.raises(RequestInFlight):
            coordinator.execute(user_actor, "do_thing", {}, effect)
        assert idempotency_store.get("key-1", coordinator.time_provider.now()).is_pending

    def test_emitting_uncatalogued_event_fails(
        self, coordinator: MutationCoordinator, user_actor: Actor, outbox: MemoryOutbox
    ) -> None:
        with pytest.raises(UnsupportedEventType):
            coordinator.execute(
                user_actor, "op", {}, lambda m: m.emit("nope.nope", {"id": "1"}, "1")
            )
        assert outbox.count_pending() == 0

    def test_wrong_partition_key_fails_at_emit(
        self, coordinator: MutationCoordinator, user_actor: Actor
    ) -> None:
        from mutation_kernel.kernel.errors import InvalidEnvelope

        coordinator.catalog.register("thing.done", EventClass.DOMAIN, "data.id")
        with pytest.raises(InvalidEnvelope):
            coordinator.execute(
                user_actor, "op", {}, lambda m: m.emit("thing.done", {"id": "1"}, "2")
            )

    def test_cancelled_context_runs_no_effect(
        self, widgets: Widgets, user_actor: Actor, idempotency_store: MemoryIdempotencyStore
    ) -> None:
        ctx = RequestContext.background()
        ctx.cancel()

        with pytest.raises(Cancelled):
            widgets.create(user_actor, {"name": "a"}, ctx=ctx)
        assert widgets.calls == 0
        assert idempotency_store.count() == 0

    def test_complete_failure_is_not_fatal(
        self, coordinator: MutationCoordinator, user_actor: Actor, outbox: MemoryOutbox
    ) -> None:
        def broken_complete(*args, **kwargs):
            raise RuntimeError("store down")

        coordinator.idempotency.complete = broken_complete  # type: ignore[method-assign]
        result = Widgets(coordinator).create(user_actor, {"name": "a"})

        assert result.value["widget_id"] == "w-1"
        assert outbox.count_pending() == 2

    def test_flush_in_request(
        self,
        idempotency_store,
        dedup_store,
        outbox,
        domain_publisher,
        analytics_publisher,
        test_time,
        user_actor: Actor,
    ) -> None:
        from mutation_kernel.kernel.config import KernelConfig

        coordinator = MutationCoordinator(
            KernelConfig(service_name="svc", flush_in_request=True),
            idempotency=idempotency_store,
            dedup=dedup_store,
            outbox=outbox,
            domain_publisher=domain_publisher,
            analytics_publisher=analytics_publisher,
            time_provider=test_time,
        )
        Widgets(coordinator).create(user_actor, {"name": "a"})

        assert outbox.count_pending() == 0
        assert domain_publisher.event_types() == ["widget.created"]


class TestConcurrency:
    def test_concurrent_same_key_runs_effect_once(
        self, coordinator: MutationCoordinator, user_actor: Actor
    ) -> None:
        calls = 0
        lock = threading.Lock()
        release = threading.Event()

        def effect(m: Mutation) -> dict:
            nonlocal calls
            with lock:
                calls += 1
            release.wait(1.0)
            return {"ok": True}

        outcomes: list[str] = []

        def run() -> None:
            try:
                coordinator.execute(user_actor, "slow", {"n": 1}, effect)
                outcomes.append("ok")
            except RequestInFlight:
                outcomes.append("in_flight")

        threads = [threading.Thread(target=run) for _ in range(5)]
        for t in threads:
            t.start()
        release.set()
        for t in threads:
            t.join(5)

        assert calls == 1
        assert outcomes.count("ok") >= 1
        assert len(outcomes) == 5
