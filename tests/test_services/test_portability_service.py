"""
Tests for the data portability service

Verifies idempotent export and erase requests, format handling, who may
act for whom, and listing.
"""

from datetime import timedelta

import pytest

from mutation_kernel.kernel.coordinator import MutationCoordinator
from mutation_kernel.kernel.errors import (
    Forbidden,
    IdempotencyConflict,
    IdempotencyRequired,
    InvalidInput,
    NotFound,
    Unauthorized,
)
from mutation_kernel.kernel.ids import SequentialIdFactory
from mutation_kernel.kernel.models import Actor
from mutation_kernel.kernel.time import TestTimeProvider
from mutation_kernel.services.portability import (
    CreateExportInput,
    EraseInput,
    ExportStatus,
    PortabilityService,
    RequestType,
)
from mutation_kernel.stores.memory import MemoryIdempotencyStore, MemoryOutbox


@pytest.fixture
def service(coordinator: MutationCoordinator) -> PortabilityService:
    return PortabilityService(coordinator, id_factory=SequentialIdFactory("exp"))


@pytest.fixture
def user() -> Actor:
    return Actor(subject_id="user-1", role="user", idempotency_key="idem-export-1")


class TestCreateExport:
    def test_replay_returns_same_request(
        self, service: PortabilityService, user: Actor, outbox: MemoryOutbox
    ) -> None:
        first = service.create_export(user, CreateExportInput(user_id="user-1", format="json"))
        second = service.create_export(user, CreateExportInput(user_id="user-1", format="json"))

        assert first.status == ExportStatus.COMPLETED
        assert second.request_id == first.request_id
        assert second.status == ExportStatus.COMPLETED
        assert service.exports.count() == 1
        assert [r.envelope.event_type for r in outbox.list_pending(10)] == ["export.completed"]

    def test_reused_key_with_other_format_conflicts(
        self, service: PortabilityService, user: Actor
    ) -> None:
        service.create_export(user, CreateExportInput(user_id="user-1", format="json"))

        with pytest.raises(IdempotencyConflict):
            service.create_export(user, CreateExportInput(user_id="user-1", format="csv"))
        assert service.exports.count() == 1

    def test_download_url_and_defaults(self, service: PortabilityService, user: Actor) -> None:
        row = service.create_export(user, CreateExportInput())

        assert row.user_id == "user-1"
        assert row.format == "json"
        assert row.request_type == RequestType.EXPORT
        assert row.download_url == f"https://downloads.example.com/v1/exports/{row.request_id}"

    def test_format_is_normalized(self, service: PortabilityService, user: Actor) -> None:
        row = service.create_export(user, CreateExportInput(format=" CSV "))
        assert row.format == "csv"

    def test_defaulted_and_explicit_user_share_a_hash(
        self, service: PortabilityService, user: Actor
    ) -> None:
        first = service.create_export(user, CreateExportInput(format="json"))
        second = service.create_export(user, CreateExportInput(user_id="user-1"))

        assert second.request_id == first.request_id

    def test_unsupported_format(self, service: PortabilityService, user: Actor) -> None:
        with pytest.raises(InvalidInput):
            service.create_export(user, CreateExportInput(format="xml"))
        assert service.exports.count() == 0

    def test_cannot_export_for_another_user(self, service: PortabilityService, user: Actor) -> None:
        with pytest.raises(Forbidden):
            service.create_export(user, CreateExportInput(user_id="user-2"))

    @pytest.mark.parametrize("role", ["admin", "support", "legal", " Legal "])
    def test_privileged_roles_act_for_anyone(self, service: PortabilityService, role: str) -> None:
        staff = Actor(subject_id="staff-1", role=role, idempotency_key="k")

        row = service.create_export(staff, CreateExportInput(user_id="user-2"))

        assert row.user_id == "user-2"

    def test_missing_key_refused_before_ownership_check(
        self, service: PortabilityService
    ) -> None:
        keyless = Actor(subject_id="user-1", role="user")

        with pytest.raises(IdempotencyRequired):
            service.create_export(keyless, CreateExportInput(user_id="user-2"))

    @pytest.mark.parametrize(
        "request_input,error",
        [
            (CreateExportInput(user_id="user-2"), Forbidden),
            (CreateExportInput(format="xml"), InvalidInput),
        ],
    )
    def test_refused_request_takes_no_reservation(
        self,
        service: PortabilityService,
        user: Actor,
        idempotency_store: MemoryIdempotencyStore,
        outbox: MemoryOutbox,
        request_input: CreateExportInput,
        error: type[Exception],
    ) -> None:
        with pytest.raises(error):
            service.create_export(user, request_input)

        assert idempotency_store.count() == 0
        assert outbox.count_pending() == 0
        assert service.exports.count() == 0

    def test_anonymous_caller(self, service: PortabilityService) -> None:
        with pytest.raises(Unauthorized):
            service.create_export(Actor(idempotency_key="k"), CreateExportInput())


class TestEraseRequest:
    def test_erase_completes_immediately(
        self, service: PortabilityService, user: Actor, outbox: MemoryOutbox
    ) -> None:
        row = service.create_erase_request(
            user.with_key("erase-1"), EraseInput(reason="closing account")
        )

        assert row.request_type == RequestType.ERASE
        assert row.status == ExportStatus.COMPLETED
        assert row.reason == "closing account"
        [record] = outbox.list_pending(10)
        assert record.envelope.payload()["request_type"] == "erase"

    def test_reason_required(self, service: PortabilityService, user: Actor) -> None:
        with pytest.raises(InvalidInput):
            service.create_erase_request(user.with_key("erase-1"), EraseInput(reason="  "))
        assert service.exports.count() == 0

    def test_refused_erase_takes_no_reservation(
        self, service: PortabilityService, user: Actor, idempotency_store: MemoryIdempotencyStore
    ) -> None:
        with pytest.raises(Forbidden):
            service.create_erase_request(
                user.with_key("erase-1"), EraseInput(user_id="user-2", reason="closing account")
            )
        assert idempotency_store.count() == 0


class TestQueries:
    def test_get_export_access(self, service: PortabilityService, user: Actor) -> None:
        row = service.create_export(user, CreateExportInput())

        assert service.get_export(user, row.request_id) == row
        assert service.get_export(Actor(subject_id="s", role="support"), row.request_id) == row
        with pytest.raises(Forbidden):
            service.get_export(Actor(subject_id="user-2"), row.request_id)
        with pytest.raises(NotFound):
            service.get_export(user, "exp-404")
        with pytest.raises(InvalidInput):
            service.get_export(user, "")

    def test_list_newest_first_and_scoped(
        self, service: PortabilityService, user: Actor, test_time: TestTimeProvider
    ) -> None:
        older = service.create_export(user.with_key("a"), CreateExportInput())
        test_time.advance(timedelta(minutes=1))
        newer = service.create_export(user.with_key("b"), CreateExportInput(format="csv"))
        admin = Actor(subject_id="admin-1", role="admin", idempotency_key="c")
        service.create_export(admin, CreateExportInput(user_id="user-2"))

        assert [r.request_id for r in service.list_exports(user)] == [
            newer.request_id,
            older.request_id,
        ]
        assert [r.user_id for r in service.list_exports(user, user_id="user-2")] == [
            "user-1",
            "user-1",
        ]
        assert [r.user_id for r in service.list_exports(admin, user_id="user-2")] == ["user-2"]
        assert len(service.list_exports(user, limit=1)) == 1
