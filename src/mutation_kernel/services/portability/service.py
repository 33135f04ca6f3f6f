"""
Data Portability Service - user data exports and erase requests

Exports complete synchronously: the row is created pending, given a
download URL and marked completed inside one mutation, which stages a
single domain export.completed event. Erase requests record the reason
and complete immediately.

Callers act for themselves; the admin, support and legal roles may act
for any user.
"""

from mutation_kernel.kernel.context import RequestContext
from mutation_kernel.kernel.coordinator import Mutation, MutationCoordinator
from mutation_kernel.kernel.envelope import EventCatalog, EventClass
from mutation_kernel.kernel.errors import Forbidden, InvalidInput, Unauthorized
from mutation_kernel.kernel.ids import IdFactory, default_id_factory
from mutation_kernel.kernel.logging import get_logger
from mutation_kernel.kernel.models import Actor
from mutation_kernel.services.portability.models import (
    CreateExportInput,
    EraseInput,
    ExportCompletedPayload,
    ExportFormat,
    ExportRequest,
    ExportStatus,
    RequestType,
)
from mutation_kernel.services.portability.repository import InMemoryExportRepository

logger = get_logger(__name__)

SERVICE_NAME = "data-portability-service"

EXPORT_COMPLETED = "export.completed"
EXPORT_PARTITION_PATH = "data.request_id"

DOWNLOAD_URL_PREFIX = "https://downloads.example.com/v1/exports/"
DEFAULT_LIST_LIMIT = 50
PRIVILEGED_ROLES = frozenset({"admin", "support", "legal"})


def register_portability_events(catalog: EventCatalog) -> EventCatalog:
    if EXPORT_COMPLETED not in catalog:
        catalog.register(EXPORT_COMPLETED, EventClass.DOMAIN, EXPORT_PARTITION_PATH)
    return catalog


def is_privileged(actor: Actor) -> bool:
    return actor.role.strip().lower() in PRIVILEGED_ROLES


def can_act_for_user(actor: Actor, user_id: str) -> bool:
    actor_id = actor.subject_id.strip()
    user_id = user_id.strip()
    return bool(actor_id and user_id) and (actor_id == user_id or is_privileged(actor))


def resolve_user(actor: Actor, requested: str) -> str:
    """
    The user a request acts for: the requested one, or the caller

    Raises:
        Unauthorized: Empty subject
        Forbidden: Caller may not act for the requested user
    """
    if not actor.subject_id.strip():
        raise Unauthorized()
    requested = requested.strip() or actor.subject_id.strip()
    if not can_act_for_user(actor, requested):
        raise Forbidden("cannot act for another user")
    return requested


class PortabilityService:
    def __init__(
        self,
        coordinator: MutationCoordinator,
        repository: InMemoryExportRepository | None = None,
        *,
        id_factory: IdFactory = default_id_factory,
    ) -> None:
        self.coordinator = coordinator
        self.exports = repository or InMemoryExportRepository()
        self.id_factory = id_factory
        register_portability_events(coordinator.catalog)

    def create_export(
        self, actor: Actor, request: CreateExportInput, ctx: RequestContext | None = None
    ) -> ExportRequest:
        """
        Export a user's data as json (default) or csv

        Raises:
            Unauthorized, IdempotencyRequired, Forbidden, InvalidInput,
            IdempotencyConflict, RequestInFlight
        """
        export_format = request.format or ExportFormat.JSON.value
        # Filled by the guard, which runs after the key check and before hashing
        resolved: dict[str, str] = {}

        def guard(guarded: Actor) -> None:
            resolved["user_id"] = resolve_user(guarded, request.user_id)
            if export_format not in {f.value for f in ExportFormat}:
                raise InvalidInput(f"unsupported export format {export_format!r}")
            resolved["format"] = export_format

        def effect(m: Mutation) -> ExportRequest:
            row = ExportRequest(
                request_id=self.id_factory.generate(),
                user_id=resolved["user_id"],
                request_type=RequestType.EXPORT,
                format=export_format,
                status=ExportStatus.PENDING,
                requested_at=m.now,
            )
            self.exports.create(row)

            row = row.model_copy(
                update={
                    "status": ExportStatus.COMPLETED,
                    "completed_at": m.now,
                    "download_url": DOWNLOAD_URL_PREFIX + row.request_id,
                }
            )
            self.exports.update(row)
            m.emit(
                EXPORT_COMPLETED,
                ExportCompletedPayload(
                    request_id=row.request_id,
                    user_id=row.user_id,
                    request_type=row.request_type.value,
                    format=row.format,
                    completed_at=m.now,
                ),
                row.request_id,
            )
            return row

        return self.coordinator.execute(
            actor,
            "create_export",
            resolved,
            effect,
            ctx=ctx,
            response_model=ExportRequest,
            guard=guard,
        ).value

    def create_erase_request(
        self, actor: Actor, request: EraseInput, ctx: RequestContext | None = None
    ) -> ExportRequest:
        """
        Record a request to erase a user's data

        Raises:
            Unauthorized, IdempotencyRequired, Forbidden, InvalidInput (no
            reason), IdempotencyConflict, RequestInFlight
        """
        resolved: dict[str, str] = {}

        def guard(guarded: Actor) -> None:
            resolved["user_id"] = resolve_user(guarded, request.user_id)
            if not request.reason:
                raise InvalidInput("reason is required")
            resolved["reason"] = request.reason

        def effect(m: Mutation) -> ExportRequest:
            row = ExportRequest(
                request_id=self.id_factory.generate(),
                user_id=resolved["user_id"],
                request_type=RequestType.ERASE,
                status=ExportStatus.COMPLETED,
                reason=request.reason,
                requested_at=m.now,
                completed_at=m.now,
            )
            self.exports.create(row)
            m.emit(
                EXPORT_COMPLETED,
                ExportCompletedPayload(
                    request_id=row.request_id,
                    user_id=row.user_id,
                    request_type=row.request_type.value,
                    completed_at=m.now,
                ),
                row.request_id,
            )
            logger.info("Erase request recorded", request_id=row.request_id)
            return row

        return self.coordinator.execute(
            actor,
            "erase_export",
            resolved,
            effect,
            ctx=ctx,
            response_model=ExportRequest,
            guard=guard,
        ).value

    def get_export(self, actor: Actor, request_id: str) -> ExportRequest:
        if not actor.subject_id.strip():
            raise Unauthorized()
        request_id = request_id.strip()
        if not request_id:
            raise InvalidInput("request_id is required")
        row = self.exports.get(request_id)
        if not can_act_for_user(actor, row.user_id):
            raise Forbidden("export belongs to another user")
        return row

    def list_exports(
        self, actor: Actor, user_id: str = "", limit: int = DEFAULT_LIST_LIMIT
    ) -> list[ExportRequest]:
        """A user's requests newest first; unprivileged callers see their own"""
        if not actor.subject_id.strip():
            raise Unauthorized()
        if limit <= 0:
            limit = DEFAULT_LIST_LIMIT
        user_id = user_id.strip()
        if not user_id or not is_privileged(actor):
            user_id = actor.subject_id.strip()
        return self.exports.list_by_user(user_id, limit)
