"""
Escrow Ledger Service - campaign fund holds, releases and refunds

Every mutation is idempotent per caller key and stages exactly one domain
event partitioned by escrow_id, so consumers see a hold's history in order:

    escrow.hold_created -> escrow.partial_release* -> escrow.hold_fully_released
                                                   -> escrow.refund_processed
"""

from mutation_kernel.kernel.context import RequestContext
from mutation_kernel.kernel.coordinator import Mutation, MutationCoordinator
from mutation_kernel.kernel.envelope import EventCatalog, EventClass
from mutation_kernel.kernel.errors import InvalidInput, Unauthorized
from mutation_kernel.kernel.ids import IdFactory, default_id_factory
from mutation_kernel.kernel.models import Actor
from mutation_kernel.services.escrow.models import (
    CreateHoldInput,
    EscrowHold,
    HoldClosed,
    HoldCreatedPayload,
    HoldFullyReleasedPayload,
    HoldStatus,
    InsufficientEscrow,
    LedgerEntry,
    LedgerEntryType,
    PartialReleasePayload,
    RefundInput,
    RefundProcessedPayload,
    ReleaseInput,
    WalletBalance,
)
from mutation_kernel.services.escrow.repository import InMemoryEscrowRepository

SERVICE_NAME = "escrow-ledger-service"

HOLD_CREATED = "escrow.hold_created"
PARTIAL_RELEASE = "escrow.partial_release"
HOLD_FULLY_RELEASED = "escrow.hold_fully_released"
REFUND_PROCESSED = "escrow.refund_processed"

ESCROW_PARTITION_PATH = "data.escrow_id"


def register_escrow_events(catalog: EventCatalog) -> EventCatalog:
    for event_type in (HOLD_CREATED, PARTIAL_RELEASE, HOLD_FULLY_RELEASED, REFUND_PROCESSED):
        if event_type not in catalog:
            catalog.register(event_type, EventClass.DOMAIN, ESCROW_PARTITION_PATH)
    return catalog


def _require_input(request_valid: bool, message: str) -> None:
    if not request_valid:
        raise InvalidInput(message)


class EscrowService:
    def __init__(
        self,
        coordinator: MutationCoordinator,
        repository: InMemoryEscrowRepository | None = None,
        *,
        id_factory: IdFactory = default_id_factory,
    ) -> None:
        self.coordinator = coordinator
        self.repository = repository or InMemoryEscrowRepository()
        self.id_factory = id_factory
        register_escrow_events(coordinator.catalog)

    def create_hold(
        self, actor: Actor, request: CreateHoldInput, ctx: RequestContext | None = None
    ) -> EscrowHold:
        """
        Lock campaign funds for a creator

        Raises:
            Unauthorized, IdempotencyRequired, InvalidInput, IdempotencyConflict
        """

        def guard(_: Actor) -> None:
            _require_input(
                bool(request.campaign_id and request.creator_id) and request.amount > 0,
                "campaign_id, creator_id and a positive amount are required",
            )

        def effect(m: Mutation) -> EscrowHold:
            hold = EscrowHold(
                escrow_id=self.id_factory.generate(),
                campaign_id=request.campaign_id,
                creator_id=request.creator_id,
                original_amount=request.amount,
                remaining_amount=request.amount,
                status=HoldStatus.ACTIVE,
                held_at=m.now,
                updated_at=m.now,
            )
            with self.repository.locked() as repo:
                m.emit(
                    HOLD_CREATED,
                    HoldCreatedPayload(
                        escrow_id=hold.escrow_id,
                        campaign_id=hold.campaign_id,
                        creator_id=hold.creator_id,
                        amount=hold.original_amount,
                        held_at=hold.held_at,
                    ),
                    hold.escrow_id,
                )
                repo.create_hold(hold)
                self._append(repo, hold, LedgerEntryType.HOLD, hold.original_amount, m)
                m.enqueue_now()
            return hold

        return self.coordinator.execute(
            actor, "create_hold", request, effect, ctx=ctx, response_model=EscrowHold, guard=guard
        ).value

    def release(
        self, actor: Actor, request: ReleaseInput, ctx: RequestContext | None = None
    ) -> EscrowHold:
        """
        Release part or all of a hold to the creator

        Raises:
            NotFound, HoldClosed, InsufficientEscrow and the kernel guard errors
        """

        def guard(_: Actor) -> None:
            _require_input(
                bool(request.escrow_id) and request.amount > 0,
                "escrow_id and a positive amount are required",
            )

        def effect(m: Mutation) -> EscrowHold:
            with self.repository.locked() as repo:
                hold = repo.get_hold(request.escrow_id)
                if hold.status.closed:
                    raise HoldClosed(f"escrow hold {hold.escrow_id} is {hold.status.value}")
                if request.amount > hold.remaining_amount:
                    raise InsufficientEscrow(
                        f"release of {request.amount} exceeds remaining {hold.remaining_amount}"
                    )
                remaining = hold.remaining_amount - request.amount
                hold = hold.model_copy(
                    update={
                        "released_amount": hold.released_amount + request.amount,
                        "remaining_amount": remaining,
                        "status": HoldStatus.FULLY_RELEASED
                        if remaining == 0
                        else HoldStatus.PARTIAL_RELEASE,
                        "updated_at": m.now,
                    }
                )
                if hold.status == HoldStatus.FULLY_RELEASED:
                    m.emit(
                        HOLD_FULLY_RELEASED,
                        HoldFullyReleasedPayload(escrow_id=hold.escrow_id, released_at=m.now),
                        hold.escrow_id,
                    )
                else:
                    m.emit(
                        PARTIAL_RELEASE,
                        PartialReleasePayload(
                            escrow_id=hold.escrow_id,
                            amount=request.amount,
                            remaining_balance=hold.remaining_amount,
                            released_at=m.now,
                        ),
                        hold.escrow_id,
                    )
                repo.update_hold(hold)
                self._append(repo, hold, LedgerEntryType.RELEASE, request.amount, m)
                m.enqueue_now()
            return hold

        return self.coordinator.execute(
            actor, "release_escrow", request, effect, ctx=ctx, response_model=EscrowHold, guard=guard
        ).value

    def refund(
        self, actor: Actor, request: RefundInput, ctx: RequestContext | None = None
    ) -> EscrowHold:
        """
        Return part or all of a hold to the campaign

        Raises:
            NotFound, HoldClosed, InsufficientEscrow and the kernel guard errors
        """

        def guard(_: Actor) -> None:
            _require_input(bool(request.escrow_id), "escrow_id is required")

        def effect(m: Mutation) -> EscrowHold:
            with self.repository.locked() as repo:
                hold = repo.get_hold(request.escrow_id)
                if hold.status.closed:
                    raise HoldClosed(f"escrow hold {hold.escrow_id} is {hold.status.value}")
                amount = hold.remaining_amount if request.amount is None else request.amount
                if amount <= 0 or amount > hold.remaining_amount:
                    raise InsufficientEscrow(
                        f"refund of {amount} exceeds remaining {hold.remaining_amount}"
                    )
                remaining = hold.remaining_amount - amount
                hold = hold.model_copy(
                    update={
                        "refunded_amount": hold.refunded_amount + amount,
                        "remaining_amount": remaining,
                        "status": HoldStatus.REFUNDED
                        if remaining == 0
                        else HoldStatus.PARTIAL_RELEASE,
                        "updated_at": m.now,
                    }
                )
                m.emit(
                    REFUND_PROCESSED,
                    RefundProcessedPayload(
                        escrow_id=hold.escrow_id, amount=amount, refunded_at=m.now
                    ),
                    hold.escrow_id,
                )
                repo.update_hold(hold)
                self._append(repo, hold, LedgerEntryType.REFUND, amount, m)
                m.enqueue_now()
            return hold

        return self.coordinator.execute(
            actor, "refund_escrow", request, effect, ctx=ctx, response_model=EscrowHold, guard=guard
        ).value

    def get_hold(self, actor: Actor, escrow_id: str) -> EscrowHold:
        if not actor.subject_id.strip():
            raise Unauthorized()
        return self.repository.get_hold(escrow_id.strip())

    def wallet_balance(self, actor: Actor, campaign_id: str) -> WalletBalance:
        """Held, released, refunded and net balances of a campaign"""
        if not actor.subject_id.strip():
            raise Unauthorized()
        campaign_id = campaign_id.strip()
        if not campaign_id:
            raise InvalidInput("campaign_id is required")

        totals = {entry_type: 0.0 for entry_type in LedgerEntryType}
        for entry in self.repository.entries_for_campaign(campaign_id):
            totals[entry.entry_type] += entry.amount
        held = totals[LedgerEntryType.HOLD]
        released = totals[LedgerEntryType.RELEASE]
        refunded = totals[LedgerEntryType.REFUND]
        return WalletBalance(
            campaign_id=campaign_id,
            held_balance=held,
            released_balance=released,
            refunded_balance=refunded,
            net_escrow_balance=max(held - released - refunded, 0.0),
            calculated_at=self.coordinator.time_provider.now(),
        )

    def _append(
        self,
        repo: InMemoryEscrowRepository,
        hold: EscrowHold,
        entry_type: LedgerEntryType,
        amount: float,
        m: Mutation,
    ) -> None:
        repo.append_entry(
            LedgerEntry(
                entry_id=self.id_factory.generate(),
                escrow_id=hold.escrow_id,
                campaign_id=hold.campaign_id,
                entry_type=entry_type,
                amount=amount,
                occurred_at=m.now,
            )
        )
