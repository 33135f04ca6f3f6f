"""
Payout Service - settles rewards to users through the mutation kernel

Payout requests are idempotent per caller key. Each accepted request moves
a payout through scheduled -> processing -> paid|failed inside one
mutation and stages three events: an analytics-only payout.processing and
a domain payout.paid or payout.failed.

The service also consumes reward.payout_eligible: each eligible submission
triggers a payout under the derived key ``event:<event_id>``, so a
redelivered event can never pay twice even after its dedup entry expires.
"""

from datetime import datetime

from pydantic import ValidationError

from mutation_kernel.kernel.context import RequestContext
from mutation_kernel.kernel.coordinator import Mutation, MutationCoordinator
from mutation_kernel.kernel.envelope import EventCatalog, EventClass, EventEnvelope
from mutation_kernel.kernel.errors import (
    Forbidden,
    InvalidInput,
    Unauthorized,
    UnsupportedEventClass,
)
from mutation_kernel.kernel.ids import IdFactory, default_id_factory
from mutation_kernel.kernel.logging import get_logger
from mutation_kernel.kernel.models import Actor
from mutation_kernel.services.payout.models import (
    Payout,
    PayoutFailedPayload,
    PayoutHistory,
    PayoutMethod,
    PayoutPaidPayload,
    PayoutProcessingPayload,
    PayoutStatus,
    RequestPayoutInput,
    RewardPayoutEligiblePayload,
)
from mutation_kernel.services.payout.repository import InMemoryPayoutRepository

logger = get_logger(__name__)

SERVICE_NAME = "payout-service"

PAYOUT_PROCESSING = "payout.processing"
PAYOUT_PAID = "payout.paid"
PAYOUT_FAILED = "payout.failed"
REWARD_PAYOUT_ELIGIBLE = "reward.payout_eligible"

PAYOUT_PARTITION_PATH = "data.payout_id"
ELIGIBLE_PARTITION_PATH = "data.submission_id"

DEFAULT_CURRENCY = "USD"
DEFAULT_INSTANT_LIMIT = 10000.0
INSTANT_LIMIT_EXCEEDED = "instant_limit_exceeded"


def register_payout_events(catalog: EventCatalog) -> EventCatalog:
    """Add the payout service's emitted events to a catalog"""
    for event_type, event_class in (
        (PAYOUT_PROCESSING, EventClass.ANALYTICS_ONLY),
        (PAYOUT_PAID, EventClass.DOMAIN),
        (PAYOUT_FAILED, EventClass.DOMAIN),
    ):
        if event_type not in catalog:
            catalog.register(event_type, event_class, PAYOUT_PARTITION_PATH)
    return catalog


class PayoutService:
    """Payout requests, lookups and the reward.payout_eligible consumer"""

    def __init__(
        self,
        coordinator: MutationCoordinator,
        repository: InMemoryPayoutRepository | None = None,
        *,
        default_currency: str = DEFAULT_CURRENCY,
        instant_limit: float = DEFAULT_INSTANT_LIMIT,
        id_factory: IdFactory = default_id_factory,
    ) -> None:
        self.coordinator = coordinator
        self.payouts = repository or InMemoryPayoutRepository()
        self.default_currency = default_currency or DEFAULT_CURRENCY
        self.instant_limit = instant_limit if instant_limit > 0 else DEFAULT_INSTANT_LIMIT
        self.id_factory = id_factory
        register_payout_events(coordinator.catalog)
        coordinator.register_handler(
            REWARD_PAYOUT_ELIGIBLE, self.handle_payout_eligible, ELIGIBLE_PARTITION_PATH
        )

    def request_payout(
        self,
        actor: Actor,
        request: RequestPayoutInput,
        ctx: RequestContext | None = None,
    ) -> Payout:
        """
        Request a payout for a submission

        Only the payee or an admin may request. Instant payouts above the
        instant limit are recorded as failed rather than refused.

        Raises:
            Unauthorized, Forbidden, IdempotencyRequired, InvalidInput,
            IdempotencyConflict, RequestInFlight
        """

        def guard(a: Actor) -> None:
            if a.role != "admin" and a.subject_id != request.user_id:
                raise Forbidden("payouts can only be requested by the payee or an admin")
            self._validate(request)

        result = self.coordinator.execute(
            actor,
            "request_payout",
            request,
            lambda m: self._create_payout(m, request),
            ctx=ctx,
            response_model=Payout,
            response_code=201,
            guard=guard,
        )
        return result.value

    def _validate(self, request: RequestPayoutInput) -> None:
        if not request.user_id:
            raise InvalidInput("user_id is required")
        if not request.submission_id:
            raise InvalidInput("submission_id is required")
        if request.amount <= 0:
            raise InvalidInput("amount must be positive")

    def _create_payout(self, m: Mutation, request: RequestPayoutInput) -> Payout:
        now = m.now
        payout = Payout(
            payout_id=self.id_factory.generate(),
            user_id=request.user_id,
            submission_id=request.submission_id,
            amount=request.amount,
            currency=request.currency or self.default_currency,
            method=request.method,
            status=PayoutStatus.SCHEDULED,
            scheduled_at=request.scheduled_at or now,
            created_at=now,
            updated_at=now,
        )
        self.payouts.create(payout)

        payout = payout.model_copy(
            update={"status": PayoutStatus.PROCESSING, "processing_at": now, "updated_at": now}
        )
        self.payouts.update(payout)
        m.emit(
            PAYOUT_PROCESSING,
            PayoutProcessingPayload(
                payout_id=payout.payout_id,
                user_id=payout.user_id,
                amount=payout.amount,
                method=payout.method.value,
                processing_at=now,
            ),
            payout.payout_id,
        )

        if payout.method == PayoutMethod.INSTANT and payout.amount > self.instant_limit:
            payout = payout.model_copy(
                update={
                    "status": PayoutStatus.FAILED,
                    "failure_reason": INSTANT_LIMIT_EXCEEDED,
                    "failed_at": now,
                    "updated_at": now,
                }
            )
            self.payouts.update(payout)
            m.emit(
                PAYOUT_FAILED,
                PayoutFailedPayload(
                    payout_id=payout.payout_id,
                    user_id=payout.user_id,
                    amount=payout.amount,
                    method=payout.method.value,
                    reason=INSTANT_LIMIT_EXCEEDED,
                    failed_at=now,
                ),
                payout.payout_id,
            )
            logger.info("Instant payout over limit marked failed", payout_id=payout.payout_id)
        else:
            payout = payout.model_copy(
                update={"status": PayoutStatus.PAID, "paid_at": now, "updated_at": now}
            )
            self.payouts.update(payout)
            m.emit(
                PAYOUT_PAID,
                PayoutPaidPayload(
                    payout_id=payout.payout_id,
                    user_id=payout.user_id,
                    amount=payout.amount,
                    method=payout.method.value,
                    paid_at=now,
                ),
                payout.payout_id,
            )
        return payout

    def get_payout(self, actor: Actor, payout_id: str) -> Payout:
        """
        Raises:
            Unauthorized, NotFound, Forbidden
        """
        if not actor.subject_id.strip():
            raise Unauthorized()
        payout = self.payouts.get(payout_id.strip())
        if actor.role != "admin" and payout.user_id != actor.subject_id:
            raise Forbidden("payout belongs to another user")
        return payout

    def list_history(
        self,
        actor: Actor,
        user_id: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> PayoutHistory:
        """Payouts newest first; non-admins only ever see their own"""
        if not actor.subject_id.strip():
            raise Unauthorized()
        if actor.role != "admin":
            user_id = actor.subject_id
        if limit <= 0:
            limit = 20
        offset = max(offset, 0)
        items, total = self.payouts.list(user_id, limit, offset)
        return PayoutHistory(items=items, limit=limit, offset=offset, total=total)

    def handle_payout_eligible(self, envelope: EventEnvelope, ctx: RequestContext) -> None:
        """
        Pay out an eligible submission

        Raises:
            UnsupportedEventClass: If the event is not a domain event
            InvalidInput: If the payload is malformed
        """
        if envelope.event_class != EventClass.DOMAIN.value:
            raise UnsupportedEventClass(envelope.event_class)
        try:
            payload = RewardPayoutEligiblePayload.model_validate(envelope.payload())
        except ValidationError as e:
            raise InvalidInput(f"malformed {REWARD_PAYOUT_ELIGIBLE} payload: {e}") from e

        scheduled_at: datetime | None = None
        if payload.eligible_at:
            try:
                scheduled_at = datetime.fromisoformat(payload.eligible_at.replace("Z", "+00:00"))
            except ValueError:
                scheduled_at = None

        actor = Actor(
            subject_id=payload.user_id,
            role="system",
            request_id=envelope.trace_id,
            idempotency_key=f"event:{envelope.event_id}",
        )
        self.request_payout(
            actor,
            RequestPayoutInput(
                user_id=payload.user_id,
                submission_id=payload.submission_id,
                amount=payload.gross_amount,
                currency=self.default_currency,
                method=PayoutMethod.STANDARD,
                scheduled_at=scheduled_at,
            ),
            ctx,
        )
