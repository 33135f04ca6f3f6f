"""
Mutation Coordinator - exactly-once-effect requests and at-least-once events

The coordinator is the one place a host service routes its mutating
requests, its inbound events and its outbox drain through:

    execute:       guard -> lookup -> reserve -> effect -> enqueue -> complete
    handle_event:  validate -> dedup check -> dispatch -> mark processed
    flush_outbox:  list pending -> publish by class -> mark sent | dead-letter

Host code supplies the business effect as a callable. The effect receives a
Mutation through which it emits events. Those events are appended to the
outbox before the response is cached: by the effect itself through
Mutation.enqueue_now() while it holds its domain lock, or else right after
the effect returns.
"""

import json
import threading
import time
from collections.abc import Callable
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel

from mutation_kernel.kernel.config import KernelConfig
from mutation_kernel.kernel.context import RequestContext
from mutation_kernel.kernel.envelope import (
    EnvelopeCodec,
    EventCatalog,
    EventClass,
    EventEnvelope,
    validate_envelope,
)
from mutation_kernel.kernel.errors import (
    Cancelled,
    IdempotencyConflict,
    IdempotencyRequired,
    KernelError,
    PublishError,
    RequestInFlight,
    Unauthorized,
    UnsupportedEventClass,
)
from mutation_kernel.kernel.hashing import request_hash
from mutation_kernel.kernel.ids import IdFactory, default_id_factory
from mutation_kernel.kernel.logging import LogOperation, get_logger, request_scope
from mutation_kernel.kernel.metrics import (
    dlq_records_total,
    flush_duration_seconds,
    idempotency_complete_failures_total,
    idempotency_conflicts_total,
    idempotent_replays_total,
    inbound_events_total,
    mutation_duration_seconds,
    mutations_processed_total,
    outbox_enqueued_total,
    outbox_pending_records,
    outbox_published_total,
)
from mutation_kernel.kernel.models import (
    Actor,
    DLQRecord,
    IdempotencyRecord,
    OutboxRecord,
)
from mutation_kernel.kernel.ports import (
    AnalyticsPublisher,
    Consumer,
    DedupStore,
    DLQPublisher,
    DomainPublisher,
    IdempotencyStore,
    Outbox,
)
from mutation_kernel.kernel.retry import wait_for_in_flight
from mutation_kernel.kernel.router import EventHandler, EventRouter
from mutation_kernel.kernel.time import TimeProvider, default_time_provider

logger = get_logger(__name__)

Guard = Callable[[Actor], None]


class InboundOutcome(str, Enum):
    """What happened to one consumer tick"""

    IDLE = "idle"
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    DROPPED = "dropped"
    DEAD_LETTERED = "dead_lettered"


class MutationResult(BaseModel):
    """
    Response of one mutating request

    ``body`` is the serialized response exactly as cached; replays return
    the same bytes. ``value`` is the body decoded (into the response model
    when one was given).
    """

    response_code: int
    body: bytes
    replayed: bool = False
    value: Any = None

    model_config = {"frozen": True, "arbitrary_types_allowed": True}


class FlushResult(BaseModel):
    """Counts from one outbox flush"""

    published: int = 0
    dropped: int = 0

    model_config = {"frozen": True}

    @property
    def drained(self) -> int:
        return self.published + self.dropped


class Mutation:
    """
    Handle passed to a business effect

    Collects the events the effect emits. Staged events reach the outbox
    when the effect returns successfully, or earlier when the effect calls
    enqueue_now() from inside its own critical section, so that outbox
    order follows the order the domain store applied the writes in.
    """

    def __init__(
        self,
        codec: EnvelopeCodec,
        actor: Actor,
        operation: str,
        ctx: RequestContext,
        now: datetime,
        trace_id: str,
        *,
        outbox: Outbox | None = None,
        id_factory: IdFactory = default_id_factory,
    ) -> None:
        self.codec = codec
        self.actor = actor
        self.operation = operation
        self.ctx = ctx
        self.now = now
        self.trace_id = trace_id
        self._outbox = outbox
        self._id_factory = id_factory
        self._events: list[EventEnvelope] = []
        self._enqueued = 0

    def emit(
        self,
        event_type: str,
        data: Any,
        partition_key: str,
        *,
        occurred_at: datetime | None = None,
    ) -> EventEnvelope:
        """
        Build, validate and stage an event for the outbox

        Raises:
            UnsupportedEventType: If the type is not in the service catalog
            InvalidEnvelope: If partition_key does not match the payload
        """
        envelope = self.codec.emit(
            event_type,
            data,
            partition_key,
            trace_id=self.trace_id,
            occurred_at=occurred_at or self.now,
        )
        self.codec.validate(envelope)
        self._events.append(envelope)
        return envelope

    @property
    def events(self) -> list[EventEnvelope]:
        return list(self._events)

    def enqueue_now(self, conn: Any = None) -> list[OutboxRecord]:
        """
        Append the events staged so far to the outbox immediately

        Call while holding the domain lock (or inside the domain
        transaction, passing its connection as ``conn`` to a SQL outbox)
        so that the business write and the append commit together.
        Events already enqueued are not appended twice.

        Returns:
            The records appended by this call
        """
        if self._outbox is None:
            raise RuntimeError("mutation has no outbox attached")
        records = [
            OutboxRecord.for_envelope(self._id_factory.generate(), envelope, self.now)
            for envelope in self._events[self._enqueued :]
        ]
        if not records:
            return records
        if conn is None:
            self._outbox.enqueue_many(records)
        else:
            self._outbox.enqueue_many(records, conn=conn)
        self._enqueued += len(records)
        for record in records:
            outbox_enqueued_total.labels(
                event_type=record.envelope.event_type,
                event_class=record.event_class,
            ).inc()
        return records

    @property
    def enqueued_count(self) -> int:
        return self._enqueued


Effect = Callable[[Mutation], Any]


class MutationCoordinator:
    """
    Orchestrates idempotent mutations, inbound events and outbox draining

    Holds no lock of its own across calls: each store serializes its own
    operations, and publisher calls happen with no store lock held.
    """

    def __init__(
        self,
        config: KernelConfig,
        *,
        idempotency: IdempotencyStore,
        dedup: DedupStore,
        outbox: Outbox,
        domain_publisher: DomainPublisher,
        analytics_publisher: AnalyticsPublisher | None = None,
        dlq_publisher: DLQPublisher | None = None,
        consumer: Consumer | None = None,
        catalog: EventCatalog | None = None,
        router: EventRouter | None = None,
        time_provider: TimeProvider = default_time_provider,
        id_factory: IdFactory = default_id_factory,
    ) -> None:
        self.config = config
        self.idempotency = idempotency
        self.dedup = dedup
        self.outbox = outbox
        self.domain_publisher = domain_publisher
        self.analytics_publisher = analytics_publisher
        self.dlq_publisher = dlq_publisher
        self.consumer = consumer
        self.router = router or EventRouter()
        self.time_provider = time_provider
        self.id_factory = id_factory
        self.codec = EnvelopeCodec(
            config.service_name,
            catalog=catalog,
            id_factory=id_factory,
            time_provider=time_provider,
        )
        # record_id -> (retry_count, first_seen_at) for records stuck in the outbox
        self._dlq_attempts: dict[str, tuple[int, datetime]] = {}
        self._dlq_lock = threading.Lock()
        self._flush_lock = threading.Lock()

    @property
    def catalog(self) -> EventCatalog:
        return self.codec.catalog

    def register_handler(
        self,
        event_type: str,
        handler: EventHandler,
        partition_key_path: str | None = None,
    ) -> None:
        self.router.register(event_type, handler, partition_key_path)

    # ------------------------------------------------------------------
    # Mutating requests
    # ------------------------------------------------------------------

    def execute(
        self,
        actor: Actor,
        operation: str,
        request: Any,
        effect: Effect,
        *,
        ctx: RequestContext | None = None,
        response_model: type[BaseModel] | None = None,
        response_code: int = 200,
        require_key: bool = True,
        guard: Guard | None = None,
    ) -> MutationResult:
        """
        Run one mutating request with exactly-once effect per idempotency key

        Args:
            actor: Principal performing the request
            operation: Operation name, part of the request hash
            request: Semantic inputs of the request (model or mapping)
            effect: Business effect; receives a Mutation, returns the response
            ctx: Request context (cancellation and deadline)
            response_model: Model to decode the cached body into
            response_code: Code cached with the response
            require_key: Refuse requests without an idempotency key
            guard: Host checks run after the kernel guard (roles, input
                validation); raise Forbidden or InvalidInput to refuse

        Returns:
            The response, either freshly produced or replayed from cache

        Raises:
            Unauthorized: Empty subject
            IdempotencyRequired: Missing key where one is required
            IdempotencyConflict: Key reused with a different payload
            RequestInFlight: Key reserved by a request that has not completed
            Cancelled: Context cancelled before the effect started
        """
        ctx = ctx or RequestContext.background()
        started = time.perf_counter()
        with request_scope(actor.request_id) as request_id:
            with LogOperation(
                logger,
                "execute_mutation",
                mutation=operation,
                idempotency_key=actor.idempotency_key,
                subject_id=actor.subject_id,
            ):
                try:
                    result = self._execute(
                        actor,
                        operation,
                        request,
                        effect,
                        ctx=ctx,
                        request_id=request_id,
                        response_model=response_model,
                        response_code=response_code,
                        require_key=require_key,
                        guard=guard,
                    )
                except KernelError as e:
                    mutations_processed_total.labels(operation=operation, status=e.code).inc()
                    raise
                except Exception:
                    mutations_processed_total.labels(operation=operation, status="failure").inc()
                    raise
                finally:
                    mutation_duration_seconds.labels(operation=operation).observe(
                        time.perf_counter() - started
                    )
        status = "replayed" if result.replayed else "success"
        mutations_processed_total.labels(operation=operation, status=status).inc()
        return result

    def _execute(
        self,
        actor: Actor,
        operation: str,
        request: Any,
        effect: Effect,
        *,
        ctx: RequestContext,
        request_id: str,
        response_model: type[BaseModel] | None,
        response_code: int,
        require_key: bool,
        guard: Guard | None,
    ) -> MutationResult:
        # 1. Guard
        if not actor.subject_id.strip():
            raise Unauthorized("actor has no subject")
        key = actor.idempotency_key.strip()
        if require_key and not key:
            raise IdempotencyRequired()
        if guard is not None:
            guard(actor)

        # 2. Canonical hash of the semantic inputs
        digest = request_hash({"op": operation, "request": request})

        if key:
            # 3. Fast path: cached response, conflict or in-flight
            cached = self._lookup(key, digest, operation)
            if cached is not None:
                return self._replay(cached, operation, response_model)

            # 4. Reserve; nothing past this point runs for a cancelled request
            ctx.check("reserve")
            now = self.time_provider.now()
            try:
                created = self.idempotency.reserve(
                    key, digest, now + self.config.idempotency_ttl
                )
            except IdempotencyConflict:
                idempotency_conflicts_total.labels(operation=operation).inc()
                raise
            if created is False:
                # Another request with the same payload reserved first
                cached = self._lookup(key, digest, operation)
                if cached is not None:
                    return self._replay(cached, operation, response_model)
                raise RequestInFlight(key)

        ctx.check("effect")
        now = self.time_provider.now()

        # 5. Business effect
        mutation = Mutation(
            self.codec,
            actor,
            operation,
            ctx,
            now,
            request_id,
            outbox=self.outbox,
            id_factory=self.id_factory,
        )
        value = effect(mutation)
        body = encode_response(value)

        # 6. Outbox append of whatever the effect did not enqueue itself,
        # before the response is cached
        mutation.enqueue_now()

        # 7. Cache the response (best-effort)
        if key:
            try:
                self.idempotency.complete(key, response_code, body, self.time_provider.now())
            except Exception as e:
                idempotency_complete_failures_total.labels(operation=operation).inc()
                logger.error(
                    "Failed to cache mutation response",
                    operation=operation,
                    idempotency_key=key,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        if mutation.enqueued_count and self.config.flush_in_request:
            self._flush_in_band()

        return MutationResult(
            response_code=response_code,
            body=body,
            replayed=False,
            value=decode_response(body, response_model),
        )

    def _lookup(self, key: str, digest: str, operation: str) -> IdempotencyRecord | None:
        if self.config.in_flight_policy == "wait":
            lookup = wait_for_in_flight(
                max_attempts=self.config.in_flight_wait_attempts,
                max_wait_seconds=self.config.in_flight_wait_max_seconds,
            )(self._lookup_once)
            return lookup(key, digest, operation)
        return self._lookup_once(key, digest, operation)

    def _lookup_once(
        self, key: str, digest: str, operation: str
    ) -> IdempotencyRecord | None:
        record = self.idempotency.get(key, self.time_provider.now())
        if record is None:
            return None
        if record.request_hash != digest:
            idempotency_conflicts_total.labels(operation=operation).inc()
            logger.warning(
                "Idempotency key reused with a different payload",
                operation=operation,
                idempotency_key=key,
            )
            raise IdempotencyConflict(key)
        if record.is_pending:
            raise RequestInFlight(key)
        return record

    def _replay(
        self,
        record: IdempotencyRecord,
        operation: str,
        response_model: type[BaseModel] | None,
    ) -> MutationResult:
        idempotent_replays_total.labels(operation=operation).inc()
        logger.info(
            "Replaying cached response",
            operation=operation,
            idempotency_key=record.key,
        )
        return MutationResult(
            response_code=record.response_code,
            body=record.response_body,
            replayed=True,
            value=decode_response(record.response_body, response_model),
        )

    def _flush_in_band(self) -> None:
        try:
            self.flush_outbox(RequestContext.background())
        except KernelError as e:
            # Records stay pending for the background flusher
            logger.warning("In-band outbox flush failed", error=str(e), code=e.code)

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    def handle_event(
        self, envelope: EventEnvelope, ctx: RequestContext | None = None
    ) -> InboundOutcome:
        """
        Validate, deduplicate and dispatch one inbound envelope

        The event is marked processed only after its handler succeeds, so a
        failure leaves it eligible for redelivery.

        Raises:
            InvalidEnvelope: Envelope failed validation (handler not called)
            UnsupportedEventType: No handler for the event type
            Exception: Whatever the handler raised
        """
        ctx = ctx or RequestContext.background()
        with request_scope(envelope.trace_id):
            with LogOperation(
                logger,
                "handle_event",
                event_id=envelope.event_id,
                event_type=envelope.event_type,
            ):
                try:
                    validate_envelope(
                        envelope,
                        expected_partition_key_path=self.router.expected_partition_key_path(
                            envelope.event_type
                        ),
                    )
                except KernelError:
                    inbound_events_total.labels(
                        event_type=envelope.event_type or "unknown", outcome="invalid"
                    ).inc()
                    raise

                if self.dedup.seen(envelope.event_id, self.time_provider.now()):
                    inbound_events_total.labels(
                        event_type=envelope.event_type, outcome="duplicate"
                    ).inc()
                    logger.info(
                        "Skipping duplicate event",
                        event_id=envelope.event_id,
                        event_type=envelope.event_type,
                    )
                    return InboundOutcome.DUPLICATE

                ctx.check("event handler")
                try:
                    self.router.dispatch(envelope, ctx)
                except Exception:
                    inbound_events_total.labels(
                        event_type=envelope.event_type, outcome="failed"
                    ).inc()
                    raise

                self.dedup.mark(
                    envelope.event_id,
                    envelope.event_type,
                    self.time_provider.now() + self.config.event_dedup_ttl,
                )
                inbound_events_total.labels(
                    event_type=envelope.event_type, outcome="processed"
                ).inc()
                return InboundOutcome.PROCESSED

    def consume_once(self, ctx: RequestContext | None = None) -> InboundOutcome:
        """
        One consumer tick: optional flush, receive, handle

        Invalid or failing events are dropped when analytics-only and
        dead-lettered otherwise; neither is marked processed.

        Raises:
            Cancelled: If ctx is cancelled while handling
            PublishError: If dead-lettering itself failed
        """
        ctx = ctx or RequestContext.background()
        if self.consumer is None:
            raise RuntimeError("no consumer configured")

        if self.config.flush_on_consume:
            self._flush_in_band()

        if ctx.cancelled:
            return InboundOutcome.IDLE
        envelope = self.consumer.receive(ctx)
        if envelope is None:
            return InboundOutcome.IDLE

        try:
            return self.handle_event(envelope, ctx)
        except Cancelled:
            raise
        except Exception as e:
            return self._inbound_failure(envelope, e)

    def _inbound_failure(self, envelope: EventEnvelope, error: Exception) -> InboundOutcome:
        if envelope.event_class == EventClass.ANALYTICS_ONLY.value:
            logger.warning(
                "Dropping failed analytics event",
                event_id=envelope.event_id,
                event_type=envelope.event_type,
                error=str(error),
                error_type=type(error).__name__,
            )
            return InboundOutcome.DROPPED

        logger.error(
            "Inbound event failed, dead-lettering",
            event_id=envelope.event_id,
            event_type=envelope.event_type,
            error=str(error),
            error_type=type(error).__name__,
        )
        now = self.time_provider.now()
        record = self._dlq_record(envelope, error, retry_count=1, first_seen_at=now, now=now)
        if not self._send_dlq(record, origin="inbound"):
            raise PublishError(envelope.event_id, record.source_topic, error) from error
        return InboundOutcome.DEAD_LETTERED

    # ------------------------------------------------------------------
    # Outbox drain
    # ------------------------------------------------------------------

    def flush_outbox(self, ctx: RequestContext | None = None) -> FlushResult:
        """
        Publish pending outbox records in insertion order

        Domain records go to the domain publisher; a failure dead-letters
        the record and stops the batch so later records keep their order.
        Analytics-only records are best-effort and marked sent either way.

        Raises:
            PublishError: A domain record failed to publish
            UnsupportedEventClass: A record of class ops or unknown was found
        """
        ctx = ctx or RequestContext.background()
        # One drain at a time keeps publish order equal to insertion order
        with self._flush_lock, LogOperation(logger, "flush_outbox"):
            started = time.perf_counter()
            try:
                return self._flush(ctx)
            finally:
                flush_duration_seconds.observe(time.perf_counter() - started)
                outbox_pending_records.set(self.outbox.count_pending())

    def _flush(self, ctx: RequestContext) -> FlushResult:
        published = 0
        dropped = 0
        for record in self.outbox.list_pending(self.config.outbox_flush_batch_size):
            if ctx.cancelled:
                break
            envelope = record.envelope

            if record.event_class == EventClass.DOMAIN.value:
                try:
                    self.domain_publisher.publish(envelope)
                except Exception as e:
                    outbox_published_total.labels(
                        event_class=record.event_class, status="failed"
                    ).inc()
                    self._dead_letter_outbox(record, e)
                    raise PublishError(record.record_id, envelope.event_type, e) from e
                with self._dlq_lock:
                    self._dlq_attempts.pop(record.record_id, None)
                published += 1
                outbox_published_total.labels(event_class=record.event_class, status="sent").inc()

            elif record.event_class == EventClass.ANALYTICS_ONLY.value:
                if self._publish_analytics(envelope):
                    published += 1
                    outbox_published_total.labels(
                        event_class=record.event_class, status="sent"
                    ).inc()
                else:
                    dropped += 1
                    outbox_published_total.labels(
                        event_class=record.event_class, status="dropped"
                    ).inc()

            else:
                logger.error(
                    "Outbox record has an unroutable event class",
                    record_id=record.record_id,
                    event_type=envelope.event_type,
                    event_class=record.event_class,
                )
                raise UnsupportedEventClass(record.event_class)

            self.outbox.mark_sent(record.record_id, self.time_provider.now())

        if published or dropped:
            logger.info("Outbox flushed", published=published, dropped=dropped)
        return FlushResult(published=published, dropped=dropped)

    def _publish_analytics(self, envelope: EventEnvelope) -> bool:
        if self.analytics_publisher is None:
            logger.debug(
                "No analytics publisher configured, dropping event",
                event_id=envelope.event_id,
                event_type=envelope.event_type,
            )
            return False
        try:
            self.analytics_publisher.publish(envelope)
        except Exception as e:
            logger.warning(
                "Analytics publish failed, dropping event",
                event_id=envelope.event_id,
                event_type=envelope.event_type,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False
        return True

    def _dead_letter_outbox(self, record: OutboxRecord, error: Exception) -> None:
        now = self.time_provider.now()
        with self._dlq_lock:
            count, first_seen = self._dlq_attempts.get(record.record_id, (0, now))
            count += 1
            self._dlq_attempts[record.record_id] = (count, first_seen)
        logger.error(
            "Domain publish failed, dead-lettering",
            record_id=record.record_id,
            event_id=record.envelope.event_id,
            event_type=record.envelope.event_type,
            retry_count=count,
            error=str(error),
            error_type=type(error).__name__,
        )
        dlq = self._dlq_record(
            record.envelope, error, retry_count=count, first_seen_at=first_seen, now=now
        )
        # The caller raises PublishError for the original failure either way
        self._send_dlq(dlq, origin="outbox")

    def _dlq_record(
        self,
        envelope: EventEnvelope,
        error: Exception,
        *,
        retry_count: int,
        first_seen_at: datetime,
        now: datetime,
    ) -> DLQRecord:
        return DLQRecord(
            original_event=envelope,
            error_summary=f"{type(error).__name__}: {error}",
            retry_count=retry_count,
            first_seen_at=first_seen_at,
            last_error_at=now,
            source_topic=envelope.event_type or "unknown",
            dlq_topic=self.config.dlq_topic,
            trace_id=envelope.trace_id,
        )

    def _send_dlq(self, record: DLQRecord, *, origin: str) -> bool:
        """Publish a dead-letter record; False (already logged) if it could not be"""
        if self.dlq_publisher is None:
            logger.error(
                "No dead-letter publisher configured",
                dlq_topic=record.dlq_topic,
                event_id=record.original_event.event_id,
            )
            return False
        try:
            self.dlq_publisher.publish(record)
        except Exception as e:
            logger.error(
                "Dead-letter publish failed",
                dlq_topic=record.dlq_topic,
                event_id=record.original_event.event_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False
        dlq_records_total.labels(origin=origin).inc()
        return True

    def dlq_attempts(self, record_id: str) -> int:
        """How many times a stuck outbox record has been dead-lettered"""
        with self._dlq_lock:
            return self._dlq_attempts.get(record_id, (0, None))[0]

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def purge_expired(self) -> tuple[int, int]:
        """
        Drop expired idempotency and dedup records

        Returns:
            (idempotency records removed, dedup records removed)
        """
        now = self.time_provider.now()
        removed_keys = self.idempotency.purge_expired(now)
        removed_events = self.dedup.purge_expired(now)
        logger.info(
            "Expired records purged",
            idempotency_removed=removed_keys,
            dedup_removed=removed_events,
        )
        return removed_keys, removed_events

    def release_outbox_record(self, record_id: str) -> None:
        """
        Operator action: mark a stuck record sent without publishing it

        Raises:
            NotFound: If the record is absent
        """
        self.outbox.mark_sent(record_id, self.time_provider.now())
        with self._dlq_lock:
            self._dlq_attempts.pop(record_id, None)
        logger.warning("Outbox record released by operator", record_id=record_id)


def encode_response(value: Any) -> bytes:
    """Serialize a response once; replays return these exact bytes"""
    if isinstance(value, bytes):
        return value
    if isinstance(value, BaseModel):
        return value.model_dump_json().encode("utf-8")
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str).encode(
        "utf-8"
    )


def decode_response(body: bytes, response_model: type[BaseModel] | None = None) -> Any:
    if response_model is not None:
        return response_model.model_validate_json(body)
    if not body:
        return None
    return json.loads(body)
