"""
Kernel records - the values stored and exchanged by the kernel

All records are immutable pydantic models. Stores hand out values, never
references into their own state, so a caller cannot alter a cached
response body or an outbox record behind the store's back.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from mutation_kernel.kernel.envelope import EventEnvelope


class Actor(BaseModel):
    """
    The principal performing an operation

    Empty subject_id means unauthenticated. Empty idempotency_key on a
    mutating operation is refused by the coordinator guard.
    """

    subject_id: str = ""
    role: str = ""
    request_id: str = ""
    idempotency_key: str = ""

    model_config = {"frozen": True}

    def with_key(self, idempotency_key: str) -> "Actor":
        return self.model_copy(update={"idempotency_key": idempotency_key})

    @classmethod
    def system(cls, request_id: str = "", idempotency_key: str = "") -> "Actor":
        """Actor used for mutations driven by inbound events"""
        return cls(
            subject_id="system",
            role="system",
            request_id=request_id,
            idempotency_key=idempotency_key,
        )


class IdempotencyRecord(BaseModel):
    """
    A reserved or completed idempotency key

    While pending, response_body is empty. ``complete`` fills it once with
    the serialized response that every later replay returns verbatim.
    """

    key: str
    request_hash: str
    response_code: int = 0
    response_body: bytes = b""
    expires_at: datetime

    model_config = {"frozen": True}

    @property
    def is_pending(self) -> bool:
        return not self.response_body

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


class DedupRecord(BaseModel):
    """Processed inbound event, remembered until expires_at"""

    event_id: str
    event_type: str
    expires_at: datetime

    model_config = {"frozen": True}

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


class OutboxRecord(BaseModel):
    """One outbound envelope waiting in (or already drained from) the outbox"""

    record_id: str
    event_class: str
    envelope: EventEnvelope
    created_at: datetime
    sent_at: datetime | None = None

    model_config = {"frozen": True}

    @classmethod
    def for_envelope(
        cls, record_id: str, envelope: EventEnvelope, created_at: datetime
    ) -> "OutboxRecord":
        return cls(
            record_id=record_id,
            event_class=envelope.event_class,
            envelope=envelope,
            created_at=created_at,
        )

    @property
    def is_pending(self) -> bool:
        return self.sent_at is None


class DLQRecord(BaseModel):
    """Dead-letter record describing an event that could not be delivered"""

    original_event: EventEnvelope
    error_summary: str = Field(..., min_length=1)
    retry_count: int = Field(default=1, ge=1)
    first_seen_at: datetime
    last_error_at: datetime
    source_topic: str
    dlq_topic: str
    trace_id: str

    model_config = {"frozen": True}
