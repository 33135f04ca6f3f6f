"""
Canonical event envelope - build, validate and fingerprint

Every event a service emits or consumes travels inside an EventEnvelope.
The envelope identifies, classifies and routes the event without anyone
having to understand its payload: ``partition_key_path`` names the field of
``data`` that downstream consumers shard on, and ``partition_key`` repeats
its value. Validation proves the two agree, so a service that keys an event
on the wrong field fails at its own boundary instead of in the broker.
"""

import hashlib
import json
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_serializer, field_validator

from mutation_kernel.kernel.errors import InvalidEnvelope, UnsupportedEventType
from mutation_kernel.kernel.hashing import canonical_json
from mutation_kernel.kernel.ids import IdFactory, default_id_factory
from mutation_kernel.kernel.time import TimeProvider, default_time_provider

PARTITION_PATH_PREFIX = "data."
DEFAULT_SCHEMA_VERSION = "v1"


class EventClass(str, Enum):
    """Routing category of an event - selects publisher and failure policy"""

    DOMAIN = "domain"
    ANALYTICS_ONLY = "analytics_only"
    OPS = "ops"


EVENT_CLASSES = frozenset(c.value for c in EventClass)


def encode_data(value: Any) -> bytes:
    """Serialize an event payload to the bytes carried in ``data``"""
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, BaseModel):
        return value.model_dump_json().encode("utf-8")
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str).encode(
        "utf-8"
    )


class EventEnvelope(BaseModel):
    """
    Self-describing wrapper around every event

    Fields are deliberately permissive at construction time: a consumer must
    be able to hold a malformed envelope long enough to reject or
    dead-letter it. ``validate_envelope`` is where the invariants live.
    """

    event_id: str = Field(default="", description="Unique per emission; dedup key")
    event_type: str = Field(default="", description="Dotted identifier, e.g. 'payout.paid'")
    event_class: str = Field(default="", description="domain | analytics_only | ops")
    occurred_at: datetime | None = Field(default=None, description="Business time of the effect")
    partition_key_path: str = Field(default="", description="'data.<field>' naming the partition field")
    partition_key: str = Field(default="", description="Value found at partition_key_path")
    source_service: str = Field(default="", description="Emitting service")
    trace_id: str = Field(default="", description="Trace propagated from the causing request")
    schema_version: str = Field(default="", description="Payload schema version")
    data: bytes = Field(default=b"", description="Serialized payload (a JSON object)")

    model_config = {
        "frozen": True,
        "json_schema_extra": {
            "examples": [
                {
                    "event_id": "01908e9a-3b87-7000-8000-123456789abc",
                    "event_type": "payout.paid",
                    "event_class": "domain",
                    "occurred_at": "2026-02-10T00:00:00Z",
                    "partition_key_path": "data.payout_id",
                    "partition_key": "po-1",
                    "source_service": "payout-service",
                    "trace_id": "req-123",
                    "schema_version": "v1",
                    "data": {"payout_id": "po-1", "user_id": "user-1", "amount": 125.25},
                }
            ]
        },
    }

    @field_validator("event_class", mode="before")
    @classmethod
    def _class_value(cls, value: Any) -> Any:
        if isinstance(value, EventClass):
            return value.value
        return value

    @field_validator("data", mode="before")
    @classmethod
    def _encode_data(cls, value: Any) -> bytes:
        if value is None:
            return b""
        return encode_data(value)

    @field_serializer("data", when_used="json")
    def _embed_data(self, value: bytes) -> Any:
        # Embed the payload as a JSON document rather than a quoted string
        try:
            return json.loads(value)
        except ValueError:
            return value.decode("utf-8", errors="replace")

    def payload(self) -> dict[str, Any]:
        """
        Parse ``data`` as a keyed document

        Raises:
            InvalidEnvelope: If data is not a JSON object
        """
        try:
            decoded = json.loads(self.data)
        except ValueError as e:
            raise InvalidEnvelope(f"data is not valid JSON: {e}") from e
        if not isinstance(decoded, dict):
            raise InvalidEnvelope("data is not a keyed document")
        return decoded

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: str | bytes) -> "EventEnvelope":
        return cls.model_validate_json(raw)


def partition_field(partition_key_path: str) -> str:
    """
    Extract the payload field name from a partition key path

    Raises:
        InvalidEnvelope: If the path is empty, not prefixed with 'data.',
            or nested
    """
    path = partition_key_path.strip()
    if not path:
        raise InvalidEnvelope("missing partition_key_path")
    if not path.startswith(PARTITION_PATH_PREFIX):
        raise InvalidEnvelope(f"partition_key_path {path!r} must start with 'data.'")
    field = path[len(PARTITION_PATH_PREFIX):].strip()
    if not field:
        raise InvalidEnvelope("partition_key_path names no field")
    if "." in field:
        raise InvalidEnvelope(f"nested partition_key_path {path!r} is not supported")
    return field


def stringify_scalar(value: Any) -> str:
    """
    Render a decoded JSON scalar the way it appears as a partition key

    Raises:
        InvalidEnvelope: For null, objects and arrays
    """
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    raise InvalidEnvelope(f"partition key value {value!r} is not a scalar")


def validate_envelope(
    envelope: EventEnvelope,
    *,
    expected_event_type: str | None = None,
    expected_partition_key_path: str | None = None,
) -> None:
    """
    Enforce every envelope invariant, failing closed

    Checks that each identifying string field is non-empty, occurred_at is
    set, data is present, event_class is known, and that the value at
    partition_key_path inside data stringifies to partition_key.

    Args:
        envelope: Envelope to check
        expected_event_type: Reject any other event_type when given
        expected_partition_key_path: Reject any other partition path when given

    Raises:
        InvalidEnvelope: On the first violated invariant
    """
    for name in (
        "event_id",
        "event_type",
        "event_class",
        "partition_key_path",
        "partition_key",
        "source_service",
        "trace_id",
        "schema_version",
    ):
        if not str(getattr(envelope, name)).strip():
            raise InvalidEnvelope(f"missing {name}")

    if envelope.occurred_at is None or envelope.occurred_at.year <= 1:
        raise InvalidEnvelope("missing occurred_at")
    if not envelope.data:
        raise InvalidEnvelope("missing data payload")
    if envelope.event_class not in EVENT_CLASSES:
        raise InvalidEnvelope(f"unknown event_class {envelope.event_class!r}")

    if expected_event_type is not None and envelope.event_type != expected_event_type:
        raise InvalidEnvelope(
            f"expected event_type {expected_event_type}, got {envelope.event_type}"
        )
    if (
        expected_partition_key_path is not None
        and envelope.partition_key_path != expected_partition_key_path
    ):
        raise InvalidEnvelope(f"expected partition_key_path {expected_partition_key_path}")

    field = partition_field(envelope.partition_key_path)
    payload = envelope.payload()
    if field not in payload:
        raise InvalidEnvelope(f"partition key field {field} missing from payload")
    if stringify_scalar(payload[field]) != envelope.partition_key:
        raise InvalidEnvelope("partition key invariant failed")


def fingerprint(envelope: EventEnvelope) -> str:
    """SHA-256 of the envelope's canonical JSON form"""
    return hashlib.sha256(canonical_json(envelope.model_dump(mode="json"))).hexdigest()


class EventSpec(BaseModel):
    """Catalog entry: how one event type is classified and partitioned"""

    event_type: str
    event_class: EventClass
    partition_key_path: str

    model_config = {"frozen": True}


class EventCatalog:
    """
    Registry of the event types a service may emit

    Emitting through the catalog fixes class and partition path per type,
    so a service cannot publish one event type under two routing rules.
    """

    def __init__(self, specs: list[EventSpec] | None = None) -> None:
        self._specs: dict[str, EventSpec] = {}
        for spec in specs or []:
            self._specs[spec.event_type] = spec

    def register(
        self, event_type: str, event_class: EventClass | str, partition_key_path: str
    ) -> EventSpec:
        """
        Register an emitted event type

        Raises:
            ValueError: If the type is already registered or the path is malformed
        """
        if event_type in self._specs:
            raise ValueError(f"Event type {event_type} is already registered")
        partition_field(partition_key_path)
        spec = EventSpec(
            event_type=event_type,
            event_class=EventClass(event_class),
            partition_key_path=partition_key_path,
        )
        self._specs[event_type] = spec
        return spec

    def get(self, event_type: str) -> EventSpec:
        """
        Raises:
            UnsupportedEventType: If the type was never registered
        """
        spec = self._specs.get(event_type)
        if spec is None:
            raise UnsupportedEventType(event_type)
        return spec

    def __contains__(self, event_type: object) -> bool:
        return event_type in self._specs

    def event_types(self) -> list[str]:
        return list(self._specs)


class EnvelopeCodec:
    """
    Builds and validates envelopes on behalf of one service

    The codec stamps source_service and schema_version and mints event ids;
    ``emit`` additionally resolves class and partition path from the
    service's EventCatalog.
    """

    def __init__(
        self,
        source_service: str,
        *,
        catalog: EventCatalog | None = None,
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        id_factory: IdFactory = default_id_factory,
        time_provider: TimeProvider = default_time_provider,
    ) -> None:
        self.source_service = source_service
        self.catalog = catalog or EventCatalog()
        self.schema_version = schema_version
        self.id_factory = id_factory
        self.time_provider = time_provider

    def build(
        self,
        *,
        event_type: str,
        event_class: EventClass | str,
        data: Any,
        partition_key: str,
        partition_key_path: str,
        trace_id: str,
        schema_version: str | None = None,
        source_service: str | None = None,
        occurred_at: datetime | None = None,
    ) -> EventEnvelope:
        """
        Build an envelope with a fresh event_id

        The partition-key invariant is not checked here: callers build from
        a payload they just serialized with a known field. Run ``validate``
        where that assumption does not hold.
        """
        return EventEnvelope(
            event_id=self.id_factory.generate(),
            event_type=event_type,
            event_class=event_class,
            occurred_at=occurred_at or self.time_provider.now(),
            partition_key_path=partition_key_path,
            partition_key=partition_key,
            source_service=source_service or self.source_service,
            trace_id=trace_id or self.id_factory.generate(),
            schema_version=schema_version or self.schema_version,
            data=data,
        )

    def emit(
        self,
        event_type: str,
        data: Any,
        partition_key: str,
        *,
        trace_id: str = "",
        occurred_at: datetime | None = None,
    ) -> EventEnvelope:
        """
        Build an envelope for a catalogued event type

        Raises:
            UnsupportedEventType: If the type is not in the catalog
        """
        spec = self.catalog.get(event_type)
        return self.build(
            event_type=event_type,
            event_class=spec.event_class,
            data=data,
            partition_key=partition_key,
            partition_key_path=spec.partition_key_path,
            trace_id=trace_id,
            occurred_at=occurred_at,
        )

    def validate(
        self,
        envelope: EventEnvelope,
        *,
        expected_event_type: str | None = None,
        expected_partition_key_path: str | None = None,
    ) -> None:
        validate_envelope(
            envelope,
            expected_event_type=expected_event_type,
            expected_partition_key_path=expected_partition_key_path,
        )

    def fingerprint(self, envelope: EventEnvelope) -> str:
        return fingerprint(envelope)
