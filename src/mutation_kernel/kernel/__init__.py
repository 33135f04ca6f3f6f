"""
Kernel - reliable mutation and event-emission machinery

Idempotent request handling, inbound event deduplication and the
transactional outbox, shared by every host service.
"""

from mutation_kernel.kernel.config import KernelConfig
from mutation_kernel.kernel.context import RequestContext
from mutation_kernel.kernel.coordinator import (
    FlushResult,
    InboundOutcome,
    Mutation,
    MutationCoordinator,
    MutationResult,
)
from mutation_kernel.kernel.envelope import (
    EnvelopeCodec,
    EventCatalog,
    EventClass,
    EventEnvelope,
    validate_envelope,
)
from mutation_kernel.kernel.errors import (
    Cancelled,
    Conflict,
    Forbidden,
    IdempotencyConflict,
    IdempotencyRequired,
    InvalidEnvelope,
    InvalidInput,
    KernelError,
    NotFound,
    PublishError,
    RequestInFlight,
    Unauthorized,
    UnsupportedEventClass,
    UnsupportedEventType,
)
from mutation_kernel.kernel.ids import IdFactory, SequentialIdFactory, generate_id
from mutation_kernel.kernel.models import (
    Actor,
    DedupRecord,
    DLQRecord,
    IdempotencyRecord,
    OutboxRecord,
)
from mutation_kernel.kernel.time import RealTimeProvider, TestTimeProvider, TimeProvider

__all__ = [
    # Config & context
    "KernelConfig",
    "RequestContext",
    # IDs
    "IdFactory",
    "SequentialIdFactory",
    "generate_id",
    # Time
    "TimeProvider",
    "RealTimeProvider",
    "TestTimeProvider",
    # Envelopes
    "EventEnvelope",
    "EventClass",
    "EventCatalog",
    "EnvelopeCodec",
    "validate_envelope",
    # Records
    "Actor",
    "IdempotencyRecord",
    "DedupRecord",
    "OutboxRecord",
    "DLQRecord",
    # Coordinator
    "MutationCoordinator",
    "Mutation",
    "MutationResult",
    "FlushResult",
    "InboundOutcome",
    # Errors
    "KernelError",
    "Unauthorized",
    "Forbidden",
    "InvalidInput",
    "NotFound",
    "Conflict",
    "IdempotencyRequired",
    "IdempotencyConflict",
    "RequestInFlight",
    "Cancelled",
    "InvalidEnvelope",
    "UnsupportedEventType",
    "UnsupportedEventClass",
    "PublishError",
]
