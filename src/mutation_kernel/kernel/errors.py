"""
Custom exceptions for the mutation kernel

Every failure the kernel can surface to a host service is an exception in
this hierarchy. Each class carries a stable machine-readable ``code`` and
the HTTP status a host transport should map it to, so error envelopes stay
identical across services.
"""


class KernelError(Exception):
    """Base exception for all mutation kernel errors"""

    code = "internal_error"
    http_status = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code.replace("_", " "))


# Guard errors


class Unauthorized(KernelError):
    """Raised when the actor carries no subject"""

    code = "unauthorized"
    http_status = 401


class Forbidden(KernelError):
    """Raised when a role check fails or cross-tenant access is attempted"""

    code = "forbidden"
    http_status = 403


class IdempotencyRequired(KernelError):
    """Raised when a mutating call arrives without an idempotency key"""

    code = "idempotency_key_required"
    http_status = 400

    def __init__(self, message: str = "") -> None:
        super().__init__(message or "Idempotency-Key is required for mutating requests")


# Domain errors


class InvalidInput(KernelError):
    """Raised when domain validation rejects a request"""

    code = "invalid_input"
    http_status = 400


class NotFound(KernelError):
    """Raised on a store lookup miss for a required entity"""

    code = "not_found"
    http_status = 404


class Conflict(KernelError):
    """Raised on a generic write conflict (unique key violation)"""

    code = "conflict"
    http_status = 409


class IdempotencyConflict(Conflict):
    """
    Raised when an idempotency key is replayed with a different payload

    The key is bound to the request hash of its first reservation until the
    record expires; any other payload under the same key is refused.
    """

    code = "idempotency_conflict"

    def __init__(self, key: str, message: str = "") -> None:
        self.key = key
        super().__init__(
            message or f"Idempotency key {key} was already used with a different payload"
        )


class RequestInFlight(Conflict):
    """
    Raised when a replay finds a reservation that has not completed yet

    Transient: the original request is still executing, or it failed and
    its reservation is waiting to expire.
    """

    code = "request_in_flight"

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Request with idempotency key {key} is still in flight")


class Cancelled(KernelError):
    """Raised when a request context was cancelled or its deadline passed"""

    code = "cancelled"
    http_status = 408


# Event errors


class InvalidEnvelope(KernelError):
    """Raised when an event envelope fails validation"""

    code = "invalid_envelope"
    http_status = 400

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"invalid envelope: {reason}")


class UnsupportedEventType(KernelError):
    """Raised when no handler or catalog entry exists for an event type"""

    code = "unsupported_event_type"
    http_status = 400

    def __init__(self, event_type: str) -> None:
        self.event_type = event_type
        super().__init__(f"unsupported event type: {event_type}")


class UnsupportedEventClass(KernelError):
    """Raised when an outbox record cannot be routed by its event class"""

    code = "unsupported_event_class"
    http_status = 400

    def __init__(self, event_class: str) -> None:
        self.event_class = event_class
        super().__init__(f"unsupported event class: {event_class}")


# Infrastructure errors


class PublishError(KernelError):
    """Raised by a flush when a domain record could not be published"""

    code = "publish_failed"
    http_status = 502

    def __init__(self, record_id: str, event_type: str, cause: BaseException) -> None:
        self.record_id = record_id
        self.event_type = event_type
        self.cause = cause
        super().__init__(f"publish of {event_type} (record {record_id}) failed: {cause}")


class StoreError(KernelError):
    """Raised when a persistence driver fails unexpectedly"""

    code = "store_error"
    http_status = 500
