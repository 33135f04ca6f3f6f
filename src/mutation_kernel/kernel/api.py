"""
Caller-contract helpers for host transports

Hosts translate kernel exceptions and results into their wire format with
these helpers, so every service answers with the same envelope:

    {"status": "error", "code": ..., "message": ..., "request_id": ...,
     "error": {"code": ..., "message": ..., "request_id": ...}}

The top-level code always mirrors error.code.
"""

import json
from typing import Any

from mutation_kernel.kernel.coordinator import MutationResult
from mutation_kernel.kernel.errors import KernelError
from mutation_kernel.kernel.logging import get_logger, get_request_id

logger = get_logger(__name__)

IDEMPOTENCY_KEY_HEADER = "Idempotency-Key"
REQUEST_ID_HEADER = "X-Request-ID"


def status_for(error: BaseException) -> int:
    """HTTP status for any exception (500 for anything outside the taxonomy)"""
    if isinstance(error, KernelError):
        return error.http_status
    return 500


def error_envelope(
    error: BaseException, request_id: str | None = None
) -> tuple[int, dict[str, Any]]:
    """
    Map an exception to (status, error envelope)

    Unknown exceptions become 500 internal_error with a generic message;
    their details go to the log, never to the caller.
    """
    request_id = request_id or get_request_id()
    if isinstance(error, KernelError):
        code = error.code
        message = str(error)
    else:
        logger.error(
            "Unhandled error mapped to internal_error",
            error=str(error),
            error_type=type(error).__name__,
        )
        code = "internal_error"
        message = "internal server error"
    body = {
        "status": "error",
        "code": code,
        "message": message,
        "request_id": request_id,
        "error": {"code": code, "message": message, "request_id": request_id},
    }
    return status_for(error), body


def success_envelope(result: MutationResult, request_id: str | None = None) -> tuple[int, bytes]:
    """
    Wrap a mutation result in the success envelope

    The cached response bytes are embedded verbatim, so a replay produces a
    byte-identical ``data`` member.
    """
    request_id = request_id or get_request_id()
    prefix = json.dumps(
        {"status": "ok", "request_id": request_id}, separators=(",", ":")
    )[:-1]
    body = prefix.encode("utf-8") + b',"data":' + result.body + b"}"
    return result.response_code, body


def idempotency_key_from_headers(headers: Any) -> str:
    """Read the Idempotency-Key header (case-insensitive mappings or plain dicts)"""
    value = headers.get(IDEMPOTENCY_KEY_HEADER)
    if value is None:
        value = headers.get(IDEMPOTENCY_KEY_HEADER.lower(), "")
    return str(value or "").strip()
