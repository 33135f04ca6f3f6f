"""
Structured logging framework for the mutation kernel.

Provides request-id propagation, PII redaction, and JSON output for
production observability. Every mutation and every inbound event runs with
the caller's request id (or the event trace id) bound to the log context.
"""

import contextvars
import logging
import os
import secrets
import sys
import time
from contextlib import contextmanager
from typing import Any, Iterator

import structlog

# Context variable for the request id of the operation being served (thread-safe)
request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "request_id", default=""
)


def generate_request_id() -> str:
    """Generate a new request id (128 bits, URL-safe base64)."""
    return secrets.token_urlsafe(16)


def get_request_id() -> str:
    """Get the current request id, or generate a new one if not set."""
    rid = request_id_var.get()
    if not rid:
        rid = generate_request_id()
        request_id_var.set(rid)
    return rid


def set_request_id(request_id: str) -> None:
    """Set the request id for the current context."""
    request_id_var.set(request_id)


@contextmanager
def request_scope(request_id: str) -> Iterator[str]:
    """
    Bind a request id for the duration of a block and restore the previous one.

    An empty request id generates a fresh one.
    """
    token = request_id_var.set(request_id or generate_request_id())
    try:
        yield request_id_var.get()
    finally:
        request_id_var.reset(token)


def add_request_id(
    logger: logging.Logger, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Add request id to log event."""
    event_dict.setdefault("request_id", get_request_id())
    return event_dict


def configure_logging(
    *,
    json_output: bool = False,
    log_level: str = "INFO",
) -> None:
    """
    Configure structured logging for the application.

    Args:
        json_output: If True, output JSON logs (for production).
                    If False, output human-readable console logs (for development).
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    level = getattr(logging, log_level.upper())

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    logging.getLogger("werkzeug").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        add_request_id,
    ]

    if json_output:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.ExceptionRenderer(),
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger for the given module.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Structured logger instance
    """
    return structlog.get_logger(name)


def is_production() -> bool:
    """
    Determine if running in production environment.

    Checks ENVIRONMENT environment variable. Defaults to development.
    """
    return os.getenv("ENVIRONMENT", "development").lower() == "production"


# Fields that must never reach log sinks in clear text
REDACTED_FIELDS = {
    "subject_id",
    "amount",
    "response_body",
    "password",
    "token",
    "secret",
    "api_key",
    "private_key",
}


def redact_context(context: dict[str, Any]) -> dict[str, Any]:
    """
    Redact sensitive fields from log context to prevent PII leakage.

    Example:
        >>> redact_context({"subject_id": "user-1", "operation": "request_payout"})
        {"subject_id": "***REDACTED***", "operation": "request_payout"}
    """
    return {
        k: "***REDACTED***" if k in REDACTED_FIELDS else v
        for k, v in context.items()
    }


class LogOperation:
    """Context manager for logging operations with automatic timing."""

    def __init__(
        self,
        logger: structlog.stdlib.BoundLogger,
        operation: str,
        **context: Any,
    ):
        """
        Initialize operation logger.

        Args:
            logger: Structured logger instance
            operation: Operation name (e.g., "execute_mutation", "flush_outbox")
            **context: Additional context to include in logs
        """
        self.logger = logger
        self.operation = operation
        self.context = context
        self.start_time: float = 0.0

    def __enter__(self) -> "LogOperation":
        self.start_time = time.perf_counter()
        self.logger.debug(
            f"{self.operation} started",
            operation=self.operation,
            **redact_context(self.context),
        )
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        duration_ms = (time.perf_counter() - self.start_time) * 1000
        redacted = redact_context(self.context)

        if exc_type is None:
            self.logger.info(
                f"{self.operation} completed",
                operation=self.operation,
                duration_ms=round(duration_ms, 2),
                **redacted,
            )
        else:
            # Stack traces only outside production
            self.logger.error(
                f"{self.operation} failed",
                operation=self.operation,
                duration_ms=round(duration_ms, 2),
                error=str(exc_val),
                error_type=exc_type.__name__,
                exc_info=not is_production(),
                **redacted,
            )
