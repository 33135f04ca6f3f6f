"""
Kernel configuration - per-service settings read at startup

Defaults match the fleet-wide conventions: seven-day idempotency and dedup
windows, a two-second poll tick and a flush batch of one hundred records.
"""

import os
from datetime import timedelta
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_IDEMPOTENCY_TTL = timedelta(hours=168)
DEFAULT_EVENT_DEDUP_TTL = timedelta(hours=168)
DEFAULT_POLL_INTERVAL = timedelta(seconds=2)
DEFAULT_FLUSH_BATCH_SIZE = 100


class KernelConfig(BaseModel):
    """
    Settings for one host service's kernel instance

    Non-positive durations and batch sizes fall back to their defaults
    instead of failing, mirroring how each service normalises its config.
    """

    service_name: str = Field(
        ...,
        min_length=1,
        description="Name stamped as source_service on every emitted envelope",
    )

    idempotency_ttl: timedelta = Field(
        default=DEFAULT_IDEMPOTENCY_TTL,
        description="How long a reservation/cached response stays live",
    )

    event_dedup_ttl: timedelta = Field(
        default=DEFAULT_EVENT_DEDUP_TTL,
        description="How long a processed inbound event_id is remembered",
    )

    consumer_poll_interval: timedelta = Field(
        default=DEFAULT_POLL_INTERVAL,
        description="Tick of the inbound consumer worker",
    )

    outbox_flush_interval: timedelta = Field(
        default=DEFAULT_POLL_INTERVAL,
        description="Tick of the outbox flusher",
    )

    outbox_flush_batch_size: int = Field(
        default=DEFAULT_FLUSH_BATCH_SIZE,
        description="Maximum records drained per flush",
    )

    dlq_topic: str = Field(
        default="",
        description="Dead-letter topic (defaults to '<service_name>.dlq')",
    )

    in_flight_policy: Literal["reject", "wait"] = Field(
        default="reject",
        description="Replay behaviour when the original request has not completed",
    )

    in_flight_wait_attempts: int = Field(default=5, ge=1)

    in_flight_wait_max_seconds: float = Field(default=1.0, gt=0)

    flush_in_request: bool = Field(
        default=False,
        description="Also flush the outbox in-band after a mutation completes",
    )

    flush_on_consume: bool = Field(
        default=False,
        description="Flush the outbox at the start of every consumer tick",
    )

    model_config = {"frozen": True}

    @field_validator("service_name")
    @classmethod
    def _strip_service_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("service_name must not be blank")
        return value

    @field_validator("idempotency_ttl", mode="after")
    @classmethod
    def _default_idempotency_ttl(cls, value: timedelta) -> timedelta:
        return value if value > timedelta(0) else DEFAULT_IDEMPOTENCY_TTL

    @field_validator("event_dedup_ttl", mode="after")
    @classmethod
    def _default_dedup_ttl(cls, value: timedelta) -> timedelta:
        return value if value > timedelta(0) else DEFAULT_EVENT_DEDUP_TTL

    @field_validator("consumer_poll_interval", "outbox_flush_interval", mode="after")
    @classmethod
    def _default_interval(cls, value: timedelta) -> timedelta:
        return value if value > timedelta(0) else DEFAULT_POLL_INTERVAL

    @field_validator("outbox_flush_batch_size", mode="after")
    @classmethod
    def _default_batch(cls, value: int) -> int:
        return value if value > 0 else DEFAULT_FLUSH_BATCH_SIZE

    @model_validator(mode="before")
    @classmethod
    def _default_dlq_topic(cls, data: object) -> object:
        if isinstance(data, dict) and not str(data.get("dlq_topic") or "").strip():
            name = str(data.get("service_name") or "").strip()
            if name:
                data = {**data, "dlq_topic": f"{name}.dlq"}
        return data

    @classmethod
    def from_env(cls, prefix: str = "", **overrides: object) -> "KernelConfig":
        """
        Build a config from environment variables

        Reads SERVICE_NAME, IDEMPOTENCY_TTL_HOURS, EVENT_DEDUP_TTL_HOURS,
        CONSUMER_POLL_SECONDS, OUTBOX_FLUSH_SECONDS, OUTBOX_FLUSH_BATCH_SIZE,
        DLQ_TOPIC and IN_FLIGHT_POLICY, each optionally prefixed. Values
        that do not parse fall back to the defaults.

        Args:
            prefix: Environment variable prefix (e.g. "PAYOUT_")
            **overrides: Explicit values that win over the environment
        """

        def env(name: str) -> str:
            return os.getenv(f"{prefix}{name}", "").strip()

        values: dict[str, object] = {
            "service_name": env("SERVICE_NAME"),
            "idempotency_ttl": timedelta(
                hours=_env_int(env("IDEMPOTENCY_TTL_HOURS"), 168)
            ),
            "event_dedup_ttl": timedelta(
                hours=_env_int(env("EVENT_DEDUP_TTL_HOURS"), 168)
            ),
            "consumer_poll_interval": timedelta(
                seconds=_env_int(env("CONSUMER_POLL_SECONDS"), 2)
            ),
            "outbox_flush_interval": timedelta(
                seconds=_env_int(env("OUTBOX_FLUSH_SECONDS"), 2)
            ),
            "outbox_flush_batch_size": _env_int(
                env("OUTBOX_FLUSH_BATCH_SIZE"), DEFAULT_FLUSH_BATCH_SIZE
            ),
        }
        if env("DLQ_TOPIC"):
            values["dlq_topic"] = env("DLQ_TOPIC")
        if env("IN_FLIGHT_POLICY") in ("reject", "wait"):
            values["in_flight_policy"] = env("IN_FLIGHT_POLICY")
        values.update(overrides)
        return cls(**values)


def _env_int(raw: str, fallback: int) -> int:
    if not raw:
        return fallback
    try:
        return int(raw)
    except ValueError:
        return fallback
