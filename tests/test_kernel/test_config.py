"""Tests for KernelConfig defaults, coercion and environment loading"""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from mutation_kernel.kernel.config import (
    DEFAULT_EVENT_DEDUP_TTL,
    DEFAULT_FLUSH_BATCH_SIZE,
    DEFAULT_IDEMPOTENCY_TTL,
    DEFAULT_POLL_INTERVAL,
    KernelConfig,
)


def test_defaults() -> None:
    config = KernelConfig(service_name="payout-service")

    assert config.idempotency_ttl == timedelta(hours=168)
    assert config.event_dedup_ttl == timedelta(hours=168)
    assert config.consumer_poll_interval == timedelta(seconds=2)
    assert config.outbox_flush_batch_size == 100
    assert config.dlq_topic == "payout-service.dlq"
    assert config.in_flight_policy == "reject"
    assert config.flush_in_request is False


def test_non_positive_values_fall_back_to_defaults() -> None:
    config = KernelConfig(
        service_name="svc",
        idempotency_ttl=timedelta(0),
        event_dedup_ttl=timedelta(hours=-1),
        consumer_poll_interval=timedelta(0),
        outbox_flush_interval=timedelta(seconds=-5),
        outbox_flush_batch_size=0,
    )

    assert config.idempotency_ttl == DEFAULT_IDEMPOTENCY_TTL
    assert config.event_dedup_ttl == DEFAULT_EVENT_DEDUP_TTL
    assert config.consumer_poll_interval == DEFAULT_POLL_INTERVAL
    assert config.outbox_flush_interval == DEFAULT_POLL_INTERVAL
    assert config.outbox_flush_batch_size == DEFAULT_FLUSH_BATCH_SIZE


def test_blank_service_name_rejected() -> None:
    with pytest.raises(ValidationError):
        KernelConfig(service_name="   ")


def test_explicit_dlq_topic_kept() -> None:
    assert KernelConfig(service_name="svc", dlq_topic="ops.dlq").dlq_topic == "ops.dlq"


def test_config_is_frozen() -> None:
    config = KernelConfig(service_name="svc")
    with pytest.raises(ValidationError):
        config.service_name = "other"


def test_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ESCROW_SERVICE_NAME", "escrow-ledger-service")
    monkeypatch.setenv("ESCROW_IDEMPOTENCY_TTL_HOURS", "24")
    monkeypatch.setenv("ESCROW_OUTBOX_FLUSH_BATCH_SIZE", "not-a-number")
    monkeypatch.setenv("ESCROW_IN_FLIGHT_POLICY", "wait")

    config = KernelConfig.from_env("ESCROW_")

    assert config.service_name == "escrow-ledger-service"
    assert config.idempotency_ttl == timedelta(hours=24)
    assert config.outbox_flush_batch_size == DEFAULT_FLUSH_BATCH_SIZE
    assert config.in_flight_policy == "wait"
    assert config.dlq_topic == "escrow-ledger-service.dlq"


def test_from_env_overrides_win(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SERVICE_NAME", "from-env")
    assert KernelConfig.from_env(service_name="explicit").service_name == "explicit"
