"""
Prometheus metrics collection for the mutation kernel.

Provides observability into mutations, idempotent replays, outbox drain and
inbound event handling.
"""

from prometheus_client import Counter, Gauge, Histogram, start_http_server

# ============================================================================
# Mutation Metrics
# ============================================================================

mutations_processed_total = Counter(
    "mk_mutations_processed_total",
    "Total number of mutating requests processed",
    ["operation", "status"],  # status: success, replayed, failure
)

mutation_duration_seconds = Histogram(
    "mk_mutation_duration_seconds",
    "Duration of mutating requests in seconds",
    ["operation"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

idempotent_replays_total = Counter(
    "mk_idempotent_replays_total",
    "Total number of requests answered from the idempotency cache",
    ["operation"],
)

idempotency_conflicts_total = Counter(
    "mk_idempotency_conflicts_total",
    "Total number of idempotency keys replayed with a different payload",
    ["operation"],
)

idempotency_complete_failures_total = Counter(
    "mk_idempotency_complete_failures_total",
    "Total number of responses that could not be cached after the effect ran",
    ["operation"],
)

# ============================================================================
# Outbox Metrics
# ============================================================================

outbox_enqueued_total = Counter(
    "mk_outbox_enqueued_total",
    "Total number of envelopes appended to the outbox",
    ["event_type", "event_class"],
)

outbox_published_total = Counter(
    "mk_outbox_published_total",
    "Total number of outbox records handed to a publisher",
    ["event_class", "status"],  # status: sent, dropped, failed
)

outbox_pending_records = Gauge(
    "mk_outbox_pending_records",
    "Unsent outbox records seen at the start of the last flush",
)

flush_duration_seconds = Histogram(
    "mk_outbox_flush_duration_seconds",
    "Duration of an outbox flush in seconds",
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 2.5),
)

dlq_records_total = Counter(
    "mk_dlq_records_total",
    "Total number of dead-letter records emitted",
    ["origin"],  # origin: outbox, inbound
)

# ============================================================================
# Inbound Event Metrics
# ============================================================================

inbound_events_total = Counter(
    "mk_inbound_events_total",
    "Total number of inbound events by outcome",
    ["event_type", "outcome"],  # outcome: processed, duplicate, invalid, failed
)

# ============================================================================
# Server
# ============================================================================


def start_metrics_server(port: int = 9090) -> None:
    """
    Start Prometheus metrics HTTP server.

    Args:
        port: Port to listen on (default: 9090)
    """
    start_http_server(port)
