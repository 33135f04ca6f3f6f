"""
Prometheus metrics exporter for the mutation kernel.

Exposes the kernel collectors (mutations, idempotent replays, outbox and
dead-letter traffic, inbound events) at /metrics.

Usage:
    python -m mutation_kernel.metrics_server --port 9090
"""

import argparse
import time

from mutation_kernel.kernel.logging import configure_logging, get_logger
from mutation_kernel.kernel.metrics import start_metrics_server

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Mutation kernel metrics exporter")
    parser.add_argument("--port", type=int, default=9090, help="Port to listen on (default: 9090)")
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument("--json-logs", action="store_true", help="Output logs in JSON format")
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(json_output=args.json_logs, log_level=args.log_level)

    logger.info(
        "Starting Prometheus metrics server",
        port=args.port,
        endpoint=f"http://0.0.0.0:{args.port}/metrics",
    )
    start_metrics_server(port=args.port)

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Shutting down metrics server")


if __name__ == "__main__":
    main()
