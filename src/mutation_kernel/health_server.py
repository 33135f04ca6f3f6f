"""
Health check HTTP server for Kubernetes liveness and readiness probes.

Reports on the kernel's SQLite database: whether it is reachable, how many
outbox records are waiting to be published, and how many dedup and
idempotency entries are being held.
"""

import sqlite3
from pathlib import Path
from typing import Any

from flask import Flask, jsonify

from mutation_kernel import __version__
from mutation_kernel.kernel.logging import get_logger

logger = get_logger(__name__)

app = Flask(__name__)

# Global state - will be set by initialize_health_server()
_db_path: Path | None = None
_service_name: str = "mutation-kernel"


def initialize_health_server(db_path: str | Path, service_name: str = "mutation-kernel") -> None:
    """
    Point the health endpoints at a kernel database.

    Args:
        db_path: Path to the SQLite database holding the kernel tables
        service_name: Name reported by the endpoints
    """
    global _db_path, _service_name
    _db_path = Path(db_path)
    _service_name = service_name
    logger.info("Health server initialized", db_path=str(_db_path), service=service_name)


def _query_counts(db_path: Path) -> dict[str, int]:
    conn = sqlite3.connect(str(db_path), timeout=1.0)
    try:
        cursor = conn.cursor()
        cursor.execute("SELECT COUNT(*) FROM outbox WHERE sent_at IS NULL")
        pending = cursor.fetchone()[0]
        cursor.execute("SELECT COUNT(*) FROM processed_events")
        dedup = cursor.fetchone()[0]
        cursor.execute("SELECT COUNT(*) FROM idempotency_keys")
        keys = cursor.fetchone()[0]
        cursor.execute("PRAGMA page_count")
        page_count = cursor.fetchone()[0]
        cursor.execute("PRAGMA page_size")
        page_size = cursor.fetchone()[0]
    finally:
        conn.close()
    return {
        "outbox_pending": pending,
        "dedup_entries": dedup,
        "idempotency_entries": keys,
        "size_bytes": page_count * page_size,
    }


@app.route("/health/live", methods=["GET"])
def liveness() -> tuple[Any, int]:
    """Liveness probe - the process is up."""
    return jsonify({"status": "alive", "service": _service_name}), 200


@app.route("/health/ready", methods=["GET"])
def readiness() -> tuple[Any, int]:
    """
    Readiness probe - the kernel database exists and answers a query.

    Returns:
        200 when ready, 503 otherwise
    """
    if _db_path is None:
        logger.error("Readiness check failed: DB path not initialized")
        return jsonify({"status": "not_ready", "reason": "database_path_not_initialized"}), 503

    if not _db_path.exists():
        logger.error("Readiness check failed: DB file does not exist", db_path=str(_db_path))
        return (
            jsonify(
                {
                    "status": "not_ready",
                    "reason": "database_file_not_found",
                    "db_path": str(_db_path),
                }
            ),
            503,
        )

    try:
        conn = sqlite3.connect(str(_db_path), timeout=1.0)
        try:
            pending = conn.execute("SELECT COUNT(*) FROM outbox WHERE sent_at IS NULL").fetchone()[0]
        finally:
            conn.close()
    except sqlite3.Error as e:
        logger.error("Readiness check failed: DB error", error=str(e))
        return (
            jsonify(
                {
                    "status": "not_ready",
                    "reason": "database_operational_error",
                    "error": str(e),
                }
            ),
            503,
        )

    logger.debug("Readiness check passed", outbox_pending=pending)
    return jsonify({"status": "ready", "database": "accessible", "outbox_pending": pending}), 200


@app.route("/health", methods=["GET"])
def detailed_health() -> tuple[Any, int]:
    """
    Detailed health - store counts and database size.

    Degraded (503) when the database is missing or unreadable.
    """
    health_data: dict[str, Any] = {
        "status": "healthy",
        "service": _service_name,
        "version": __version__,
    }

    if _db_path and _db_path.exists():
        try:
            counts = _query_counts(_db_path)
            health_data["database"] = {
                "status": "healthy",
                "path": str(_db_path),
                "size_mb": round(counts.pop("size_bytes") / (1024 * 1024), 2),
            }
            health_data["kernel"] = counts
        except sqlite3.Error as e:
            logger.error("Database health check failed", error=str(e))
            health_data["database"] = {"status": "unhealthy", "error": str(e)}
            health_data["status"] = "degraded"
    else:
        health_data["database"] = {"status": "not_initialized"}
        health_data["status"] = "degraded"

    status_code = 200 if health_data["status"] == "healthy" else 503
    return jsonify(health_data), status_code


def run_health_server(port: int = 8080, debug: bool = False) -> None:
    """
    Run the health check server.

    Args:
        port: Port to listen on (default: 8080)
        debug: Enable Flask debug mode (default: False)
    """
    logger.info("Starting health check server", port=port)
    app.run(host="0.0.0.0", port=port, debug=debug)


if __name__ == "__main__":
    initialize_health_server("mutation_kernel.db")
    run_health_server(port=8080)
