"""
Mutation Kernel CLI

Operator commands over a service's SQLite kernel database.

Usage:
    mutation-kernel init --db kernel.db
    mutation-kernel outbox pending --db kernel.db
    mutation-kernel outbox flush --db kernel.db
    mutation-kernel outbox release <record_id> --db kernel.db
    mutation-kernel idempotency show <key> --db kernel.db
    mutation-kernel dedup purge --db kernel.db
    mutation-kernel envelope validate event.json
"""

import json
import os
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError
from typing_extensions import Annotated

from mutation_kernel.kernel.config import KernelConfig
from mutation_kernel.kernel.coordinator import MutationCoordinator
from mutation_kernel.kernel.envelope import EventEnvelope, validate_envelope
from mutation_kernel.kernel.errors import KernelError
from mutation_kernel.kernel.logging import configure_logging
from mutation_kernel.publishers import LoggingPublisher
from mutation_kernel.stores.sqlite import SQLiteKernelStores

configure_logging(json_output=False, log_level="INFO")

app = typer.Typer(
    name="mutation-kernel",
    help="Mutation kernel - idempotency, dedup and outbox operations",
    add_completion=False,
)

outbox_app = typer.Typer(help="Transactional outbox commands")
idempotency_app = typer.Typer(help="Idempotency record commands")
dedup_app = typer.Typer(help="Inbound dedup commands")
envelope_app = typer.Typer(help="Event envelope commands")

app.add_typer(outbox_app, name="outbox")
app.add_typer(idempotency_app, name="idempotency")
app.add_typer(dedup_app, name="dedup")
app.add_typer(envelope_app, name="envelope")

DEFAULT_DB = Path(".mutation_kernel.db")
DEFAULT_SERVICE = "mutation-kernel"

DbOption = Annotated[Optional[Path], typer.Option("--db", help="Database path")]
ServiceOption = Annotated[
    Optional[str], typer.Option("--service", help="Service name (default: $SERVICE_NAME)")
]


def get_stores(db_path: Optional[Path] = None) -> SQLiteKernelStores:
    db = db_path or DEFAULT_DB
    if not db.exists():
        typer.echo(f"Error: Database not found: {db}", err=True)
        typer.echo(f"Run 'mutation-kernel init --db {db}' to initialize", err=True)
        raise typer.Exit(1)
    return SQLiteKernelStores(db)


def get_coordinator(
    db_path: Optional[Path] = None, service: Optional[str] = None
) -> MutationCoordinator:
    """Coordinator whose publishers write to the structured log"""
    stores = get_stores(db_path)
    service_name = service or os.getenv("SERVICE_NAME", "").strip() or DEFAULT_SERVICE
    config = KernelConfig.from_env(service_name=service_name)
    return MutationCoordinator(
        config,
        idempotency=stores.idempotency,
        dedup=stores.dedup,
        outbox=stores.outbox,
        domain_publisher=LoggingPublisher(f"{service_name}.domain"),
        analytics_publisher=LoggingPublisher(f"{service_name}.analytics"),
        dlq_publisher=LoggingPublisher(config.dlq_topic),
    )


@app.command()
def init(db: Annotated[Path, typer.Option(help="Database path")] = DEFAULT_DB) -> None:
    """Create the kernel tables in a new database"""
    if db.exists():
        typer.echo(f"Error: Database already exists: {db}", err=True)
        raise typer.Exit(1)
    SQLiteKernelStores(db)
    typer.echo(f"✓ Initialized kernel database: {db}")


# Outbox commands


@outbox_app.command("pending")
def outbox_pending(
    limit: Annotated[int, typer.Option("--limit", help="Maximum records to list")] = 100,
    json_output: Annotated[bool, typer.Option("--json", help="Output as JSON")] = False,
    db: DbOption = None,
) -> None:
    """List records waiting to be published, oldest first"""
    stores = get_stores(db)
    records = stores.outbox.list_pending(limit)

    if json_output:
        typer.echo(
            json.dumps(
                [
                    {
                        "record_id": r.record_id,
                        "event_class": r.event_class,
                        "event_type": r.envelope.event_type,
                        "event_id": r.envelope.event_id,
                        "partition_key": r.envelope.partition_key,
                        "created_at": r.created_at.isoformat(),
                    }
                    for r in records
                ],
                indent=2,
            )
        )
        return

    if not records:
        typer.echo("No pending outbox records")
        return

    typer.echo(f"Pending outbox records ({len(records)}):")
    for r in records:
        typer.echo(f"  {r.record_id}: {r.envelope.event_type} [{r.event_class}]")
        typer.echo(f"    Partition key: {r.envelope.partition_key}")
        typer.echo(f"    Created: {r.created_at.isoformat()}")


@outbox_app.command("flush")
def outbox_flush(db: DbOption = None, service: ServiceOption = None) -> None:
    """Publish pending records to the structured log"""
    coordinator = get_coordinator(db, service)
    try:
        result = coordinator.flush_outbox()
    except KernelError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e

    typer.echo(f"✓ Flushed outbox: {result.published} published, {result.dropped} dropped")


@outbox_app.command("release")
def outbox_release(
    record_id: Annotated[str, typer.Argument(help="Outbox record ID")],
    db: DbOption = None,
    service: ServiceOption = None,
) -> None:
    """Mark a stuck record sent without publishing it"""
    coordinator = get_coordinator(db, service)
    try:
        coordinator.release_outbox_record(record_id)
    except KernelError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e

    typer.echo(f"✓ Released outbox record: {record_id}")


# Idempotency commands


@idempotency_app.command("show")
def idempotency_show(
    key: Annotated[str, typer.Argument(help="Idempotency key")],
    json_output: Annotated[bool, typer.Option("--json", help="Output as JSON")] = False,
    db: DbOption = None,
) -> None:
    """Show the live record for an idempotency key"""
    stores = get_stores(db)
    record = stores.idempotency.get(key, stores.idempotency.time_provider.now())
    if record is None:
        typer.echo(f"Error: No live record for key: {key}", err=True)
        raise typer.Exit(1)

    body = record.response_body.decode("utf-8", errors="replace")
    if json_output:
        typer.echo(
            json.dumps(
                {
                    "key": record.key,
                    "request_hash": record.request_hash,
                    "pending": record.is_pending,
                    "response_code": record.response_code,
                    "response_body": body,
                    "expires_at": record.expires_at.isoformat(),
                },
                indent=2,
            )
        )
        return

    typer.echo(f"Key: {record.key}")
    typer.echo(f"  Request hash: {record.request_hash}")
    typer.echo(f"  State: {'pending' if record.is_pending else 'completed'}")
    if not record.is_pending:
        typer.echo(f"  Response code: {record.response_code}")
        typer.echo(f"  Response body: {body}")
    typer.echo(f"  Expires: {record.expires_at.isoformat()}")


# Dedup commands


@dedup_app.command("purge")
def dedup_purge(db: DbOption = None, service: ServiceOption = None) -> None:
    """Drop expired dedup and idempotency records"""
    coordinator = get_coordinator(db, service)
    keys_removed, events_removed = coordinator.purge_expired()
    typer.echo(f"✓ Purged {events_removed} dedup records and {keys_removed} idempotency records")


# Envelope commands


@envelope_app.command("validate")
def envelope_validate(
    path: Annotated[Path, typer.Argument(help="JSON file holding one envelope")],
    event_type: Annotated[
        Optional[str], typer.Option("--event-type", help="Expected event type")
    ] = None,
    partition_key_path: Annotated[
        Optional[str], typer.Option("--partition-key-path", help="Expected partition path")
    ] = None,
) -> None:
    """Check an envelope file against the envelope contract"""
    if not path.exists():
        typer.echo(f"Error: File not found: {path}", err=True)
        raise typer.Exit(1)

    try:
        envelope = EventEnvelope.from_json(path.read_bytes())
        validate_envelope(
            envelope,
            expected_event_type=event_type,
            expected_partition_key_path=partition_key_path,
        )
    except (KernelError, ValidationError) as e:
        typer.echo(f"✗ Invalid envelope: {e}", err=True)
        raise typer.Exit(1) from e

    typer.echo(f"✓ Valid envelope: {envelope.event_id}")
    typer.echo(f"  Type: {envelope.event_type} [{envelope.event_class}]")
    typer.echo(f"  Partition key: {envelope.partition_key}")


def main() -> None:
    """Main entry point"""
    app()


if __name__ == "__main__":
    main()
