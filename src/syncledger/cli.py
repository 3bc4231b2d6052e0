"""
SyncLedger CLI - Command Line Interface.

Job triggers and inspection for the reconciliation ledger.

Commands:
    run      Run a synchronization now
    retry    Retry delivery for a subscription now
    tick     Run one scheduler tick
    worker   Run the scheduler loop
    cleanup  Delete expired log and message rows
    status   Show synchronizations, subscriptions and ledger size
    import   Register synchronizations and subscriptions from a file
    pull     Read a page of a pull subscription
    config   Manage configuration
"""

from __future__ import annotations

import asyncio
import json
import signal
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.table import Table

from syncledger import __version__
from syncledger.config import Settings, load_settings
from syncledger.core.ledger import Ledger, create_ledger
from syncledger.errors import FieldValidationError, SyncLedgerError
from syncledger.models import EventSubscription, MessageStatus, Synchronization
from syncledger.utils.display import (
    format_bytes,
    format_status,
    print_delivery_summary,
    print_error,
    print_errors,
    print_info,
    print_success,
    print_summary,
    print_warning,
)
from syncledger.utils.logger import setup_logging


# Create the Typer app
app = typer.Typer(
    name="syncledger",
    help="Synchronization reconciliation ledger with reliable event delivery.",
    add_completion=True,
    rich_markup_mode="rich",
)

console = Console()

CONFIG_OPTION = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to config file.",
    exists=True,
)
DATABASE_OPTION = typer.Option(
    None,
    "--database",
    "-d",
    help="Path to the ledger database (overrides config).",
)
QUIET_OPTION = typer.Option(
    False,
    "--quiet",
    "-q",
    help="Minimal output.",
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold cyan]syncledger[/bold cyan] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """SyncLedger - reconcile origins into targets and deliver change events."""


# =============================================================================
# RUN Command
# =============================================================================
@app.command()
def run(
    synchronization_id: str = typer.Argument(..., help="Synchronization to run."),
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Ignore unchanged hashes and write every object.",
    ),
    test: bool = typer.Option(
        False,
        "--test",
        "-t",
        help="Report what would happen without writing anything.",
    ),
    as_json: bool = typer.Option(
        False,
        "--json",
        help="Print the run summary as JSON.",
    ),
    config_file: Optional[Path] = CONFIG_OPTION,
    database: Optional[Path] = DATABASE_OPTION,
    quiet: bool = QUIET_OPTION,
) -> None:
    """
    Run a synchronization now.

    Example:
        syncledger run people-to-crm --test
    """
    settings = _build_settings(config_file, database, quiet or as_json)

    if test and not as_json:
        print_warning("TEST RUN - No changes will be made")

    async def execute(ledger: Ledger) -> dict[str, Any]:
        summary = await ledger.reconciler.run(synchronization_id, force=force, test=test)
        return summary.to_dict()

    result = _run_with_ledger(settings, execute)

    if as_json:
        typer.echo(json.dumps(result, indent=2))
    elif not quiet:
        console.print()
        print_summary(result)
        print_errors(result["errors"])

    if result["failed"] or result["timed_out"]:
        raise typer.Exit(1)
    if not as_json and not quiet:
        print_success("Run completed successfully!")


# =============================================================================
# RETRY Command
# =============================================================================
@app.command()
def retry(
    subscription_id: int = typer.Argument(..., help="Subscription to retry."),
    as_json: bool = typer.Option(
        False,
        "--json",
        help="Print the delivery summary as JSON.",
    ),
    config_file: Optional[Path] = CONFIG_OPTION,
    database: Optional[Path] = DATABASE_OPTION,
    quiet: bool = QUIET_OPTION,
) -> None:
    """Retry delivery of every pending message of a subscription now."""
    settings = _build_settings(config_file, database, quiet or as_json)

    async def execute(ledger: Ledger) -> dict[str, Any]:
        summary = await ledger.delivery.retry_subscription(subscription_id)
        return summary.to_dict()

    result = _run_with_ledger(settings, execute)

    if as_json:
        typer.echo(json.dumps(result, indent=2))
    elif not quiet:
        print_delivery_summary(result, title=f"Retry Subscription {subscription_id}")
        print_errors(result["errors"])

    if result["failed"]:
        raise typer.Exit(1)


# =============================================================================
# TICK / WORKER Commands
# =============================================================================
@app.command()
def tick(
    as_json: bool = typer.Option(False, "--json", help="Print the tick summary as JSON."),
    config_file: Optional[Path] = CONFIG_OPTION,
    database: Optional[Path] = DATABASE_OPTION,
    quiet: bool = QUIET_OPTION,
) -> None:
    """Run one scheduler tick: retry sweep, then due synchronizations."""
    settings = _build_settings(config_file, database, quiet or as_json)

    async def execute(ledger: Ledger) -> dict[str, Any]:
        summary = await ledger.scheduler.tick()
        return summary.to_dict()

    result = _run_with_ledger(settings, execute)

    if as_json:
        typer.echo(json.dumps(result, indent=2))
        return
    if quiet:
        return

    print_delivery_summary(result["retries"], title="Retry Sweep")
    for run_summary in result["runs"]:
        print_summary(run_summary)
    for sync_id, error in result["run_errors"].items():
        print_error(f"{sync_id}: {error}")
    if not result["runs"] and not result["run_errors"]:
        print_info("No synchronizations were due.")


@app.command()
def worker(
    config_file: Optional[Path] = CONFIG_OPTION,
    database: Optional[Path] = DATABASE_OPTION,
) -> None:
    """Run the scheduler loop until interrupted."""
    settings = _build_settings(config_file, database, quiet=False)

    async def execute(ledger: Ledger) -> None:
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
        await ledger.scheduler.run_forever(stop)

    print_info(f"Worker started, ticking every {settings.scheduler.tick_seconds:g}s (Ctrl+C to stop)")
    _run_with_ledger(settings, execute)
    print_success("Worker stopped.")


# =============================================================================
# CLEANUP Command
# =============================================================================
@app.command()
def cleanup(
    config_file: Optional[Path] = CONFIG_OPTION,
    database: Optional[Path] = DATABASE_OPTION,
) -> None:
    """Delete log and message rows past their expiry."""
    settings = _build_settings(config_file, database, quiet=False)

    async def execute(ledger: Ledger) -> Any:
        return ledger.retention.cleanup()

    result = _run_with_ledger(settings, execute)
    print_success(
        f"Removed {result.synchronization_logs} run log(s), "
        f"{result.contract_logs} contract log(s), {result.event_messages} message(s)"
    )


# =============================================================================
# STATUS Command
# =============================================================================
@app.command()
def status(
    config_file: Optional[Path] = CONFIG_OPTION,
    database: Optional[Path] = DATABASE_OPTION,
) -> None:
    """Show synchronizations, subscriptions and ledger size."""
    settings = _build_settings(config_file, database, quiet=False)

    async def execute(ledger: Ledger) -> None:
        stores = ledger.stores

        syncs_table = Table(title="Synchronizations", border_style="blue")
        syncs_table.add_column("ID", style="cyan")
        syncs_table.add_column("Name")
        syncs_table.add_column("Status")
        syncs_table.add_column("Contracts", justify="right")
        syncs_table.add_column("Last Run")
        syncs_table.add_column("Next Run")

        for sync in stores.synchronizations.list_all():
            syncs_table.add_row(
                sync.id,
                sync.name,
                format_status("enabled" if sync.enabled else "disabled"),
                f"{stores.contracts.count(sync.id):,}",
                sync.last_run.isoformat(timespec="seconds") if sync.last_run else "[dim]never[/dim]",
                sync.next_run.isoformat(timespec="seconds") if sync.next_run else "[dim]due[/dim]",
            )
        console.print(syncs_table)

        subscriptions = ledger.subscriptions.list_all()
        if subscriptions:
            console.print()
            subs_table = Table(title="Subscriptions", border_style="green")
            subs_table.add_column("ID", justify="right")
            subs_table.add_column("Reference", style="cyan")
            subs_table.add_column("Style")
            subs_table.add_column("Status")
            subs_table.add_column("Sink")
            for sub in subscriptions:
                subs_table.add_row(
                    str(sub.id),
                    sub.reference,
                    sub.style.value,
                    format_status(sub.status.value),
                    sub.sink or "[dim]-[/dim]",
                )
            console.print(subs_table)

        console.print()
        ledger_table = Table(title="Ledger", border_style="cyan")
        ledger_table.add_column("Table", style="cyan")
        ledger_table.add_column("Rows", justify="right")
        ledger_table.add_column("Size", justify="right")
        ledger_table.add_row("Contracts", f"{stores.contracts.count():,}", "")
        ledger_table.add_row("Run logs", f"{stores.logs.count():,}", format_bytes(stores.logs.size()))
        ledger_table.add_row(
            "Contract logs",
            f"{stores.contract_logs.count():,}",
            format_bytes(stores.contract_logs.size()),
        )
        for message_status in MessageStatus:
            ledger_table.add_row(
                f"Messages {format_status(message_status.value)}",
                f"{ledger.messages.count(message_status):,}",
                "",
            )
        console.print(ledger_table)

    _run_with_ledger(settings, execute)


# =============================================================================
# IMPORT Command
# =============================================================================
@app.command("import")
def import_(
    source: Path = typer.Argument(
        ...,
        help="JSON or TOML file with 'synchronizations' and/or 'subscriptions'.",
        exists=True,
        dir_okay=False,
    ),
    config_file: Optional[Path] = CONFIG_OPTION,
    database: Optional[Path] = DATABASE_OPTION,
) -> None:
    """
    Register synchronizations and subscriptions.

    Every entry is validated before anything is written; one invalid entry
    rejects the whole file.
    """
    settings = _build_settings(config_file, database, quiet=False)

    try:
        document = _load_document(source)
        synchronizations = [Synchronization.from_map(item) for item in document.get("synchronizations", [])]
        subscriptions = [EventSubscription.from_map(item) for item in document.get("subscriptions", [])]
    except FieldValidationError as e:
        print_error(f"Invalid {e.entity}:")
        for field_name, problem in sorted(e.problems.items()):
            print_error(f"  • {field_name}: {problem}")
        raise typer.Exit(1)
    except ValueError as e:
        print_error(str(e))
        raise typer.Exit(1)

    async def execute(ledger: Ledger) -> None:
        for sync in synchronizations:
            existing = ledger.stores.synchronizations.get(sync.id)
            if existing is not None:
                sync.last_run, sync.next_run = existing.last_run, existing.next_run
            ledger.stores.synchronizations.save(sync)

        for sub in subscriptions:
            match = next(
                (s for s in ledger.subscriptions.find_by_reference(sub.reference) if s.sink == sub.sink),
                None,
            )
            if match is None:
                ledger.subscriptions.create(sub)
            else:
                sub.id, sub.uuid = match.id, match.uuid
                ledger.subscriptions.update(sub)

    _run_with_ledger(settings, execute)
    print_success(
        f"Imported {len(synchronizations)} synchronization(s) and {len(subscriptions)} subscription(s)"
    )


# =============================================================================
# PULL Command
# =============================================================================
@app.command()
def pull(
    subscription_id: int = typer.Argument(..., help="Pull subscription to read."),
    cursor: Optional[str] = typer.Option(None, "--cursor", help="Cursor returned by the previous read."),
    limit: int = typer.Option(100, "--limit", "-l", min=1, max=1000, help="Maximum messages."),
    config_file: Optional[Path] = CONFIG_OPTION,
    database: Optional[Path] = DATABASE_OPTION,
) -> None:
    """Print a page of a pull subscription as JSON."""
    settings = _build_settings(config_file, database, quiet=True)

    async def execute(ledger: Ledger) -> dict[str, Any]:
        return ledger.delivery.read_pull(subscription_id, cursor, limit).to_dict()

    typer.echo(json.dumps(_run_with_ledger(settings, execute), indent=2))


# =============================================================================
# CONFIG Command
# =============================================================================
@app.command()
def config(
    show: bool = typer.Option(
        False,
        "--show",
        help="Show current configuration.",
    ),
    init: bool = typer.Option(
        False,
        "--init",
        help="Write a config file with the default settings.",
    ),
    output: Path = typer.Option(
        Path("config.toml"),
        "--output",
        "-o",
        help="Output path for config file.",
    ),
    config_file: Optional[Path] = CONFIG_OPTION,
) -> None:
    """Manage configuration."""
    if init:
        Settings().to_file(output)
        print_success(f"Generated config file: {output}")
        return

    if show:
        settings = load_settings(config_file)
        table = Table(title="Current Configuration", border_style="cyan")
        table.add_column("Setting", style="cyan")
        table.add_column("Value")

        for section, values in settings.model_dump(mode="json").items():
            for key, value in values.items():
                table.add_row(f"{section}.{key}", "[dim]not set[/dim]" if value is None else str(value))

        console.print(table)
        return

    # Default: show help
    console.print("Use --show to view config or --init to create config file.")


# =============================================================================
# Helper Functions
# =============================================================================
def _build_settings(
    config_file: Path | None,
    database: Path | None,
    quiet: bool,
) -> Settings:
    """Build settings from config file and overrides, then set up logging."""
    try:
        settings = load_settings(config_file)
    except ValueError as e:
        print_error(str(e))
        raise typer.Exit(1)

    if database:
        settings.database.path = database

    setup_logging(
        level="WARNING" if quiet else settings.logging.level,
        log_file=settings.logging.file,
        format_style=settings.logging.format,
        max_file_size_mb=settings.logging.max_file_size_mb,
        backup_count=settings.logging.backup_count,
    )
    return settings


def _run_with_ledger(settings: Settings, execute: Any) -> Any:
    """Open the ledger, run ``execute(ledger)`` and close it, mapping errors to exit codes."""

    async def runner() -> Any:
        async with create_ledger(settings) as ledger:
            return await execute(ledger)

    try:
        return asyncio.run(runner())
    except SyncLedgerError as e:
        print_error(e.message)
        raise typer.Exit(1)


def _load_document(path: Path) -> dict[str, Any]:
    """Load a JSON or TOML document."""
    content = path.read_text()

    if path.suffix in (".toml", ".tml"):
        import tomllib

        data = tomllib.loads(content)
    elif path.suffix == ".json":
        data = json.loads(content)
    else:
        raise ValueError(f"Unsupported file format: {path.suffix}")

    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a mapping at the top level")
    return data


if __name__ == "__main__":
    app()
