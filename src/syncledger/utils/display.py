"""
Rich Terminal Display Components.

Provides console output for:
- Run and delivery summary tables
- Ledger status tables
- Status messages
"""

from __future__ import annotations

from typing import Any

from rich.console import Console
from rich.table import Table


console = Console()


def print_summary(summary: dict[str, Any]) -> None:
    """Print a summary table after a reconciliation run."""
    title = "Run Summary (test)" if summary.get("test") else "Run Summary"
    border = "red" if summary.get("failed") or summary.get("timed_out") else "green"
    table = Table(title=title, border_style=border)

    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    table.add_row("Synchronization", str(summary.get("synchronization_id", "N/A")))
    table.add_row("Log", str(summary.get("log_uuid") or "N/A"))
    table.add_row("Duration", f"{summary.get('duration_seconds', 0):.1f}s")
    table.add_row("Found", f"{summary.get('found', 0):,}")
    table.add_row("Created", f"{summary.get('created', 0):,}")
    table.add_row("Updated", f"{summary.get('updated', 0):,}")
    table.add_row("Deleted", f"{summary.get('deleted', 0):,}")
    table.add_row("Skipped", f"{summary.get('skipped', 0):,}")
    table.add_row("Failed", f"{summary.get('failed', 0):,}")
    table.add_row("Superseded", f"{summary.get('superseded', 0):,}")
    table.add_row("Orphaned", f"{summary.get('orphaned', 0):,}")
    if summary.get("timed_out"):
        table.add_row("Timed out", "[red]yes[/red]")
    if summary.get("follow_ups"):
        table.add_row("Follow-ups", ", ".join(summary["follow_ups"]))

    console.print(table)


def print_delivery_summary(summary: dict[str, Any], title: str = "Delivery Summary") -> None:
    """Print a summary table after a delivery sweep."""
    table = Table(title=title, border_style="red" if summary.get("failed") else "green")

    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    table.add_row("Attempted", f"{summary.get('attempted', 0):,}")
    table.add_row("Delivered", f"{summary.get('delivered', 0):,}")
    table.add_row("Rescheduled", f"{summary.get('rescheduled', 0):,}")
    table.add_row("Failed", f"{summary.get('failed', 0):,}")

    console.print(table)


def print_errors(errors: list[str], limit: int = 10) -> None:
    """Print the first ``limit`` errors of a run."""
    if not errors:
        return
    console.print()
    print_warning(f"{len(errors)} errors occurred:")
    for err in errors[:limit]:
        print_error(f"  • {err}")
    if len(errors) > limit:
        print_info(f"  ... and {len(errors) - limit} more")


def format_bytes(size: int) -> str:
    """Format bytes as human-readable string."""
    value = float(size)
    for unit in ["B", "KB", "MB", "GB"]:
        if abs(value) < 1024:
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} TB"


def format_status(status: str) -> str:
    """Format a message or synchronization status with color."""
    colors = {
        "delivered": "[green]✓ delivered[/green]",
        "pending": "[yellow]⟳ pending[/yellow]",
        "failed": "[red]✗ failed[/red]",
        "active": "[green]active[/green]",
        "gone": "[red]gone[/red]",
        "enabled": "[green]enabled[/green]",
        "disabled": "[dim]disabled[/dim]",
    }
    return colors.get(status, status)


def print_error(message: str) -> None:
    """Print an error message."""
    console.print(f"[red bold]Error:[/red bold] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green bold]✓[/green bold] {message}")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[yellow bold]⚠[/yellow bold] {message}")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[blue]ℹ[/blue] {message}")
