"""``convoy runs``: list the pipeline runs recorded in the ledger."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from convoy.config import settings
from convoy.core.run_ledger import RunLedger
from convoy.monitor.projection import MonitorProjection
from convoy.monitor.renderer import MonitorRenderer

console = Console()


def runs_cmd(
    service: str = typer.Option(None, "--service", "-s", help="Only runs for this service."),
    limit: int = typer.Option(20, "--limit", "-n", help="Show at most this many runs."),
    ledger_db: Path = typer.Option(
        None, "--ledger", "-l", help="Ledger database (defaults to CONVOY_LEDGER_PATH)."
    ),
) -> None:
    """List runs, most recent first."""
    db_path = ledger_db or settings.ledger_path
    if not db_path.exists():
        console.print(f"[bold red]Ledger not found:[/bold red] {db_path}")
        raise typer.Exit(code=1)

    snapshots = MonitorProjection(RunLedger(db_path)).list_runs(service)
    if not snapshots:
        console.print("[dim]No runs recorded.[/dim]")
        return
    console.print(MonitorRenderer(console=console).render_runs(snapshots[:limit]))
