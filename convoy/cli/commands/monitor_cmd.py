"""``convoy monitor RUN_ID``: show the pipeline monitor for a run.

Displays every stage's state, the run status and the hash chain status.
Supports continuous live mode and explicit chain verification.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from convoy.config import settings
from convoy.core.run_ledger import LedgerIntegrityError, RunLedger
from convoy.monitor.projection import MonitorProjection
from convoy.monitor.renderer import MonitorRenderer

console = Console()


def monitor_cmd(
    run_id: str = typer.Argument(..., help="The pipeline run ID to monitor."),
    live: bool = typer.Option(
        False, "--live", "-L", help="Continuous live monitoring (Ctrl+C to exit)."
    ),
    verify_chain: bool = typer.Option(
        False, "--verify-chain", "-V", help="Verify the hash chain before displaying."
    ),
    refresh_hz: float = typer.Option(2.0, "--refresh", "-r", help="Refresh rate in Hz."),
    ledger_db: Path = typer.Option(
        None, "--ledger", "-l", help="Ledger database (defaults to CONVOY_LEDGER_PATH)."
    ),
) -> None:
    """Show the monitor for a pipeline run, re-read from the ledger."""
    db_path = ledger_db or settings.ledger_path
    if not db_path.exists():
        console.print(f"[bold red]Ledger not found:[/bold red] {db_path}")
        console.print("[dim]Run a pipeline first with: convoy demo[/dim]")
        raise typer.Exit(code=1)

    ledger = RunLedger(db_path)
    projection = MonitorProjection(ledger)
    renderer = MonitorRenderer(console=console)

    if not ledger.get_run_entries(run_id):
        console.print(f"[bold red]Run not found:[/bold red] {run_id}")
        all_runs = ledger.get_all_run_ids()
        if all_runs:
            console.print("\n[bold]Available runs:[/bold]")
            for rid in all_runs[:10]:
                console.print(f"  [cyan]{rid}[/cyan]")
            if len(all_runs) > 10:
                console.print(f"  [dim]... and {len(all_runs) - 10} more[/dim]")
        raise typer.Exit(code=1)

    if verify_chain:
        try:
            valid = ledger.verify_chain(run_id)
        except LedgerIntegrityError as exc:
            console.print(f"[bold red]Chain verification failed:[/bold red] {exc}")
            valid = False
        renderer.print_chain_verification(run_id, valid)
        console.print()

    if live:
        console.print(f"[dim]Live monitoring {run_id} at {refresh_hz} Hz. Ctrl+C to exit.[/dim]")
        renderer.render_live(run_id, projection, refresh_hz=refresh_hz)
    else:
        renderer.print_snapshot(projection.snapshot(run_id))
