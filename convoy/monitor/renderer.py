"""Rich terminal renderer for pipeline runs and service state.

Color scheme
------------
- green     : PASSED / HEALTHY / SUCCESS
- red       : FAILED / UNHEALTHY
- yellow    : RUNNING / STARTING
- dim       : NOT_STARTED
- magenta   : ABORTED / DRAINING
- bold red  : BLOCKED
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from convoy.models.pipeline import RunStatus
from convoy.models.service import TaskHealth
from convoy.models.stages import StageState

if TYPE_CHECKING:
    from collections.abc import Iterable

    from convoy.models.service import ScalingEvent, ServiceState
    from convoy.monitor.projection import MonitorProjection, MonitorSnapshot


_STATE_STYLES: dict[StageState, str] = {
    StageState.PASSED: "bold green",
    StageState.FAILED: "bold red",
    StageState.RUNNING: "bold yellow",
    StageState.NOT_STARTED: "dim",
    StageState.ABORTED: "bold magenta",
    StageState.BLOCKED: "bold red",
}

_STATE_LABELS: dict[StageState, str] = {
    StageState.PASSED: "[green]PASSED[/green]",
    StageState.FAILED: "[bold red]FAILED[/bold red]",
    StageState.RUNNING: "[yellow]RUNNING[/yellow]",
    StageState.NOT_STARTED: "[dim]NOT STARTED[/dim]",
    StageState.ABORTED: "[magenta]ABORTED[/magenta]",
    StageState.BLOCKED: "[bold red]BLOCKED[/bold red]",
}

_RUN_STYLES: dict[RunStatus, str] = {
    RunStatus.QUEUED: "dim",
    RunStatus.IN_PROGRESS: "yellow",
    RunStatus.SUCCESS: "green",
    RunStatus.FAILED: "bold red",
    RunStatus.ABORTED: "magenta",
}

_HEALTH_STYLES: dict[TaskHealth, str] = {
    TaskHealth.STARTING: "yellow",
    TaskHealth.HEALTHY: "green",
    TaskHealth.UNHEALTHY: "bold red",
    TaskHealth.DRAINING: "magenta",
    TaskHealth.STOPPED: "dim",
}


class MonitorRenderer:
    """Renders monitor snapshots and service state as Rich output."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def render_snapshot(self, snapshot: MonitorSnapshot) -> Panel:
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("#", style="dim", width=3, justify="right")
        table.add_column("Stage", min_width=20)
        table.add_column("State", min_width=12, justify="center")
        table.add_column("Details", min_width=20)
        table.add_column("Artifacts", justify="right", width=9)

        for i, stage in enumerate(snapshot.stages):
            style = _STATE_STYLES.get(stage.state, "")
            details: list[str] = []
            if stage.detail:
                colour = "red" if stage.state in (StageState.FAILED, StageState.BLOCKED) else "dim"
                details.append(f"[{colour}]{stage.detail}[/{colour}]")
            if stage.entered_at:
                details.append(f"[dim]{stage.entered_at.strftime('%H:%M:%S')}[/dim]")
            table.add_row(
                str(i),
                f"[{style}]{stage.display_name}[/{style}]",
                _STATE_LABELS.get(stage.state, stage.state.value),
                " | ".join(details) if details else "[dim]-[/dim]",
                str(len(stage.artifact_refs)) if stage.artifact_refs else "[dim]0[/dim]",
            )

        if snapshot.status is not None:
            style = _RUN_STYLES[snapshot.status]
            status = f"[{style}]{snapshot.status.value.upper()}[/{style}]"
        else:
            status = "[dim]unknown[/dim]"
        chain = "[green]valid[/green]" if snapshot.chain_valid else "[bold red]BROKEN[/bold red]"
        summary = "  |  ".join(
            [
                f"[bold]Run:[/bold] {snapshot.run_id}",
                f"[bold]Service:[/bold] {snapshot.service_id or '-'}",
                f"[bold]Status:[/bold] {status}",
                f"[bold]Progress:[/bold] {snapshot.completed_count}/{snapshot.total_stages}",
                f"[bold]Chain:[/bold] {chain}",
            ]
        )

        return Panel(
            Group(table, Text(""), Text.from_markup(summary)),
            title="[bold]Convoy Pipeline[/bold]",
            subtitle=f"Last updated: {snapshot.last_updated.strftime('%Y-%m-%d %H:%M:%S UTC')}",
            border_style="blue",
            padding=(1, 2),
        )

    def render_runs(self, snapshots: list[MonitorSnapshot]) -> Table:
        table = Table(title="Pipeline runs", header_style="bold cyan")
        table.add_column("Run")
        table.add_column("Service")
        table.add_column("Status", justify="center")
        table.add_column("Stages", justify="right")
        table.add_column("Detail")
        for snap in snapshots:
            style = _RUN_STYLES.get(snap.status, "dim") if snap.status else "dim"
            table.add_row(
                snap.run_id,
                snap.service_id,
                f"[{style}]{snap.status.value if snap.status else '-'}[/{style}]",
                f"{snap.completed_count}/{snap.total_stages}",
                snap.status_detail,
            )
        return table

    def render_service(self, state: ServiceState) -> Table:
        table = Table(
            title=f"{state.service_id} @ {state.current_revision}"
            + ("  [green](steady)[/green]" if state.steady_state else ""),
            header_style="bold cyan",
        )
        table.add_column("Task")
        table.add_column("Revision")
        table.add_column("Health", justify="center")
        for task in state.tasks:
            style = _HEALTH_STYLES[task.health]
            table.add_row(task.task_id, task.revision, f"[{style}]{task.health.value}[/{style}]")
        return table

    def render_scaling(self, events: Iterable[ScalingEvent]) -> Table:
        table = Table(title="Autoscaling", header_style="bold cyan")
        table.add_column("Action")
        table.add_column("Observed", justify="right")
        table.add_column("Desired", justify="right")
        table.add_column("Reason")
        for event in events:
            observed = "-" if event.observed is None else f"{event.observed:g}"
            desired = f"{event.desired_before} -> {event.desired_after}"
            if event.clamped:
                desired += " [yellow](clamped)[/yellow]"
            table.add_row(event.action.value, observed, desired, event.reason)
        return table

    def render_live(
        self,
        run_id: str,
        projection: MonitorProjection,
        *,
        refresh_hz: float = 2.0,
    ) -> None:
        """Re-render the run from the ledger until Ctrl+C."""
        interval = 1.0 / max(refresh_hz, 0.1)
        with Live(console=self.console, refresh_per_second=refresh_hz, transient=False) as live:
            try:
                while True:
                    live.update(self.render_snapshot(projection.snapshot(run_id)))
                    time.sleep(interval)
            except KeyboardInterrupt:
                live.update(self.render_snapshot(projection.snapshot(run_id)))

    def print_snapshot(self, snapshot: MonitorSnapshot) -> None:
        self.console.print(self.render_snapshot(snapshot))

    def print_chain_verification(self, run_id: str, valid: bool) -> None:
        if valid:
            self.console.print(f"[green]Hash chain for run {run_id} is valid.[/green]")
        else:
            self.console.print(f"[bold red]Hash chain for run {run_id} is BROKEN![/bold red]")
