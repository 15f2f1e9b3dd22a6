"""``convoy show-config``: print the effective bounds and validate them."""

from __future__ import annotations

import typer
from rich.console import Console
from rich.table import Table

from convoy.config import settings
from convoy.core.bounds_guard import collect_bounds_violations

console = Console()


def show_config_cmd() -> None:
    """Show the bounds configuration and any violated constraint."""
    table = Table(title=f"Convoy configuration ({settings.environment})")
    table.add_column("Option", style="cyan")
    table.add_column("Value", justify="right")
    for name, value in settings.bounds().model_dump(mode="json").items():
        table.add_row(name, str(value))
    table.add_section()
    for name in (
        "scale_dead_band",
        "scale_step",
        "healthy_threshold",
        "unhealthy_threshold",
        "rollout_retry_budget",
        "rollout_timeout_seconds",
        "drain_grace_seconds",
        "application_port",
    ):
        table.add_row(name, str(getattr(settings, name)))
    console.print(table)

    violations = collect_bounds_violations(settings)
    if violations:
        for violation in violations:
            console.print(f"[bold red]-[/bold red] {violation}")
        raise typer.Exit(code=1)
    console.print("[green]Configuration valid.[/green]")
