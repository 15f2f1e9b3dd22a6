"""``convoy demo``: run the whole system on simulated backends.

Applies the default network policy, pushes one trigger through the pipeline
(build, scan, gate, publish, rollout), then runs a few autoscaling ticks
against a synthetic CPU feed while the rollout controller reconciles each
change.  Time is simulated, so the demo finishes immediately.

Scenarios
---------
healthy    new revision passes health checks and reaches steady state
critical   scanner reports a CRITICAL finding; the gate fails the run
unhealthy  new revision fails health checks; the rollout rolls back
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel

from convoy.backends.simulated import (
    ScriptedBuilder,
    SimulatedClock,
    SimulatedPlatform,
    StaticScanner,
    SyntheticMetricFeed,
)
from convoy.config import settings
from convoy.errors import BoundsConfigError
from convoy.models.pipeline import TriggerEvent
from convoy.models.reports import Finding, Severity
from convoy.monitor.projection import MonitorProjection
from convoy.monitor.renderer import MonitorRenderer
from convoy.stack import ServiceStack

console = Console()

_RECONCILE_LIMIT = 50


class Scenario(str, Enum):
    HEALTHY = "healthy"
    CRITICAL = "critical"
    UNHEALTHY = "unhealthy"


def demo_cmd(
    scenario: Scenario = typer.Option(Scenario.HEALTHY, "--scenario", help="Which path to show."),
    service: str = typer.Option("web", "--service", help="Service id."),
    revision: str = typer.Option("v1.1.0", "--revision", help="Revision carried by the trigger."),
    cpu: list[float] = typer.Option(
        [95.0, 95.0, 95.0, 30.0, 30.0, 30.0],
        "--cpu",
        help="Synthetic CPU readings, one per autoscaling tick.",
    ),
    base_dir: Path = typer.Option(
        Path(".convoy/demo"), "--dir", help="Directory for the demo ledger and registry."
    ),
) -> None:
    """Run a complete simulated pipeline, rollout and autoscaling session."""
    clock = SimulatedClock()
    builder = ScriptedBuilder()
    platform = SimulatedPlatform()
    scanner = StaticScanner(
        [Finding(severity=Severity.CRITICAL, cve_id="CVE-2024-3094", package="xz-utils")]
        if scenario == Scenario.CRITICAL
        else [Finding(severity=Severity.LOW, cve_id="CVE-2023-0001", package="zlib")]
    )
    metrics = SyntheticMetricFeed(cpu)
    trigger = TriggerEvent(repository="git.local/web", revision=revision, service_id=service)
    if scenario == Scenario.UNHEALTHY:
        platform.probe_scripts[builder.image_ref_for(trigger)] = False

    desired = min(max(settings.min_capacity, 2), settings.max_capacity)
    try:
        stack = ServiceStack.simulated(
            service,
            base_dir,
            builder=builder,
            scanner=scanner,
            platform=platform,
            metrics=metrics,
            desired_count=desired,
            clock=clock,
            sleep=clock.sleep,
            backoff_sleep=clock.sleep,
        )
    except BoundsConfigError as exc:
        console.print(f"[bold red]{exc}[/bold red]")
        raise typer.Exit(code=1) from exc

    renderer = MonitorRenderer(console=console)
    console.print()
    console.print(
        Panel(
            f"[bold]Convoy demo[/bold]: scenario [cyan]{scenario.value}[/cyan], "
            f"service [cyan]{service}[/cyan], desired {desired}",
            border_style="blue",
        )
    )

    rules = stack.network.apply(stack.network.default_rules(lb_group="lb-sg"))
    console.print(f"[green]Applied {len(rules)} security rule(s) to {stack.network.group_id}.[/green]")

    stack.orchestrator.submit(trigger)
    run = stack.orchestrator.drain()[-1]
    renderer.print_snapshot(MonitorProjection(stack.ledger).snapshot(run.run_id))
    if run.rollout_state is not None:
        console.print(f"Rollout finished [bold]{run.rollout_state.value}[/bold]")
    console.print(renderer.render_service(stack.rollout.snapshot()))

    for _ in cpu:
        stack.autoscaler.tick()
        for _ in range(_RECONCILE_LIMIT):
            if stack.rollout.reconcile_once().steady_state:
                break
            clock.sleep(settings.rollout_poll_interval_seconds)
        clock.advance(settings.autoscale_interval_seconds)

    console.print(renderer.render_scaling(stack.autoscaler.events))
    console.print(renderer.render_service(stack.rollout.snapshot()))

    console.print(
        f"\n[dim]Inspect later with: convoy monitor {run.run_id} --ledger {base_dir / 'ledger.db'}[/dim]"
    )
