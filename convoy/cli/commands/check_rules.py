"""``convoy check-rules FILE``: validate a JSON security rule set.

Exits non-zero if any ingress rule admits the application port from an
unrestricted CIDR, or if the file does not parse.
"""

from __future__ import annotations

import json
from pathlib import Path

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from convoy.config import settings
from convoy.core.network_policy import load_rules, offending_rules

console = Console()


def check_rules_cmd(
    rules_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON rule array."),
    port: int = typer.Option(
        None, "--port", "-p", help="Application port (defaults to CONVOY_APPLICATION_PORT)."
    ),
) -> None:
    """Check a rule set against the public-exposure policy."""
    app_port = settings.application_port if port is None else port
    try:
        rules = load_rules(rules_file)
    except (json.JSONDecodeError, ValidationError) as exc:
        console.print(f"[bold red]Cannot parse {rules_file}:[/bold red] {exc}")
        raise typer.Exit(code=2) from exc

    offending = {id(r) for r in offending_rules(rules, app_port)}

    table = Table(title=f"{rules_file.name} (application port {app_port})")
    table.add_column("Direction")
    table.add_column("Protocol")
    table.add_column("Ports", justify="right")
    table.add_column("Source")
    table.add_column("Verdict", justify="center")
    for rule in rules:
        verdict = "[bold red]VIOLATION[/bold red]" if id(rule) in offending else "[green]ok[/green]"
        table.add_row(
            rule.direction.value,
            rule.protocol.value,
            f"{rule.ports.from_port}-{rule.ports.to_port}",
            rule.cidr or f"group:{rule.peer_group}",
            verdict,
        )
    console.print(table)

    if offending:
        console.print(
            f"[bold red]{len(offending)} rule(s) expose port {app_port} publicly.[/bold red]"
        )
        raise typer.Exit(code=1)
    console.print("[green]Rule set accepted.[/green]")
