"""Main Typer application: configures logging and registers all commands.

Entry point: ``convoy`` (configured via pyproject.toml project.scripts).
"""

from __future__ import annotations

import logging

import typer
from rich.logging import RichHandler

from convoy.cli.commands.check_rules import check_rules_cmd
from convoy.cli.commands.demo import demo_cmd
from convoy.cli.commands.monitor_cmd import monitor_cmd
from convoy.cli.commands.runs import runs_cmd
from convoy.cli.commands.show_config import show_config_cmd
from convoy.config import settings

app = typer.Typer(
    name="convoy",
    help="Convoy: gated release pipeline with rollout and autoscaling control loops.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


def configure_logging(level: str) -> None:
    """Route stdlib logging through Rich once per process."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )


@app.callback()
def main_callback(
    log_level: str = typer.Option(
        None,
        "--log-level",
        help="Logging level (defaults to CONVOY_LOG_LEVEL).",
    ),
) -> None:
    configure_logging(log_level or settings.log_level)


app.command(name="demo", help="Run the pipeline, a rollout and autoscaling on simulated backends.")(
    demo_cmd
)
app.command(name="monitor", help="Show the pipeline monitor for a run.")(monitor_cmd)
app.command(name="runs", help="List pipeline runs recorded in the ledger.")(runs_cmd)
app.command(name="check-rules", help="Validate a JSON security rule set.")(check_rules_cmd)
app.command(name="show-config", help="Show and validate the bounds configuration.")(
    show_config_cmd
)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
