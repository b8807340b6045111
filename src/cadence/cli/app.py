"""
Root Typer application for the ``cadence`` CLI.
"""

from __future__ import annotations

import sys

import typer
from typer import Typer

from cadence import __version__
from cadence.cli.actions import app as actions_app
from cadence.cli.partitions import app as partitions_app
from cadence.cli.schedules import app as schedules_app
from cadence.cli.serve import serve
from cadence.core.logging import configure_logging

app = Typer(
    name="cadence",
    help="cadence - timezone-aware scheduled action execution.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"cadence {__version__}")
        raise typer.Exit()


@app.callback()
def callback(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """cadence CLI - manage partitions, schedules and runs."""
    # keep stdout clean for table and --json output
    configure_logging(level="WARNING", stream=sys.stderr)


app.add_typer(partitions_app, name="partitions", help="Partition (project) registry.")
app.add_typer(schedules_app, name="schedules", help="Schedule management and run history.")
app.add_typer(actions_app, name="actions", help="Registered actions.")
app.command("serve")(serve)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
