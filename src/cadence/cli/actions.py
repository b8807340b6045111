"""
CLI: ``cadence actions`` - inspect registered actions.
"""

from __future__ import annotations

from pathlib import Path

import typer

from cadence import create_engine
from cadence.cli.utils import DataDirOption, JsonOption, cli_errors, load_settings, output

app = typer.Typer(no_args_is_help=True)


@app.command("list")
def list_actions(
    data_dir: Path | None = DataDirOption,
    json_out: bool = JsonOption,
) -> None:
    """List built-in actions."""
    with cli_errors():
        engine = create_engine(load_settings(data_dir))
        try:
            rows = [
                {"id": d.id, "category": d.category, "description": d.description}
                for d in engine.registry.list_actions()
            ]
        finally:
            engine.close()
    output(rows, as_json=json_out, title="Actions")
