"""
CLI: ``cadence partitions`` - register and list partitions (projects).
"""

from __future__ import annotations

from pathlib import Path

import typer

from cadence.cli.utils import DataDirOption, JsonOption, cli_errors, open_stores, output

app = typer.Typer(no_args_is_help=True)


@app.command("add")
def add_partition(
    partition_id: str = typer.Argument(..., help="Partition ID"),
    path: str = typer.Option("", "--path", "-p", help="Root path handed to actions"),
    name: str | None = typer.Option(None, "--name", help="Display name"),
    data_dir: Path | None = DataDirOption,
    json_out: bool = JsonOption,
) -> None:
    """Register a partition (or update its name/path)."""
    with cli_errors():
        stores = open_stores(data_dir)
        try:
            info = stores.register_partition(partition_id, name=name, path=path)
        finally:
            stores.close()
    output(info, as_json=json_out, title="Partition")


@app.command("list")
def list_partitions(
    data_dir: Path | None = DataDirOption,
    json_out: bool = JsonOption,
) -> None:
    """List registered partitions."""
    with cli_errors():
        stores = open_stores(data_dir)
        try:
            partitions = stores.list_partitions()
        finally:
            stores.close()
    output(list(partitions), as_json=json_out, title="Partitions")
