"""
CLI utility helpers: store access, error handling and output formatting.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, is_dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from cadence.core.errors import CadenceError
from cadence.core.models import Run, Schedule
from cadence.core.settings import CadenceSettings, get_settings
from cadence.core.store import StoreManager
from cadence.core.timestamps import to_iso8601

console = Console()
err_console = Console(stderr=True)

DataDirOption = typer.Option(None, "--data-dir", "-d", help="Data directory (default: $CADENCE_DATA_DIR or ~/.cadence)")
JsonOption = typer.Option(False, "--json", help="Emit JSON instead of a table.")


# ── Store helpers ────────────────────────────────────────────────────────


def load_settings(data_dir: Path | None = None) -> CadenceSettings:
    settings = get_settings()
    if data_dir is not None:
        settings = settings.model_copy(update={"data_dir": data_dir})
    return settings


def open_stores(data_dir: Path | None = None) -> StoreManager:
    """Open the store manager for *data_dir* (or the configured default)."""
    return StoreManager.from_settings(load_settings(data_dir))


@contextmanager
def cli_errors() -> Iterator[None]:
    """Turn engine errors into a red message and exit code 1."""
    try:
        yield
    except CadenceError as e:
        err_console.print(f"[bold red]Error[/bold red] ({e.category.value}): {e.message}")
        raise typer.Exit(code=1) from e


# ── Row shaping ──────────────────────────────────────────────────────────


def schedule_row(schedule: Schedule) -> dict[str, Any]:
    return {
        "id": schedule.id,
        "name": schedule.name,
        "action": schedule.action_id,
        "cron": schedule.cron_expression,
        "timezone": schedule.timezone,
        "enabled": schedule.enabled,
        "next_run_at": to_iso8601(schedule.next_run_at),
        "last_run_status": schedule.last_run_status.value if schedule.last_run_status else None,
    }


def schedule_detail(schedule: Schedule) -> dict[str, Any]:
    return {
        **schedule_row(schedule),
        "partition_id": schedule.partition_id,
        "description": schedule.description,
        "action_type": schedule.action_type,
        "action_params": schedule.action_params,
        "max_runtime_ms": schedule.max_runtime_ms,
        "last_run_at": to_iso8601(schedule.last_run_at),
        "last_run_error": schedule.last_run_error,
        "created_by": schedule.created_by,
        "created_at": to_iso8601(schedule.created_at),
        "updated_at": to_iso8601(schedule.updated_at),
    }


def run_row(run: Run) -> dict[str, Any]:
    return {
        "id": run.id,
        "status": run.status.value,
        "trigger": run.trigger.value,
        "scheduled_for": to_iso8601(run.scheduled_for),
        "started_at": to_iso8601(run.started_at),
        "completed_at": to_iso8601(run.completed_at),
        "session_id": run.session_id,
        "error": run.error,
    }


# ── Output helpers ───────────────────────────────────────────────────────


def _plain(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_iso8601(value)
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value) and not isinstance(value, type):
        return {k: _plain(v) for k, v in asdict(value).items()}
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [_plain(v) for v in value]
    return value


def output(data: dict[str, Any] | list[dict[str, Any]], *, as_json: bool = False, title: str = "") -> None:
    """Render a dict (key/value pairs) or a list of dicts (table)."""
    data = _plain(data)
    if as_json:
        console.print_json(json.dumps(data, default=str))
        return

    if isinstance(data, list):
        if not data:
            console.print("[dim]No items.[/dim]")
            return
        _print_table(data, title=title)
    else:
        _print_dict(data, title=title)


def _print_table(items: list[dict[str, Any]], *, title: str = "") -> None:
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for column in items[0]:
        table.add_column(column, overflow="fold")
    for item in items:
        table.add_row(*("" if v is None else str(v) for v in item.values()))
    console.print(table)


def _print_dict(data: dict[str, Any], *, title: str = "") -> None:
    if title:
        console.print(f"[bold]{title}[/bold]")
    for key, value in data.items():
        console.print(f"  [cyan]{key}[/cyan]: {value}")
