"""
CLI: ``cadence schedules`` - schedule CRUD, manual trigger and run history.
"""

from __future__ import annotations

import json
from pathlib import Path

import typer

from cadence import create_engine
from cadence.cli.utils import (
    DataDirOption,
    JsonOption,
    cli_errors,
    load_settings,
    open_stores,
    output,
    run_row,
    schedule_detail,
    schedule_row,
)
from cadence.core.errors import ScheduleNotFound, ValidationError
from cadence.core.models import RunStatus
from cadence.core.timestamps import to_iso8601, utc_now
from cadence.scheduling.cron import next_fire_times
from cadence.scheduling.repository import ScheduleRepository, ScheduleUpdate
from cadence.scheduling.runs import RunTracker

app = typer.Typer(no_args_is_help=True)

PartitionOption = typer.Option(..., "--partition", "-P", help="Partition ID")


@app.command("create")
def create_schedule(
    name: str = typer.Argument(..., help="Schedule name"),
    action_id: str = typer.Option(..., "--action", "-a", help="Action to invoke"),
    cron: str = typer.Option(..., "--cron", "-c", help="Cron expression or @preset"),
    partition: str = PartitionOption,
    timezone: str = typer.Option("UTC", "--timezone", "--tz", help="IANA timezone"),
    params: str = typer.Option("{}", "--params", help="Action params as a JSON object"),
    description: str | None = typer.Option(None, "--description"),
    max_runtime_ms: int = typer.Option(3_600_000, "--max-runtime-ms"),
    enabled: bool = typer.Option(True, "--enabled/--disabled"),
    data_dir: Path | None = DataDirOption,
    json_out: bool = JsonOption,
) -> None:
    """Create a schedule."""
    with cli_errors():
        try:
            action_params = json.loads(params)
        except json.JSONDecodeError as e:
            raise ValidationError(f"--params is not valid JSON: {e}") from e

        stores = open_stores(data_dir)
        try:
            schedule = ScheduleRepository(stores.get(partition)).create(
                {
                    "name": name,
                    "description": description,
                    "actionType": "action",
                    "actionConfig": {"actionId": action_id, "actionParams": action_params},
                    "cronExpression": cron,
                    "timezone": timezone,
                    "enabled": enabled,
                    "maxRuntimeMs": max_runtime_ms,
                },
                created_by=load_settings(data_dir).system_user_id,
            )
        finally:
            stores.close()
    output(schedule_detail(schedule), as_json=json_out, title="Schedule Created")


@app.command("list")
def list_schedules(
    partition: str = PartitionOption,
    enabled_only: bool = typer.Option(False, "--enabled-only"),
    limit: int = typer.Option(50, "--limit", min=1),
    offset: int = typer.Option(0, "--offset", min=0),
    data_dir: Path | None = DataDirOption,
    json_out: bool = JsonOption,
) -> None:
    """List schedules of a partition (newest first)."""
    with cli_errors():
        stores = open_stores(data_dir)
        try:
            schedules = ScheduleRepository(stores.get(partition)).list(
                limit=limit, offset=offset, enabled_only=enabled_only
            )
        finally:
            stores.close()
    output([schedule_row(s) for s in schedules], as_json=json_out, title="Schedules")


@app.command("show")
def show_schedule(
    schedule_id: str = typer.Argument(..., help="Schedule ID"),
    partition: str = PartitionOption,
    preview: int = typer.Option(3, "--preview", min=0, help="Upcoming fire times to show"),
    data_dir: Path | None = DataDirOption,
    json_out: bool = JsonOption,
) -> None:
    """Show schedule details and its next fire times."""
    with cli_errors():
        stores = open_stores(data_dir)
        try:
            schedule = ScheduleRepository(stores.get(partition)).get_or_raise(schedule_id)
        finally:
            stores.close()
        detail = schedule_detail(schedule)
        if preview and schedule.enabled:
            upcoming = next_fire_times(schedule.cron_expression, schedule.timezone, utc_now(), preview)
            detail["upcoming"] = [to_iso8601(t) for t in upcoming]
    output(detail, as_json=json_out, title=f"Schedule: {schedule_id}")


def _set_enabled(partition: str, schedule_id: str, enabled: bool, data_dir: Path | None, json_out: bool) -> None:
    with cli_errors():
        stores = open_stores(data_dir)
        try:
            schedule = ScheduleRepository(stores.get(partition)).update(
                schedule_id, ScheduleUpdate(enabled=enabled)
            )
        finally:
            stores.close()
    output(schedule_row(schedule), as_json=json_out, title="Schedule Updated")


@app.command("enable")
def enable_schedule(
    schedule_id: str = typer.Argument(..., help="Schedule ID"),
    partition: str = PartitionOption,
    data_dir: Path | None = DataDirOption,
    json_out: bool = JsonOption,
) -> None:
    """Enable a schedule (next run computed from now)."""
    _set_enabled(partition, schedule_id, True, data_dir, json_out)


@app.command("disable")
def disable_schedule(
    schedule_id: str = typer.Argument(..., help="Schedule ID"),
    partition: str = PartitionOption,
    data_dir: Path | None = DataDirOption,
    json_out: bool = JsonOption,
) -> None:
    """Disable a schedule (clears its next run)."""
    _set_enabled(partition, schedule_id, False, data_dir, json_out)


@app.command("delete")
def delete_schedule(
    schedule_id: str = typer.Argument(..., help="Schedule ID"),
    partition: str = PartitionOption,
    data_dir: Path | None = DataDirOption,
    json_out: bool = JsonOption,
) -> None:
    """Delete a schedule and its run history."""
    with cli_errors():
        stores = open_stores(data_dir)
        try:
            deleted = ScheduleRepository(stores.get(partition)).delete(schedule_id)
        finally:
            stores.close()
        if not deleted:
            raise ScheduleNotFound(schedule_id)
    output({"id": schedule_id, "deleted": True}, as_json=json_out, title="Schedule Deleted")


@app.command("trigger")
def trigger_schedule(
    schedule_id: str = typer.Argument(..., help="Schedule ID"),
    partition: str = PartitionOption,
    data_dir: Path | None = DataDirOption,
    json_out: bool = JsonOption,
) -> None:
    """Run a schedule's action now (ignoring due time) and wait for the result."""
    with cli_errors():
        engine = create_engine(load_settings(data_dir))
        try:
            ack = engine.trigger_now(partition, schedule_id)
            engine.wait_idle()
            run = RunTracker(engine.stores.get(partition)).get_or_raise(ack.run_id)
        finally:
            engine.close()
    output(run_row(run), as_json=json_out, title="Run")
    if run.status in (RunStatus.FAILED, RunStatus.TIMED_OUT):
        raise typer.Exit(code=1)


@app.command("runs")
def list_runs(
    schedule_id: str = typer.Argument(..., help="Schedule ID"),
    partition: str = PartitionOption,
    status: RunStatus | None = typer.Option(None, "--status"),
    limit: int = typer.Option(20, "--limit", min=1),
    offset: int = typer.Option(0, "--offset", min=0),
    data_dir: Path | None = DataDirOption,
    json_out: bool = JsonOption,
) -> None:
    """List runs of a schedule, most recent first."""
    with cli_errors():
        stores = open_stores(data_dir)
        try:
            store = stores.get(partition)
            ScheduleRepository(store).get_or_raise(schedule_id)
            runs = RunTracker(store).list_runs(schedule_id, limit=limit, offset=offset, status=status)
        finally:
            stores.close()
    output([run_row(r) for r in runs], as_json=json_out, title="Runs")
