"""Tests for the cadence CLI via typer.testing.CliRunner.

Every test points ``--data-dir`` at a fresh temporary directory, so the
commands run against real file-backed stores.
"""

from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

from cadence import __version__
from cadence.cli.app import app
from cadence.cli.serve import shutdown
from cadence.core.settings import clear_settings_cache

runner = CliRunner()


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch):
    monkeypatch.delenv("CADENCE_IN_MEMORY", raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def data_dir(tmp_path):
    return str(tmp_path / "data")


def invoke(*args: str):
    return runner.invoke(app, list(args))


def invoke_json(*args: str):
    result = invoke(*args, "--json")
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


@pytest.fixture
def partition(data_dir):
    invoke_json("partitions", "add", "prj_cli", "--path", "/srv/cli", "-d", data_dir)
    return "prj_cli"


@pytest.fixture
def schedule_id(data_dir, partition):
    created = invoke_json(
        "schedules", "create", "hourly heartbeat",
        "--action", "heartbeat",
        "--cron", "0 * * * *",
        "--params", '{"message": "cli ping"}',
        "-P", partition,
        "-d", data_dir,
    )
    return created["id"]


# ─── Root ────────────────────────────────────────────────────────────────


class TestRoot:
    def test_version(self):
        result = invoke("--version")
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help(self):
        result = invoke("--help")
        assert result.exit_code == 0
        for group in ("partitions", "schedules", "actions", "serve"):
            assert group in result.output


# ─── Partitions ──────────────────────────────────────────────────────────


class TestPartitionsCLI:
    def test_add_and_list(self, data_dir, partition):
        rows = invoke_json("partitions", "list", "-d", data_dir)
        assert [(r["id"], r["path"]) for r in rows] == [("prj_cli", "/srv/cli")]

    def test_invalid_id(self, data_dir):
        result = invoke("partitions", "add", "bad id", "-d", data_dir)
        assert result.exit_code == 1

    def test_table_output(self, data_dir, partition):
        result = invoke("partitions", "list", "-d", data_dir)
        assert result.exit_code == 0
        assert "prj_cli" in result.stdout


# ─── Schedules ───────────────────────────────────────────────────────────


class TestSchedulesCLI:
    def test_create(self, data_dir, partition):
        created = invoke_json(
            "schedules", "create", "LA check-in",
            "--action", "heartbeat",
            "--cron", "0 8,10,12 * * *",
            "--tz", "America/Los_Angeles",
            "-P", partition,
            "-d", data_dir,
        )
        assert created["id"].startswith("sch_")
        assert created["timezone"] == "America/Los_Angeles"
        assert created["enabled"] is True
        assert created["next_run_at"] is not None
        assert created["created_by"] == "system:scheduler"

    def test_create_invalid_cron(self, data_dir, partition):
        result = invoke(
            "schedules", "create", "broken",
            "--action", "heartbeat", "--cron", "*/5 * * * *",
            "-P", partition, "-d", data_dir,
        )
        assert result.exit_code == 1
        assert invoke_json("schedules", "list", "-P", partition, "-d", data_dir) == []

    def test_create_invalid_params_json(self, data_dir, partition):
        result = invoke(
            "schedules", "create", "broken",
            "--action", "heartbeat", "--cron", "@daily", "--params", "{not json",
            "-P", partition, "-d", data_dir,
        )
        assert result.exit_code == 1

    def test_unknown_partition(self, data_dir):
        result = invoke("schedules", "list", "-P", "prj_missing", "-d", data_dir)
        assert result.exit_code == 1

    def test_list_and_show(self, data_dir, partition, schedule_id):
        rows = invoke_json("schedules", "list", "-P", partition, "-d", data_dir)
        assert [r["id"] for r in rows] == [schedule_id]
        assert rows[0]["action"] == "heartbeat"

        detail = invoke_json("schedules", "show", schedule_id, "--preview", "2", "-P", partition, "-d", data_dir)
        assert detail["action_params"] == {"message": "cli ping"}
        assert len(detail["upcoming"]) == 2
        assert detail["upcoming"][0] < detail["upcoming"][1]

    def test_show_missing(self, data_dir, partition):
        result = invoke("schedules", "show", "sch_missing", "-P", partition, "-d", data_dir)
        assert result.exit_code == 1

    def test_disable_enable(self, data_dir, partition, schedule_id):
        disabled = invoke_json("schedules", "disable", schedule_id, "-P", partition, "-d", data_dir)
        assert disabled["enabled"] is False
        assert disabled["next_run_at"] is None

        enabled = invoke_json("schedules", "enable", schedule_id, "-P", partition, "-d", data_dir)
        assert enabled["enabled"] is True
        assert enabled["next_run_at"] is not None

    def test_trigger_and_runs(self, data_dir, partition, schedule_id):
        run = invoke_json("schedules", "trigger", schedule_id, "-P", partition, "-d", data_dir)
        assert run["status"] == "completed"
        assert run["trigger"] == "manual"
        assert run["session_id"].startswith("ses_")

        runs = invoke_json("schedules", "runs", schedule_id, "-P", partition, "-d", data_dir)
        assert [r["id"] for r in runs] == [run["id"]]

        completed = invoke_json(
            "schedules", "runs", schedule_id, "--status", "failed", "-P", partition, "-d", data_dir
        )
        assert completed == []

    def test_trigger_failing_action_exits_nonzero(self, data_dir, partition):
        created = invoke_json(
            "schedules", "create", "ghost",
            "--action", "nonexistent.action", "--cron", "@daily",
            "-P", partition, "-d", data_dir,
        )
        result = invoke("schedules", "trigger", created["id"], "-P", partition, "-d", data_dir, "--json")
        assert result.exit_code == 1
        assert "not found" in json.loads(result.stdout)["error"]

    def test_delete(self, data_dir, partition, schedule_id):
        assert invoke_json("schedules", "delete", schedule_id, "-P", partition, "-d", data_dir)["deleted"] is True
        result = invoke("schedules", "delete", schedule_id, "-P", partition, "-d", data_dir)
        assert result.exit_code == 1


# ─── Actions ─────────────────────────────────────────────────────────────


class TestActionsCLI:
    def test_list(self, data_dir):
        rows = invoke_json("actions", "list", "-d", data_dir)
        assert "heartbeat" in [r["id"] for r in rows]


# ─── Serve shutdown ──────────────────────────────────────────────────────


class _EngineStub:
    def __init__(self, stop_result=True, interrupt=False):
        self.stop_result = stop_result
        self.interrupt = interrupt
        self.stop_timeout = None
        self.stores = self
        self.closed = False

    def stop(self, *, wait=True, timeout=None):
        self.stop_timeout = timeout
        if self.interrupt:
            raise KeyboardInterrupt
        return self.stop_result

    def close(self):
        self.closed = True


class TestServeShutdown:
    def test_drained(self):
        engine = _EngineStub()
        assert shutdown(engine, 12.5) is True
        assert engine.stop_timeout == 12.5
        assert engine.closed

    def test_timeout_reported(self):
        engine = _EngineStub(stop_result=False)
        assert shutdown(engine, 0.1) is False
        assert engine.closed

    def test_second_signal_stops_waiting(self):
        engine = _EngineStub(interrupt=True)
        assert shutdown(engine, 30) is False
        assert engine.closed
