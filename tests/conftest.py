"""
Shared pytest fixtures for cadence tests.

This module provides:
- In-memory store managers with a registered test partition
- Registries with the built-in actions plus small test actions
- A scheduler service wired to a manual (non-ticking) backend
- Polling helpers for assertions on worker-thread outcomes

Usage:
    def test_something(service, make_schedule):
        schedule = make_schedule(action_id="test.ok")
        service.tick(now=schedule.next_run_at)
"""

import asyncio
import sys
import threading
import time
from collections.abc import Callable, Generator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

# Ensure cadence package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from cadence.actions.heartbeat import register_builtin_actions
from cadence.actions.registry import ActionRegistry
from cadence.actions.types import ActionContext, error, success
from cadence.core.models import Schedule
from cadence.core.store import PartitionStore, StoreManager
from cadence.scheduling.repository import ScheduleRepository
from cadence.scheduling.runs import RunTracker
from cadence.scheduling.service import SchedulerService

PARTITION_ID = "prj_test"
PARTITION_PATH = "/srv/projects/test"
FIXED_NOW = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)


# =============================================================================
# Backends
# =============================================================================


class ManualBackend:
    """SchedulerBackend that never ticks on its own; tests call ``fire()``."""

    name = "manual"

    def __init__(self) -> None:
        self.callback = None
        self.interval: float | None = None
        self.started = 0
        self.stopped = 0

    def start(self, tick_callback, interval_seconds: float = 30.0, run_immediately: bool = True) -> None:
        self.callback = tick_callback
        self.interval = interval_seconds
        self.started += 1

    def stop(self) -> None:
        self.stopped += 1
        self.callback = None

    def health(self) -> dict[str, Any]:
        return {"healthy": self.callback is not None, "backend": self.name}

    def fire(self) -> None:
        assert self.callback is not None, "backend not started"
        asyncio.run(self.callback())


# =============================================================================
# Stores
# =============================================================================


@pytest.fixture
def stores() -> Generator[StoreManager, None, None]:
    """In-memory store manager with one registered partition."""
    manager = StoreManager(in_memory=True)
    manager.register_partition(PARTITION_ID, name="Test Project", path=PARTITION_PATH)
    yield manager
    manager.close()


@pytest.fixture
def partition_id() -> str:
    return PARTITION_ID


@pytest.fixture
def store(stores: StoreManager) -> PartitionStore:
    return stores.get(PARTITION_ID)


@pytest.fixture
def schedules(store: PartitionStore) -> ScheduleRepository:
    return ScheduleRepository(store)


@pytest.fixture
def runs(store: PartitionStore) -> RunTracker:
    return RunTracker(store)


# =============================================================================
# Actions
# =============================================================================


class ActionRecorder:
    """Records calls made to the test actions."""

    def __init__(self) -> None:
        self.calls: list[ActionContext] = []
        self.release = threading.Event()
        self.entered = threading.Event()
        self.saw_cancellation = threading.Event()
        self._lock = threading.Lock()

    def record(self, context: ActionContext) -> None:
        with self._lock:
            self.calls.append(context)
        self.entered.set()


@pytest.fixture
def recorder() -> ActionRecorder:
    return ActionRecorder()


@pytest.fixture
def registry(stores: StoreManager, recorder: ActionRecorder) -> ActionRegistry:
    """Registry with the built-ins plus ``test.*`` actions driven by ``recorder``."""
    reg = ActionRegistry()
    register_builtin_actions(reg, stores)

    @reg.action("test.ok", description="Always succeeds")
    def ok(params: dict[str, Any], ctx: ActionContext):
        recorder.record(ctx)
        return success("ok", params.get("output", "done"))

    @reg.action("test.fail", description="Always returns an error")
    def fail(params: dict[str, Any], ctx: ActionContext):
        recorder.record(ctx)
        return error(params.get("message", "it broke"), code="test")

    @reg.action("test.raise", description="Always raises")
    def boom(params: dict[str, Any], ctx: ActionContext):
        recorder.record(ctx)
        raise RuntimeError("handler exploded")

    @reg.action("test.block", description="Blocks until released or cancelled")
    def block(params: dict[str, Any], ctx: ActionContext):
        recorder.record(ctx)
        deadline = time.monotonic() + params.get("max_wait", 5.0)
        while time.monotonic() < deadline:
            if recorder.release.is_set():
                return success("released")
            if ctx.cancellation.wait(0.01):
                recorder.saw_cancellation.set()
                return success("finished after cancellation")
        return error("block action was never released")

    @reg.action("test.stubborn", description="Ignores cancellation until released")
    def stubborn(params: dict[str, Any], ctx: ActionContext):
        recorder.record(ctx)
        recorder.release.wait(params.get("max_wait", 5.0))
        return success("released")

    return reg


# =============================================================================
# Scheduler
# =============================================================================


@pytest.fixture
def backend() -> ManualBackend:
    return ManualBackend()


@pytest.fixture
def service(
    stores: StoreManager, registry: ActionRegistry, backend: ManualBackend, recorder: ActionRecorder
) -> Generator[SchedulerService, None, None]:
    svc = SchedulerService(stores, registry, backend=backend, interval_seconds=0.05, max_workers=2)
    yield svc
    recorder.release.set()
    svc.stop()


@pytest.fixture
def make_schedule(schedules: ScheduleRepository) -> Callable[..., Schedule]:
    """Factory creating schedules in the test partition (created at ``FIXED_NOW``)."""

    def _make(
        action_id: str = "test.ok",
        *,
        cron: str = "0 * * * *",
        timezone: str = "UTC",
        params: dict[str, Any] | None = None,
        max_runtime_ms: int = 60_000,
        enabled: bool = True,
        name: str = "test schedule",
        now: datetime = FIXED_NOW,
    ) -> Schedule:
        return schedules.create(
            {
                "name": name,
                "actionConfig": {"actionId": action_id, "actionParams": params or {}},
                "cronExpression": cron,
                "timezone": timezone,
                "maxRuntimeMs": max_runtime_ms,
                "enabled": enabled,
            },
            now=now,
        )

    return _make


# =============================================================================
# Helpers
# =============================================================================


def wait_for(predicate: Callable[[], Any], timeout: float = 5.0, interval: float = 0.01) -> Any:
    """Poll *predicate* until it returns a truthy value; fail after *timeout*."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        value = predicate()
        if value:
            return value
        time.sleep(interval)
    pytest.fail(f"condition not met within {timeout}s")


@pytest.fixture
def wait() -> Callable[..., Any]:
    return wait_for
