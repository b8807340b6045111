"""Scheduler service - the tick loop, dispatch, timeouts and manual triggers.

Manifesto:
    The loop decides, workers execute.  A tick scans every partition for
    due schedules, makes the exclusivity decision under the schedule's
    guard, hands accepted runs to the worker pool and advances
    ``next_run_at``.  It never waits on an action.  Every failure is
    contained at the smallest scope that owns it: a handler failure fails
    its run, a store failure skips its schedule (or partition) for this
    tick, and nothing escapes ``_tick``.

Tags:
    cadence, scheduling, beat-as-poller, service, timeouts, isolation

Doc-Types:
    api-reference, architecture-diagram


┌──────────────────────────────────────────────────────────────────────────────┐
│  SCHEDULER SERVICE                                                            │
│                                                                               │
│   backend ──tick──► _tick()                                                   │
│                      for partition in stores.list_partitions():               │
│                        for schedule in ScheduleRepository.get_due(now):       │
│                          with guard.hold(partition, schedule):                │
│                            run = RunTracker.create_run_if_idle(...)           │
│                            run is None  → skipped_overlap                     │
│                            else         → pool.submit(_execute, run)          │
│                            ScheduleRepository.advance(basis=next_run_at)      │
│                                                                               │
│   worker: _execute(run)                                                       │
│     start(run) → Deadline(max_runtime_ms).start()                             │
│     action_config.invoke(registry, ctx)                                       │
│     deadline.cancel() → complete | fail   (InvalidTransition → late result,   │
│                                            discarded)                         │
│                                                                               │
│   timer: deadline expiry                                                      │
│     timeout(run) → token.cancel() → record_outcome(timed_out)                 │
│                                                                               │
│   trigger_now(partition, schedule) → create_run(manual) → pool.submit         │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from cadence.actions.registry import ActionRegistry
from cadence.actions.types import ActionContext, ActionError, ActionResult, ActionSuccess, error
from cadence.core.errors import (
    CadenceError,
    InvalidTransition,
    NotFoundError,
    RunTimeout,
)
from cadence.core.logging import LogContext, get_logger
from cadence.core.models import ActionConfig, Run, RunStatus, RunTrigger, Schedule
from cadence.core.settings import SYSTEM_USER_ID
from cadence.core.store import StoreManager
from cadence.core.timestamps import to_iso8601, utc_now
from cadence.execution.cancellation import CancellationToken, Deadline
from cadence.execution.worker import PoolClosed, WorkerPool

from .guard import ScheduleGuard
from .protocol import SchedulerBackend
from .repository import ScheduleRepository
from .runs import RunTracker
from .thread_backend import ThreadSchedulerBackend

logger = get_logger(__name__)

STOPPED_BEFORE_START_ERROR = "scheduler stopped before the run started"


@dataclass
class SchedulerStats:
    """Counters since the service was created."""

    tick_count: int = 0
    schedules_due: int = 0
    runs_dispatched: int = 0
    manual_triggers: int = 0
    skipped_overlap: int = 0
    runs_completed: int = 0
    runs_failed: int = 0
    runs_timed_out: int = 0
    late_results_discarded: int = 0
    schedule_errors: int = 0
    partition_errors: int = 0
    last_tick: datetime | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["last_tick"] = to_iso8601(self.last_tick)
        return data


@dataclass
class SchedulerHealth:
    """Health snapshot for operators."""

    healthy: bool
    running: bool
    backend: dict[str, Any]
    partitions: int = 0
    in_flight: int = 0
    stats: SchedulerStats = field(default_factory=SchedulerStats)

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "running": self.running,
            "backend": self.backend,
            "partitions": self.partitions,
            "in_flight": self.in_flight,
            "stats": self.stats.to_dict(),
        }


@dataclass
class TickReport:
    """What one tick did (returned by :meth:`SchedulerService.tick`)."""

    at: datetime
    dispatched: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class TriggerAck:
    """Synchronous acknowledgement of a manual dispatch."""

    run_id: str
    schedule_id: str
    partition_id: str


@dataclass
class _Execution:
    partition_id: str
    schedule_id: str
    run_id: str
    action_config: ActionConfig
    max_runtime_ms: int
    user_id: str
    session_id: str | None = None
    token: CancellationToken = field(default_factory=CancellationToken)
    deadline: Deadline | None = None
    started: bool = False


class SchedulerService:
    """Ticking coordinator for every registered partition.

    Example:
        >>> stores = StoreManager(in_memory=True)
        >>> registry = ActionRegistry()
        >>> register_builtin_actions(registry, stores)
        >>> service = SchedulerService(stores, registry, interval_seconds=30.0)
        >>> service.start()
        >>> ack = service.trigger_now("prj_1", "sch_...")
        >>> service.stop()
    """

    def __init__(
        self,
        stores: StoreManager,
        registry: ActionRegistry,
        *,
        backend: SchedulerBackend | None = None,
        pool: WorkerPool | None = None,
        guard: ScheduleGuard | None = None,
        interval_seconds: float = 30.0,
        max_workers: int = 4,
        system_user_id: str = SYSTEM_USER_ID,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.stores = stores
        self.registry = registry
        self.backend = backend or ThreadSchedulerBackend()
        self.pool = pool or WorkerPool(max_workers=max_workers)
        self.guard = guard or ScheduleGuard()
        self.interval = interval_seconds
        self.system_user_id = system_user_id
        self._clock = clock

        self._stats = SchedulerStats()
        self._executions: dict[str, _Execution] = {}
        self._state = threading.Condition()
        self._running = False

    # === Lifecycle ===

    def start(self) -> None:
        """Close orphaned runs and begin ticking (first tick fires at once)."""
        if self._running:
            logger.warning("scheduler_already_running")
            return

        for partition in self.stores.list_partitions():
            try:
                RunTracker(self.stores.get(partition.id)).fail_orphaned(now=self._clock())
            except CadenceError as e:
                logger.error("orphan_recovery_failed", partition_id=partition.id, **e.to_dict())

        logger.info(
            "scheduler_starting",
            backend=self.backend.name,
            interval_seconds=self.interval,
            max_workers=self.pool.max_workers,
        )
        self.backend.start(self._tick, self.interval, run_immediately=True)
        self._running = True

    def stop(self, *, wait: bool = True, timeout: float | None = None) -> bool:
        """Stop ticking, signal cancellation to in-flight runs, drain the pool.

        Runs still queued behind the pool are failed with
        ``STOPPED_BEFORE_START_ERROR``.  With *wait*, blocks until executing
        runs return, for at most *timeout* seconds when given.

        Returns:
            False if runs were still executing when *timeout* elapsed.
        """
        self.backend.stop()
        self._running = False

        with self._state:
            executions = list(self._executions.values())
        for execution in executions:
            execution.token.cancel("scheduler stopping")

        self.pool.shutdown(wait=False, cancel_pending=True)

        drained = True
        if wait:
            with self._state:
                drained = self._state.wait_for(
                    lambda: not any(e.started for e in self._executions.values()),
                    timeout=timeout,
                )

        with self._state:
            never_started = [e for e in self._executions.values() if not e.started]
            for execution in never_started:
                self._executions.pop(execution.run_id, None)
            still_running = [e.run_id for e in self._executions.values()]
            self._state.notify_all()
        for execution in never_started:
            self._abandon(execution, STOPPED_BEFORE_START_ERROR)

        if not drained:
            logger.warning("scheduler_stop_timeout", timeout_seconds=timeout, still_running=still_running)
        logger.info("scheduler_stopped", abandoned=len(never_started))
        return drained

    def close(self) -> None:
        """``stop()`` and release every store handle."""
        self.stop()
        self.stores.close()

    @property
    def is_running(self) -> bool:
        return self._running

    # === Tick Processing ===

    async def _tick(self) -> None:
        """Backend entry point; see :meth:`tick`."""
        self.tick()

    def tick(self, now: datetime | None = None) -> TickReport:
        """Run one scan → dispatch → advance cycle over all partitions."""
        now = now or self._clock()
        report = TickReport(at=now)
        with self._state:
            self._stats.tick_count += 1
            self._stats.last_tick = now

        try:
            partitions = self.stores.list_partitions()
        except CadenceError as e:
            self._record_error("partition_errors", e)
            logger.error("partition_listing_failed", **e.to_dict())
            report.errors.append(e.message)
            return report

        for partition in partitions:
            try:
                self._tick_partition(partition.id, now, report)
            except Exception as e:
                self._record_error("partition_errors", e)
                logger.exception("partition_tick_failed", partition_id=partition.id)
                report.errors.append(f"{partition.id}: {e}")

        if report.dispatched or report.skipped or report.errors:
            logger.info(
                "scheduler_tick",
                dispatched=len(report.dispatched),
                skipped=len(report.skipped),
                errors=len(report.errors),
            )
        else:
            logger.debug("scheduler_tick_idle")
        return report

    def _tick_partition(self, partition_id: str, now: datetime, report: TickReport) -> None:
        store = self.stores.get(partition_id)
        schedules = ScheduleRepository(store)

        def _skip_invalid(schedule_id: str, exc: CadenceError) -> None:
            self._record_error("schedule_errors", exc)
            report.errors.append(f"{schedule_id}: {exc.message}")

        due = schedules.get_due(now, on_invalid=_skip_invalid)
        with self._state:
            self._stats.schedules_due += len(due)

        for schedule in due:
            try:
                self._process_schedule(schedule, now, report)
            except Exception as e:
                self._record_error("schedule_errors", e)
                logger.exception(
                    "schedule_tick_failed",
                    partition_id=partition_id,
                    schedule_id=schedule.id,
                )
                report.errors.append(f"{schedule.id}: {e}")

    def _process_schedule(self, schedule: Schedule, now: datetime, report: TickReport) -> None:
        store = self.stores.get(schedule.partition_id)
        schedules = ScheduleRepository(store)
        runs = RunTracker(store)
        basis = schedule.next_run_at or now

        with self.guard.hold(schedule.partition_id, schedule.id):
            run = runs.create_run_if_idle(schedule.id, basis, trigger=RunTrigger.SCHEDULE, now=now)
            if run is None:
                with self._state:
                    self._stats.skipped_overlap += 1
                report.skipped.append(schedule.id)
                logger.warning(
                    "schedule_skipped_overlap",
                    partition_id=schedule.partition_id,
                    schedule_id=schedule.id,
                    scheduled_for=to_iso8601(basis),
                )
            else:
                self._submit(schedule, run, user_id=self.system_user_id)
                with self._state:
                    self._stats.runs_dispatched += 1
                report.dispatched.append(run.id)

            next_run = schedules.advance(schedule.id, basis, now)
            logger.debug(
                "schedule_advanced",
                schedule_id=schedule.id,
                next_run_at=to_iso8601(next_run),
            )

    # === Manual Operations ===

    def trigger_now(
        self,
        partition_id: str,
        schedule_id: str,
        *,
        user_id: str | None = None,
        session_id: str | None = None,
    ) -> TriggerAck:
        """Create and dispatch a run right now, ignoring due time and exclusivity.

        ``next_run_at`` is not moved.

        Raises:
            PartitionNotFound: unknown partition
            ScheduleNotFound: unknown schedule in that partition
        """
        store = self.stores.get(partition_id)
        schedule = ScheduleRepository(store).get_or_raise(schedule_id)
        now = self._clock()

        with self.guard.hold(partition_id, schedule_id):
            run = RunTracker(store).create_run(schedule_id, now, trigger=RunTrigger.MANUAL, now=now)
            self._submit(schedule, run, user_id=user_id or self.system_user_id, session_id=session_id)

        with self._state:
            self._stats.manual_triggers += 1
        logger.info(
            "schedule_triggered",
            partition_id=partition_id,
            schedule_id=schedule_id,
            run_id=run.id,
        )
        return TriggerAck(run_id=run.id, schedule_id=schedule_id, partition_id=partition_id)

    # === Execution ===

    def _submit(
        self,
        schedule: Schedule,
        run: Run,
        *,
        user_id: str,
        session_id: str | None = None,
    ) -> None:
        execution = _Execution(
            partition_id=schedule.partition_id,
            schedule_id=schedule.id,
            run_id=run.id,
            action_config=schedule.action_config,
            max_runtime_ms=schedule.max_runtime_ms,
            user_id=user_id,
            session_id=session_id,
        )
        with self._state:
            self._executions[run.id] = execution
        try:
            self.pool.submit(self._execute, execution, name=run.id)
        except PoolClosed:
            with self._state:
                self._executions.pop(run.id, None)
                self._state.notify_all()
            self._abandon(execution, STOPPED_BEFORE_START_ERROR)
            raise

    def _execute(self, execution: _Execution) -> None:
        """Worker-thread body for one run."""
        with LogContext(
            partition_id=execution.partition_id,
            schedule_id=execution.schedule_id,
            run_id=execution.run_id,
            action_type=execution.action_config.action_type,
            action_id=execution.action_config.target,
        ):
            try:
                self._execute_run(execution)
            finally:
                with self._state:
                    self._executions.pop(execution.run_id, None)
                    self._state.notify_all()

    def _execute_run(self, execution: _Execution) -> None:
        store = self.stores.get(execution.partition_id)
        runs = RunTracker(store)

        execution.started = True
        try:
            runs.start(execution.run_id, now=self._clock())
        except (InvalidTransition, NotFoundError) as e:
            logger.warning("run_start_rejected", reason=e.message)
            return

        if execution.token.cancelled:
            self._finish(execution, error("scheduler stopping", code="cancelled"))
            return

        try:
            context = ActionContext(
                partition_id=execution.partition_id,
                partition_path=self.stores.get_partition(execution.partition_id).path,
                user_id=execution.user_id,
                session_id=execution.session_id,
                cancellation=execution.token,
                run_id=execution.run_id,
                schedule_id=execution.schedule_id,
            )
        except CadenceError as e:
            logger.error("run_context_failed", **e.to_dict())
            self._finish(execution, error(e.message, code="context_failure"))
            return

        deadline = Deadline(
            execution.max_runtime_ms / 1000.0,
            on_expire=lambda: self._on_timeout(execution),
            name=f"deadline-{execution.run_id}",
        )
        execution.deadline = deadline
        deadline.start()

        logger.info("run_started", max_runtime_ms=execution.max_runtime_ms)
        try:
            result: ActionResult = execution.action_config.invoke(self.registry, context)
        except Exception as e:
            logger.exception("action_invoke_crashed")
            result = error(str(e) or type(e).__name__, code="handler_failure")
        finally:
            deadline.cancel()

        self._finish(execution, result)

    def _finish(self, execution: _Execution, result: ActionResult) -> None:
        store = self.stores.get(execution.partition_id)
        runs = RunTracker(store)
        try:
            if isinstance(result, ActionSuccess):
                run = runs.complete(execution.run_id, output=result.output, now=self._clock())
                session_id = result.metadata.get("session_id")
                if session_id:
                    runs.attach_session(execution.run_id, str(session_id))
            else:
                run = runs.fail(execution.run_id, _error_text(result), now=self._clock())
        except InvalidTransition as e:
            with self._state:
                self._stats.late_results_discarded += 1
            logger.warning("late_result_discarded", current_status=e.current, result_type=result.type)
            return
        except NotFoundError:
            logger.warning("run_vanished_before_finish")
            return

        ScheduleRepository(store).record_outcome(
            execution.schedule_id, run.status, run.error, at=run.completed_at
        )
        with self._state:
            if run.status is RunStatus.COMPLETED:
                self._stats.runs_completed += 1
            else:
                self._stats.runs_failed += 1
        logger.info(
            "run_finished",
            status=run.status.value,
            duration_ms=run.duration_ms,
            error=run.error,
        )

    def _on_timeout(self, execution: _Execution) -> None:
        """Deadline expiry (timer thread)."""
        store = self.stores.get(execution.partition_id)
        timeout_error = RunTimeout(execution.run_id, execution.max_runtime_ms)
        try:
            run = RunTracker(store).timeout(execution.run_id, timeout_error.message, now=self._clock())
        except (InvalidTransition, NotFoundError):
            # finished (or deleted) just before the deadline
            return

        execution.token.cancel(timeout_error.message)
        ScheduleRepository(store).record_outcome(
            execution.schedule_id, RunStatus.TIMED_OUT, run.error, at=run.completed_at
        )
        with self._state:
            self._stats.runs_timed_out += 1
        logger.warning(
            "run_timed_out",
            partition_id=execution.partition_id,
            schedule_id=execution.schedule_id,
            run_id=execution.run_id,
            max_runtime_ms=execution.max_runtime_ms,
        )

    def _abandon(self, execution: _Execution, reason: str) -> None:
        """Close a run that will never execute."""
        store = self.stores.get(execution.partition_id)
        runs = RunTracker(store)
        try:
            runs.start(execution.run_id, now=self._clock())
            run = runs.fail(execution.run_id, reason, now=self._clock())
        except (InvalidTransition, NotFoundError):
            return
        ScheduleRepository(store).record_outcome(
            execution.schedule_id, RunStatus.FAILED, run.error, at=run.completed_at
        )

    # === Introspection ===

    def in_flight(self) -> list[str]:
        """Run ids currently queued or executing in this process."""
        with self._state:
            return list(self._executions)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no run is in flight; False if *timeout* elapsed first."""
        with self._state:
            return self._state.wait_for(lambda: not self._executions, timeout=timeout)

    def get_stats(self) -> SchedulerStats:
        with self._state:
            return SchedulerStats(**asdict(self._stats))

    def health(self) -> SchedulerHealth:
        backend = self.backend.health()
        try:
            partitions = len(self.stores.list_partitions())
            store_ok = True
        except CadenceError:
            partitions = 0
            store_ok = False
        return SchedulerHealth(
            healthy=self._running and bool(backend.get("healthy")) and store_ok,
            running=self._running,
            backend=backend,
            partitions=partitions,
            in_flight=len(self.in_flight()),
            stats=self.get_stats(),
        )

    def _record_error(self, counter: str, exc: BaseException) -> None:
        with self._state:
            setattr(self._stats, counter, getattr(self._stats, counter) + 1)
            self._stats.last_error = str(exc)


def _error_text(result: ActionError) -> str:
    return result.message or "action failed"


__all__ = [
    "SchedulerService",
    "SchedulerStats",
    "SchedulerHealth",
    "TickReport",
    "TriggerAck",
    "STOPPED_BEFORE_START_ERROR",
]
