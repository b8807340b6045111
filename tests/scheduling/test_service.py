"""
Tests for SchedulerService: tick dispatch, exclusivity, timeouts,
manual triggers and failure isolation.

Ticks are driven explicitly with ``service.tick(now=...)`` so due-ness is
deterministic; actions run on the real worker pool.
"""

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta

import pytest

from cadence.actions.types import success
from cadence.core.errors import PartitionNotFound, ScheduleNotFound, StoreFailure
from cadence.core.models import ACTION_CONFIG_TYPES, ActionConfig, RunStatus, RunTrigger
from cadence.core.sessions import SessionRepository
from cadence.core.settings import SYSTEM_USER_ID
from cadence.scheduling.guard import ScheduleGuard
from cadence.scheduling.runs import ORPHANED_RUN_ERROR
from cadence.scheduling.service import STOPPED_BEFORE_START_ERROR, SchedulerService


def _due(schedules, schedule_id):
    return schedules.get(schedule_id).next_run_at


@dataclass(frozen=True)
class WorkflowConfig(ActionConfig):
    """Descriptor kind with its own invocation."""

    action_type: str = "workflow"

    def invoke(self, registry, context):
        steps = self.action_params.get("steps", 1)
        return success(f"workflow {self.action_id} ran {steps} step(s)")


class RecordingGuard(ScheduleGuard):
    """ScheduleGuard that records every hold and the peak number of holders."""

    def __init__(self) -> None:
        super().__init__()
        self.holds: list[tuple[str, str]] = []
        self.peak = 0
        self._inside = 0
        self._counter = threading.Lock()

    @contextmanager
    def hold(self, partition_id, schedule_id):
        with super().hold(partition_id, schedule_id):
            with self._counter:
                self.holds.append((partition_id, schedule_id))
                self._inside += 1
                self.peak = max(self.peak, self._inside)
            try:
                time.sleep(0.01)
                yield
            finally:
                with self._counter:
                    self._inside -= 1


class TestTickDispatch:
    """A due schedule becomes exactly one run and its next_run_at advances."""

    def test_due_schedule_runs_to_completion(self, service, schedules, runs, make_schedule, recorder):
        schedule = make_schedule("test.ok", params={"output": "hello"})
        due_at = schedule.next_run_at

        report = service.tick(now=due_at)
        assert len(report.dispatched) == 1
        assert service.wait_idle(5)

        run = runs.get(report.dispatched[0])
        assert run.status is RunStatus.COMPLETED
        assert run.output == "hello"
        assert run.trigger is RunTrigger.SCHEDULE
        assert run.scheduled_for == due_at
        assert run.started_at is not None and run.completed_at is not None

        updated = schedules.get(schedule.id)
        assert updated.next_run_at == due_at + timedelta(hours=1)
        assert updated.last_run_status is RunStatus.COMPLETED

        ctx = recorder.calls[0]
        assert ctx.user_id == SYSTEM_USER_ID
        assert ctx.partition_path == "/srv/projects/test"
        assert ctx.run_id == run.id
        assert ctx.schedule_id == schedule.id

    def test_not_yet_due(self, service, make_schedule):
        schedule = make_schedule()
        report = service.tick(now=schedule.next_run_at - timedelta(seconds=1))
        assert report.dispatched == [] and report.skipped == []

    def test_disabled_schedule_never_runs(self, service, schedules, runs, make_schedule):
        schedule = make_schedule(enabled=False)
        service.tick(now=schedule.created_at + timedelta(days=1))
        assert runs.list_runs(schedule.id) == []

    def test_one_run_per_tick_after_stall(self, service, schedules, runs, make_schedule):
        """Missed fires are dropped: one run, next_run_at moves past now."""
        schedule = make_schedule(cron="0 * * * *")
        late = schedule.next_run_at + timedelta(hours=6, minutes=30)

        report = service.tick(now=late)
        service.wait_idle(5)

        assert len(report.dispatched) == 1
        assert len(runs.list_runs(schedule.id)) == 1
        assert _due(schedules, schedule.id) > late

    def test_handler_error_fails_run(self, service, schedules, runs, make_schedule):
        schedule = make_schedule("test.fail", params={"message": "disk full"})
        report = service.tick(now=schedule.next_run_at)
        service.wait_idle(5)

        run = runs.get(report.dispatched[0])
        assert run.status is RunStatus.FAILED
        assert run.error == "disk full"
        assert schedules.get(schedule.id).last_run_error == "disk full"

    def test_handler_exception_fails_run(self, service, runs, make_schedule):
        schedule = make_schedule("test.raise")
        report = service.tick(now=schedule.next_run_at)
        service.wait_idle(5)

        run = runs.get(report.dispatched[0])
        assert run.status is RunStatus.FAILED
        assert "handler exploded" in run.error

    def test_unknown_action_fails_run_and_loop_continues(self, service, runs, make_schedule):
        broken = make_schedule("nonexistent.action", name="broken")
        healthy = make_schedule("test.ok", name="healthy")

        report = service.tick(now=broken.next_run_at)
        service.wait_idle(5)

        assert len(report.dispatched) == 2
        broken_run = runs.list_runs(broken.id)[0]
        assert broken_run.status is RunStatus.FAILED
        assert "not found" in broken_run.error
        assert runs.list_runs(healthy.id)[0].status is RunStatus.COMPLETED
        assert service.get_stats().runs_failed == 1


class TestOverlap:
    """At most one scheduled run per schedule is active at a time."""

    def test_skip_while_active_still_advances(self, service, schedules, runs, make_schedule, recorder, wait):
        schedule = make_schedule("test.block")
        first_due = schedule.next_run_at

        first = service.tick(now=first_due)
        wait(recorder.entered.is_set)

        second_due = _due(schedules, schedule.id)
        second = service.tick(now=second_due)

        assert second.dispatched == []
        assert second.skipped == [schedule.id]
        assert _due(schedules, schedule.id) == second_due + timedelta(hours=1)
        assert [r.id for r in runs.list_runs(schedule.id)] == first.dispatched
        assert service.get_stats().skipped_overlap == 1

        recorder.release.set()
        service.wait_idle(5)
        assert runs.get(first.dispatched[0]).status is RunStatus.COMPLETED

    def test_pending_run_also_blocks(self, service, runs, make_schedule):
        schedule = make_schedule()
        runs.create_run(schedule.id, schedule.next_run_at)

        report = service.tick(now=schedule.next_run_at)
        assert report.skipped == [schedule.id]


class TestTriggerNow:
    """Manual dispatch ignores due time and exclusivity."""

    def test_trigger_creates_manual_run(self, service, schedules, runs, make_schedule, partition_id, recorder):
        schedule = make_schedule(params={"output": "manual"})

        ack = service.trigger_now(partition_id, schedule.id, user_id="user_42", session_id="ses_9")
        assert ack.schedule_id == schedule.id
        assert ack.partition_id == partition_id
        service.wait_idle(5)

        run = runs.get(ack.run_id)
        assert run.trigger is RunTrigger.MANUAL
        assert run.status is RunStatus.COMPLETED
        assert recorder.calls[0].user_id == "user_42"
        assert recorder.calls[0].session_id == "ses_9"
        assert schedules.get(schedule.id).next_run_at == schedule.next_run_at
        assert service.get_stats().manual_triggers == 1

    def test_trigger_while_running_creates_second_run(
        self, service, runs, make_schedule, partition_id, recorder, wait
    ):
        schedule = make_schedule("test.block")
        service.tick(now=schedule.next_run_at)
        wait(recorder.entered.is_set)

        ack = service.trigger_now(partition_id, schedule.id)
        wait(lambda: len(recorder.calls) == 2)
        assert len(runs.list_active()) == 2

        recorder.release.set()
        service.wait_idle(5)
        statuses = {r.id: r.status for r in runs.list_runs(schedule.id)}
        assert len(statuses) == 2
        assert statuses[ack.run_id] is RunStatus.COMPLETED

    def test_trigger_disabled_schedule(self, service, runs, make_schedule, partition_id):
        schedule = make_schedule(enabled=False)
        ack = service.trigger_now(partition_id, schedule.id)
        service.wait_idle(5)
        assert runs.get(ack.run_id).status is RunStatus.COMPLETED

    def test_trigger_unknown_schedule(self, service, partition_id):
        with pytest.raises(ScheduleNotFound):
            service.trigger_now(partition_id, "sch_missing")

    def test_trigger_unknown_partition(self, service, make_schedule):
        schedule = make_schedule()
        with pytest.raises(PartitionNotFound):
            service.trigger_now("prj_missing", schedule.id)

    def test_trigger_and_tick_race_through_guard(
        self, stores, registry, backend, runs, make_schedule, partition_id
    ):
        guard = RecordingGuard()
        svc = SchedulerService(stores, registry, backend=backend, guard=guard, max_workers=2)
        schedule = make_schedule("test.ok")
        barrier = threading.Barrier(2)
        reports = []
        acks = []

        def tick():
            barrier.wait()
            reports.append(svc.tick(now=schedule.next_run_at))

        def trigger():
            barrier.wait()
            acks.append(svc.trigger_now(partition_id, schedule.id))

        threads = [threading.Thread(target=tick), threading.Thread(target=trigger)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5)
        assert svc.wait_idle(5)
        svc.stop()

        assert guard.holds == [(partition_id, schedule.id)] * 2
        assert guard.peak == 1
        report = reports[0]
        assert len(report.dispatched) + len(report.skipped) == 1
        manual = [r for r in runs.list_runs(schedule.id) if r.trigger is RunTrigger.MANUAL]
        assert [r.id for r in manual] == [acks[0].run_id]


class TestTimeouts:
    """Runs past max_runtime_ms are timed out while the handler keeps going."""

    @pytest.mark.slow
    def test_timeout_marks_run_and_cancels(self, service, schedules, runs, make_schedule, recorder, wait):
        schedule = make_schedule("test.block", max_runtime_ms=100)
        report = service.tick(now=schedule.next_run_at)
        run_id = report.dispatched[0]

        run = wait(lambda: (r := runs.get(run_id)) and r.status is RunStatus.TIMED_OUT and r)
        assert run.completed_at is not None
        assert run.error == "Execution timed out after 100ms"
        assert recorder.saw_cancellation.wait(5)

        assert service.wait_idle(5)
        final = runs.get(run_id)
        assert final.status is RunStatus.TIMED_OUT
        assert final.output is None
        assert schedules.get(schedule.id).last_run_status is RunStatus.TIMED_OUT

        stats = service.get_stats()
        assert stats.runs_timed_out == 1
        assert stats.late_results_discarded == 1
        assert stats.runs_completed == 0

    @pytest.mark.slow
    def test_next_tick_dispatches_after_timeout(self, service, schedules, runs, make_schedule, wait):
        schedule = make_schedule("test.block", max_runtime_ms=50)
        first = service.tick(now=schedule.next_run_at)
        wait(lambda: runs.get(first.dispatched[0]).status is RunStatus.TIMED_OUT)

        second = service.tick(now=_due(schedules, schedule.id))
        assert len(second.dispatched) == 1


class TestIsolation:
    """Store failures are contained to their schedule or partition."""

    def test_failing_partition_does_not_block_others(
        self, service, stores, monkeypatch, make_schedule
    ):
        stores.register_partition("prj_broken")
        schedule = make_schedule()
        real_get = stores.get

        def flaky_get(partition_id):
            if partition_id == "prj_broken":
                raise StoreFailure("disk gone", context={"partition_id": partition_id})
            return real_get(partition_id)

        monkeypatch.setattr(stores, "get", flaky_get)
        report = service.tick(now=schedule.next_run_at)
        service.wait_idle(5)

        assert len(report.dispatched) == 1
        assert any("prj_broken" in e for e in report.errors)
        assert service.get_stats().partition_errors == 1

    def test_failing_schedule_does_not_block_others(
        self, service, schedules, monkeypatch, make_schedule
    ):
        bad = make_schedule(name="bad")
        good = make_schedule(name="good")

        from cadence.scheduling import service as service_module

        real_advance = service_module.ScheduleRepository.advance

        def advance(self, schedule_id, basis, now):
            if schedule_id == bad.id:
                raise StoreFailure("write failed")
            return real_advance(self, schedule_id, basis, now)

        monkeypatch.setattr(service_module.ScheduleRepository, "advance", advance)
        report = service.tick(now=bad.next_run_at)
        service.wait_idle(5)

        assert len(report.dispatched) == 2
        assert len(report.errors) == 1
        assert _due(schedules, good.id) > good.next_run_at
        assert service.get_stats().schedule_errors == 1

    @pytest.mark.parametrize(
        ("column", "value"),
        [("action_type", "workflow"), ("action_config", "{not json")],
        ids=["unknown-action-type", "corrupt-action-config"],
    )
    def test_undecodable_schedule_does_not_block_others(
        self, service, store, schedules, runs, make_schedule, column, value
    ):
        bad = make_schedule(name="bad")
        good = make_schedule(name="good")
        store.execute(f"UPDATE schedules SET {column} = ? WHERE id = ?", (value, bad.id))

        report = service.tick(now=good.next_run_at)
        assert service.wait_idle(5)

        assert len(report.dispatched) == 1
        assert runs.get(report.dispatched[0]).schedule_id == good.id
        assert runs.get(report.dispatched[0]).status is RunStatus.COMPLETED
        assert runs.list_runs(bad.id) == []
        assert len(report.errors) == 1 and report.errors[0].startswith(bad.id)
        assert service.get_stats().schedule_errors == 1
        assert _due(schedules, good.id) > good.next_run_at

    def test_context_failure_fails_run_without_timeout(
        self, service, stores, schedules, runs, make_schedule, partition_id, monkeypatch
    ):
        schedule = make_schedule("test.ok", max_runtime_ms=60_000)

        def broken_get_partition(pid):
            raise StoreFailure("root store unavailable", context={"partition_id": pid})

        monkeypatch.setattr(stores, "get_partition", broken_get_partition)
        ack = service.trigger_now(partition_id, schedule.id)
        assert service.wait_idle(5)

        run = runs.get(ack.run_id)
        assert run.status is RunStatus.FAILED
        assert run.error == "root store unavailable"
        assert schedules.get(schedule.id).last_run_status is RunStatus.FAILED
        assert runs.get_active_run(schedule.id) is None
        assert service.get_stats().runs_timed_out == 0


class TestHeartbeatIntegration:
    def test_heartbeat_run_records_session(self, service, stores, runs, make_schedule, partition_id):
        schedule = make_schedule("heartbeat", params={"message": "status please"})
        report = service.tick(now=schedule.next_run_at)
        service.wait_idle(5)

        run = runs.get(report.dispatched[0])
        assert run.status is RunStatus.COMPLETED
        assert run.session_id is not None

        sessions = SessionRepository(stores.get(partition_id))
        messages = sessions.list_messages(run.session_id)
        assert [(m.role, m.content) for m in messages] == [("user", "status please")]
        assert sessions.get_session(run.session_id).created_by == SYSTEM_USER_ID

    def test_heartbeat_invalid_params_fail_run(self, service, runs, make_schedule):
        schedule = make_schedule("heartbeat", params={"message": ""})
        report = service.tick(now=schedule.next_run_at)
        service.wait_idle(5)

        run = runs.get(report.dispatched[0])
        assert run.status is RunStatus.FAILED
        assert run.error.startswith("Invalid params")


class TestActionKinds:
    """Descriptor kinds other than ``action`` run without scheduler changes."""

    def test_registered_kind_is_invoked(self, service, store, runs, make_schedule, monkeypatch):
        monkeypatch.setitem(ACTION_CONFIG_TYPES, "workflow", WorkflowConfig)
        schedule = make_schedule(params={"steps": 3})
        store.execute("UPDATE schedules SET action_type = ? WHERE id = ?", ("workflow", schedule.id))

        report = service.tick(now=schedule.next_run_at)
        assert service.wait_idle(5)

        run = runs.get(report.dispatched[0])
        assert run.status is RunStatus.COMPLETED
        assert run.output == "workflow test.ok ran 3 step(s)"


class TestLifecycle:
    def test_start_and_stop(self, service, backend):
        service.start()
        assert service.is_running
        assert backend.started == 1
        assert backend.interval == 0.05

        service.start()
        assert backend.started == 1

        service.stop()
        assert not service.is_running
        assert backend.stopped == 1

    def test_backend_tick_dispatches(self, service, schedules, runs, make_schedule, backend):
        schedule = make_schedule()
        schedules.update(schedule.id, {"cronExpression": "* * * * *"}, now=schedule.created_at)
        service.start()
        backend.fire()
        service.wait_idle(5)
        assert len(runs.list_runs(schedule.id)) == 1
        assert service.get_stats().tick_count == 1

    def test_start_fails_orphaned_runs(self, service, runs, make_schedule):
        schedule = make_schedule()
        orphan = runs.create_run(schedule.id, schedule.next_run_at)
        runs.start(orphan.id)

        service.start()
        run = runs.get(orphan.id)
        assert run.status is RunStatus.FAILED
        assert run.error == ORPHANED_RUN_ERROR

    def test_stop_abandons_queued_runs(self, stores, registry, backend, runs, make_schedule, partition_id, recorder, wait):
        svc = SchedulerService(stores, registry, backend=backend, max_workers=1)
        blocker = make_schedule("test.block", name="blocker")
        queued = make_schedule("test.ok", name="queued")

        first = svc.trigger_now(partition_id, blocker.id)
        wait(recorder.entered.is_set)
        second = svc.trigger_now(partition_id, queued.id)

        svc.stop()

        assert runs.get(first.run_id).is_terminal
        abandoned = runs.get(second.run_id)
        assert abandoned.status is RunStatus.FAILED
        assert abandoned.error in (STOPPED_BEFORE_START_ERROR, "scheduler stopping")
        assert svc.in_flight() == []

    def test_stop_timeout_leaves_unresponsive_run(self, service, make_schedule, partition_id, recorder, wait):
        schedule = make_schedule("test.stubborn")
        service.trigger_now(partition_id, schedule.id)
        wait(recorder.entered.is_set)

        started = time.monotonic()
        assert service.stop(timeout=0.1) is False
        assert time.monotonic() - started < 2
        assert len(service.in_flight()) == 1

        recorder.release.set()
        assert service.wait_idle(5)

    def test_stop_reports_drained(self, service, make_schedule, partition_id, recorder, wait):
        schedule = make_schedule("test.block")
        service.trigger_now(partition_id, schedule.id)
        wait(recorder.entered.is_set)

        assert service.stop(timeout=5) is True
        assert recorder.saw_cancellation.is_set()
        assert service.in_flight() == []

    def test_health(self, service):
        assert service.health().healthy is False
        service.start()
        health = service.health()
        assert health.healthy is True
        assert health.partitions == 1
        data = health.to_dict()
        assert data["stats"]["tick_count"] == 0
        assert data["backend"]["backend"] == "manual"


class TestAsyncEntryPoint:
    @pytest.mark.asyncio
    async def test_tick_coroutine(self, service, schedules, runs, make_schedule):
        schedule = make_schedule()
        schedules.update(schedule.id, {"cronExpression": "* * * * *"}, now=schedule.created_at)

        await service._tick()
        assert service.wait_idle(5)
        assert runs.list_runs(schedule.id)[0].status is RunStatus.COMPLETED
