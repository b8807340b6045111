"""Run tracker - execution attempts of schedules and their lifecycle.

A run is created ``pending``, moves to ``running`` when a worker picks it
up, and ends in exactly one of ``completed``, ``failed`` or ``timed_out``.
Every transition is a conditional ``UPDATE ... WHERE status = ?`` so two
racing writers (a worker returning late and the deadline timer) cannot
both win: the loser gets :class:`~cadence.core.errors.InvalidTransition`.

Timestamps follow the status: ``started_at`` is set once the run leaves
``pending``; ``completed_at`` is set once it is terminal.

Tags:
    cadence, scheduling, runs, state-machine, repository
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from cadence.core.errors import RunNotFound
from cadence.core.logging import get_logger
from cadence.core.models import (
    ACTIVE_STATUSES,
    Run,
    RunStatus,
    RunTrigger,
    validate_run_transition,
)
from cadence.core.repository import BaseRepository
from cadence.core.timestamps import from_iso8601, generate_id, to_iso8601, utc_now

logger = get_logger(__name__)

_ACTIVE = tuple(status.value for status in ACTIVE_STATUSES)
ORPHANED_RUN_ERROR = "interrupted: engine restarted before the run finished"


class RunTracker(BaseRepository):
    """Runs of one partition.

    Example:
        >>> tracker = RunTracker(stores.get("prj_1"))
        >>> run = tracker.create_run_if_idle(schedule.id, schedule.next_run_at)
        >>> if run is not None:
        ...     tracker.start(run.id)
        ...     tracker.complete(run.id, output="ok")
    """

    # === Creation ===

    def create_run(
        self,
        schedule_id: str,
        scheduled_for: datetime,
        *,
        trigger: RunTrigger = RunTrigger.SCHEDULE,
        now: datetime | None = None,
    ) -> Run:
        """Create a ``pending`` run unconditionally."""
        run_id = generate_id("run")
        self.insert("schedule_runs", {
            "id": run_id,
            "schedule_id": schedule_id,
            "partition_id": self.partition_id,
            "status": RunStatus.PENDING.value,
            "trigger": trigger.value,
            "scheduled_for": to_iso8601(scheduled_for),
            "created_at": to_iso8601(now or utc_now()),
        })
        return self.get_or_raise(run_id)

    def create_run_if_idle(
        self,
        schedule_id: str,
        scheduled_for: datetime,
        *,
        trigger: RunTrigger = RunTrigger.SCHEDULE,
        now: datetime | None = None,
    ) -> Run | None:
        """Create a run only if the schedule has no non-terminal run.

        The check and the insert share one store transaction, so concurrent
        callers on the same partition cannot both succeed.  Returns ``None``
        when an active run already exists.
        """
        with self.store.transaction():
            active = self.get_active_run(schedule_id)
            if active is not None:
                logger.debug(
                    "run_create_skipped_active",
                    schedule_id=schedule_id,
                    active_run_id=active.id,
                )
                return None
            return self.create_run(schedule_id, scheduled_for, trigger=trigger, now=now)

    # === Reads ===

    def get(self, run_id: str) -> Run | None:
        row = self.query_one("SELECT * FROM schedule_runs WHERE id = ?", (run_id,))
        return _row_to_run(row) if row else None

    def get_or_raise(self, run_id: str) -> Run:
        run = self.get(run_id)
        if run is None:
            raise RunNotFound(run_id, context={"partition_id": self.partition_id})
        return run

    def get_active_run(self, schedule_id: str) -> Run | None:
        """Most recent non-terminal run of *schedule_id*, if any."""
        row = self.query_one(
            "SELECT * FROM schedule_runs "
            f"WHERE schedule_id = ? AND status IN ({self.ph(len(_ACTIVE))}) "
            "ORDER BY scheduled_for DESC, created_at DESC LIMIT 1",
            (schedule_id, *_ACTIVE),
        )
        return _row_to_run(row) if row else None

    def list_runs(
        self,
        schedule_id: str,
        *,
        limit: int = 20,
        offset: int = 0,
        status: RunStatus | None = None,
    ) -> list[Run]:
        """Runs of *schedule_id*, most recent ``scheduled_for`` first."""
        sql = "SELECT * FROM schedule_runs WHERE schedule_id = ?"
        params: list[Any] = [schedule_id]
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        sql += " ORDER BY scheduled_for DESC, created_at DESC, id DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        return [_row_to_run(row) for row in self.query(sql, params)]

    def list_active(self) -> list[Run]:
        rows = self.query(
            f"SELECT * FROM schedule_runs WHERE status IN ({self.ph(len(_ACTIVE))}) "
            "ORDER BY created_at",
            _ACTIVE,
        )
        return [_row_to_run(row) for row in rows]

    # === Transitions ===

    def start(self, run_id: str, *, now: datetime | None = None) -> Run:
        """``pending → running``."""
        return self._transition(
            run_id,
            RunStatus.RUNNING,
            {"started_at": to_iso8601(now or utc_now())},
        )

    def complete(self, run_id: str, output: str | None = None, *, now: datetime | None = None) -> Run:
        """``running → completed``."""
        return self._transition(
            run_id,
            RunStatus.COMPLETED,
            {"completed_at": to_iso8601(now or utc_now()), "output": output},
        )

    def fail(self, run_id: str, error: str, *, now: datetime | None = None) -> Run:
        """``running → failed``."""
        return self._transition(
            run_id,
            RunStatus.FAILED,
            {"completed_at": to_iso8601(now or utc_now()), "error": error},
        )

    def timeout(self, run_id: str, error: str, *, now: datetime | None = None) -> Run:
        """``running → timed_out``."""
        return self._transition(
            run_id,
            RunStatus.TIMED_OUT,
            {"completed_at": to_iso8601(now or utc_now()), "error": error},
        )

    def attach_session(self, run_id: str, session_id: str) -> None:
        """Record the conversational session an action worked in."""
        if self.execute(
            "UPDATE schedule_runs SET session_id = ? WHERE id = ?", (session_id, run_id)
        ) == 0:
            raise RunNotFound(run_id, context={"partition_id": self.partition_id})

    def fail_orphaned(self, *, now: datetime | None = None) -> int:
        """Fail every non-terminal run (left over from a previous process).

        Returns the number of runs closed.
        """
        stamp = to_iso8601(now or utc_now())
        count = self.execute(
            "UPDATE schedule_runs SET status = ?, error = ?, completed_at = ?, "
            "started_at = COALESCE(started_at, ?) "
            f"WHERE status IN ({self.ph(len(_ACTIVE))})",
            (RunStatus.FAILED.value, ORPHANED_RUN_ERROR, stamp, stamp, *_ACTIVE),
        )
        if count:
            logger.warning("orphaned_runs_failed", partition_id=self.partition_id, count=count)
        return count

    def _transition(self, run_id: str, target: RunStatus, data: dict[str, Any]) -> Run:
        with self.store.transaction():
            current = self.get_or_raise(run_id)
            validate_run_transition(run_id, current.status, target)
            self.update_where(
                "schedule_runs",
                {"status": target.value, **data},
                "id = ? AND status = ?",
                (run_id, current.status.value),
            )
        return self.get_or_raise(run_id)


def _row_to_run(row: dict[str, Any]) -> Run:
    return Run(
        id=row["id"],
        schedule_id=row["schedule_id"],
        partition_id=row["partition_id"],
        status=RunStatus(row["status"]),
        trigger=RunTrigger(row["trigger"]),
        scheduled_for=from_iso8601(row["scheduled_for"]),  # type: ignore[arg-type]
        created_at=from_iso8601(row["created_at"]),  # type: ignore[arg-type]
        started_at=from_iso8601(row["started_at"]),
        completed_at=from_iso8601(row["completed_at"]),
        output=row["output"],
        error=row["error"],
        session_id=row["session_id"],
    )


__all__ = ["RunTracker", "ORPHANED_RUN_ERROR"]
