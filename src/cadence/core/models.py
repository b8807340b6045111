"""Engine data models: schedules, runs, and the action descriptor.

Manifesto:
    Schedules and runs are read far more often than they are written, by
    the loop, the CLI and tests alike.  Typed dataclasses with aware UTC
    datetimes keep every caller away from raw rows and ISO strings.

Tags:
    cadence, models, scheduling, dataclasses, state-machine

Doc-Types:
    api-reference, data-model
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from cadence.core.errors import InvalidTransition, ValidationError

if TYPE_CHECKING:
    from cadence.actions.registry import ActionRegistry
    from cadence.actions.types import ActionContext, ActionResult


# ---------------------------------------------------------------------------
# Run status state machine
# ---------------------------------------------------------------------------


class RunStatus(str, Enum):
    """Run lifecycle status.

    Valid transition graph::

        PENDING   → RUNNING
        RUNNING   → COMPLETED | FAILED | TIMED_OUT
        COMPLETED → (terminal)
        FAILED    → (terminal)
        TIMED_OUT → (terminal)
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: frozenset[RunStatus] = frozenset({
    RunStatus.COMPLETED,
    RunStatus.FAILED,
    RunStatus.TIMED_OUT,
})

ACTIVE_STATUSES: frozenset[RunStatus] = frozenset({
    RunStatus.PENDING,
    RunStatus.RUNNING,
})

RUN_VALID_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.RUNNING}),
    RunStatus.RUNNING: frozenset({
        RunStatus.COMPLETED,
        RunStatus.FAILED,
        RunStatus.TIMED_OUT,
    }),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.TIMED_OUT: frozenset(),
}


def validate_run_transition(run_id: str, current: RunStatus, target: RunStatus) -> None:
    """Raise :class:`InvalidTransition` if *current → target* is illegal.

    Example:
        >>> validate_run_transition("run_1", RunStatus.RUNNING, RunStatus.COMPLETED)
        >>> validate_run_transition("run_1", RunStatus.COMPLETED, RunStatus.FAILED)
        InvalidTransition: Invalid run transition for run_1: completed -> failed
    """
    if target not in RUN_VALID_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransition(run_id, current.value, target.value)


class RunTrigger(str, Enum):
    """Which entry point created a run."""

    SCHEDULE = "schedule"
    MANUAL = "manual"


# ---------------------------------------------------------------------------
# Action descriptor (tagged variant)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ActionConfig:
    """``action_type == "action"``: invoke a registered action by id."""

    action_id: str
    action_params: dict[str, Any] = field(default_factory=dict)
    action_type: str = "action"

    def to_dict(self) -> dict[str, Any]:
        return {"action_id": self.action_id, "action_params": dict(self.action_params)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ActionConfig:
        return cls(
            action_id=data["action_id"],
            action_params=dict(data.get("action_params") or {}),
        )

    @property
    def target(self) -> str:
        """What this descriptor runs, as shown in logs."""
        return self.action_id

    def invoke(self, registry: ActionRegistry, context: ActionContext) -> ActionResult:
        """Execute the descriptor.

        Other kinds subclass :class:`ActionConfig`, override this (and
        ``from_dict``/``to_dict``) and add themselves to
        ``ACTION_CONFIG_TYPES``; the scheduler only calls ``invoke``.
        """
        return registry.execute(self.action_id, self.action_params, context)


# New descriptor kinds register here; the scheduler only sees the tag.
ACTION_CONFIG_TYPES: dict[str, type[ActionConfig]] = {
    "action": ActionConfig,
}


def parse_action_config(action_type: str, data: dict[str, Any]) -> ActionConfig:
    """Build the descriptor variant for *action_type* from its stored dict."""
    config_cls = ACTION_CONFIG_TYPES.get(action_type)
    if config_cls is None:
        raise ValidationError(
            f"Unknown action type: {action_type!r}",
            context={"action_type": action_type},
        )
    return config_cls.from_dict(data)


# ---------------------------------------------------------------------------
# Schedule / Run
# ---------------------------------------------------------------------------


@dataclass
class Schedule:
    """A persisted recurring trigger definition."""

    id: str
    partition_id: str
    name: str
    action_config: ActionConfig
    cron_expression: str
    timezone: str
    enabled: bool
    next_run_at: datetime | None
    max_runtime_ms: int
    created_by: str
    created_at: datetime
    updated_at: datetime
    description: str | None = None
    last_run_at: datetime | None = None
    last_run_status: RunStatus | None = None
    last_run_error: str | None = None

    @property
    def action_type(self) -> str:
        return self.action_config.action_type

    @property
    def action_id(self) -> str:
        return self.action_config.action_id

    @property
    def action_params(self) -> dict[str, Any]:
        return self.action_config.action_params


@dataclass
class Run:
    """One concrete execution attempt of a schedule's action."""

    id: str
    schedule_id: str
    partition_id: str
    status: RunStatus
    scheduled_for: datetime
    created_at: datetime
    trigger: RunTrigger = RunTrigger.SCHEDULE
    started_at: datetime | None = None
    completed_at: datetime | None = None
    output: str | None = None
    error: str | None = None
    session_id: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration_ms(self) -> int | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at).total_seconds() * 1000)


__all__ = [
    "RunStatus",
    "RunTrigger",
    "TERMINAL_STATUSES",
    "ACTIVE_STATUSES",
    "RUN_VALID_TRANSITIONS",
    "validate_run_transition",
    "ActionConfig",
    "ACTION_CONFIG_TYPES",
    "parse_action_config",
    "Schedule",
    "Run",
]
