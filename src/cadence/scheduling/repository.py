"""Schedule store - partition-scoped CRUD plus next-run bookkeeping.

Manifesto:
    Schedule persistence and next-run computation are data operations
    that belong in a repository, not in the scheduler loop.  Every write
    that can change when a schedule fires (cron, timezone, enabled)
    recomputes ``next_run_at`` here, so the invariant "next_run_at is set
    iff enabled" holds no matter which caller made the change.

Tags:
    cadence, scheduling, repository, CRUD, cron, pydantic

Doc-Types:
    api-reference, architecture-diagram


┌──────────────────────────────────────────────────────────────────────────────┐
│  SCHEDULE REPOSITORY                                                          │
│                                                                               │
│   CRUD:                                                                       │
│   ├── create(payload) → Schedule        (InvalidCronExpression → not stored)  │
│   ├── get(id) / get_or_raise(id)                                              │
│   ├── list(limit, offset, enabled_only) / count(enabled_only)                 │
│   ├── update(id, payload)              (recomputes next_run_at)               │
│   ├── enable(id) / disable(id)                                                │
│   └── delete(id) → bool                (runs cascade)                         │
│                                                                               │
│   Scheduling:                                                                 │
│   ├── get_due(now) → [Schedule]        enabled AND next_run_at <= now         │
│   ├── advance(id, basis, now)          next fire after basis, or after now    │
│   │                                    when that is already in the past       │
│   └── record_outcome(id, status, error)                                       │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime
from typing import Any, Literal

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator

from cadence.core.errors import ScheduleNotFound, ValidationError
from cadence.core.logging import get_logger
from cadence.core.models import ActionConfig, RunStatus, Schedule, parse_action_config
from cadence.core.repository import BaseRepository
from cadence.core.settings import SYSTEM_USER_ID
from cadence.core.timestamps import from_iso8601, generate_id, to_iso8601, utc_now
from cadence.scheduling.cron import next_fire_time, resolve_timezone, validate_cron_expression

logger = get_logger(__name__)

DEFAULT_MAX_RUNTIME_MS = 3_600_000
MAX_RUNTIME_LIMIT_MS = 86_400_000


# ---------------------------------------------------------------------------
# Create/Update payloads
# ---------------------------------------------------------------------------


class ActionConfigPayload(BaseModel):
    """``actionConfig`` of the creation payload."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    action_id: str = Field(alias="actionId", min_length=1, max_length=200)
    action_params: dict[str, Any] = Field(default_factory=dict, alias="actionParams")

    def to_config(self, action_type: str) -> ActionConfig:
        return parse_action_config(action_type, self.model_dump())


def _check_timezone(value: str) -> str:
    try:
        resolve_timezone(value)
    except ValidationError as e:
        raise ValueError(e.message) from e
    return value


class ScheduleCreate(BaseModel):
    """Creation payload; accepts camelCase keys or snake_case names."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    action_type: Literal["action"] = Field(default="action", alias="actionType")
    action_config: ActionConfigPayload = Field(alias="actionConfig")
    cron_expression: str = Field(alias="cronExpression", min_length=1, max_length=100)
    timezone: str = Field(default="UTC", min_length=1, max_length=50)
    enabled: bool = True
    max_runtime_ms: int = Field(
        default=DEFAULT_MAX_RUNTIME_MS, ge=1, le=MAX_RUNTIME_LIMIT_MS, alias="maxRuntimeMs"
    )

    @field_validator("timezone")
    @classmethod
    def _timezone(cls, value: str) -> str:
        return _check_timezone(value)


class ScheduleUpdate(BaseModel):
    """Partial update; only fields that were supplied are applied."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    action_config: ActionConfigPayload | None = Field(default=None, alias="actionConfig")
    cron_expression: str | None = Field(
        default=None, alias="cronExpression", min_length=1, max_length=100
    )
    timezone: str | None = Field(default=None, min_length=1, max_length=50)
    enabled: bool | None = None
    max_runtime_ms: int | None = Field(
        default=None, ge=1, le=MAX_RUNTIME_LIMIT_MS, alias="maxRuntimeMs"
    )

    @field_validator("timezone")
    @classmethod
    def _timezone(cls, value: str | None) -> str | None:
        return None if value is None else _check_timezone(value)


def parse_payload(model: type[BaseModel], data: BaseModel | dict[str, Any]) -> Any:
    """Validate *data* into *model*, wrapping pydantic errors as ``ValidationError``."""
    if isinstance(data, model):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump(by_alias=True, exclude_unset=True)
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as e:
        fields = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
        raise ValidationError(
            f"Invalid {model.__name__} payload: {', '.join(fields)}",
            context={"fields": fields},
            cause=e,
        ) from e


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class ScheduleRepository(BaseRepository):
    """Schedules of one partition.

    Example:
        >>> repo = ScheduleRepository(stores.get("prj_1"))
        >>> schedule = repo.create({
        ...     "name": "morning check-in",
        ...     "actionConfig": {"actionId": "heartbeat"},
        ...     "cronExpression": "0 8,10,12 * * *",
        ...     "timezone": "America/Los_Angeles",
        ... })
        >>> due = repo.get_due(utc_now())
    """

    # === CRUD Operations ===

    def create(
        self,
        payload: ScheduleCreate | dict[str, Any],
        *,
        created_by: str = SYSTEM_USER_ID,
        now: datetime | None = None,
    ) -> Schedule:
        """Validate and persist a schedule, computing its first ``next_run_at``.

        Raises:
            InvalidCronExpression: the cron expression is rejected (nothing stored)
            ValidationError: any other payload field is invalid
        """
        data: ScheduleCreate = parse_payload(ScheduleCreate, payload)
        validate_cron_expression(data.cron_expression)
        config = data.action_config.to_config(data.action_type)

        now = now or utc_now()
        next_run = next_fire_time(data.cron_expression, data.timezone, now) if data.enabled else None
        schedule_id = generate_id("sch")
        stamp = to_iso8601(now)

        self.insert("schedules", {
            "id": schedule_id,
            "partition_id": self.partition_id,
            "name": data.name,
            "description": data.description,
            "action_type": config.action_type,
            "action_config": json.dumps(config.to_dict()),
            "cron_expression": data.cron_expression,
            "timezone": data.timezone,
            "enabled": 1 if data.enabled else 0,
            "next_run_at": to_iso8601(next_run),
            "max_runtime_ms": data.max_runtime_ms,
            "created_by": created_by,
            "created_at": stamp,
            "updated_at": stamp,
        })
        logger.info(
            "schedule_created",
            partition_id=self.partition_id,
            schedule_id=schedule_id,
            cron=data.cron_expression,
            timezone=data.timezone,
            next_run_at=to_iso8601(next_run),
        )
        return self.get_or_raise(schedule_id)

    def get(self, schedule_id: str) -> Schedule | None:
        row = self.query_one("SELECT * FROM schedules WHERE id = ?", (schedule_id,))
        return _row_to_schedule(row) if row else None

    def get_or_raise(self, schedule_id: str) -> Schedule:
        schedule = self.get(schedule_id)
        if schedule is None:
            raise ScheduleNotFound(schedule_id, context={"partition_id": self.partition_id})
        return schedule

    def list(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        enabled_only: bool = False,
    ) -> list[Schedule]:
        where = "WHERE enabled = 1" if enabled_only else ""
        rows = self.query(
            f"SELECT * FROM schedules {where} ORDER BY created_at DESC, id DESC "
            "LIMIT ? OFFSET ?",
            (limit, offset),
        )
        return [_row_to_schedule(row) for row in rows]

    def count(self, *, enabled_only: bool = False) -> int:
        where = "WHERE enabled = 1" if enabled_only else ""
        row = self.query_one(f"SELECT COUNT(*) AS n FROM schedules {where}")
        return row["n"] if row else 0

    def update(
        self,
        schedule_id: str,
        payload: ScheduleUpdate | dict[str, Any],
        *,
        now: datetime | None = None,
    ) -> Schedule:
        """Apply a partial update.

        Changing ``cron_expression``, ``timezone`` or ``enabled`` recomputes
        ``next_run_at`` from *now* (cleared when the result is disabled).
        """
        updates: ScheduleUpdate = parse_payload(ScheduleUpdate, payload)
        supplied = updates.model_fields_set
        now = now or utc_now()

        with self.store.transaction():
            current = self.get_or_raise(schedule_id)
            data: dict[str, Any] = {}

            if "name" in supplied and updates.name is not None:
                data["name"] = updates.name
            if "description" in supplied:
                data["description"] = updates.description
            if "action_config" in supplied and updates.action_config is not None:
                config = updates.action_config.to_config(current.action_type)
                data["action_config"] = json.dumps(config.to_dict())
            if "max_runtime_ms" in supplied and updates.max_runtime_ms is not None:
                data["max_runtime_ms"] = updates.max_runtime_ms

            cron = updates.cron_expression if updates.cron_expression is not None else current.cron_expression
            timezone = updates.timezone if updates.timezone is not None else current.timezone
            enabled = updates.enabled if updates.enabled is not None else current.enabled

            if {"cron_expression", "timezone", "enabled"} & supplied:
                validate_cron_expression(cron)
                data["cron_expression"] = cron
                data["timezone"] = timezone
                data["enabled"] = 1 if enabled else 0
                data["next_run_at"] = to_iso8601(next_fire_time(cron, timezone, now)) if enabled else None

            if data:
                data["updated_at"] = to_iso8601(now)
                self.update_where("schedules", data, "id = ?", (schedule_id,))

        logger.info(
            "schedule_updated",
            partition_id=self.partition_id,
            schedule_id=schedule_id,
            fields=sorted(supplied),
        )
        return self.get_or_raise(schedule_id)

    def enable(self, schedule_id: str, *, now: datetime | None = None) -> Schedule:
        return self.update(schedule_id, ScheduleUpdate(enabled=True), now=now)

    def disable(self, schedule_id: str) -> Schedule:
        return self.update(schedule_id, ScheduleUpdate(enabled=False))

    def delete(self, schedule_id: str) -> bool:
        """Delete a schedule and (by cascade) its runs."""
        deleted = self.execute("DELETE FROM schedules WHERE id = ?", (schedule_id,)) > 0
        if deleted:
            logger.info("schedule_deleted", partition_id=self.partition_id, schedule_id=schedule_id)
        return deleted

    # === Scheduling Operations ===

    def get_due(
        self,
        now: datetime,
        *,
        on_invalid: Callable[[str, ValidationError], None] | None = None,
    ) -> list[Schedule]:
        """Enabled schedules whose ``next_run_at`` is at or before *now*.

        A row that cannot be decoded (unknown action type, corrupt action
        config) is logged, reported to *on_invalid* and left out; the
        other due schedules are still returned.
        """
        rows = self.query(
            "SELECT * FROM schedules "
            "WHERE enabled = 1 AND next_run_at IS NOT NULL AND next_run_at <= ? "
            "ORDER BY next_run_at",
            (to_iso8601(now),),
        )
        due: list[Schedule] = []
        for row in rows:
            try:
                due.append(_decode_schedule(row))
            except ValidationError as e:
                logger.error("schedule_row_invalid", partition_id=self.partition_id, **e.to_dict())
                if on_invalid is not None:
                    on_invalid(row["id"], e)
        return due

    def advance(self, schedule_id: str, basis: datetime, now: datetime) -> datetime | None:
        """Move ``next_run_at`` past a fire at *basis*.

        The next fire is computed from *basis* so a slow loop does not drift
        the cadence.  If that is still not after *now*, the missed fires are
        dropped and the next one is computed from *now*.  Disabled schedules
        are left untouched and ``None`` is returned.
        """
        schedule = self.get_or_raise(schedule_id)
        if not schedule.enabled:
            return None

        next_run = next_fire_time(schedule.cron_expression, schedule.timezone, basis)
        if next_run <= now:
            next_run = next_fire_time(schedule.cron_expression, schedule.timezone, now)

        self.execute(
            "UPDATE schedules SET next_run_at = ?, updated_at = ? WHERE id = ? AND enabled = 1",
            (to_iso8601(next_run), to_iso8601(now), schedule_id),
        )
        return next_run

    def record_outcome(
        self,
        schedule_id: str,
        status: RunStatus,
        error: str | None = None,
        *,
        at: datetime | None = None,
    ) -> None:
        """Store the outcome of the schedule's most recently finished run."""
        self.execute(
            "UPDATE schedules SET last_run_at = ?, last_run_status = ?, last_run_error = ? "
            "WHERE id = ?",
            (to_iso8601(at or utc_now()), status.value, error, schedule_id),
        )


def _decode_schedule(row: dict[str, Any]) -> Schedule:
    """``_row_to_schedule`` with decode failures raised as :class:`ValidationError`."""
    try:
        return _row_to_schedule(row)
    except ValidationError as e:
        e.context.setdefault("schedule_id", row["id"])
        raise
    except (ValueError, KeyError, TypeError) as e:
        raise ValidationError(
            f"Stored schedule cannot be decoded: {e}",
            context={"schedule_id": row["id"]},
            cause=e,
        ) from e


def _row_to_schedule(row: dict[str, Any]) -> Schedule:
    return Schedule(
        id=row["id"],
        partition_id=row["partition_id"],
        name=row["name"],
        description=row["description"],
        action_config=parse_action_config(row["action_type"], json.loads(row["action_config"])),
        cron_expression=row["cron_expression"],
        timezone=row["timezone"],
        enabled=bool(row["enabled"]),
        next_run_at=from_iso8601(row["next_run_at"]),
        max_runtime_ms=row["max_runtime_ms"],
        created_by=row["created_by"],
        created_at=from_iso8601(row["created_at"]),  # type: ignore[arg-type]
        updated_at=from_iso8601(row["updated_at"]),  # type: ignore[arg-type]
        last_run_at=from_iso8601(row["last_run_at"]),
        last_run_status=RunStatus(row["last_run_status"]) if row["last_run_status"] else None,
        last_run_error=row["last_run_error"],
    )


__all__ = [
    "ActionConfigPayload",
    "ScheduleCreate",
    "ScheduleUpdate",
    "ScheduleRepository",
    "parse_payload",
    "DEFAULT_MAX_RUNTIME_MS",
    "MAX_RUNTIME_LIMIT_MS",
]
