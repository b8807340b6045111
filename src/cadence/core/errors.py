"""
Structured error types for the cadence engine.

Every failure the engine can surface is a ``CadenceError`` subclass that
knows its category, carries a small context dict for structured logging,
and chains the underlying exception when it wraps one.

Manifesto:
    The scheduler loop must never die because one schedule misbehaves.
    That guarantee is only checkable if errors are typed: the loop catches
    ``CadenceError`` per schedule, the registry converts handler failures
    into results, and store errors arrive as ``StoreFailure`` instead of a
    driver-specific ``sqlite3.Error``.

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                        CadenceError                          │
        │              (category, context, cause, to_dict)             │
        ├──────────────────────────────────────────────────────────────┤
        │  ValidationError        NotFoundError        DuplicateAction │
        │   └ InvalidCronExpr.     ├ ScheduleNotFound                  │
        │  InvalidTransition       ├ RunNotFound       HandlerFailure  │
        │                          ├ PartitionNotFound RunTimeout      │
        │                          └ ActionNotFound    StoreFailure    │
        └──────────────────────────────────────────────────────────────┘

Guardrails:
    ❌ DON'T: Raise bare ``Exception``/``ValueError`` from engine code
    ✅ DO: Raise the matching ``CadenceError`` subclass

    ❌ DON'T: Swallow the original exception when wrapping
    ✅ DO: Pass it as ``cause=`` so ``__cause__`` is preserved

Tags:
    error-handling, exception-hierarchy, cadence, scheduling

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Coarse classification used for logging and operator output."""

    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    CONFIG = "CONFIG"
    EXECUTION = "EXECUTION"
    TIMEOUT = "TIMEOUT"
    STORAGE = "STORAGE"
    INTERNAL = "INTERNAL"


class CadenceError(Exception):
    """Base exception for all engine errors.

    Subclasses set ``default_category``; callers may override it per
    instance.  ``context`` holds identifiers (``schedule_id``,
    ``partition_id`` ...) that end up as structured log fields.

    Example:
        >>> err = CadenceError("boom", context={"schedule_id": "sch_1"})
        >>> err.to_dict()["category"]
        'INTERNAL'
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        context: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.context: dict[str, Any] = dict(context or {})
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> CadenceError:
        """Add context fields and return self for chaining."""
        self.context.update({k: v for k, v in kwargs.items() if v is not None})
        return self

    def to_dict(self) -> dict[str, Any]:
        """Serialize for structured logging."""
        result: dict[str, Any] = {
            "error_type": type(self).__name__,
            "message": self.message,
            "category": self.category.value,
        }
        if self.context:
            result["context"] = dict(self.context)
        if self.cause is not None:
            result["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return result

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(CadenceError):
    """Input rejected before anything was persisted."""

    default_category = ErrorCategory.VALIDATION


class InvalidCronExpression(ValidationError):
    """Cron expression is malformed, out of range, or never fires."""

    def __init__(self, expression: str, reason: str, **kwargs: Any) -> None:
        self.expression = expression
        self.reason = reason
        context = {"expression": expression, **kwargs.pop("context", {})}
        super().__init__(
            f"Invalid cron expression {expression!r}: {reason}",
            context=context,
            **kwargs,
        )


class InvalidTransition(ValidationError):
    """A Run status change that the lifecycle does not allow."""

    def __init__(self, run_id: str, current: str, target: str) -> None:
        self.run_id = run_id
        self.current = current
        self.target = target
        super().__init__(
            f"Invalid run transition for {run_id}: {current} -> {target}",
            context={"run_id": run_id, "current": current, "target": target},
        )


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------


class NotFoundError(CadenceError):
    """An entity addressed by id does not exist."""

    default_category = ErrorCategory.NOT_FOUND
    entity = "Entity"
    template = "{entity} not found: {id}"

    def __init__(self, entity_id: str, **kwargs: Any) -> None:
        self.entity_id = entity_id
        context = {"id": entity_id, **kwargs.pop("context", {})}
        message = self.template.format(entity=self.entity, id=entity_id)
        super().__init__(message, context=context, **kwargs)


class ScheduleNotFound(NotFoundError):
    entity = "Schedule"


class RunNotFound(NotFoundError):
    entity = "Run"


class PartitionNotFound(NotFoundError):
    entity = "Partition"


class ActionNotFound(NotFoundError):
    """Schedule references an action that is not registered."""

    entity = "Action"
    template = "action not found: {id}"


# ---------------------------------------------------------------------------
# Registry / execution
# ---------------------------------------------------------------------------


class DuplicateAction(CadenceError):
    """Two handlers registered under one action id (startup misconfiguration)."""

    default_category = ErrorCategory.CONFIG

    def __init__(self, action_id: str) -> None:
        self.action_id = action_id
        super().__init__(
            f"Action already registered: {action_id}",
            context={"action_id": action_id},
        )


class HandlerFailure(CadenceError):
    """An action handler raised or returned something other than a result."""

    default_category = ErrorCategory.EXECUTION


class RunTimeout(CadenceError):
    """A handler exceeded its schedule's ``max_runtime_ms``."""

    default_category = ErrorCategory.TIMEOUT

    def __init__(self, run_id: str, max_runtime_ms: int) -> None:
        self.run_id = run_id
        self.max_runtime_ms = max_runtime_ms
        super().__init__(
            f"Execution timed out after {max_runtime_ms}ms",
            context={"run_id": run_id, "max_runtime_ms": max_runtime_ms},
        )


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class StoreFailure(CadenceError):
    """Persistence error raised by a partition store handle."""

    default_category = ErrorCategory.STORAGE


__all__ = [
    "ErrorCategory",
    "CadenceError",
    "ValidationError",
    "InvalidCronExpression",
    "InvalidTransition",
    "NotFoundError",
    "ScheduleNotFound",
    "RunNotFound",
    "PartitionNotFound",
    "ActionNotFound",
    "DuplicateAction",
    "HandlerFailure",
    "RunTimeout",
    "StoreFailure",
]
