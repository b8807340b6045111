"""Core primitives: errors, logging, settings, timestamps and partition stores."""

from cadence.core.errors import (
    CadenceError,
    ErrorCategory,
    InvalidCronExpression,
    InvalidTransition,
    NotFoundError,
    PartitionNotFound,
    RunNotFound,
    ScheduleNotFound,
    StoreFailure,
    ValidationError,
)
from cadence.core.models import ActionConfig, Run, RunStatus, RunTrigger, Schedule
from cadence.core.store import PartitionInfo, PartitionStore, StoreManager

__all__ = [
    "CadenceError",
    "ErrorCategory",
    "InvalidCronExpression",
    "InvalidTransition",
    "NotFoundError",
    "PartitionNotFound",
    "RunNotFound",
    "ScheduleNotFound",
    "StoreFailure",
    "ValidationError",
    "ActionConfig",
    "Run",
    "RunStatus",
    "RunTrigger",
    "Schedule",
    "PartitionInfo",
    "PartitionStore",
    "StoreManager",
]
