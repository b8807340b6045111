"""Actions: the handler contract, the registry and built-in actions."""

from .registry import ActionRegistry
from .types import (
    ActionContext,
    ActionDefinition,
    ActionError,
    ActionResult,
    ActionSuccess,
    error,
    success,
)

__all__ = [
    "ActionRegistry",
    "ActionContext",
    "ActionDefinition",
    "ActionError",
    "ActionResult",
    "ActionSuccess",
    "error",
    "success",
]
