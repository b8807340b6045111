"""Action contract: context in, tagged result out.

A handler is ``handler(params, context) -> ActionResult`` (or a coroutine
returning one).  ``ActionResult`` has exactly two shapes:

- ``ActionSuccess(title, output, metadata)``
- ``ActionError(message, code)``

Handlers that raise are converted to ``ActionError`` by the registry.

Tags:
    cadence, actions, contract, dataclasses
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal, Union

from pydantic import BaseModel

from cadence.execution.cancellation import CancellationToken


@dataclass(frozen=True)
class ActionContext:
    """Ambient identity/location handed to an action.

    Attributes:
        partition_id: Partition (project) the run belongs to
        partition_path: Filesystem or logical root for the action
        user_id: Initiator identity (``system:scheduler`` for ticks)
        session_id: Existing conversational session, if any
        cancellation: Advisory token, signalled on timeout or shutdown
        run_id / schedule_id: Set when invoked by the scheduler
    """

    partition_id: str
    partition_path: str
    user_id: str
    session_id: str | None = None
    cancellation: CancellationToken = field(default_factory=CancellationToken)
    run_id: str | None = None
    schedule_id: str | None = None

    @property
    def cancelled(self) -> bool:
        return self.cancellation.cancelled


@dataclass(frozen=True)
class ActionSuccess:
    title: str
    output: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    type: Literal["success"] = "success"

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class ActionError:
    message: str
    code: str | None = None
    type: Literal["error"] = "error"

    @property
    def ok(self) -> bool:
        return False


ActionResult = Union[ActionSuccess, ActionError]

ActionHandler = Callable[[dict[str, Any], ActionContext], Union[ActionResult, Awaitable[ActionResult]]]


def success(title: str, output: str = "", **metadata: Any) -> ActionSuccess:
    """Build a success result; keyword arguments become ``metadata``."""
    return ActionSuccess(title=title, output=output, metadata=metadata)


def error(message: str, code: str | None = None) -> ActionError:
    return ActionError(message=message, code=code)


@dataclass(frozen=True)
class ActionDefinition:
    """A registered action.

    Attributes:
        id: Dotted identifier, e.g. ``heartbeat`` or ``git.status``
        handler: Callable invoked with validated params and the context
        description: One-line summary for listings
        params_model: Optional pydantic model validating ``params``
        category: Free-form grouping for listings
    """

    id: str
    handler: ActionHandler
    description: str = ""
    params_model: type[BaseModel] | None = None
    category: str = "other"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "category": self.category,
            "params_schema": self.params_model.model_json_schema() if self.params_model else None,
        }


__all__ = [
    "ActionContext",
    "ActionSuccess",
    "ActionError",
    "ActionResult",
    "ActionHandler",
    "ActionDefinition",
    "success",
    "error",
]
