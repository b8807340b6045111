"""Action registry - explicit id → handler lookup and isolated execution.

Manifesto:
    The scheduler must survive any handler.  ``execute`` is the isolation
    boundary: unknown ids, invalid params, exceptions and malformed return
    values all come back as ``ActionError`` and nothing propagates past it.
    The registry is an ordinary object built at startup and passed to the
    scheduler, never a module-level singleton, so tests get their own.

ARCHITECTURE
────────────
::

    ActionRegistry
      ├── .register(id, handler, ...)   ─ DuplicateAction if taken
      ├── .action(id, ...)              ─ decorator form of register
      ├── .get(id) / .require(id)       ─ lookup (None / ActionNotFound)
      ├── .has(id) / .unregister(id)
      ├── .list_actions()               ─ definitions sorted by id
      └── .execute(id, params, ctx)     ─ ActionResult, never raises

Tags:
    cadence, actions, registry, isolation

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
import inspect
import threading
from collections.abc import Awaitable, Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import pydantic
from pydantic import BaseModel

from cadence.core.errors import ActionNotFound, DuplicateAction, HandlerFailure
from cadence.core.logging import get_logger

from .types import (
    ActionContext,
    ActionDefinition,
    ActionError,
    ActionHandler,
    ActionResult,
    ActionSuccess,
    error,
)

logger = get_logger(__name__)


class ActionRegistry:
    """Injectable action registry.

    Example:
        >>> registry = ActionRegistry()
        >>> @registry.action("echo", description="Echo params back")
        ... def echo(params, ctx):
        ...     return success("Echo", str(params))
        >>> registry.execute("echo", {"x": 1}, ctx)
        ActionSuccess(title='Echo', output="{'x': 1}", ...)
    """

    def __init__(self) -> None:
        self._actions: dict[str, ActionDefinition] = {}
        self._lock = threading.Lock()

    # === Registration ===

    def register(
        self,
        action_id: str | ActionDefinition,
        handler: ActionHandler | None = None,
        *,
        description: str = "",
        params_model: type[BaseModel] | None = None,
        category: str = "other",
    ) -> ActionDefinition:
        """Register a handler (or a ready-made ``ActionDefinition``).

        Raises:
            DuplicateAction: *action_id* is already registered
        """
        if isinstance(action_id, ActionDefinition):
            definition = action_id
        else:
            if handler is None:
                raise TypeError("register() needs a handler")
            definition = ActionDefinition(
                id=action_id,
                handler=handler,
                description=description,
                params_model=params_model,
                category=category,
            )

        with self._lock:
            if definition.id in self._actions:
                raise DuplicateAction(definition.id)
            self._actions[definition.id] = definition
        logger.debug("action_registered", action_id=definition.id)
        return definition

    def action(
        self,
        action_id: str,
        *,
        description: str = "",
        params_model: type[BaseModel] | None = None,
        category: str = "other",
    ) -> Callable[[ActionHandler], ActionHandler]:
        """Decorator form of :meth:`register`."""

        def decorator(func: ActionHandler) -> ActionHandler:
            self.register(
                action_id,
                func,
                description=description or (inspect.getdoc(func) or "").split("\n")[0],
                params_model=params_model,
                category=category,
            )
            return func

        return decorator

    def unregister(self, action_id: str) -> bool:
        with self._lock:
            return self._actions.pop(action_id, None) is not None

    # === Lookup ===

    def get(self, action_id: str) -> ActionDefinition | None:
        return self._actions.get(action_id)

    def require(self, action_id: str) -> ActionDefinition:
        definition = self._actions.get(action_id)
        if definition is None:
            raise ActionNotFound(action_id)
        return definition

    def has(self, action_id: str) -> bool:
        return action_id in self._actions

    def list_actions(self) -> list[ActionDefinition]:
        with self._lock:
            return sorted(self._actions.values(), key=lambda d: d.id)

    def __len__(self) -> int:
        return len(self._actions)

    def __contains__(self, action_id: object) -> bool:
        return action_id in self._actions

    # === Execution ===

    def execute(
        self,
        action_id: str,
        params: dict[str, Any] | None,
        context: ActionContext,
    ) -> ActionResult:
        """Run an action and return its result; never raises.

        Coroutine handlers are driven to completion on the calling thread.
        """
        definition = self._actions.get(action_id)
        if definition is None:
            missing = ActionNotFound(action_id)
            logger.warning("action_not_found", action_id=action_id, partition_id=context.partition_id)
            return error(missing.message, code="not_found")

        params = dict(params or {})
        if definition.params_model is not None:
            try:
                params = definition.params_model.model_validate(params).model_dump()
            except pydantic.ValidationError as e:
                return error(f"Invalid params: {e}", code="invalid_params")

        try:
            result = definition.handler(params, context)
            if inspect.isawaitable(result):
                result = _drive(result)
        except Exception as e:
            failure = HandlerFailure(
                str(e) or type(e).__name__,
                context={"action_id": action_id},
                cause=e,
            )
            logger.warning(
                "action_handler_failed",
                action_id=action_id,
                run_id=context.run_id,
                error=failure.message,
                error_type=type(e).__name__,
            )
            return error(failure.message, code="handler_failure")

        if not isinstance(result, (ActionSuccess, ActionError)):
            failure = HandlerFailure(
                f"Action {action_id} returned {type(result).__name__}, not an ActionResult",
                context={"action_id": action_id},
            )
            logger.warning("action_bad_result", action_id=action_id, result_type=type(result).__name__)
            return error(failure.message, code="handler_failure")
        return result


async def _await(awaitable: Awaitable[Any]) -> Any:
    return await awaitable


def _drive(awaitable: Awaitable[Any]) -> Any:
    """Run *awaitable* to completion from synchronous code."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(_await(awaitable))
    # Called from inside an event loop: use a fresh loop on a helper thread.
    with ThreadPoolExecutor(max_workers=1, thread_name_prefix="cadence-action-loop") as helper:
        return helper.submit(asyncio.run, _await(awaitable)).result()


__all__ = ["ActionRegistry"]
