"""Heartbeat action: open a session and post a check-in message.

It goes through the same registry path as any other action; its only
side effect is writing a session and one message into the partition's
store.  The session id is reported in the result metadata, which the
scheduler records on the run.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from cadence.core.sessions import SessionRepository
from cadence.core.store import StoreManager
from cadence.core.timestamps import utc_now

from .registry import ActionRegistry
from .types import ActionContext, ActionResult, error, success

HEARTBEAT_ACTION_ID = "heartbeat"
DEFAULT_HEARTBEAT_MESSAGE = (
    "Heartbeat check-in. Review the current state of the project and report anything that needs attention."
)


class HeartbeatParams(BaseModel):
    message: str = Field(default=DEFAULT_HEARTBEAT_MESSAGE, min_length=1, max_length=10_000)
    title: str | None = Field(default=None, max_length=200)
    agent: str = "default"


class HeartbeatAction:
    """Callable handler bound to a store manager."""

    def __init__(self, stores: StoreManager) -> None:
        self.stores = stores

    def __call__(self, params: dict[str, Any], context: ActionContext) -> ActionResult:
        if context.cancelled:
            return error("Heartbeat cancelled before it started", code="cancelled")

        sessions = SessionRepository(self.stores.get(context.partition_id))
        if context.session_id:
            session = sessions.get_session(context.session_id)
        else:
            title = params.get("title") or f"Heartbeat {utc_now():%Y-%m-%d %H:%M} UTC"
            session = sessions.create_session(
                title,
                agent=params.get("agent", "default"),
                created_by=context.user_id,
            )

        message = sessions.add_message(session.id, "user", params["message"])
        return success(
            "Heartbeat",
            f"Posted heartbeat to session {session.id}",
            session_id=session.id,
            message_id=message.id,
        )


def register_builtin_actions(registry: ActionRegistry, stores: StoreManager) -> None:
    """Register the actions that ship with the engine."""
    registry.register(
        HEARTBEAT_ACTION_ID,
        HeartbeatAction(stores),
        description="Open a session and post a heartbeat check-in message",
        params_model=HeartbeatParams,
        category="agent",
    )


__all__ = [
    "HEARTBEAT_ACTION_ID",
    "HeartbeatAction",
    "HeartbeatParams",
    "register_builtin_actions",
]
