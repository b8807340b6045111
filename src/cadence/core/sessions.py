"""Conversational sessions and messages stored in a partition.

Actions such as ``heartbeat`` open a session and post messages into it;
the run that produced them records the session id.

Tags:
    cadence, sessions, messages, repository
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from cadence.core.errors import NotFoundError
from cadence.core.repository import BaseRepository
from cadence.core.timestamps import from_iso8601, generate_id, to_iso8601, utc_now

_SLUG_STRIP = re.compile(r"[^a-z0-9]+")


class SessionNotFound(NotFoundError):
    entity = "Session"


def slugify(title: str) -> str:
    """URL-friendly slug from a title (max 50 chars)."""
    return _SLUG_STRIP.sub("-", title.lower()).strip("-")[:50]


@dataclass
class Session:
    id: str
    slug: str
    title: str
    status: str
    agent: str
    message_count: int
    created_by: str | None
    created_at: datetime
    updated_at: datetime


@dataclass
class Message:
    id: str
    session_id: str
    role: str
    content: str
    created_at: datetime


class SessionRepository(BaseRepository):
    """Create and read sessions/messages in one partition."""

    def create_session(
        self,
        title: str,
        *,
        agent: str = "default",
        created_by: str | None = None,
    ) -> Session:
        now = to_iso8601(utc_now())
        session_id = generate_id("ses")
        self.insert("sessions", {
            "id": session_id,
            "slug": slugify(title) or session_id,
            "title": title,
            "status": "active",
            "agent": agent,
            "message_count": 0,
            "created_by": created_by,
            "created_at": now,
            "updated_at": now,
        })
        return self.get_session(session_id)

    def get_session(self, session_id: str) -> Session:
        row = self.query_one("SELECT * FROM sessions WHERE id = ?", (session_id,))
        if row is None:
            raise SessionNotFound(session_id, context={"partition_id": self.partition_id})
        return _row_to_session(row)

    def list_sessions(self, *, limit: int = 50) -> list[Session]:
        rows = self.query(
            "SELECT * FROM sessions ORDER BY created_at DESC LIMIT ?",
            (limit,),
        )
        return [_row_to_session(row) for row in rows]

    def add_message(self, session_id: str, role: str, content: str) -> Message:
        """Append a message and bump the session's ``message_count``."""
        now = to_iso8601(utc_now())
        message_id = generate_id("msg")
        with self.store.transaction():
            self.get_session(session_id)
            self.insert("messages", {
                "id": message_id,
                "session_id": session_id,
                "role": role,
                "content": content,
                "created_at": now,
            })
            self.execute(
                "UPDATE sessions SET message_count = message_count + 1, updated_at = ? "
                "WHERE id = ?",
                (now, session_id),
            )
        return Message(
            id=message_id,
            session_id=session_id,
            role=role,
            content=content,
            created_at=from_iso8601(now),  # type: ignore[arg-type]
        )

    def list_messages(self, session_id: str) -> list[Message]:
        rows = self.query(
            "SELECT * FROM messages WHERE session_id = ? ORDER BY created_at, id",
            (session_id,),
        )
        return [
            Message(
                id=row["id"],
                session_id=row["session_id"],
                role=row["role"],
                content=row["content"],
                created_at=from_iso8601(row["created_at"]),  # type: ignore[arg-type]
            )
            for row in rows
        ]


def _row_to_session(row: dict[str, Any]) -> Session:
    return Session(
        id=row["id"],
        slug=row["slug"],
        title=row["title"],
        status=row["status"],
        agent=row["agent"],
        message_count=row["message_count"],
        created_by=row["created_by"],
        created_at=from_iso8601(row["created_at"]),  # type: ignore[arg-type]
        updated_at=from_iso8601(row["updated_at"]),  # type: ignore[arg-type]
    )


__all__ = ["Session", "Message", "SessionRepository", "SessionNotFound", "slugify"]
