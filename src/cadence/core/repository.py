"""Base repository over a partition store handle.

Provides :class:`BaseRepository`, which pairs a
:class:`~cadence.core.store.PartitionStore` with small SQL helpers so
domain repositories never reach for a raw driver connection.

Architecture::

    ┌────────────────────────────────────────────────────────────────────┐
    │                       BaseRepository                               │
    │                                                                    │
    │   store: PartitionStore   ← scoped to one partition                │
    │                                                                    │
    │   execute(sql, params)     → rowcount                              │
    │   query(sql, params)       → list[dict]                            │
    │   query_one(sql, params)   → dict | None                           │
    │   insert(table, data)      → rowcount                              │
    │   update_where(table, data, where, params) → rowcount              │
    └────────────────────────────────────────────────────────────────────┘

Usage:
    >>> class SessionRepo(BaseRepository):
    ...     def get(self, session_id: str):
    ...         return self.query_one(
    ...             "SELECT * FROM sessions WHERE id = ?",
    ...             (session_id,),
    ...         )

Tags:
    repository, database, sqlite, partitions
"""

from __future__ import annotations

from typing import Any

from cadence.core.store import PartitionStore


class BaseRepository:
    """Base class for partition-scoped data-access repositories.

    Parameters:
        store: The partition's store handle.
    """

    def __init__(self, store: PartitionStore) -> None:
        self.store = store

    @property
    def partition_id(self) -> str:
        return self.store.partition_id

    def ph(self, count: int) -> str:
        """Placeholder list for *count* bound values.

        Single values are written as a literal ``?``; this is for lists
        whose length is only known at runtime:

            f"SELECT * FROM t WHERE status IN ({self.ph(len(statuses))})"
        """
        return ", ".join("?" * count)

    # -- Query helpers -----------------------------------------------------

    def execute(self, sql: str, params: tuple | list = ()) -> int:
        return self.store.execute(sql, params)

    def query(self, sql: str, params: tuple | list = ()) -> list[dict[str, Any]]:
        return self.store.query(sql, params)

    def query_one(self, sql: str, params: tuple | list = ()) -> dict[str, Any] | None:
        return self.store.query_one(sql, params)

    # -- Write helpers -----------------------------------------------------

    def insert(self, table: str, data: dict[str, Any]) -> int:
        """Insert a single row from a dict (column names from ``data.keys()``)."""
        columns = list(data.keys())
        sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({self.ph(len(columns))})"
        return self.store.execute(sql, tuple(data.values()))

    def update_where(
        self,
        table: str,
        data: dict[str, Any],
        where: str,
        params: tuple = (),
    ) -> int:
        """``UPDATE table SET <data> WHERE <where>``; returns the affected row count."""
        if not data:
            return 0
        assignments = ", ".join(f"{column} = ?" for column in data)
        sql = f"UPDATE {table} SET {assignments} WHERE {where}"
        return self.store.execute(sql, (*data.values(), *params))


__all__ = [
    "BaseRepository",
]
