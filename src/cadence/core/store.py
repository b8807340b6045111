"""Per-partition store handles.

Manifesto:
    Partitions (projects) must not share a mutable connection.  Each one
    gets its own SQLite database and its own handle; the handle serialises
    access from worker threads and exposes an explicit ``transaction()``
    so compare-and-create sequences (the run exclusivity check) are
    atomic.  Callers never touch ``sqlite3`` directly: driver errors are
    re-raised as ``StoreFailure``.

Tags:
    cadence, storage, sqlite, partitions, repository, thread-safety

Doc-Types:
    api-reference, architecture-diagram


┌──────────────────────────────────────────────────────────────────────────────┐
│  STORE MANAGER                                                                │
│                                                                               │
│   StoreManager(data_dir)                                                      │
│     ├── root            → PartitionStore("__root__")   partitions table      │
│     ├── register_partition(id, path)                                          │
│     ├── list_partitions() → [PartitionInfo]                                   │
│     └── get(id)         → PartitionStore(id)   (opened lazily, cached)        │
│                                                                               │
│   PartitionStore                                                              │
│     ├── query(sql, params)     → list[dict]     (under RLock)                 │
│     ├── execute(sql, params)   → rowcount       (autocommit outside tx)       │
│     └── transaction()          → BEGIN IMMEDIATE ... COMMIT / ROLLBACK        │
│                                                                               │
│   Layout on disk:                                                             │
│     <data_dir>/root.db                                                        │
│     <data_dir>/partitions/<partition_id>.db                                   │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import re
import sqlite3
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from cadence.core.errors import PartitionNotFound, StoreFailure, ValidationError
from cadence.core.logging import get_logger
from cadence.core.schema import create_partition_tables, create_root_tables
from cadence.core.timestamps import from_iso8601, to_iso8601, utc_now

if TYPE_CHECKING:
    from cadence.core.settings import CadenceSettings

logger = get_logger(__name__)

ROOT_PARTITION_ID = "__root__"
_PARTITION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


@dataclass(frozen=True)
class PartitionInfo:
    """A registered partition (project)."""

    id: str
    name: str
    path: str
    created_at: datetime


class PartitionStore:
    """Thread-safe handle on one partition's database.

    Example:
        >>> store = PartitionStore.open("prj_1", ":memory:")
        >>> with store.transaction():
        ...     store.execute("INSERT INTO sessions ...", (...))
        >>> rows = store.query("SELECT * FROM sessions")
    """

    def __init__(self, partition_id: str, conn: sqlite3.Connection, *, path: str = "") -> None:
        self.partition_id = partition_id
        self.path = path
        self._conn = conn
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._closed = False

    @classmethod
    def open(
        cls,
        partition_id: str,
        database: str | Path,
        *,
        path: str = "",
        init_schema: Callable[[sqlite3.Connection], None] = create_partition_tables,
    ) -> PartitionStore:
        """Open (and migrate) a store at *database* (a file path or ``":memory:"``)."""
        try:
            conn = sqlite3.connect(
                str(database),
                check_same_thread=False,
                isolation_level=None,
            )
            conn.execute("PRAGMA foreign_keys = ON")
            if str(database) != ":memory:":
                conn.execute("PRAGMA journal_mode = WAL")
            init_schema(conn)
        except sqlite3.Error as e:
            raise StoreFailure(
                f"Could not open store for partition {partition_id}: {e}",
                context={"partition_id": partition_id, "database": str(database)},
                cause=e,
            ) from e
        return cls(partition_id, conn, path=path)

    # === Access ===

    @contextmanager
    def transaction(self) -> Iterator[PartitionStore]:
        """Run the block atomically; nested calls join the outer transaction."""
        with self._lock:
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield self
                finally:
                    self._tx_depth -= 1
                return

            self._run("BEGIN IMMEDIATE")
            self._tx_depth = 1
            try:
                yield self
            except BaseException:
                self._tx_depth = 0
                self._conn.rollback()
                raise
            self._tx_depth = 0
            self._run("COMMIT")

    def execute(self, sql: str, params: tuple | list = ()) -> int:
        """Execute a statement and return the affected row count."""
        with self._lock:
            return self._run(sql, params).rowcount

    def query(self, sql: str, params: tuple | list = ()) -> list[dict[str, Any]]:
        """Execute a SELECT and return all rows as dicts."""
        with self._lock:
            cursor = self._run(sql, params)
            try:
                return [dict(row) for row in cursor.fetchall()]
            except sqlite3.Error as e:
                raise self._failure(sql, e) from e

    def query_one(self, sql: str, params: tuple | list = ()) -> dict[str, Any] | None:
        """Execute a SELECT and return the first row (or None)."""
        rows = self.query(sql, params)
        return rows[0] if rows else None

    def close(self) -> None:
        with self._lock:
            if not self._closed:
                self._conn.close()
                self._closed = True

    # === Internals ===

    def _run(self, sql: str, params: tuple | list = ()) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, params)
        except sqlite3.Error as e:
            raise self._failure(sql, e) from e

    def _failure(self, sql: str, error: sqlite3.Error) -> StoreFailure:
        statement = " ".join(sql.split())[:120]
        return StoreFailure(
            f"Store error in partition {self.partition_id}: {error}",
            context={"partition_id": self.partition_id, "statement": statement},
            cause=error,
        )

    def __repr__(self) -> str:
        return f"PartitionStore({self.partition_id!r})"


class StoreManager:
    """Repository of partition store handles keyed by partition id.

    Example:
        >>> stores = StoreManager(in_memory=True)
        >>> stores.register_partition("prj_1", path="/srv/projects/one")
        >>> store = stores.get("prj_1")
    """

    def __init__(self, data_dir: str | Path | None = None, *, in_memory: bool = False) -> None:
        if data_dir is None and not in_memory:
            raise ValidationError("StoreManager needs a data_dir unless in_memory=True")
        self.in_memory = in_memory
        self.data_dir = Path(data_dir) if data_dir is not None else None
        self._stores: dict[str, PartitionStore] = {}
        self._open_lock = threading.Lock()

        if self.data_dir is not None and not in_memory:
            (self.data_dir / "partitions").mkdir(parents=True, exist_ok=True)
        self.root = PartitionStore.open(
            ROOT_PARTITION_ID,
            self._database_for(ROOT_PARTITION_ID),
            init_schema=create_root_tables,
        )

    @classmethod
    def from_settings(cls, settings: CadenceSettings) -> StoreManager:
        return cls(settings.data_dir, in_memory=settings.in_memory)

    # === Partition registry ===

    def register_partition(
        self,
        partition_id: str,
        *,
        name: str | None = None,
        path: str = "",
    ) -> PartitionInfo:
        """Register (or update) a partition and return its info."""
        if not _PARTITION_ID_RE.match(partition_id) or partition_id == ROOT_PARTITION_ID:
            raise ValidationError(
                f"Invalid partition id: {partition_id!r}",
                context={"partition_id": partition_id},
            )

        with self.root.transaction():
            existing = self.root.query_one(
                "SELECT * FROM partitions WHERE id = ?", (partition_id,)
            )
            if existing:
                self.root.execute(
                    "UPDATE partitions SET name = ?, path = ? WHERE id = ?",
                    (name or existing["name"], path or existing["path"], partition_id),
                )
            else:
                self.root.execute(
                    "INSERT INTO partitions (id, name, path, created_at) VALUES (?, ?, ?, ?)",
                    (partition_id, name or partition_id, path, to_iso8601(utc_now())),
                )

        info = self.get_partition(partition_id)
        with self._open_lock:
            store = self._stores.get(partition_id)
            if store is not None:
                store.path = info.path
        logger.info("partition_registered", partition_id=partition_id, path=info.path)
        return info

    def get_partition(self, partition_id: str) -> PartitionInfo:
        row = self.root.query_one("SELECT * FROM partitions WHERE id = ?", (partition_id,))
        if row is None:
            raise PartitionNotFound(partition_id)
        return _row_to_partition(row)

    def list_partitions(self) -> list[PartitionInfo]:
        rows = self.root.query("SELECT * FROM partitions ORDER BY created_at, id")
        return [_row_to_partition(row) for row in rows]

    # === Handles ===

    def get(self, partition_id: str) -> PartitionStore:
        """Return the scoped handle for *partition_id*, opening it on first use."""
        store = self._stores.get(partition_id)
        if store is not None:
            return store

        info = self.get_partition(partition_id)
        with self._open_lock:
            store = self._stores.get(partition_id)
            if store is None:
                store = PartitionStore.open(
                    partition_id,
                    self._database_for(partition_id),
                    path=info.path,
                )
                self._stores[partition_id] = store
                logger.debug("partition_store_opened", partition_id=partition_id)
        return store

    def close(self) -> None:
        with self._open_lock:
            for store in self._stores.values():
                store.close()
            self._stores.clear()
        self.root.close()

    def _database_for(self, partition_id: str) -> str:
        if self.in_memory or self.data_dir is None:
            return ":memory:"
        if partition_id == ROOT_PARTITION_ID:
            return str(self.data_dir / "root.db")
        return str(self.data_dir / "partitions" / f"{partition_id}.db")


def _row_to_partition(row: dict[str, Any]) -> PartitionInfo:
    return PartitionInfo(
        id=row["id"],
        name=row["name"],
        path=row["path"],
        created_at=from_iso8601(row["created_at"]),  # type: ignore[arg-type]
    )


__all__ = ["PartitionInfo", "PartitionStore", "StoreManager", "ROOT_PARTITION_ID"]
