"""
Table names and DDL for the root store and the per-partition stores.

The root store only knows which partitions exist.  Each partition store
holds that partition's schedules, their runs, and the conversational
sessions/messages that actions (e.g. heartbeat) create.

Architecture:
    ::

        root store                   partition store (one per partition)
        ┌──────────────┐             ┌──────────────────────────────────┐
        │ partitions   │──── id ───► │ schedules                        │
        └──────────────┘             │ schedule_runs (→ schedules, CASCADE) │
                                     │ sessions                         │
                                     │ messages      (→ sessions)       │
                                     └──────────────────────────────────┘

    Instants are fixed-width UTC ISO-8601 text (see ``core.timestamps``),
    so ``next_run_at <= ?`` compares chronologically.

Examples:
    >>> from cadence.core.schema import create_partition_tables
    >>> create_partition_tables(conn)

Tags:
    schema, ddl, sqlite, cadence

Doc-Types:
    - Schema Documentation
"""

# =============================================================================
# TABLE NAMES
# =============================================================================

ROOT_TABLES = {
    "partitions": "partitions",
}

PARTITION_TABLES = {
    "schedules": "schedules",
    "schedule_runs": "schedule_runs",
    "sessions": "sessions",
    "messages": "messages",
}


# =============================================================================
# DDL STATEMENTS
# =============================================================================

ROOT_DDL = {
    "partitions": """
        CREATE TABLE IF NOT EXISTS partitions (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            path TEXT NOT NULL DEFAULT '',
            created_at TEXT NOT NULL
        )
    """,
}

PARTITION_DDL = {
    "schedules": """
        CREATE TABLE IF NOT EXISTS schedules (
            id TEXT PRIMARY KEY,
            partition_id TEXT NOT NULL,
            name TEXT NOT NULL,
            description TEXT,
            action_type TEXT NOT NULL,
            action_config TEXT NOT NULL,        -- JSON: {"action_id", "action_params"}
            cron_expression TEXT NOT NULL,
            timezone TEXT NOT NULL DEFAULT 'UTC',
            enabled INTEGER NOT NULL DEFAULT 1,
            next_run_at TEXT,                   -- NULL iff disabled
            last_run_at TEXT,
            last_run_status TEXT,
            last_run_error TEXT,
            max_runtime_ms INTEGER NOT NULL DEFAULT 3600000,
            created_by TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """,
    "schedules_idx_next_run": """
        CREATE INDEX IF NOT EXISTS idx_schedules_next_run
        ON schedules(next_run_at) WHERE enabled = 1
    """,
    "schedules_idx_partition": """
        CREATE INDEX IF NOT EXISTS idx_schedules_partition
        ON schedules(partition_id)
    """,
    "schedule_runs": """
        CREATE TABLE IF NOT EXISTS schedule_runs (
            id TEXT PRIMARY KEY,
            schedule_id TEXT NOT NULL REFERENCES schedules(id) ON DELETE CASCADE,
            partition_id TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            trigger TEXT NOT NULL DEFAULT 'schedule',   -- schedule | manual
            session_id TEXT,
            scheduled_for TEXT NOT NULL,
            started_at TEXT,
            completed_at TEXT,
            output TEXT,
            error TEXT,
            created_at TEXT NOT NULL
        )
    """,
    "schedule_runs_idx_schedule": """
        CREATE INDEX IF NOT EXISTS idx_schedule_runs_schedule
        ON schedule_runs(schedule_id, scheduled_for DESC)
    """,
    "schedule_runs_idx_status": """
        CREATE INDEX IF NOT EXISTS idx_schedule_runs_status
        ON schedule_runs(status)
    """,
    "sessions": """
        CREATE TABLE IF NOT EXISTS sessions (
            id TEXT PRIMARY KEY,
            slug TEXT NOT NULL,
            title TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'active',
            agent TEXT NOT NULL DEFAULT 'default',
            message_count INTEGER NOT NULL DEFAULT 0,
            created_by TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """,
    "messages": """
        CREATE TABLE IF NOT EXISTS messages (
            id TEXT PRIMARY KEY,
            session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
            role TEXT NOT NULL,
            content TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
    """,
    "messages_idx_session": """
        CREATE INDEX IF NOT EXISTS idx_messages_session
        ON messages(session_id, created_at)
    """,
}


def create_root_tables(conn) -> None:
    """Create the root-store tables.  Safe to call repeatedly."""
    for _name, ddl in ROOT_DDL.items():
        conn.execute(ddl)


def create_partition_tables(conn) -> None:
    """Create all partition-store tables.  Safe to call repeatedly."""
    for _name, ddl in PARTITION_DDL.items():
        conn.execute(ddl)


__all__ = [
    "ROOT_TABLES",
    "PARTITION_TABLES",
    "ROOT_DDL",
    "PARTITION_DDL",
    "create_root_tables",
    "create_partition_tables",
]
