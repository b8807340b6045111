"""Per-schedule exclusivity guard.

Manifesto:
    The tick loop and ``trigger_now`` both decide "create a run and hand
    it to a worker" for the same schedules.  Those decisions must not
    interleave, otherwise the exclusivity check of one entry point can
    read state the other is halfway through writing.  The guard gives
    each ``(partition_id, schedule_id)`` key its own lock; different
    schedules never wait on each other.

Tags:
    cadence, scheduling, locks, concurrency, exclusivity

Doc-Types:
    api-reference
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager

from cadence.core.logging import get_logger

logger = get_logger(__name__)

GuardKey = tuple[str, str]


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class ScheduleGuard:
    """Keyed in-process locks, one per schedule.

    Example:
        >>> guard = ScheduleGuard()
        >>> with guard.hold("prj_1", "sch_1"):
        ...     run = tracker.create_run_if_idle("sch_1", due_at)
    """

    def __init__(self) -> None:
        self._entries: dict[GuardKey, _Entry] = {}
        self._mutex = threading.Lock()

    def acquire(self, partition_id: str, schedule_id: str, timeout: float = -1) -> bool:
        """Acquire the key's lock; ``timeout=-1`` waits forever.

        Returns:
            True if acquired, False if *timeout* elapsed first.
        """
        key = (partition_id, schedule_id)
        with self._mutex:
            entry = self._entries.setdefault(key, _Entry())
            entry.users += 1

        acquired = entry.lock.acquire(timeout=timeout)
        if not acquired:
            self._forget(key, entry)
            logger.debug("schedule_guard_timeout", partition_id=partition_id, schedule_id=schedule_id)
        return acquired

    def release(self, partition_id: str, schedule_id: str) -> None:
        key = (partition_id, schedule_id)
        with self._mutex:
            entry = self._entries.get(key)
        if entry is None:
            raise RuntimeError(f"Guard not held: {partition_id}/{schedule_id}")
        entry.lock.release()
        self._forget(key, entry)

    def is_locked(self, partition_id: str, schedule_id: str) -> bool:
        with self._mutex:
            entry = self._entries.get((partition_id, schedule_id))
        return entry is not None and entry.lock.locked()

    @contextmanager
    def hold(self, partition_id: str, schedule_id: str) -> Iterator[None]:
        """Hold the key's lock for the duration of the block."""
        self.acquire(partition_id, schedule_id)
        try:
            yield
        finally:
            self.release(partition_id, schedule_id)

    def __len__(self) -> int:
        with self._mutex:
            return len(self._entries)

    def _forget(self, key: GuardKey, entry: _Entry) -> None:
        with self._mutex:
            entry.users -= 1
            if entry.users == 0 and self._entries.get(key) is entry:
                del self._entries[key]
