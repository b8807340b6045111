"""Bounded worker pool for action executions.

The scheduler loop only decides; executions run here, on at most
``max_workers`` threads, so a slow or hung action never delays a tick.
Submissions beyond the pool size queue inside the executor.

Tags:
    worker, thread-pool, execution, concurrency, cadence
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

from cadence.core.errors import CadenceError, ErrorCategory
from cadence.core.logging import get_logger

logger = get_logger(__name__)


class PoolClosed(CadenceError):
    """Work submitted after ``shutdown()``."""

    default_category = ErrorCategory.EXECUTION


class WorkerPool:
    """``ThreadPoolExecutor`` with in-flight bookkeeping.

    Example:
        >>> pool = WorkerPool(max_workers=4)
        >>> future = pool.submit(execute_run, run, name=run.id)
        >>> pool.shutdown(wait=True)
    """

    def __init__(self, max_workers: int = 4, *, thread_name_prefix: str = "cadence-worker") -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.max_workers = max_workers
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=thread_name_prefix)
        self._in_flight: dict[str, Future] = {}
        self._lock = threading.Lock()
        self._closed = False
        self._submitted = 0

    def submit(self, fn: Callable[..., Any], *args: Any, name: str, **kwargs: Any) -> Future:
        """Queue ``fn(*args, **kwargs)``; *name* identifies it in ``in_flight``."""
        with self._lock:
            if self._closed:
                raise PoolClosed(f"Worker pool is shut down; rejected {name}", context={"work": name})
            future = self._pool.submit(fn, *args, **kwargs)
            self._in_flight[name] = future
            self._submitted += 1
        future.add_done_callback(lambda f: self._done(name, f))
        return future

    def in_flight(self) -> list[str]:
        with self._lock:
            return list(self._in_flight)

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._in_flight)

    @property
    def submitted_count(self) -> int:
        return self._submitted

    def shutdown(self, *, wait: bool = True, cancel_pending: bool = False) -> None:
        with self._lock:
            self._closed = True
        self._pool.shutdown(wait=wait, cancel_futures=cancel_pending)

    def _done(self, name: str, future: Future) -> None:
        with self._lock:
            if self._in_flight.get(name) is future:
                del self._in_flight[name]
        if future.cancelled():
            logger.debug("work_cancelled", work=name)
            return
        error = future.exception()
        if error is not None:
            logger.error("work_crashed", work=name, error=str(error), error_type=type(error).__name__)


__all__ = ["WorkerPool", "PoolClosed"]
