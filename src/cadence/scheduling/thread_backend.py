"""Daemon-thread timing backend (the default).

┌──────────────────────────────────────────────────────────────────────────────┐
│  THREAD BACKEND                                                               │
│                                                                               │
│   start(tick, interval, run_immediately=True)                                 │
│      └─► daemon thread "cadence-scheduler"                                    │
│             if run_immediately: _fire()                                       │
│             while not stop_event.wait(interval):                              │
│                 _fire()          # asyncio.run(tick()); errors logged         │
│                                                                               │
│   stop()                                                                      │
│      └─► stop_event.set(); thread.join(timeout)                               │
│                                                                               │
│   A tick never blocks on action execution (the service hands runs to a        │
│   worker pool), so the interval stays close to wall-clock.                    │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Any

from cadence.core.logging import get_logger
from cadence.core.timestamps import utc_now

from .protocol import BackendHealth, TickCallback

logger = get_logger(__name__)


class ThreadSchedulerBackend:
    """Ticks from a daemon thread.

    Example:
        >>> backend = ThreadSchedulerBackend()
        >>> backend.start(service._tick, interval_seconds=30.0)
        >>> backend.stop()
    """

    name = "thread"

    def __init__(self, join_timeout: float = 5.0) -> None:
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._tick_count = 0
        self._last_tick: datetime | None = None
        self._interval = 30.0
        self._join_timeout = join_timeout
        self._lock = threading.Lock()

    def start(
        self,
        tick_callback: TickCallback,
        interval_seconds: float = 30.0,
        run_immediately: bool = True,
    ) -> None:
        if self.is_running:
            logger.warning("scheduler_backend_already_started", backend=self.name)
            return

        self._interval = interval_seconds
        self._stop_event.clear()

        def _fire() -> None:
            with self._lock:
                self._tick_count += 1
                self._last_tick = utc_now()
            try:
                asyncio.run(tick_callback())
            except Exception:
                logger.exception("scheduler_tick_crashed", backend=self.name)

        def _loop() -> None:
            logger.info("scheduler_backend_started", backend=self.name, interval_seconds=interval_seconds)
            if run_immediately and not self._stop_event.is_set():
                _fire()
            while not self._stop_event.wait(interval_seconds):
                _fire()
            logger.info("scheduler_backend_stopped", backend=self.name)

        self._thread = threading.Thread(target=_loop, daemon=True, name="cadence-scheduler")
        self._thread.start()

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop_event.set()
        if self._thread is not threading.current_thread():
            self._thread.join(timeout=self._join_timeout)
            if self._thread.is_alive():
                logger.warning("scheduler_thread_still_alive", backend=self.name)
        self._thread = None

    def health(self) -> dict[str, Any]:
        return self.get_health().to_dict()

    def get_health(self) -> BackendHealth:
        return BackendHealth(
            healthy=self.is_running,
            backend=self.name,
            tick_count=self._tick_count,
            last_tick=self._last_tick,
            extra={"interval_seconds": self._interval},
        )

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def tick_count(self) -> int:
        return self._tick_count

    @property
    def last_tick(self) -> datetime | None:
        return self._last_tick
