"""Timing-backend protocol for the scheduler loop.

The loop is a "beat-as-poller": a backend decides WHEN a tick happens,
``SchedulerService`` decides WHAT a tick does (scan, exclusivity check,
dispatch, advance).  Swapping the backend never touches schedule logic.

::

    ┌──────────────────┐   tick()   ┌──────────────────────────────┐
    │  timing backend  │ ─────────► │  SchedulerService._tick      │
    │  (thread, test)  │            │   scan → guard → dispatch    │
    └──────────────────┘            │   → advance                  │
                                    └──────────────────────────────┘
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

TickCallback = Callable[[], Awaitable[None]]


@runtime_checkable
class SchedulerBackend(Protocol):
    """Calls a tick callback on a fixed interval; nothing else.

    Example (manual backend for tests):
        >>> class ManualBackend:
        ...     name = "manual"
        ...     def start(self, tick_callback, interval_seconds=30.0, run_immediately=True):
        ...         self.tick = tick_callback
        ...     def stop(self): ...
        ...     def health(self): return {"healthy": True, "backend": "manual"}
    """

    name: str

    def start(
        self,
        tick_callback: TickCallback,
        interval_seconds: float = 30.0,
        run_immediately: bool = True,
    ) -> None:
        """Begin ticking; with *run_immediately* the first tick fires at once."""
        ...

    def stop(self) -> None:
        """Stop ticking, waiting briefly for an in-progress tick."""
        ...

    def health(self) -> dict[str, Any]:
        """At least ``healthy``, ``backend``, ``tick_count``, ``last_tick``."""
        ...


@dataclass
class BackendHealth:
    """Structured backend health."""

    healthy: bool
    backend: str
    tick_count: int = 0
    last_tick: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "backend": self.backend,
            "tick_count": self.tick_count,
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            **self.extra,
        }
