"""Scheduling: cron evaluation, schedule store, run tracker and the tick loop.

::

    backend ──tick──► SchedulerService ──► ScheduleRepository (due, advance)
                            │          ──► RunTracker (create_run_if_idle)
                            ▼
                       WorkerPool ──► ActionRegistry.execute
"""

from .cron import next_fire_time, next_fire_times, validate_cron_expression
from .guard import ScheduleGuard
from .protocol import BackendHealth, SchedulerBackend
from .repository import ScheduleCreate, ScheduleRepository, ScheduleUpdate
from .runs import RunTracker
from .service import SchedulerHealth, SchedulerService, SchedulerStats, TickReport, TriggerAck
from .thread_backend import ThreadSchedulerBackend

__all__ = [
    "next_fire_time",
    "next_fire_times",
    "validate_cron_expression",
    "ScheduleGuard",
    "BackendHealth",
    "SchedulerBackend",
    "ScheduleCreate",
    "ScheduleRepository",
    "ScheduleUpdate",
    "RunTracker",
    "SchedulerHealth",
    "SchedulerService",
    "SchedulerStats",
    "TickReport",
    "TriggerAck",
    "ThreadSchedulerBackend",
]
