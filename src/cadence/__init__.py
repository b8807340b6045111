"""Cadence - scheduled action execution engine.

Turns recurring, timezone-aware cron schedules into tracked runs of
named actions, one isolated store per partition (project).

Examples:
    >>> from cadence import create_engine
    >>> from cadence.core.settings import CadenceSettings
    >>> engine = create_engine(CadenceSettings(in_memory=True))
    >>> engine.stores.register_partition("prj_1", path="/srv/projects/one")
    >>> engine.start()
"""

from __future__ import annotations

from cadence.actions.heartbeat import HEARTBEAT_ACTION_ID, register_builtin_actions
from cadence.actions.registry import ActionRegistry
from cadence.core.logging import configure_logging
from cadence.core.settings import CadenceSettings, get_settings
from cadence.core.store import StoreManager
from cadence.scheduling.protocol import SchedulerBackend
from cadence.scheduling.service import SchedulerService

__version__ = "0.1.0"


def create_engine(
    settings: CadenceSettings | None = None,
    *,
    registry: ActionRegistry | None = None,
    backend: SchedulerBackend | None = None,
    stores: StoreManager | None = None,
    configure_logs: bool = False,
) -> SchedulerService:
    """Wire stores, registry (with built-in actions) and the scheduler service.

    Args:
        settings: Engine settings (defaults to ``get_settings()``)
        registry: Pre-populated registry; built-ins are added if missing
        backend: Timing backend (defaults to the thread backend)
        stores: Existing store manager (defaults to one built from settings)
        configure_logs: Also call ``configure_logging`` from the settings
    """
    settings = settings or get_settings()
    if configure_logs:
        configure_logging(settings.log_level, settings.log_json, settings.service_name)

    stores = stores or StoreManager.from_settings(settings)
    registry = registry if registry is not None else ActionRegistry()
    if not registry.has(HEARTBEAT_ACTION_ID):
        register_builtin_actions(registry, stores)

    return SchedulerService(
        stores,
        registry,
        backend=backend,
        interval_seconds=settings.tick_interval_seconds,
        max_workers=settings.max_workers,
        system_user_id=settings.system_user_id,
    )


__all__ = ["__version__", "create_engine"]
