"""Engine settings.

Configuration is explicit, validated, and environment-driven: every
field can be overridden with a ``CADENCE_`` prefixed environment
variable or a ``.env`` file.

Examples:
    >>> from cadence.core.settings import get_settings
    >>> settings = get_settings()
    >>> settings.tick_interval_seconds
    30.0

    CADENCE_MAX_WORKERS=8 CADENCE_IN_MEMORY=true cadence serve

Tags:
    settings, configuration, pydantic, environment, cadence

Doc-Types:
    - API Reference
    - Configuration Guide
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

SYSTEM_USER_ID = "system:scheduler"


class CadenceSettings(BaseSettings):
    """Settings for the scheduling engine.

    Fields
    ──────
    data_dir                 : Root directory for partition database files
    in_memory                : Keep every partition store in memory (tests, demos)
    tick_interval_seconds    : Scheduler loop interval
    max_workers              : Size of the bounded worker pool running actions
    shutdown_timeout_seconds : How long `serve` waits for running actions on shutdown
    system_user_id           : Identity passed to actions on tick-driven runs
    log_level                : Structlog log level
    log_json                 : JSON output (True), console (False), auto (None)
    service_name             : ``service.name`` on every log event
    """

    model_config = SettingsConfigDict(
        env_prefix="CADENCE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Storage ──────────────────────────────────────────────────
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".cadence",
        description="Root directory for partition database files",
    )
    in_memory: bool = False

    # ── Scheduling ───────────────────────────────────────────────
    tick_interval_seconds: float = Field(default=30.0, gt=0)
    max_workers: int = Field(default=4, ge=1)
    shutdown_timeout_seconds: float = Field(default=30.0, ge=0)
    system_user_id: str = SYSTEM_USER_ID

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None
    service_name: str = "cadence"


@lru_cache(maxsize=1)
def get_settings() -> CadenceSettings:
    """Return the process-wide settings instance (cached)."""
    return CadenceSettings()


def clear_settings_cache() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    get_settings.cache_clear()


__all__ = ["CadenceSettings", "SYSTEM_USER_ID", "get_settings", "clear_settings_cache"]
