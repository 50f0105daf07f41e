"""Centralized settings for cadence.

One validated, cached settings object resolves everything the engine reads
from the environment: where the configuration store lives, which timer
backend arms triggers, how status messages are stamped, and how logging is
rendered.

All fields can be set via ``CADENCE_*`` environment variables (e.g.
``CADENCE_TIMER_BACKEND=apscheduler``) or a ``.env`` file.

Examples:
    >>> from cadence.core.settings import get_settings
    >>> settings = get_settings()
    >>> settings.timer_backend
    <TimerBackendKind.THREAD: 'thread'>

Tags:
    settings, configuration, pydantic, environment, cadence
"""

from __future__ import annotations

from enum import Enum
from functools import lru_cache
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class TimerBackendKind(str, Enum):
    """Supported timer backends."""

    THREAD = "thread"
    APSCHEDULER = "apscheduler"


class CadenceSettings(BaseSettings):
    """Cadence configuration.

    Fields
    ──────
    database_path          : SQLite file backing the configuration store
    timer_backend          : Which backend arms runtime triggers
    apscheduler_max_workers: Worker pool size for the APScheduler backend
    default_timezone       : Timezone for definitions without ``timezone=``
    status_time_format     : strftime pattern for status messages
    default_actor          : Actor recorded when callers pass none
    recovery_page_size     : Page size used by recover_all() store scans
    log_level / log_format : Structlog configuration
    """

    model_config = SettingsConfigDict(
        env_prefix="CADENCE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Store ────────────────────────────────────────────────────
    database_path: Path = Field(default=Path("data/cadence.db"))

    # ── Timers ───────────────────────────────────────────────────
    timer_backend: TimerBackendKind = Field(default=TimerBackendKind.THREAD)
    apscheduler_max_workers: int = Field(default=10, ge=1)

    # ── Scheduling ───────────────────────────────────────────────
    default_timezone: str = Field(default="UTC")
    status_time_format: str = Field(default="%d.%m.%y %H:%M:%S")
    default_actor: str = Field(default="anonymous")
    recovery_page_size: int = Field(default=100, ge=1)

    # ── Logging ──────────────────────────────────────────────────
    service_name: str = Field(default="cadence")
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")

    @field_validator("default_timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {value!r}") from exc
        return value

    @field_validator("log_format")
    @classmethod
    def _known_log_format(cls, value: str) -> str:
        value = value.lower()
        if value not in ("json", "console"):
            raise ValueError("log_format must be 'json' or 'console'")
        return value


@lru_cache(maxsize=1)
def get_settings() -> CadenceSettings:
    """Load, validate, and cache a :class:`CadenceSettings` instance."""
    return CadenceSettings()


def clear_settings_cache() -> None:
    """Clear the settings cache (primarily for testing)."""
    get_settings.cache_clear()


__all__ = [
    "CadenceSettings",
    "TimerBackendKind",
    "get_settings",
    "clear_settings_cache",
]
