"""Scheduling engine for cadence.

Manifesto:
    A schedule that lives only in a timer dies with the process.  Cadence
    keeps every schedule as a stored configuration, materialises enabled
    ones into in-process triggers, runs each fire exactly one at a time per
    schedule, writes the outcome back, and stops a schedule for good the
    moment its handler fails.  On restart, ``recover_all()`` rebuilds every
    trigger from the store.

┌──────────────────────────────────────────────────────────────────────────────┐
│  CADENCE SCHEDULER - Persistent Calendar Scheduling                          │
│                                                                               │
│  Quick Start:                                                                 │
│  ┌──────────────────────────────────────────────────────────────────────┐   │
│  │   from cadence.core.scheduling import (                              │   │
│  │       ScheduleConfiguration,                                         │   │
│  │       create_scheduler,                                              │   │
│  │   )                                                                  │   │
│  │                                                                      │   │
│  │   def nightly_report(configuration):                                 │   │
│  │       configuration.params["last_rows"] = build_report()             │   │
│  │                                                                      │   │
│  │   scheduler = create_scheduler(                                      │   │
│  │       handlers={"reports.nightly": nightly_report},                  │   │
│  │   )                                                                  │   │
│  │   scheduler.recover_all()                                            │   │
│  │                                                                      │   │
│  │   scheduler.save_configuration(ScheduleConfiguration(                │   │
│  │       name="nightly-report",                                         │   │
│  │       definition=["second=0", "minute=0", "hour=2"],                 │   │
│  │       handler_name="reports.nightly",                                │   │
│  │   ))                                                                 │   │
│  │   scheduler.start_schedule("nightly-report", actor="ops")            │   │
│  └──────────────────────────────────────────────────────────────────────┘   │
│                                                                               │
│  Architecture:                                                                │
│  ┌─────────────────────────────────────────────────────────────────────┐    │
│  │                                                                     │    │
│  │   ┌──────────────┐  install   ┌──────────────────┐  schedule        │    │
│  │   │ Coordinator  │ ─────────► │ TriggerRegistry  │ ───────────►     │    │
│  │   └──────┬───────┘            └────────┬─────────┘  TimerBackend    │    │
│  │          │ save/find                   │ fire        • Thread       │    │
│  │          ▼                             ▼             • APScheduler  │    │
│  │   ┌──────────────┐  load/save ┌──────────────────┐                  │    │
│  │   │ Store        │ ◄───────── │ DispatchEngine   │ ──► Handler      │    │
│  │   └──────────────┘            └──────────────────┘                  │    │
│  │                                                                     │    │
│  └─────────────────────────────────────────────────────────────────────┘    │
│                                                                               │
│  Dependencies:                                                                │
│  - croniter: calendar field matching                                         │
│  - python-dateutil: ADD month arithmetic                                     │
│  - apscheduler: APScheduler timer backend (optional)                         │
└──────────────────────────────────────────────────────────────────────────────┘

Guardrails:
    ❌ Arming timers directly on a backend
    ✅ ``TriggerRegistry.install()`` so a schedule never has two triggers
    ❌ Retrying a handler that raised
    ✅ The schedule is stopped and ``error_message`` records why
    ❌ Constructing engine components individually
    ✅ ``create_scheduler(settings, store, handlers)`` factory function

Tags:
    cadence, scheduling, calendar, triggers, dispatch, recovery,
    pluggable-backends, thread, apscheduler
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from cadence.core.settings import CadenceSettings, TimerBackendKind, get_settings

from .calendar import ACTUAL_MAXIMUM, CalendarExpression
from .coordinator import RecoveryStats, SchedulerCoordinator, SchedulerHealth
from .dispatch import DispatchEngine, DispatchStats
from .handlers import (
    FunctionHandler,
    HandlerRegistry,
    ScheduleHandler,
    build_registry,
)
from .models import (
    CancellationHandle,
    RuntimeTrigger,
    ScheduleConfiguration,
    TriggerState,
)
from .protocol import BackendHealth, TimerBackend
from .store import (
    ConfigurationStore,
    InMemoryConfigurationStore,
    SQLiteConfigurationStore,
)
from .thread_backend import ThreadTimerBackend
from .triggers import TriggerRegistry

# Optional backends, imported lazily because they need extras
# APSchedulerTimerBackend:  pip install cadence[apscheduler]


def __getattr__(name: str):  # noqa: N807
    """Lazy import optional backends to avoid ImportError when extras are missing."""
    if name == "APSchedulerTimerBackend":
        from .apscheduler_backend import APSchedulerTimerBackend

        return APSchedulerTimerBackend
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    # Calendar
    "ACTUAL_MAXIMUM",
    "CalendarExpression",
    # Models
    "ScheduleConfiguration",
    "RuntimeTrigger",
    "TriggerState",
    "CancellationHandle",
    # Handlers
    "HandlerRegistry",
    "ScheduleHandler",
    "FunctionHandler",
    # Store
    "ConfigurationStore",
    "InMemoryConfigurationStore",
    "SQLiteConfigurationStore",
    # Backends
    "TimerBackend",
    "BackendHealth",
    "ThreadTimerBackend",
    "APSchedulerTimerBackend",
    # Engine
    "TriggerRegistry",
    "DispatchEngine",
    "DispatchStats",
    "SchedulerCoordinator",
    "SchedulerHealth",
    "RecoveryStats",
    "create_timer_backend",
    "create_scheduler",
]


def create_timer_backend(settings: CadenceSettings | None = None) -> TimerBackend:
    """Build the timer backend selected by ``settings.timer_backend``."""
    settings = settings or get_settings()
    if settings.timer_backend == TimerBackendKind.APSCHEDULER:
        from .apscheduler_backend import APSchedulerTimerBackend

        return APSchedulerTimerBackend(max_workers=settings.apscheduler_max_workers)
    return ThreadTimerBackend()


def create_scheduler(
    settings: CadenceSettings | None = None,
    store: ConfigurationStore | None = None,
    handlers: HandlerRegistry | Mapping[str, Any] | None = None,
    backend: TimerBackend | None = None,
) -> SchedulerCoordinator:
    """Factory function to create a fully wired scheduler coordinator.

    Args:
        settings: Settings (default: ``get_settings()``)
        store: Configuration store (default: SQLite at ``settings.database_path``)
        handlers: Registry or ``{name: handler}`` mapping
        backend: Timer backend (default: from ``settings.timer_backend``)

    Returns:
        Configured SchedulerCoordinator.  Call ``recover_all()`` before use.

    Example:
        >>> scheduler = create_scheduler(store=InMemoryConfigurationStore())
        >>> scheduler.recover_all()
    """
    settings = settings or get_settings()
    if store is None:
        store = SQLiteConfigurationStore(settings.database_path)
    triggers = TriggerRegistry(backend or create_timer_backend(settings))

    return SchedulerCoordinator(
        store=store,
        handlers=build_registry(handlers),
        triggers=triggers,
        settings=settings,
    )
