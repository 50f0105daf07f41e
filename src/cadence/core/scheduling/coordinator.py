"""Scheduler coordinator - the public face of the engine.

Manifesto:
    Operators think in named configurations: start this one, stop that one,
    what is it doing now.  The coordinator answers in those terms and hides
    the trigger registry, the dispatch engine and the timer backend behind
    them.  At process start it rebuilds every live trigger from the store,
    because nothing about a timer survives a restart.

┌──────────────────────────────────────────────────────────────────────────────┐
│  SCHEDULER COORDINATOR                                                        │
│                                                                               │
│   Dependencies:                                                               │
│   ┌─────────────────┐  ┌─────────────────┐  ┌─────────────────┐              │
│   │  Store          │  │  HandlerRegistry│  │  TriggerRegistry│              │
│   │  (persistence)  │  │  (jobs)         │  │  (timers)       │              │
│   └────────┬────────┘  └────────┬────────┘  └────────┬────────┘              │
│            └───────────────┬────┴────────────────────┘                        │
│                            ▼                                                  │
│                   ┌─────────────────┐   fire   ┌─────────────────┐           │
│                   │  Coordinator    │ ◄─────── │  DispatchEngine │           │
│                   └─────────────────┘          └─────────────────┘           │
│                                                                               │
│   Configuration operations (caller persists):                                 │
│   ├── start(configuration, actor)     parse, install, enabled=True            │
│   ├── stop(configuration, actor)      cancel, enabled=False                   │
│   └── describe(configuration)         copy with next fire / time remaining    │
│                                                                               │
│   Named operations (load → act → save):                                       │
│   ├── save_configuration / load_configuration                                 │
│   ├── start_schedule(name) / stop_schedule(name)                              │
│   └── list_schedules() / describe_schedule(name)                              │
│                                                                               │
│   Lifecycle:                                                                  │
│   ├── recover_all()    re-arm every enabled configuration (idempotent)        │
│   ├── health()                                                                │
│   └── shutdown()       cancel triggers, stop backend; store untouched         │
└──────────────────────────────────────────────────────────────────────────────┘

Tags:
    cadence, scheduling, coordinator, recovery, lifecycle
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from cadence.core.errors import (
    FormatError,
    ScheduleNotFoundError,
    ValidationError,
)
from cadence.core.logging import get_logger
from cadence.core.settings import CadenceSettings, get_settings

from .calendar import CalendarExpression
from .dispatch import DispatchEngine, DispatchStats
from .handlers import HandlerRegistry
from .models import ScheduleConfiguration, TriggerState, status_message, utc_now
from .store import ConfigurationStore
from .triggers import TriggerRegistry

logger = get_logger(__name__)


@dataclass
class RecoveryStats:
    """Outcome of one :meth:`SchedulerCoordinator.recover_all` pass."""

    recovered: int = 0
    skipped: int = 0
    failed: int = 0
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return self.recovered + self.skipped + self.failed


@dataclass
class SchedulerHealth:
    """Health status for the coordinator."""

    healthy: bool
    backend: dict[str, Any]
    triggers_armed: int = 0
    triggers_running: int = 0
    handlers_registered: int = 0
    dispatch: DispatchStats = field(default_factory=DispatchStats)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "healthy": self.healthy,
            "backend": self.backend,
            "triggers_armed": self.triggers_armed,
            "triggers_running": self.triggers_running,
            "handlers_registered": self.handlers_registered,
            "dispatch": self.dispatch.to_dict(),
        }


class SchedulerCoordinator:
    """Start, stop, describe and recover schedule configurations.

    Example:
        >>> coordinator = SchedulerCoordinator(store, handlers, triggers)
        >>> coordinator.recover_all()
        >>> configuration = coordinator.save_configuration(
        ...     ScheduleConfiguration(
        ...         name="nightly-report",
        ...         definition=["second=0", "minute=0", "hour=2"],
        ...         handler_name="reports.nightly",
        ...     )
        ... )
        >>> coordinator.start_schedule("nightly-report", actor="ops")
    """

    def __init__(
        self,
        store: ConfigurationStore,
        handlers: HandlerRegistry,
        triggers: TriggerRegistry,
        settings: CadenceSettings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.handlers = handlers
        self.triggers = triggers
        self.settings = settings or get_settings()
        self.clock = clock
        self.dispatcher = DispatchEngine(
            store=store,
            handlers=handlers,
            triggers=triggers,
            settings=self.settings,
            clock=clock,
        )
        self.triggers.set_fire_callback(self.dispatcher.on_timeout)

    # === Configuration operations ===

    def start(
        self,
        configuration: ScheduleConfiguration,
        actor: str | None = None,
    ) -> ScheduleConfiguration:
        """Arm the configuration's next occurrence and mark it enabled.

        The configuration is updated in place and returned; it is not saved.

        Raises:
            ValidationError: Empty or unparseable definition, no identity,
                or no occurrence after now.
        """
        if not any(line.strip() for line in configuration.definition):
            raise ValidationError(
                f"Schedule '{configuration.name}' has no calendar definition",
                field="definition",
            ).with_context(schedule_name=configuration.name)
        if not configuration.id:
            raise ValidationError(
                f"Schedule '{configuration.name}' must be saved before it is started",
                field="id",
            ).with_context(schedule_name=configuration.name)

        try:
            expression = CalendarExpression.parse(
                configuration.definition, default_timezone=self.settings.default_timezone
            )
        except FormatError as e:
            raise ValidationError(
                f"Invalid calendar definition: {e}",
                field="definition",
                value=e.directive,
                cause=e,
            ).with_context(schedule_id=configuration.id, schedule_name=configuration.name) from e

        now = self.clock()
        fire_at = expression.next_fire_time(now)
        if fire_at is None:
            raise ValidationError(
                f"Schedule '{configuration.name}' has no occurrence after {now.isoformat()}",
                field="definition",
            ).with_context(schedule_id=configuration.id, schedule_name=configuration.name)

        actor = actor or self.settings.default_actor
        with self.triggers.lock(configuration.id):
            self.triggers.install(configuration.id, fire_at)
            configuration.enabled = True
            configuration.error_message = ""
            configuration.schedule = expression.describe()
            configuration.status_message = status_message(
                "started",
                now,
                self.settings.status_time_format,
                self.settings.default_timezone,
                actor=actor,
            )
            self._refresh(configuration)

        logger.info(
            "schedule_started",
            schedule_id=configuration.id,
            schedule_name=configuration.name,
            fire_at=fire_at.isoformat(),
            actor=actor,
        )
        return configuration

    def stop(
        self,
        configuration: ScheduleConfiguration,
        actor: str | None = None,
    ) -> ScheduleConfiguration:
        """Cancel any live trigger and mark the configuration disabled.

        The configuration is updated in place and returned; it is not saved.
        """
        with self.triggers.lock(configuration.id or ""):
            was_live = bool(configuration.id) and self.triggers.cancel(configuration.id)

            configuration.enabled = False
            configuration.clear_derived()
            if was_live:
                show_actor = actor if actor not in (None, "", "anonymous", self.settings.default_actor) else None
                configuration.status_message = status_message(
                    "stopped",
                    self.clock(),
                    self.settings.status_time_format,
                    self.settings.default_timezone,
                    actor=show_actor,
                )
            else:
                configuration.status_message = "stopped"

        logger.info(
            "schedule_stopped",
            schedule_id=configuration.id,
            schedule_name=configuration.name,
            was_live=was_live,
            actor=actor,
        )
        return configuration

    def describe(self, configuration: ScheduleConfiguration) -> ScheduleConfiguration:
        """Copy of *configuration* with the derived trigger fields refreshed."""
        described = configuration.clone()
        self._refresh(described)
        return described

    def _refresh(self, configuration: ScheduleConfiguration) -> None:
        entry = self.triggers.find(configuration.id)
        if entry is None:
            configuration.clear_derived()
            return
        configuration.next_fire_time = entry.fire_at
        configuration.time_remaining_ms = entry.time_remaining_ms(self.clock())

    # === Persistence ===

    def save_configuration(self, configuration: ScheduleConfiguration) -> ScheduleConfiguration:
        """Upsert by name and persist.

        A configuration without identity whose name already exists takes
        over that document's identity.

        Raises:
            ValidationError: Empty name, or the name belongs to another identity.
        """
        if not configuration.name or not configuration.name.strip():
            raise ValidationError("Schedule configuration requires a name", field="name")

        existing = self.store.find_by_name(configuration.name)
        if existing is not None:
            if not configuration.id:
                configuration.id = existing.id
                configuration.created_at = existing.created_at
            elif existing.id != configuration.id:
                raise ValidationError(
                    f"Schedule name '{configuration.name}' is already used",
                    field="name",
                    value=configuration.name,
                ).with_context(schedule_id=configuration.id)

        self._refresh(configuration)
        saved = self.store.save(configuration)
        logger.debug("schedule_saved", schedule_id=saved.id, schedule_name=saved.name)
        return saved

    def load_configuration(self, name: str) -> ScheduleConfiguration | None:
        configuration = self.store.find_by_name(name)
        if configuration is None:
            return None
        self._refresh(configuration)
        return configuration

    # === Named operations ===

    def _require(self, name: str) -> ScheduleConfiguration:
        configuration = self.store.find_by_name(name)
        if configuration is None:
            raise ScheduleNotFoundError(name)
        return configuration

    def _apply(
        self,
        name: str,
        operation: Callable[..., ScheduleConfiguration],
        actor: str | None,
    ) -> ScheduleConfiguration:
        """Load, act and save under the identity lock a dispatch persists under."""
        identity = self._require(name).id or ""
        with self.triggers.lock(identity):
            configuration = operation(self._require(name), actor=actor)
            return self.store.save(configuration)

    def start_schedule(self, name: str, actor: str | None = None) -> ScheduleConfiguration:
        return self._apply(name, self.start, actor)

    def stop_schedule(self, name: str, actor: str | None = None) -> ScheduleConfiguration:
        return self._apply(name, self.stop, actor)

    def describe_schedule(self, name: str) -> ScheduleConfiguration:
        return self.describe(self._require(name))

    def list_schedules(self) -> list[ScheduleConfiguration]:
        return [self.describe(configuration) for configuration in self.store.find()]

    # === Lifecycle ===

    def recover_all(self, actor: str | None = None) -> RecoveryStats:
        """Re-arm every enabled configuration that has no live trigger.

        Failures are isolated per configuration.  A configuration rejected
        as invalid (no further occurrence, bad definition) is disabled and
        its error recorded; any other failure leaves it untouched.
        """
        stats = RecoveryStats()
        page_size = self.settings.recovery_page_size

        enabled: list[ScheduleConfiguration] = []
        offset = 0
        while True:
            page = self.store.find(lambda c: c.enabled, limit=page_size, offset=offset)
            enabled.extend(page)
            if len(page) < page_size:
                break
            offset += page_size

        for configuration in enabled:
            with self.triggers.lock(configuration.id or ""):
                self._recover_one(configuration, actor, stats)

        logger.info(
            "schedules_recovered",
            recovered=stats.recovered,
            skipped=stats.skipped,
            failed=stats.failed,
        )
        return stats

    def _recover_one(
        self, configuration: ScheduleConfiguration, actor: str | None, stats: RecoveryStats
    ) -> None:
        if self.triggers.find(configuration.id) is not None:
            stats.skipped += 1
            return
        try:
            self.start(configuration, actor=actor)
            self.store.save(configuration)
            stats.recovered += 1
        except ValidationError as e:
            stats.failed += 1
            stats.errors[configuration.name] = str(e)
            logger.error("schedule_recovery_rejected", **e.to_dict())
            self._disable_after_failed_recovery(configuration, e)
        except Exception as e:
            stats.failed += 1
            stats.errors[configuration.name] = str(e)
            logger.exception(
                "schedule_recovery_failed",
                schedule_id=configuration.id,
                schedule_name=configuration.name,
                error=str(e),
            )

    def _disable_after_failed_recovery(
        self, configuration: ScheduleConfiguration, error: ValidationError
    ) -> None:
        self.stop(configuration)
        configuration.error_message = error.message
        try:
            self.store.save(configuration)
        except Exception as e:
            logger.exception(
                "schedule_recovery_persist_failed",
                schedule_id=configuration.id,
                error=str(e),
            )

    def health(self) -> SchedulerHealth:
        backend_health = self.triggers.backend.health()
        triggers = self.triggers.list_all()
        return SchedulerHealth(
            healthy=bool(backend_health.get("healthy", False)),
            backend=backend_health,
            triggers_armed=sum(1 for t in triggers if t.state is TriggerState.ARMED),
            triggers_running=sum(1 for t in triggers if t.state is TriggerState.RUNNING),
            handlers_registered=len(self.handlers),
            dispatch=self.dispatcher.stats,
        )

    def shutdown(self, wait: bool = True) -> None:
        """Cancel every trigger and stop the backend.  Persisted state is untouched."""
        cancelled = self.triggers.cancel_all()
        self.triggers.backend.shutdown(wait=wait)
        logger.info("scheduler_shutdown", cancelled=cancelled)


__all__ = ["RecoveryStats", "SchedulerCoordinator", "SchedulerHealth"]
