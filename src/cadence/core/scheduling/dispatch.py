"""Dispatch engine - run one timeout and record what happened.

Manifesto:
    A fired trigger is a promise that the handler runs once, alone, and
    that whatever happens afterwards is written back to the store.  A
    handler that raises is never retried: the schedule is stopped and the
    message is kept so an operator can see why.

┌──────────────────────────────────────────────────────────────────────────────┐
│  DISPATCH STATE MACHINE                                                       │
│                                                                               │
│      start()            fire                  handler returned                │
│   Stopped ───────► Armed ──────► Running ─────────────────────► Armed         │
│      ▲                             │   next occurrence computed               │
│      │                             │                                          │
│      │   not found / raised /      │                                          │
│      └──── disabled / exhausted ◄──┘                                          │
│                                                                               │
│   on_timeout(id, generation)                                                  │
│     run_guard(id):                                                            │
│       1. generation stale?            → drop                                 │
│       2. store.load(id)               → missing or failed: cancel trigger    │
│       3. handlers.resolve(name)       → missing: error, Stopped              │
│       4. handler.run(configuration)   → raised: error, Stopped               │
│       lock(id):                                                               │
│         5. operator stop/start during run? → honour it, no rearm             │
│         6. enabled=False from handler?  → Stopped                            │
│         7. next_fire_time()             → None: completed; bad: Stopped      │
│         8. rearm(id, next, generation)                                        │
│         finally: store.save(configuration)  (failure logged only)            │
└──────────────────────────────────────────────────────────────────────────────┘

Tags:
    cadence, scheduling, dispatch, state-machine, error-recovery
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from cadence.core.errors import (
    CadenceError,
    FormatError,
    HandlerError,
    HandlerExecutionError,
    HandlerNotFoundError,
    StoreError,
    ValidationError,
)
from cadence.core.logging import LogContext, get_logger
from cadence.core.settings import CadenceSettings, get_settings

from .calendar import CalendarExpression
from .handlers import HandlerRegistry
from .models import ScheduleConfiguration, status_message, utc_now
from .store import ConfigurationStore
from .triggers import TriggerRegistry

logger = get_logger(__name__)


@dataclass
class DispatchStats:
    """Counters for dispatched timeouts."""

    runs_completed: int = 0
    runs_failed: int = 0
    runs_disabled: int = 0
    stale_dropped: int = 0
    persist_failures: int = 0
    last_run_at: datetime | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "runs_completed": self.runs_completed,
            "runs_failed": self.runs_failed,
            "runs_disabled": self.runs_disabled,
            "stale_dropped": self.stale_dropped,
            "persist_failures": self.persist_failures,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_error": self.last_error,
        }


class DispatchEngine:
    """Executes fired triggers against their configuration's handler."""

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
        self._stats = DispatchStats()
        self._stats_lock = threading.Lock()

    @property
    def stats(self) -> DispatchStats:
        return self._stats

    # === Entry point ===

    def on_timeout(self, identity: str, generation: int | None = None) -> ScheduleConfiguration | None:
        """Handle one fired trigger for *identity*.

        Passing ``generation=None`` runs the configuration regardless of
        which trigger is current (manual invocation).

        Returns:
            The configuration as persisted, or None when the fire was
            dropped or the configuration no longer exists.
        """
        with self.triggers.run_guard(identity), LogContext(schedule_id=identity):
            observed = self.triggers.generation(identity)
            if generation is not None and not self.triggers.is_current(identity, generation):
                logger.debug("timeout_dropped_stale", generation=generation, current=observed)
                self._count(stale_dropped=1)
                return None

            try:
                configuration = self.store.load(identity)
            except CadenceError as e:
                logger.error("timeout_load_failed", **e.to_dict())
                self._release(identity, observed)
                return None

            if configuration is None:
                logger.warning("timeout_configuration_missing")
                self.triggers.cancel(identity)
                return None

            started = time.perf_counter()
            try:
                self._dispatch(configuration, observed)
            finally:
                duration_ms = int((time.perf_counter() - started) * 1000)
                logger.info(
                    "timeout_dispatched",
                    schedule_name=configuration.name,
                    handler_name=configuration.handler_name,
                    enabled=configuration.enabled,
                    duration_ms=duration_ms,
                )
            return configuration

    def _release(self, identity: str, observed: int) -> None:
        """Drop the fired entry when its configuration could not be read."""
        with self.triggers.lock(identity):
            if self.triggers.generation(identity) == observed and self.triggers.cancel(identity):
                logger.warning("trigger_released_after_load_failure")

    # === State machine ===

    def _dispatch(self, configuration: ScheduleConfiguration, observed: int) -> None:
        identity = configuration.id or ""
        failure: HandlerError | None = None

        handler = self.handlers.resolve(configuration.handler_name)
        if handler is None:
            failure = HandlerNotFoundError(configuration.handler_name).with_context(
                schedule_id=identity, schedule_name=configuration.name
            )
            logger.error("handler_not_found", **failure.to_dict())
        else:
            try:
                result = handler.run(configuration)
                if result is not None and result is not configuration:
                    self._adopt(configuration, result)
            except Exception as e:
                failure = HandlerExecutionError(configuration.handler_name, e).with_context(
                    schedule_id=identity, schedule_name=configuration.name
                )
                logger.error("handler_failed", exc_info=True, **failure.to_dict())

        # start/stop hold this lock across load, act and save
        with self.triggers.lock(identity):
            try:
                if failure is not None:
                    self._fail(configuration, failure)
                else:
                    self._settle(configuration, observed)
            finally:
                self._persist(configuration)

    def _settle(self, configuration: ScheduleConfiguration, observed: int) -> None:
        if self._operator_intervened(configuration, observed):
            self._count(runs_completed=1)
            return

        if not configuration.enabled:
            logger.info("schedule_disabled_by_handler")
            self._stop(configuration)
            self._count(runs_completed=1, runs_disabled=1)
            return

        configuration.error_message = ""
        try:
            self._rearm(configuration, observed)
        except FormatError as e:
            error = ValidationError(
                f"Invalid calendar definition: {e}",
                field="definition",
                value=e.directive,
                cause=e,
            ).with_context(schedule_id=configuration.id, schedule_name=configuration.name)
            logger.error("definition_invalid", **error.to_dict())
            self._fail(configuration, error)
            return
        self._count(runs_completed=1)

    def _fail(self, configuration: ScheduleConfiguration, error: CadenceError) -> None:
        configuration.error_message = str(error)
        self._stop(configuration)
        self._count(runs_failed=1, last_error=str(error))

    def _operator_intervened(self, configuration: ScheduleConfiguration, observed: int) -> bool:
        """Honour a start or stop issued while the handler was running."""
        identity = configuration.id or ""
        if self.triggers.generation(identity) == observed:
            return False

        try:
            stored = self.store.load(identity)
        except CadenceError as e:
            logger.error("operator_status_unavailable", **e.to_dict())
            stored = None
        if stored is not None:
            configuration.status_message = stored.status_message

        entry = self.triggers.find(identity)
        if entry is None:
            logger.info("schedule_stopped_during_run")
            configuration.enabled = False
            configuration.clear_derived()
        else:
            logger.info("schedule_restarted_during_run", fire_at=entry.fire_at.isoformat())
            configuration.enabled = True
            self._refresh(configuration)
        return True

    def _rearm(self, configuration: ScheduleConfiguration, observed: int) -> None:
        identity = configuration.id or ""
        expression = CalendarExpression.parse(
            configuration.definition, default_timezone=self.settings.default_timezone
        )
        now = self.clock()
        fire_at = expression.next_fire_time(now)
        if fire_at is None:
            logger.info("schedule_completed", schedule=expression.describe())
            self.triggers.cancel(identity)
            configuration.enabled = False
            configuration.clear_derived()
            configuration.status_message = status_message(
                "completed",
                now,
                self.settings.status_time_format,
                self.settings.default_timezone,
            )
            self._count(runs_disabled=1)
            return

        if self.triggers.rearm(identity, fire_at, expected_generation=observed) is None:
            self._operator_intervened(configuration, observed)
            return

        configuration.schedule = expression.describe()
        self._refresh(configuration)
        logger.debug("schedule_rearmed", fire_at=fire_at.isoformat())

    def _stop(self, configuration: ScheduleConfiguration) -> None:
        self.triggers.cancel(configuration.id or "")
        configuration.enabled = False
        configuration.clear_derived()
        configuration.status_message = status_message(
            "stopped",
            self.clock(),
            self.settings.status_time_format,
            self.settings.default_timezone,
        )

    def _refresh(self, configuration: ScheduleConfiguration) -> None:
        entry = self.triggers.find(configuration.id)
        if entry is None:
            configuration.clear_derived()
            return
        configuration.next_fire_time = entry.fire_at
        configuration.time_remaining_ms = entry.time_remaining_ms(self.clock())

    @staticmethod
    def _adopt(configuration: ScheduleConfiguration, result: ScheduleConfiguration) -> None:
        """Copy a returned configuration onto the loaded one, keeping identity."""
        identity = configuration.id
        for key, value in vars(result).items():
            setattr(configuration, key, value)
        configuration.id = identity

    # === Persistence ===

    def _persist(self, configuration: ScheduleConfiguration) -> None:
        try:
            self.store.save(configuration)
        except StoreError as e:
            self._count(persist_failures=1)
            logger.error("outcome_persist_failed", **e.to_dict())
        except Exception as e:
            self._count(persist_failures=1)
            logger.exception("outcome_persist_failed", error=str(e))

    def _count(self, last_error: str | None = None, **increments: int) -> None:
        with self._stats_lock:
            for key, amount in increments.items():
                setattr(self._stats, key, getattr(self._stats, key) + amount)
            if increments.get("runs_completed") or increments.get("runs_failed"):
                self._stats.last_run_at = self.clock()
            if last_error is not None:
                self._stats.last_error = last_error


__all__ = ["DispatchEngine", "DispatchStats"]
