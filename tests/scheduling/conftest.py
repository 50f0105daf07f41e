"""Pytest fixtures for scheduling tests.

The engine is exercised against a ``ManualTimerBackend`` whose timers fire
only when a test says so, and a ``FakeClock`` the test advances, so every
dispatch test is deterministic and single-threaded unless it opts in.
"""

from datetime import UTC, datetime, timedelta

import pytest

from cadence.core.scheduling import (
    HandlerRegistry,
    InMemoryConfigurationStore,
    ScheduleConfiguration,
    SchedulerCoordinator,
    TriggerRegistry,
)

DAILY_AT_SIX = ["second=0", "minute=0", "hour=6"]


class FakeClock:
    """Callable clock returning a settable aware UTC instant."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now


class ManualTimer:
    """Handle for one timer of the manual backend."""

    def __init__(self, fire_at, callback, name) -> None:
        self.fire_at = fire_at
        self.callback = callback
        self.name = name
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualTimerBackend:
    """Timer backend that never fires on its own."""

    name = "manual"

    def __init__(self) -> None:
        self.timers: list[ManualTimer] = []
        self.stopped = False

    def schedule(self, fire_at, callback, name=None) -> ManualTimer:
        timer = ManualTimer(fire_at, callback, name)
        self.timers.append(timer)
        return timer

    def pending(self) -> list[ManualTimer]:
        return [t for t in self.timers if not t.cancelled and not t.fired]

    def fire(self, timer: ManualTimer) -> None:
        timer.fired = True
        timer.callback()

    def fire_next(self) -> ManualTimer:
        timer = min(self.pending(), key=lambda t: t.fire_at)
        self.fire(timer)
        return timer

    def shutdown(self, wait: bool = True) -> None:
        for timer in self.pending():
            timer.cancel()
        self.stopped = True

    def health(self) -> dict:
        return {"healthy": not self.stopped, "backend": self.name, "pending": len(self.pending())}


class RecordingHandler:
    """Handler recording every configuration it was given."""

    def __init__(self, action=None) -> None:
        self.calls: list[ScheduleConfiguration] = []
        self.action = action

    def run(self, configuration):
        self.calls.append(configuration.clone())
        if self.action is not None:
            return self.action(configuration)
        return configuration


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 1, 0, 0, 0, tzinfo=UTC))


@pytest.fixture
def backend():
    return ManualTimerBackend()


@pytest.fixture
def store():
    return InMemoryConfigurationStore()


@pytest.fixture
def handlers():
    return HandlerRegistry()


@pytest.fixture
def triggers(backend):
    return TriggerRegistry(backend)


@pytest.fixture
def coordinator(store, handlers, triggers, settings, clock):
    return SchedulerCoordinator(
        store=store,
        handlers=handlers,
        triggers=triggers,
        settings=settings,
        clock=clock,
    )


@pytest.fixture
def recording_handler(handlers):
    handler = RecordingHandler()
    handlers.register("record", handler)
    return handler


@pytest.fixture
def make_schedule(coordinator):
    """Save a configuration and optionally start it through the coordinator."""

    def _make(
        name: str = "daily",
        handler_name: str = "record",
        definition: list[str] | None = None,
        start: bool = True,
        **fields,
    ) -> ScheduleConfiguration:
        configuration = coordinator.save_configuration(
            ScheduleConfiguration(
                name=name,
                definition=list(definition or DAILY_AT_SIX),
                handler_name=handler_name,
                **fields,
            )
        )
        if start:
            configuration = coordinator.start_schedule(name)
        return configuration

    return _make
