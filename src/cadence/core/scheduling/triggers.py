"""Trigger registry - the live runtime triggers of enabled configurations.

Manifesto:
    Exactly one armed timer may back a configuration at any moment.  The
    registry enforces that by cancelling before installing, and it tags
    every install with a per-identity generation number so that a timer
    which was already in flight when it got replaced can recognise itself
    as stale and drop out.

┌──────────────────────────────────────────────────────────────────────────────┐
│  TRIGGER REGISTRY                                                             │
│                                                                               │
│   install(id, fire_at)                                                        │
│     ├── lock(id)                                                              │
│     ├── cancel existing handle (if any)                                       │
│     ├── generation[id] += 1                                                   │
│     ├── backend.schedule(fire_at, _fire(id, gen))                             │
│     └── entries[id] = RuntimeTrigger(..., generation=gen)                     │
│                                                                               │
│   _fire(id, gen)       (timer thread)                                         │
│     ├── lock(id): entries[id].generation == gen ?  else drop (stale)          │
│     ├── state = RUNNING                                                       │
│     └── fire_callback(id, gen)   ← DispatchEngine.on_timeout, no lock held    │
│                                                                               │
│   cancel(id)           pop entry, cancel handle, generation[id] += 1          │
│   rearm(id, t, gen)    install only if generation[id] == gen                  │
│   run_guard(id)        per-identity Lock serialising handler runs             │
│   lock(id)             per-identity RLock, also held by outcome + save        │
└──────────────────────────────────────────────────────────────────────────────┘

Locking:
    Registry mutations take a per-identity ``RLock``; handler runs take a
    separate per-identity ``Lock`` (the run guard).  The small dictionary
    lock is only held while looking up or creating those locks, so no lock
    is ever held across identities and different schedules fire in
    parallel.  Lock order is always run guard before mutation lock.

Tags:
    cadence, scheduling, triggers, timers, concurrency, generations
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import datetime
from functools import partial

from cadence.core.logging import get_logger

from .models import (
    CancellationHandle,
    RuntimeTrigger,
    TriggerState,
    utc_now,
)
from .protocol import TimerBackend

logger = get_logger(__name__)

FireCallback = Callable[[str, int], None]


class TriggerRegistry:
    """Per-identity runtime triggers on top of a :class:`TimerBackend`.

    Example:
        >>> registry = TriggerRegistry(ThreadTimerBackend())
        >>> registry.set_fire_callback(lambda identity, generation: print(identity))
        >>> handle = registry.install("abc", fire_at)
        >>> registry.find("abc").fire_at == fire_at
        True
        >>> registry.cancel("abc")
        True
    """

    def __init__(self, backend: TimerBackend, fire_callback: FireCallback | None = None) -> None:
        self.backend = backend
        self._fire_callback = fire_callback
        self._entries: dict[str, RuntimeTrigger] = {}
        self._generations: dict[str, int] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._run_guards: dict[str, threading.Lock] = {}
        self._meta_lock = threading.Lock()

    def set_fire_callback(self, callback: FireCallback) -> None:
        """Set the callable invoked with ``(identity, generation)`` on every fire."""
        self._fire_callback = callback

    # === Locks ===

    def lock(self, identity: str) -> threading.RLock:
        """Mutation lock for *identity*.

        Callers that must read, change and persist a configuration as one
        step against concurrent dispatch hold it across the whole sequence.
        """
        with self._meta_lock:
            lock = self._locks.get(identity)
            if lock is None:
                lock = self._locks[identity] = threading.RLock()
            return lock

    def run_guard(self, identity: str) -> threading.Lock:
        """Lock held by the dispatch engine for the whole of one run."""
        with self._meta_lock:
            guard = self._run_guards.get(identity)
            if guard is None:
                guard = self._run_guards[identity] = threading.Lock()
            return guard

    # === Mutations ===

    def install(self, identity: str, fire_at: datetime) -> CancellationHandle:
        """Arm a trigger for *identity*, replacing any existing one."""
        with self.lock(identity):
            replaced = self._discard(identity)
            generation = self._generations.get(identity, 0) + 1
            self._generations[identity] = generation

            handle = self.backend.schedule(
                fire_at,
                partial(self._fire, identity, generation),
                name=identity,
            )
            self._entries[identity] = RuntimeTrigger(
                schedule_id=identity,
                fire_at=fire_at,
                handle=handle,
                generation=generation,
            )

        logger.debug(
            "trigger_installed",
            schedule_id=identity,
            fire_at=fire_at.isoformat(),
            generation=generation,
            replaced=replaced,
        )
        return handle

    def rearm(
        self,
        identity: str,
        fire_at: datetime,
        expected_generation: int,
    ) -> CancellationHandle | None:
        """Install only if nobody installed or cancelled since *expected_generation*.

        Returns:
            The new handle, or None when the generation moved on.
        """
        with self.lock(identity):
            if self._generations.get(identity, 0) != expected_generation:
                return None
            return self.install(identity, fire_at)

    def cancel(self, identity: str) -> bool:
        """Cancel and remove the trigger.  Returns True if one was live."""
        with self.lock(identity):
            removed = self._discard(identity)
            self._generations[identity] = self._generations.get(identity, 0) + 1

        if removed:
            logger.debug("trigger_cancelled", schedule_id=identity)
        return removed

    def cancel_all(self) -> int:
        """Cancel every trigger (process shutdown).  Returns how many were live."""
        with self._meta_lock:
            identities = list(self._entries)
        return sum(1 for identity in identities if self.cancel(identity))

    def _discard(self, identity: str) -> bool:
        entry = self._entries.pop(identity, None)
        if entry is None:
            return False
        entry.handle.cancel()
        return True

    # === Lookup ===

    def find(self, identity: str | None) -> RuntimeTrigger | None:
        if not identity:
            return None
        with self.lock(identity):
            return self._entries.get(identity)

    def list_all(self) -> list[RuntimeTrigger]:
        with self._meta_lock:
            return list(self._entries.values())

    def generation(self, identity: str) -> int:
        with self.lock(identity):
            return self._generations.get(identity, 0)

    def is_current(self, identity: str, generation: int) -> bool:
        with self.lock(identity):
            entry = self._entries.get(identity)
            return entry is not None and entry.generation == generation

    def time_remaining_ms(self, identity: str, now: datetime | None = None) -> int | None:
        entry = self.find(identity)
        return entry.time_remaining_ms(now or utc_now()) if entry else None

    def __len__(self) -> int:
        with self._meta_lock:
            return len(self._entries)

    # === Firing ===

    def _fire(self, identity: str, generation: int) -> None:
        with self.lock(identity):
            entry = self._entries.get(identity)
            if entry is None or entry.generation != generation:
                logger.debug("stale_trigger_dropped", schedule_id=identity, generation=generation)
                return
            entry.state = TriggerState.RUNNING

        callback = self._fire_callback
        if callback is None:
            logger.warning("trigger_fired_without_callback", schedule_id=identity)
            return
        callback(identity, generation)


__all__ = ["FireCallback", "TriggerRegistry"]
