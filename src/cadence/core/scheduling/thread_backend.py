"""Zero-dependency threading-based timer backend.

This is the DEFAULT backend for cadence.  Each armed trigger is one daemon
``threading.Timer``; the callback runs on that timer's thread.

┌──────────────────────────────────────────────────────────────────────────────┐
│  THREAD TIMER BACKEND                                                         │
│                                                                               │
│   schedule(fire_at, callback)                                                 │
│      │                                                                        │
│      ▼                                                                        │
│   delay = max(0, fire_at - now)                                               │
│   Timer(delay, _run) ── daemon ──► _run(): pending.discard; callback()        │
│      │                                                                        │
│      ▼                                                                        │
│   ThreadTimerHandle.cancel() → timer.cancel(); pending.discard                │
│                                                                               │
│   shutdown(wait) → cancel every pending timer, join running ones             │
│                                                                               │
│  Key Design Decisions:                                                        │
│  1. Daemon threads: pending timers never block process exit                  │
│  2. Callback exceptions are logged, never raised into the timer thread       │
│  3. Fire counting: observable health                                         │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Any

from cadence.core.logging import get_logger

from .models import utc_now
from .protocol import BackendHealth, TimerCallback

logger = get_logger(__name__)


class ThreadTimerHandle:
    """Cancellation handle for one ``threading.Timer``."""

    def __init__(self, backend: ThreadTimerBackend, timer: threading.Timer) -> None:
        self._backend = backend
        self._timer = timer

    def cancel(self) -> None:
        self._timer.cancel()
        self._backend._forget(self._timer)

    @property
    def timer(self) -> threading.Timer:
        return self._timer


class ThreadTimerBackend:
    """One daemon timer thread per armed trigger.

    Example:
        >>> backend = ThreadTimerBackend()
        >>> handle = backend.schedule(utc_now(), lambda: print("fired"))
        >>> # ... later ...
        >>> backend.shutdown()
    """

    name = "thread"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: set[threading.Timer] = set()
        self._running: set[threading.Thread] = set()
        self._fired_count = 0
        self._last_fired: datetime | None = None
        self._shutdown = False

    def schedule(
        self,
        fire_at: datetime,
        callback: TimerCallback,
        name: str | None = None,
    ) -> ThreadTimerHandle:
        delay = max(0.0, (fire_at - utc_now()).total_seconds())

        timer: threading.Timer

        def _run() -> None:
            with self._lock:
                self._pending.discard(timer)
                self._running.add(threading.current_thread())
                self._fired_count += 1
                self._last_fired = utc_now()
            try:
                callback()
            except Exception as e:
                logger.exception("timer_callback_failed", timer=name, error=str(e))
            finally:
                with self._lock:
                    self._running.discard(threading.current_thread())

        timer = threading.Timer(delay, _run)
        timer.daemon = True
        if name:
            timer.name = f"cadence-timer-{name}"

        with self._lock:
            if self._shutdown:
                logger.warning("timer_rejected_after_shutdown", timer=name)
            else:
                self._pending.add(timer)
                timer.start()
        return ThreadTimerHandle(self, timer)

    def _forget(self, timer: threading.Timer) -> None:
        with self._lock:
            self._pending.discard(timer)

    def shutdown(self, wait: bool = True) -> None:
        """Cancel pending timers; optionally wait up to 5s for running callbacks."""
        with self._lock:
            self._shutdown = True
            pending = list(self._pending)
            self._pending.clear()
            running = list(self._running)

        for timer in pending:
            timer.cancel()

        if wait:
            current = threading.current_thread()
            for thread in running:
                if thread is not current:
                    thread.join(timeout=5.0)
                    if thread.is_alive():
                        logger.warning("timer_thread_did_not_stop", thread=thread.name)

        logger.info("thread_backend_shutdown", cancelled=len(pending))

    def health(self) -> dict[str, Any]:
        return self.get_health().to_dict()

    def get_health(self) -> BackendHealth:
        """Return structured health status."""
        with self._lock:
            return BackendHealth(
                healthy=not self._shutdown,
                backend=self.name,
                pending=len(self._pending),
                fired_count=self._fired_count,
                last_fired=self._last_fired,
                extra={"running": len(self._running)},
            )

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def fired_count(self) -> int:
        return self._fired_count
