"""Timer backend protocol.

┌──────────────────────────────────────────────────────────────────────────────┐
│  TIMER BACKEND PROTOCOL                                                       │
│                                                                               │
│  A backend controls WHEN a one-shot callback runs.  The TriggerRegistry      │
│  controls WHICH trigger is current, and the DispatchEngine controls WHAT     │
│  happens when it fires.                                                       │
│                                                                               │
│   ┌─────────────────┐  schedule(fire_at, cb)  ┌─────────────────────────┐    │
│   │ TriggerRegistry │ ──────────────────────► │  Thread backend         │    │
│   │                 │ ◄────────────────────── │  (threading.Timer)      │    │
│   │                 │   CancellationHandle    └─────────────────────────┘    │
│   │                 │                                                        │
│   │                 │  schedule(fire_at, cb)  ┌─────────────────────────┐    │
│   │                 │ ──────────────────────► │  APScheduler backend    │    │
│   └─────────────────┘                         │  (date job, pool)       │    │
│                                               └─────────────────────────┘    │
│                                                                               │
│  Responsibility Split:                                                        │
│  - Backend: one-shot timers and their threads                                │
│  - Registry: identity, generation, cancellation                              │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from .models import CancellationHandle

TimerCallback = Callable[[], None]


@runtime_checkable
class TimerBackend(Protocol):
    """Protocol for pluggable one-shot timer backends.

    Implementations:
        - ThreadTimerBackend: stdlib ``threading.Timer`` per trigger (default)
        - APSchedulerTimerBackend: APScheduler date jobs (requires [apscheduler] extra)

    Example (custom backend):
        >>> class ImmediateBackend:
        ...     name = "immediate"
        ...
        ...     def schedule(self, fire_at, callback, name=None):
        ...         callback()
        ...         return NoopHandle()
        ...
        ...     def shutdown(self, wait=True):
        ...         pass
        ...
        ...     def health(self) -> dict:
        ...         return {"healthy": True, "backend": "immediate"}
    """

    name: str

    def schedule(
        self,
        fire_at: datetime,
        callback: TimerCallback,
        name: str | None = None,
    ) -> CancellationHandle:
        """Run *callback* once at *fire_at* (immediately if already due).

        Returns:
            Handle whose ``cancel()`` prevents a pending run.  Cancelling a
            timer that already fired is a no-op.
        """
        ...

    def shutdown(self, wait: bool = True) -> None:
        """Cancel pending timers and release backend threads."""
        ...

    def health(self) -> dict[str, Any]:
        """Return backend health status.

        Returns:
            dict with at least:
                - healthy: bool
                - backend: str
                - pending: int: timers armed and not yet fired
                - fired_count: int
        """
        ...


@dataclass
class BackendHealth:
    """Structured backend health response."""

    healthy: bool
    backend: str
    pending: int = 0
    fired_count: int = 0
    last_fired: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "healthy": self.healthy,
            "backend": self.backend,
            "pending": self.pending,
            "fired_count": self.fired_count,
            "last_fired": self.last_fired.isoformat() if self.last_fired else None,
            **self.extra,
        }
