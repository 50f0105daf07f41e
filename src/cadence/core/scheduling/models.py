"""Scheduler data model.

Manifesto:
    The persisted configuration and its live runtime trigger are different
    things with different owners.  ``ScheduleConfiguration`` belongs to the
    store and survives restarts; ``RuntimeTrigger`` belongs to the
    ``TriggerRegistry`` and dies with the process.

Models:
    - ScheduleConfiguration: persisted unit of work (document in the store)
    - RuntimeTrigger: live, in-memory timer backing one enabled configuration
    - TriggerState: ARMED (waiting) / RUNNING (handler executing)

Tags:
    cadence, models, scheduling, dataclasses
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Protocol, runtime_checkable
from zoneinfo import ZoneInfo


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


@runtime_checkable
class CancellationHandle(Protocol):
    """Opaque handle returned by a timer backend for one armed timer."""

    def cancel(self) -> None: ...


class TriggerState(str, Enum):
    """Runtime trigger states.  Stopped has no trigger at all."""

    ARMED = "ARMED"
    RUNNING = "RUNNING"


# ---------------------------------------------------------------------------
# ScheduleConfiguration
# ---------------------------------------------------------------------------


@dataclass
class ScheduleConfiguration:
    """Persisted schedule definition.

    ``next_fire_time`` and ``time_remaining_ms`` are derived fields: they are
    written for information only and are recomputed from the
    ``TriggerRegistry`` whenever the configuration is described or saved.
    """

    name: str = ""
    definition: list[str] = field(default_factory=list)
    handler_name: str = ""
    id: str | None = None
    enabled: bool = False
    status_message: str = ""
    error_message: str = ""
    schedule: str = ""  # rendered calendar expression, set by start()
    params: dict[str, Any] = field(default_factory=dict)
    next_fire_time: datetime | None = None
    time_remaining_ms: int | None = None
    created_at: str = ""
    updated_at: str = ""

    def clear_derived(self) -> None:
        """Drop the volatile trigger fields."""
        self.next_fire_time = None
        self.time_remaining_ms = None

    def clone(self) -> ScheduleConfiguration:
        """Deep copy, so callers never share mutable state with a store."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible document."""
        return {
            "id": self.id,
            "name": self.name,
            "definition": list(self.definition),
            "handler_name": self.handler_name,
            "enabled": self.enabled,
            "status_message": self.status_message,
            "error_message": self.error_message,
            "schedule": self.schedule,
            "params": copy.deepcopy(self.params),
            "next_fire_time": self.next_fire_time.isoformat() if self.next_fire_time else None,
            "time_remaining_ms": self.time_remaining_ms,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScheduleConfiguration:
        """Rebuild from a document produced by :meth:`to_dict`."""
        next_fire = data.get("next_fire_time")
        return cls(
            id=data.get("id"),
            name=data.get("name", ""),
            definition=list(data.get("definition") or []),
            handler_name=data.get("handler_name", ""),
            enabled=bool(data.get("enabled", False)),
            status_message=data.get("status_message", ""),
            error_message=data.get("error_message", ""),
            schedule=data.get("schedule", ""),
            params=copy.deepcopy(data.get("params") or {}),
            next_fire_time=datetime.fromisoformat(next_fire) if next_fire else None,
            time_remaining_ms=data.get("time_remaining_ms"),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )


# ---------------------------------------------------------------------------
# RuntimeTrigger
# ---------------------------------------------------------------------------


@dataclass
class RuntimeTrigger:
    """Live trigger owned by the ``TriggerRegistry``.  Never persisted."""

    schedule_id: str
    fire_at: datetime
    handle: CancellationHandle
    generation: int
    state: TriggerState = TriggerState.ARMED
    installed_at: datetime = field(default_factory=utc_now)

    def time_remaining(self, now: datetime | None = None) -> timedelta:
        """Time until the trigger fires; zero once due or running."""
        remaining = self.fire_at - (now or utc_now())
        return max(remaining, timedelta(0))

    def time_remaining_ms(self, now: datetime | None = None) -> int:
        return int(self.time_remaining(now).total_seconds() * 1000)


# ---------------------------------------------------------------------------
# Status messages
# ---------------------------------------------------------------------------


def status_message(
    verb: str,
    when: datetime,
    time_format: str,
    timezone: str = "UTC",
    actor: str | None = None,
) -> str:
    """Render ``"<verb> at <timestamp>[ by <actor>]"`` in *timezone* local time."""
    stamp = when.astimezone(ZoneInfo(timezone)).strftime(time_format)
    message = f"{verb} at {stamp}"
    if actor:
        message += f" by {actor}"
    return message
