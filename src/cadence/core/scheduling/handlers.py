"""Handler registry - name-based lookup of schedule handlers.

Manifesto:
    A configuration names the job it runs; it never imports it.  The
    registry is the single lookup table that turns ``handler_name`` into a
    callable object, populated once at process start from code, a decorator,
    or installed plugins.

ARCHITECTURE
────────────
::

    registry.register("reports.daily", handler)    → stores by name
    @registry.handler("reports.daily")             → decorator form
    registry.load_entry_points()                   → "cadence.handlers" plugins
    registry.resolve(name)                         → handler or None

BEST PRACTICES
──────────────
- Register everything before ``recover_all()`` runs.
- A handler returns the configuration it was given (or None after mutating
  it in place).  Setting ``enabled = False`` stops the schedule after the run.
- Raising from ``run`` disables the schedule; do not raise for transient
  conditions you want retried on the next occurrence.

Tags:
    cadence, scheduling, handlers, registry, entry-points, plugins
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable, Mapping
from importlib.metadata import entry_points
from typing import Any, Protocol, runtime_checkable

from cadence.core.errors import ValidationError
from cadence.core.logging import get_logger

from .models import ScheduleConfiguration

logger = get_logger(__name__)

ENTRY_POINT_GROUP = "cadence.handlers"


@runtime_checkable
class ScheduleHandler(Protocol):
    """A pluggable job invoked on every timeout of a configuration."""

    def run(self, configuration: ScheduleConfiguration) -> ScheduleConfiguration | None: ...


HandlerFunction = Callable[[ScheduleConfiguration], ScheduleConfiguration | None]


class FunctionHandler:
    """Adapts a plain function to the :class:`ScheduleHandler` protocol."""

    def __init__(self, func: HandlerFunction, name: str | None = None) -> None:
        self.func = func
        self.name = name or getattr(func, "__name__", repr(func))

    def run(self, configuration: ScheduleConfiguration) -> ScheduleConfiguration | None:
        return self.func(configuration)

    def __repr__(self) -> str:
        return f"FunctionHandler({self.name!r})"


def as_handler(obj: Any, name: str | None = None) -> ScheduleHandler:
    """Coerce *obj* into a handler.

    Objects with a ``run`` method are used as-is, classes are instantiated
    with no arguments, and other callables are wrapped.
    """
    if isinstance(obj, type):
        obj = obj()
    if isinstance(obj, ScheduleHandler):
        return obj
    if callable(obj):
        return FunctionHandler(obj, name=name)
    raise TypeError(
        f"Expected a ScheduleHandler or callable, got {type(obj).__name__}"
    )


class HandlerRegistry:
    """Thread-safe mapping of handler names to handlers.

    Example:
        >>> registry = HandlerRegistry()
        >>> @registry.handler("noop")
        ... def noop(configuration):
        ...     return configuration
        >>> registry.resolve("noop")
        FunctionHandler('noop')
        >>> registry.resolve("missing") is None
        True
    """

    def __init__(self, handlers: Mapping[str, Any] | None = None) -> None:
        self._handlers: dict[str, ScheduleHandler] = {}
        self._lock = threading.RLock()
        if handlers:
            self.register_many(handlers)

    # === Registration ===

    def register(self, name: str, handler: Any) -> ScheduleHandler:
        """Register *handler* under *name*.

        Raises:
            ValidationError: If the name is empty or already registered.
        """
        if not name or not name.strip():
            raise ValidationError("Handler name must not be empty", field="handler_name")

        resolved = as_handler(handler, name=name)
        with self._lock:
            if name in self._handlers:
                raise ValidationError(
                    f"Handler '{name}' is already registered",
                    field="handler_name",
                    value=name,
                )
            self._handlers[name] = resolved

        logger.debug("handler_registered", handler_name=name, handler=repr(resolved))
        return resolved

    def register_many(self, handlers: Mapping[str, Any]) -> None:
        for name, handler in handlers.items():
            self.register(name, handler)

    def handler(self, name: str) -> Callable[[Any], Any]:
        """Decorator registering a function or class under *name*."""

        def decorator(obj: Any) -> Any:
            self.register(name, obj)
            return obj

        return decorator

    def unregister(self, name: str) -> bool:
        with self._lock:
            return self._handlers.pop(name, None) is not None

    def load_entry_points(self, group: str = ENTRY_POINT_GROUP) -> list[str]:
        """Register every handler advertised in the *group* entry-point group.

        The entry-point name becomes the handler name.  A plugin that fails
        to import is logged and skipped; duplicates still raise.

        Returns:
            Names registered by this call.
        """
        loaded: list[str] = []
        for entry_point in entry_points(group=group):
            try:
                target = entry_point.load()
            except Exception as exc:
                logger.warning(
                    "handler_entry_point_failed",
                    handler_name=entry_point.name,
                    value=entry_point.value,
                    error=str(exc),
                )
                continue
            self.register(entry_point.name, target)
            loaded.append(entry_point.name)

        logger.info("handler_entry_points_loaded", group=group, count=len(loaded))
        return loaded

    @classmethod
    def from_entry_points(cls, group: str = ENTRY_POINT_GROUP) -> HandlerRegistry:
        registry = cls()
        registry.load_entry_points(group)
        return registry

    # === Lookup ===

    def resolve(self, name: str | None) -> ScheduleHandler | None:
        """Look up a handler; None for unknown or empty names."""
        if not name:
            return None
        with self._lock:
            return self._handlers.get(name)

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._handlers)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._handlers

    def __len__(self) -> int:
        with self._lock:
            return len(self._handlers)


def build_registry(handlers: HandlerRegistry | Mapping[str, Any] | Iterable[tuple[str, Any]] | None) -> HandlerRegistry:
    """Normalize the ``handlers`` argument accepted by ``create_scheduler``."""
    if isinstance(handlers, HandlerRegistry):
        return handlers
    registry = HandlerRegistry()
    if handlers is None:
        return registry
    if isinstance(handlers, Mapping):
        registry.register_many(handlers)
    else:
        for name, handler in handlers:
            registry.register(name, handler)
    return registry


__all__ = [
    "ENTRY_POINT_GROUP",
    "FunctionHandler",
    "HandlerFunction",
    "HandlerRegistry",
    "ScheduleHandler",
    "as_handler",
    "build_registry",
]
