"""
Cadence Logging - structlog setup shared by every engine module.

Engine modules call :func:`get_logger` at import time and emit snake_case
events with key/value fields.  Nothing is printed in a useful shape until
:func:`configure_logging` runs, normally once at process start, from
``CadenceSettings`` (``CADENCE_LOG_LEVEL``, ``CADENCE_LOG_FORMAT``,
``CADENCE_SERVICE_NAME``) unless arguments override them.

Architecture:
    ::

        configure_logging()                       settings: level, format, service
            │
            ▼
        processor chain
          TimeStamper(iso)
          merge_contextvars        ← LogContext(schedule_id=...)
          add_log_level
          StackInfoRenderer / set_exc_info
          _add_service_name
          format_exc_info + _rename_for_ecs     (json only)
          JSONRenderer | ConsoleRenderer

        {"@timestamp": "...", "log.level": "info", "log.logger": "cadence...dispatch",
         "service.name": "cadence", "event": "timeout_dispatched",
         "schedule_id": "abc", "duration_ms": 12}

Tags:
    logging, structlog, json-logging, cadence
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from cadence.core.settings import CadenceSettings, get_settings

_service_name = "cadence"

# structlog key -> ECS field name
_ECS_FIELDS = {
    "timestamp": "@timestamp",
    "level": "log.level",
    "logger_name": "log.logger",
}


def _add_service_name(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    event_dict.setdefault("service.name", _service_name)
    return event_dict


def _rename_for_ecs(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    for key, ecs_key in _ECS_FIELDS.items():
        if key in event_dict:
            event_dict[ecs_key] = event_dict.pop(key)
    return event_dict


def configure_logging(
    level: str | None = None,
    json_format: bool | None = None,
    service: str | None = None,
    add_timestamp: bool = True,
    settings: CadenceSettings | None = None,
) -> None:
    """Configure structlog for the process.

    Arguments left as None are taken from *settings* (default:
    ``get_settings()``).

    Args:
        level: DEBUG, INFO, WARNING or ERROR
        json_format: JSON lines when True, coloured console output when False
        service: Value of the ``service.name`` field
        add_timestamp: Add an ISO timestamp to every event
        settings: Settings to read the defaults from
    """
    global _service_name

    if level is None or json_format is None or service is None:
        settings = settings or get_settings()
        level = level or settings.log_level
        json_format = settings.log_format == "json" if json_format is None else json_format
        service = service or settings.service_name

    _service_name = service
    numeric_level = getattr(logging, level.upper())

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        _add_service_name,
    ]
    if add_timestamp:
        processors.insert(0, structlog.processors.TimeStamper(fmt="iso"))

    if json_format:
        processors += [
            structlog.processors.format_exc_info,
            _rename_for_ecs,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # apscheduler logs through the stdlib
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)


def get_logger(name: str | None = None) -> Any:
    """Structured logger, usually ``get_logger(__name__)``.

    The name travels as the ``logger_name`` field because PrintLogger has none.
    """
    if name is None:
        return structlog.get_logger()
    return structlog.get_logger(name, logger_name=name)


def bind_context(**kwargs: Any) -> None:
    """Bind fields into every later event of this thread or task."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


class LogContext:
    """Bind fields for the duration of a block, restoring earlier values after.

    Example:
        with LogContext(schedule_id="abc"):
            logger.info("handler_started")
    """

    def __init__(self, **kwargs: Any):
        self._context = kwargs
        self._scope = None

    def __enter__(self) -> LogContext:
        self._scope = structlog.contextvars.bound_contextvars(**self._context)
        self._scope.__enter__()
        return self

    def __exit__(self, *args) -> None:
        self._scope.__exit__(*args)
        self._scope = None


__all__ = [
    "configure_logging",
    "get_logger",
    "bind_context",
    "unbind_context",
    "clear_context",
    "LogContext",
]
