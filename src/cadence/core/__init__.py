"""Cadence Core -- ambient primitives shared by the scheduling engine.

Architecture::

    errors.py          Structured error hierarchy (CadenceError and friends)
    logging.py         structlog configuration and context binding
    settings.py        CADENCE_* environment settings (pydantic-settings)
    scheduling/        Calendar expressions, triggers, dispatch, coordinator

Tags:
    cadence, core, errors, logging, settings
"""

from .errors import (
    CadenceError,
    ErrorCategory,
    ErrorContext,
    FormatError,
    HandlerError,
    HandlerExecutionError,
    HandlerNotFoundError,
    ScheduleNotFoundError,
    StoreError,
    ValidationError,
)
from .logging import configure_logging, get_logger
from .settings import CadenceSettings, get_settings

__all__ = [
    "CadenceError",
    "CadenceSettings",
    "ErrorCategory",
    "ErrorContext",
    "FormatError",
    "HandlerError",
    "HandlerExecutionError",
    "HandlerNotFoundError",
    "ScheduleNotFoundError",
    "StoreError",
    "ValidationError",
    "configure_logging",
    "get_logger",
    "get_settings",
]
