"""
Structured error types for the cadence scheduler.

Every failure the engine can produce is a typed error that carries a
category, a retry flag, structured context, and an optional chained cause.
The dispatch engine relies on these types to turn a failed timeout into
persisted state instead of an exception nobody can catch.

Manifesto:
    - **Typed Error Hierarchy:** One class per failure the engine reasons about
    - **Explicit Retry Semantics:** Nothing here is retried automatically
    - **Rich Context:** Errors carry schedule id, name, handler and directive
    - **Error Chaining:** The original exception is kept as ``cause``

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                       CadenceError                              │
        │  (category, retryable, context, cause)                          │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                 │
        │  ValidationError     FormatError          StoreError            │
        │  (VALIDATION)        (PARSE)              (STORAGE)             │
        │                                                                 │
        │  HandlerError        ScheduleNotFoundError                      │
        │  (HANDLER)           (ORCHESTRATION)                            │
        │       │                                                         │
        │  HandlerNotFoundError                                           │
        │  HandlerExecutionError                                          │
        └─────────────────────────────────────────────────────────────────┘

Propagation:
    ValidationError and FormatError are raised synchronously to the caller
    of ``start``/``save_configuration``.  StoreError propagates to the caller
    of start/stop/save.  Handler errors never leave the dispatch engine: they
    disable the schedule and end up in ``error_message``.

Examples:
    >>> error = FormatError("not an integer", directive="hour=eight")
    >>> error.directive
    'hour=eight'
    >>> error.to_dict()["category"]
    'PARSE'

Tags:
    error-handling, exception-hierarchy, error-context, cadence, scheduling
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Error categories used for classification and log routing."""

    VALIDATION = "VALIDATION"        # Bad configuration supplied by a caller
    PARSE = "PARSE"                  # Calendar definition could not be parsed
    HANDLER = "HANDLER"              # Handler lookup or execution failures
    STORAGE = "STORAGE"              # Configuration store failures
    ORCHESTRATION = "ORCHESTRATION"  # Coordinator-level lookups
    INTERNAL = "INTERNAL"            # Bugs, unexpected state


@dataclass
class ErrorContext:
    """Structured metadata attached to an error.

    Only non-None fields are emitted by :meth:`to_dict`, so errors log
    cleanly whatever subset of context was known when they were raised.
    """

    schedule_id: str | None = None
    schedule_name: str | None = None
    handler_name: str | None = None
    directive: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["schedule_id", "schedule_name", "handler_name", "directive"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class CadenceError(Exception):
    """Base exception for all cadence errors.

    Subclasses set ``default_category`` and ``default_retryable``; callers
    may override both per instance.

    Example:
        >>> error = CadenceError("boom").with_context(schedule_id="abc")
        >>> error.context.schedule_id
        'abc'
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> CadenceError:
        """Add context fields fluently; unknown keys go to ``metadata``."""
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# VALIDATION / PARSE ERRORS
# =============================================================================


class ValidationError(CadenceError):
    """A configuration was rejected before anything was scheduled."""

    default_category = ErrorCategory.VALIDATION

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        value: Any = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.field:
            result["field"] = self.field
        if self.value is not None:
            result["value"] = repr(self.value)
        return result


class FormatError(CadenceError):
    """A calendar definition directive could not be parsed."""

    default_category = ErrorCategory.PARSE

    def __init__(self, message: str, *, directive: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.directive = directive
        if directive is not None:
            self.context.directive = directive

    def __str__(self) -> str:
        if self.directive:
            return f"{self.message} (directive: {self.directive!r})"
        return self.message


# =============================================================================
# HANDLER ERRORS
# =============================================================================


class HandlerError(CadenceError):
    """Handler lookup or execution failure. Always fatal for the run."""

    default_category = ErrorCategory.HANDLER


class HandlerNotFoundError(HandlerError):
    """No handler is registered under the configured name."""

    def __init__(self, handler_name: str, **kwargs: Any):
        self.handler_name = handler_name
        super().__init__(f"Scheduler handler '{handler_name}' not found!", **kwargs)
        self.context.handler_name = handler_name


class HandlerExecutionError(HandlerError):
    """The handler body raised."""

    def __init__(self, handler_name: str, cause: Exception, **kwargs: Any):
        self.handler_name = handler_name
        message = str(cause) or cause.__class__.__name__
        super().__init__(message, cause=cause, **kwargs)
        self.context.handler_name = handler_name


# =============================================================================
# STORAGE / LOOKUP ERRORS
# =============================================================================


class StoreError(CadenceError):
    """The configuration store failed to find, load or save."""

    default_category = ErrorCategory.STORAGE


class ScheduleNotFoundError(CadenceError):
    """No configuration exists under the requested name."""

    default_category = ErrorCategory.ORCHESTRATION

    def __init__(self, name: str):
        self.schedule_name = name
        super().__init__(f"Schedule configuration not found: {name}")
        self.context.schedule_name = name


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "CadenceError",
    "ValidationError",
    "FormatError",
    "HandlerError",
    "HandlerNotFoundError",
    "HandlerExecutionError",
    "StoreError",
    "ScheduleNotFoundError",
]
