"""
Structured error types for berth.

Every failure surfaced by a runtime adapter is one of a small, closed set of
typed errors. Callers branch on the class, never on message text, and the
raw backend diagnostic is preserved verbatim for humans.

Manifesto:
    - **Typed taxonomy:** One class per failure kind, shared by all backends
    - **Validate first:** ValidationError is raised before any backend call
    - **Raw diagnostics:** BackendError keeps the backend's own text untouched
    - **Explicit retry semantics:** Only Timeout is retryable by default

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                         BerthError                            │
        │        (category, retryable, context, cause)                  │
        ├──────────────────────────────────────────────────────────────┤
        │  ValidationError        CreationFailed       NotFound         │
        │  (VALIDATION)           (CREATION, reason)   (NOT_FOUND)      │
        │       │                                                       │
        │  MalformedCommand       AlreadyExists        Timeout          │
        │                         (CONFLICT)           (TIMEOUT, retry) │
        │                                                               │
        │  CapabilityUnsupported  BackendError ──── ExecFailed          │
        │  (CAPABILITY)           (BACKEND, diagnostic)  (exit_code)    │
        │                                                               │
        │  InvalidTransitionError (STATE)                               │
        └──────────────────────────────────────────────────────────────┘

Examples:
    >>> err = NotFound("No such container: t1").with_context(backend="docker-cli")
    >>> err.category
    <ErrorCategory.NOT_FOUND: 'NOT_FOUND'>
    >>> err.context.backend
    'docker-cli'

    >>> CreationFailed("name taken", reason=CreationReason.NAME_CONFLICT).reason
    <CreationReason.NAME_CONFLICT: 'name_conflict'>

Guardrails:
    ❌ DON'T: Parse ``str(error)`` to decide what happened
    ✅ DO: Catch the specific class and read its attributes

    ❌ DON'T: Put registry passwords or tokens into context
    ✅ DO: Record the operation, workload and backend names

Tags:
    error-handling, exception-hierarchy, berth, runtimes

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories used for classification and structured logs."""

    VALIDATION = "VALIDATION"      # Bad caller input, rejected before any backend call
    CREATION = "CREATION"          # Workload could not be created or never became ready
    NOT_FOUND = "NOT_FOUND"        # Workload, network or image absent
    CONFLICT = "CONFLICT"          # Object already exists
    CAPABILITY = "CAPABILITY"      # Backend cannot provide the feature
    TIMEOUT = "TIMEOUT"            # Deadline exceeded
    BACKEND = "BACKEND"            # Any other backend failure
    STATE = "STATE"                # Illegal lifecycle transition
    INTERNAL = "INTERNAL"          # Bugs, unexpected state


class CreationReason(str, Enum):
    """Why a create call failed."""

    NAME_CONFLICT = "name_conflict"
    IMAGE_MISSING = "image_missing"
    REJECTED = "rejected"
    NOT_READY = "not_ready"


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Attributes:
        backend: Runtime name (``docker-cli``, ``kubectl`` ...)
        operation: Contract operation (``create``, ``execute`` ...)
        workload: Workload name or id the call targeted
        command: Rendered command line, for CLI backends
        http_status: Status code, for HTTP backends
        exit_code: Process exit code, where one exists
        metadata: Additional key-value pairs
    """

    backend: str | None = None
    operation: str | None = None
    workload: str | None = None
    command: str | None = None
    http_status: int | None = None
    exit_code: int | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["backend", "operation", "workload", "command", "http_status", "exit_code"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class BerthError(Exception):
    """
    Base exception for all berth errors.

    Subclasses set ``default_category`` and ``default_retryable`` so callers
    rarely pass them explicitly.

    Examples:
        >>> error = BerthError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.to_dict()["retryable"]
        False
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

    def with_context(self, **kwargs: Any) -> BerthError:
        """
        Add context to this error (fluent API).

        Usage:
            raise NotFound("gone").with_context(backend="kubectl", workload="t1")
        """
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
# CALLER ERRORS
# =============================================================================


class ValidationError(BerthError):
    """Caller input is invalid. Raised before any backend interaction."""

    default_category = ErrorCategory.VALIDATION


class MalformedCommand(ValidationError):
    """A command string could not be tokenized (unterminated quote)."""

    def __init__(self, message: str, *, command: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.command = command


class CapabilityUnsupported(BerthError):
    """The backend cannot provide the requested operation or feature."""

    default_category = ErrorCategory.CAPABILITY

    def __init__(self, message: str, *, feature: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.feature = feature


# =============================================================================
# LIFECYCLE ERRORS
# =============================================================================


class CreationFailed(BerthError):
    """
    A workload could not be created.

    ``reason`` distinguishes a name collision, a missing image, an outright
    backend rejection and a workload that never became ready.
    """

    default_category = ErrorCategory.CREATION

    def __init__(
        self,
        message: str,
        *,
        reason: CreationReason = CreationReason.REJECTED,
        diagnostic: str | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.reason = reason
        self.diagnostic = diagnostic if diagnostic is not None else message

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["reason"] = self.reason.value
        return result


class NotFound(BerthError):
    """The named workload or network does not exist."""

    default_category = ErrorCategory.NOT_FOUND


class AlreadyExists(BerthError):
    """The object being created already exists."""

    default_category = ErrorCategory.CONFLICT


class Timeout(BerthError):
    """An exec or backend call exceeded its deadline."""

    default_category = ErrorCategory.TIMEOUT
    default_retryable = True

    def __init__(self, message: str, *, seconds: float | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.seconds = seconds


class BackendError(BerthError):
    """
    Any other backend failure.

    ``diagnostic`` holds the backend's raw text (stderr or response body)
    exactly as received.
    """

    default_category = ErrorCategory.BACKEND

    def __init__(self, message: str, *, diagnostic: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.diagnostic = diagnostic if diagnostic is not None else message

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["diagnostic"] = self.diagnostic
        return result


class ExecFailed(BackendError):
    """A command ran inside a workload and exited non-zero."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: int,
        stdout: str = "",
        stderr: str = "",
        **kwargs: Any,
    ):
        kwargs.setdefault("diagnostic", stderr or stdout or message)
        super().__init__(message, **kwargs)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.context.exit_code = exit_code


class InvalidTransitionError(BerthError):
    """A workload lifecycle transition that the state machine forbids."""

    default_category = ErrorCategory.STATE

    def __init__(self, enum_name: str, current: str, target: str):
        super().__init__(f"Invalid {enum_name} transition: {current} → {target}")
        self.current = current
        self.target = target


# =============================================================================
# UTILITIES
# =============================================================================


def is_retryable(error: Exception) -> bool:
    """Check if an error is retryable. Non-berth errors are not."""
    if isinstance(error, BerthError):
        return error.retryable
    return False


def categorize_error(error: Exception) -> ErrorCategory:
    """Get the category of an error, INTERNAL for foreign exceptions."""
    if isinstance(error, BerthError):
        return error.category
    if isinstance(error, TimeoutError):
        return ErrorCategory.TIMEOUT
    return ErrorCategory.INTERNAL


__all__ = [
    "ErrorCategory",
    "CreationReason",
    "ErrorContext",
    "BerthError",
    "ValidationError",
    "MalformedCommand",
    "CapabilityUnsupported",
    "CreationFailed",
    "NotFound",
    "AlreadyExists",
    "Timeout",
    "BackendError",
    "ExecFailed",
    "InvalidTransitionError",
    "is_retryable",
    "categorize_error",
]
