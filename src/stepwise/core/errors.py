"""
Structured error types for Stepwise.

Provides a typed hierarchy of errors with the metadata the orchestrator needs
for retry decisions, result reporting, and log correlation.

Instead of generic exceptions that lose context, StepwiseError and its
subclasses carry:
- **Category:** What kind of error (network, validation, config, etc.)
- **Retryable:** Whether the retry executor may try the step again
- **Retry-after:** How long to wait before retrying (advisory)
- **Context:** Workflow, step, target, execution id, attempt, custom fields
- **Cause:** Chained underlying exception for root cause analysis

Manifesto:
    - **Typed Error Hierarchy:** Validation, transient and orchestration
      failures are different types, not different strings
    - **Explicit Retry Semantics:** Each error knows if it's retryable
    - **Rich Context:** Errors carry metadata for logging and results
    - **Error Chaining:** Preserve the collaborator's original exception

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                      StepwiseError                               │
        │  (category, retryable, retry_after, context, cause)              │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  TransientError          ValidationError      ConfigError        │
        │  (retryable=True)        (VALIDATION)         (CONFIG)           │
        │       │                       │                                  │
        │  TargetUnavailableError  DuplicateTargetError                    │
        │  CircuitBreakerOpenError UnknownTargetError                      │
        │                                                                  │
        │  OrchestrationError (ORCHESTRATION)                              │
        │       │                                                          │
        │  UnmetDependencyError    RetryExhaustedError                     │
        │  ExecutionNotFoundError  ExecutionCancelledError                 │
        └─────────────────────────────────────────────────────────────────┘

Guardrails:
    ❌ DON'T: Raise bare Exception from a collaborator adapter and expect
       the orchestrator to know whether to retry
    ✅ DO: Raise TransientError (or let the step executor wrap it)

    ❌ DON'T: Set retryable=True for validation/config errors
    ✅ DO: Let the error type's default_retryable handle it

Tags:
    error-handling, exception-hierarchy, retry-logic, error-context,
    stepwise, orchestration

Usage:
    from stepwise.core.errors import TransientError

    try:
        client.fetch(elements)
    except ConnectionResetError as e:
        raise TransientError("extraction service dropped", cause=e).with_context(
            target="extractor-primary"
        )
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    # Infrastructure errors (usually transient)
    NETWORK = "NETWORK"           # Connection, timeout, target unreachable
    CIRCUIT = "CIRCUIT"           # Breaker denied the call

    # Definition errors (never retryable)
    VALIDATION = "VALIDATION"     # Missing/duplicate target, malformed definition
    CONFIG = "CONFIG"             # Missing collaborator, invalid settings

    # Application errors
    ORCHESTRATION = "ORCHESTRATION"  # Dependency, exhaustion, cancellation

    # Internal errors
    INTERNAL = "INTERNAL"         # Bugs, unexpected state
    UNKNOWN = "UNKNOWN"           # Uncategorized errors


@dataclass
class ErrorContext:
    """
    Structured metadata context for errors.

    Typed fields for the identifiers the orchestrator knows about; anything
    else goes into ``metadata``. ``to_dict()`` serializes non-None fields.

    Examples:
        >>> ctx = ErrorContext(workflow="assessment", step="extract", target="revit")
        >>> ctx.to_dict()
        {'workflow': 'assessment', 'step': 'extract', 'target': 'revit'}
    """

    workflow: str | None = None
    step: str | None = None
    target: str | None = None
    execution_id: str | None = None
    attempt: int | None = None

    # Additional metadata
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["workflow", "step", "target", "execution_id", "attempt"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class StepwiseError(Exception):
    """
    Base exception for all Stepwise errors.

    Subclasses set ``default_category`` and ``default_retryable`` so that
    callers rarely need to pass them explicitly.

    Examples:
        >>> error = StepwiseError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.retryable
        False
    """

    # Default category for this error type
    default_category: ErrorCategory = ErrorCategory.INTERNAL

    # Default retryable setting
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: float | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> StepwiseError:
        """
        Add context to this error (fluent API).

        Usage:
            raise TransientError("Failed").with_context(target="s3", step="upload")
        """
        for key, value in kwargs.items():
            if key != "metadata" and hasattr(self.context, key):
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

        if self.retry_after is not None:
            result["retry_after"] = self.retry_after

        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict

        if self.cause is not None:
            result["cause"] = str(self.cause)

        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# TRANSIENT ERRORS (Retryable)
# =============================================================================


class TransientError(StepwiseError):
    """
    Temporary failure of a collaborator that may succeed on retry.

    The step executor wraps any non-Stepwise exception raised by a
    collaborator in a TransientError, so collaborators may raise whatever
    their client library raises.
    """

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class TargetUnavailableError(TransientError):
    """Target is registered but its connection is not usable right now."""

    def __init__(self, target_id: str, status: str, **kwargs: Any):
        self.target_id = target_id
        self.status = status
        super().__init__(f"Target {target_id} not connected (status={status})", **kwargs)
        self.context.target = target_id


class CircuitBreakerOpenError(TransientError):
    """Raised when a target's breaker denies a call.

    Retryable so that it consumes the step's retry budget instead of
    aborting the workflow outright.
    """

    default_category = ErrorCategory.CIRCUIT

    def __init__(self, target_id: str, message: str | None = None, **kwargs: Any):
        self.target_id = target_id
        super().__init__(message or f"Circuit '{target_id}' is open, rejecting request", **kwargs)
        self.context.target = target_id


# =============================================================================
# VALIDATION ERRORS
# =============================================================================


class ValidationError(StepwiseError):
    """
    Definition or registration error.

    Never retryable - the definition must be fixed.
    """

    default_category = ErrorCategory.VALIDATION
    default_retryable = False

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


class DuplicateTargetError(ValidationError):
    """Target id is already registered."""

    def __init__(self, target_id: str):
        self.target_id = target_id
        super().__init__(f"Target already registered: {target_id}", field="target_id", value=target_id)


class UnknownTargetError(ValidationError):
    """One or more targets are not registered."""

    def __init__(self, target_ids: list[str]):
        self.target_ids = list(target_ids)
        super().__init__(
            f"Required targets not registered: {', '.join(self.target_ids)}",
            field="required_targets",
            value=self.target_ids,
        )


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================


class ConfigError(StepwiseError):
    """
    Configuration error.

    Never retryable - configuration must be fixed.
    """

    default_category = ErrorCategory.CONFIG
    default_retryable = False


# =============================================================================
# ORCHESTRATION ERRORS
# =============================================================================


class OrchestrationError(StepwiseError):
    """Workflow execution error."""

    default_category = ErrorCategory.ORCHESTRATION
    default_retryable = False


class UnmetDependencyError(OrchestrationError):
    """A step's prerequisites have not completed earlier in the step list."""

    def __init__(self, step_id: str, missing: list[str]):
        self.step_id = step_id
        self.missing = list(missing)
        super().__init__(f"Step {step_id} has unmet dependencies: {', '.join(self.missing)}")
        self.context.step = step_id


class RetryExhaustedError(OrchestrationError):
    """All attempts for a step failed; wraps the last underlying error."""

    def __init__(self, step_id: str, attempts: int, last_error: BaseException):
        self.step_id = step_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Step {step_id} failed after {attempts} attempt(s): {last_error}",
            cause=last_error,
        )
        self.context.step = step_id
        self.context.attempt = attempts


class ExecutionNotFoundError(OrchestrationError):
    """No execution with the given id is known to the orchestrator."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Workflow execution not found: {execution_id}")
        self.context.execution_id = execution_id


class ExecutionCancelledError(OrchestrationError):
    """The execution's cancellation signal fired."""

    def __init__(self, message: str = "Execution cancelled", **kwargs: Any):
        super().__init__(message, **kwargs)


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Check if an error is retryable.

    Exceptions from outside the hierarchy are treated as collaborator
    failures and therefore retryable.
    """
    if isinstance(error, StepwiseError):
        return error.retryable
    return isinstance(error, Exception)


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "StepwiseError",
    "TransientError",
    "TargetUnavailableError",
    "CircuitBreakerOpenError",
    "ValidationError",
    "DuplicateTargetError",
    "UnknownTargetError",
    "ConfigError",
    "OrchestrationError",
    "UnmetDependencyError",
    "RetryExhaustedError",
    "ExecutionNotFoundError",
    "ExecutionCancelledError",
    "is_retryable",
]
