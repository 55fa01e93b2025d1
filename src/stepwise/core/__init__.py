"""Stepwise Core -- errors, logging, settings and clock helpers.

Architecture::

    errors.py       Structured error hierarchy (StepwiseError, TransientError)
    logging.py      structlog configuration and scoped log context
    settings.py     pydantic-settings configuration (STEPWISE_* env vars)
    timestamps.py   UTC helpers and execution id generation
"""

from stepwise.core.errors import (
    CircuitBreakerOpenError,
    ConfigError,
    DuplicateTargetError,
    ErrorCategory,
    ErrorContext,
    ExecutionCancelledError,
    ExecutionNotFoundError,
    OrchestrationError,
    RetryExhaustedError,
    StepwiseError,
    TargetUnavailableError,
    TransientError,
    UnknownTargetError,
    UnmetDependencyError,
    ValidationError,
    is_retryable,
)
from stepwise.core.logging import LogContext, configure_logging, get_logger
from stepwise.core.settings import StepwiseSettings, get_settings
from stepwise.core.timestamps import utc_now

__all__ = [
    "CircuitBreakerOpenError",
    "ConfigError",
    "DuplicateTargetError",
    "ErrorCategory",
    "ErrorContext",
    "ExecutionCancelledError",
    "ExecutionNotFoundError",
    "OrchestrationError",
    "RetryExhaustedError",
    "StepwiseError",
    "TargetUnavailableError",
    "TransientError",
    "UnknownTargetError",
    "UnmetDependencyError",
    "ValidationError",
    "is_retryable",
    "LogContext",
    "configure_logging",
    "get_logger",
    "StepwiseSettings",
    "get_settings",
    "utc_now",
]
