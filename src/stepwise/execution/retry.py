"""Retry with exponential backoff, jitter, and cancellable waits.

A step is attempted up to ``retry_policy.max_attempts`` times.  Between
attempts the executor waits::

    delay = backoff_base * 2 ** (attempt - 1) + uniform(0, jitter_max)

Attempts for one step are strictly sequential.  Breaker denials raised from
inside ``invoke`` are ordinary retryable failures, so a breaker that stays
open burns through the budget quickly instead of looping.

Example:
    >>> from stepwise.execution.retry import ExponentialBackoff, RetryExecutor
    >>>
    >>> strategy = ExponentialBackoff(base_delay=0.1)
    >>> for attempt in range(3):
    ...     print(f"Attempt {attempt + 1}: wait {strategy.next_delay(attempt):.3f}s")
    >>>
    >>> executor = RetryExecutor()
    >>> result, attempts = executor.execute(step, step_executor.invoke)
"""

from __future__ import annotations

import random
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from stepwise.core.errors import (
    ExecutionCancelledError,
    RetryExhaustedError,
    is_retryable,
)
from stepwise.core.logging import get_logger
from stepwise.core.settings import get_settings

if TYPE_CHECKING:
    from stepwise.orchestration.models import RetryPolicy, WorkflowStep

T = TypeVar("T")

logger = get_logger(__name__)

RetryCallback = Callable[[str, int, BaseException, float], None]


class RetryStrategy(ABC):
    """Abstract base for retry strategies."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Calculate delay before the next attempt.

        Args:
            attempt: Zero-based retry number (0 = wait after the first attempt)

        Returns:
            Delay in seconds
        """
        ...


@dataclass
class ExponentialBackoff(RetryStrategy):
    """Exponential backoff with additive jitter.

    Delay = min(base_delay * multiplier ** attempt, max_delay) + uniform(0, jitter_max)

    Attributes:
        base_delay: Initial delay in seconds
        multiplier: Exponential multiplier (default: 2)
        jitter_max: Exclusive upper bound of the added jitter, in seconds
        max_delay: Optional cap applied before jitter
    """

    base_delay: float = 1.0
    multiplier: float = 2.0
    jitter_max: float = 0.1
    max_delay: float | None = None

    def next_delay(self, attempt: int) -> float:
        """Calculate exponential backoff delay."""
        delay = self.base_delay * (self.multiplier ** attempt)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)

        if self.jitter_max > 0:
            # random() is in [0, 1), keeping the bound exclusive
            delay += random.random() * self.jitter_max

        return delay

    @classmethod
    def from_policy(cls, policy: RetryPolicy, jitter_max: float | None = None) -> ExponentialBackoff:
        """Build the strategy for a step's retry policy."""
        if jitter_max is None:
            jitter_max = get_settings().retry_jitter_max_ms / 1000.0
        return cls(base_delay=policy.backoff_base_ms / 1000.0, jitter_max=jitter_max)


class RetryExecutor:
    """Runs a step invocation under its retry policy.

    Args:
        jitter_max: Jitter bound in seconds (default from settings)
        on_retry: Called as ``(step_id, attempt, error, delay)`` before each wait
    """

    def __init__(
        self,
        jitter_max: float | None = None,
        on_retry: RetryCallback | None = None,
    ) -> None:
        self._jitter_max = jitter_max
        self._on_retry = on_retry

    def execute(
        self,
        step: WorkflowStep,
        invoke: Callable[[WorkflowStep], T],
        cancel_event: threading.Event | None = None,
    ) -> tuple[T, int]:
        """Attempt ``invoke(step)`` until it succeeds or the budget is spent.

        Returns:
            ``(result, attempt_count)``

        Raises:
            RetryExhaustedError: every attempt failed with a retryable error
            ExecutionCancelledError: ``cancel_event`` fired before or during a wait
            StepwiseError: a non-retryable error, unchanged, after one attempt
        """
        policy = step.retry_policy
        strategy = ExponentialBackoff.from_policy(policy, jitter_max=self._jitter_max)
        cancel = cancel_event or threading.Event()
        attempt = 0

        while True:
            if cancel.is_set():
                raise ExecutionCancelledError(
                    f"Step {step.step_id} cancelled before attempt {attempt + 1}"
                ).with_context(step=step.step_id, attempt=attempt)

            attempt += 1
            try:
                return invoke(step), attempt
            except Exception as e:
                if not is_retryable(e):
                    logger.warning(
                        "step.non_retryable",
                        step=step.step_id,
                        attempt=attempt,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    raise

                if attempt >= policy.max_attempts:
                    logger.warning(
                        "step.retry_exhausted",
                        step=step.step_id,
                        attempts=attempt,
                        error=str(e),
                    )
                    raise RetryExhaustedError(step.step_id, attempt, e) from e

                delay = strategy.next_delay(attempt - 1)
                logger.info(
                    "step.retry",
                    step=step.step_id,
                    attempt=attempt,
                    max_attempts=policy.max_attempts,
                    delay_seconds=round(delay, 4),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                if self._on_retry:
                    self._on_retry(step.step_id, attempt, e, delay)

                if cancel.wait(delay):
                    raise ExecutionCancelledError(
                        f"Step {step.step_id} cancelled while waiting to retry",
                        cause=e,
                    ).with_context(step=step.step_id, attempt=attempt)


__all__ = [
    "ExponentialBackoff",
    "RetryCallback",
    "RetryExecutor",
    "RetryStrategy",
]
