"""Circuit breaker pattern for fault tolerance.

Stops calls to a failing target for a cooldown window so that a flaky
upstream service is not hammered during an outage.

States:
    CLOSED: Normal operation, requests pass through
    OPEN: Failing fast, requests rejected until the open duration elapses
    HALF_OPEN: Probing whether the target recovered

Transitions:
    CLOSED    -> OPEN       failure counter reaches the threshold
    OPEN      -> HALF_OPEN  ``allow()`` called after the open duration
    HALF_OPEN -> CLOSED     next success (counter reset to zero)
    HALF_OPEN -> OPEN       next failure

One breaker exists per registered target; the
:class:`~stepwise.execution.connections.ConnectionRegistry` owns them.

Example:
    >>> from stepwise.execution.circuit_breaker import CircuitBreaker
    >>>
    >>> breaker = CircuitBreaker(name="extractor", failure_threshold=5, open_duration=30.0)
    >>>
    >>> if breaker.allow():
    ...     try:
    ...         result = call_external_service()
    ...         breaker.on_success()
    ...     except Exception as e:
    ...         breaker.on_failure(e)
    ...         raise
    ... else:
    ...     raise CircuitBreakerOpenError("extractor")
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, TypeVar

from stepwise.core.errors import CircuitBreakerOpenError
from stepwise.core.logging import get_logger
from stepwise.core.timestamps import Clock, utc_now

T = TypeVar("T")

logger = get_logger(__name__)

StateListener = Callable[[str, "CircuitState", "CircuitState"], None]


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Rejecting requests
    HALF_OPEN = "half_open"  # Testing recovery


@dataclass
class CircuitStats:
    """Statistics for circuit breaker monitoring."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rejected_requests: int = 0
    state_changes: int = 0
    last_failure_time: datetime | None = None
    last_success_time: datetime | None = None
    last_state_change: datetime | None = None

    @property
    def failure_rate(self) -> float:
        """Calculate failure rate as percentage."""
        total = self.successful_requests + self.failed_requests
        if total == 0:
            return 0.0
        return (self.failed_requests / total) * 100


@dataclass(frozen=True)
class BreakerStatus:
    """Point-in-time snapshot of a breaker."""

    name: str
    state: CircuitState
    failure_count: int
    failure_threshold: int
    open_duration: float
    last_failure_time: datetime | None
    next_retry_time: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "open_duration": self.open_duration,
            "last_failure_time": self.last_failure_time.isoformat() if self.last_failure_time else None,
            "next_retry_time": self.next_retry_time.isoformat() if self.next_retry_time else None,
        }


@dataclass
class CircuitBreaker:
    """Per-target circuit breaker.

    Attributes:
        name: Identifier for this circuit (the target id)
        failure_threshold: Consecutive failures before opening
        open_duration: Seconds to stay open before admitting a probe
        clock: Returns the current aware UTC datetime
    """

    name: str = "default"
    failure_threshold: int = 5
    open_duration: float = 30.0
    clock: Clock = field(default=utc_now, repr=False)

    # Internal state
    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failure_count: int = field(default=0, init=False)
    _last_failure_time: datetime | None = field(default=None, init=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)
    _stats: CircuitStats = field(default_factory=CircuitStats, init=False)
    _listeners: list[StateListener] = field(default_factory=list, init=False, repr=False)

    @property
    def state(self) -> CircuitState:
        """Current mode. Reading it never triggers a transition."""
        with self._lock:
            return self._state

    @property
    def failure_count(self) -> int:
        """Consecutive-failure counter."""
        with self._lock:
            return self._failure_count

    @property
    def last_failure_time(self) -> datetime | None:
        with self._lock:
            return self._last_failure_time

    @property
    def stats(self) -> CircuitStats:
        """Get circuit statistics."""
        return self._stats

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        """Register a state-change listener; returns an unsubscribe callable.

        Listeners receive ``(name, new_state, old_state)``.
        """
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def _transition_to(self, new_state: CircuitState) -> None:
        """Transition to a new state (caller holds the lock)."""
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        self._stats.state_changes += 1
        self._stats.last_state_change = self.clock()

        if new_state == CircuitState.CLOSED:
            self._failure_count = 0

        logger.info(
            "breaker.state_change",
            target=self.name,
            from_state=old_state.value,
            to_state=new_state.value,
            failure_count=self._failure_count,
        )

        for listener in list(self._listeners):
            try:
                listener(self.name, new_state, old_state)
            except Exception:
                logger.exception("breaker.listener_failed", target=self.name)

    def allow(self) -> bool:
        """Check if a call may proceed.

        Returns:
            True when closed or half-open, or when open and the open duration
            has elapsed (which moves the breaker to half-open).
        """
        with self._lock:
            self._stats.total_requests += 1

            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                if self._open_window_elapsed():
                    self._transition_to(CircuitState.HALF_OPEN)
                    return True
                self._stats.rejected_requests += 1
                return False

            # Half-open: probes are admitted; the first failure re-opens
            return True

    def _open_window_elapsed(self) -> bool:
        if self._last_failure_time is None:
            return True
        elapsed = (self.clock() - self._last_failure_time).total_seconds()
        return elapsed >= self.open_duration

    def on_success(self) -> None:
        """Record a successful call."""
        with self._lock:
            self._stats.successful_requests += 1
            self._stats.last_success_time = self.clock()

            if self._state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.CLOSED)

    def on_failure(self, error: BaseException | None = None) -> None:
        """Record a failed call."""
        with self._lock:
            now = self.clock()
            self._failure_count += 1
            self._stats.failed_requests += 1
            self._stats.last_failure_time = now
            self._last_failure_time = now

            if self._state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.OPEN)
            elif self._failure_count >= self.failure_threshold:
                self._transition_to(CircuitState.OPEN)

            logger.debug(
                "breaker.failure",
                target=self.name,
                failure_count=self._failure_count,
                state=self._state.value,
                error=str(error) if error is not None else None,
            )

    def status(self) -> BreakerStatus:
        """Snapshot of the breaker for health reporting."""
        with self._lock:
            next_retry = None
            if self._state == CircuitState.OPEN and self._last_failure_time is not None:
                next_retry = self._last_failure_time + timedelta(seconds=self.open_duration)
            return BreakerStatus(
                name=self.name,
                state=self._state,
                failure_count=self._failure_count,
                failure_threshold=self.failure_threshold,
                open_duration=self.open_duration,
                last_failure_time=self._last_failure_time,
                next_retry_time=next_retry,
            )

    def reset(self) -> None:
        """Reset circuit to closed state."""
        with self._lock:
            self._transition_to(CircuitState.CLOSED)
            self._failure_count = 0
            self._last_failure_time = None

    def force_open(self) -> None:
        """Force circuit to open state (maintenance, or a dead connection)."""
        with self._lock:
            self._last_failure_time = self.clock()
            self._transition_to(CircuitState.OPEN)

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Execute a function through the circuit breaker.

        Raises:
            CircuitBreakerOpenError: If the breaker denies the call
        """
        if not self.allow():
            raise CircuitBreakerOpenError(self.name)

        try:
            result = func(*args, **kwargs)
        except Exception as e:
            self.on_failure(e)
            raise
        self.on_success()
        return result


__all__ = [
    "BreakerStatus",
    "CircuitBreaker",
    "CircuitState",
    "CircuitStats",
]
