"""Tests for backoff strategies and the retry executor."""

import threading
from unittest.mock import MagicMock, patch

import pytest

from stepwise.core.errors import (
    CircuitBreakerOpenError,
    ExecutionCancelledError,
    RetryExhaustedError,
    TransientError,
    ValidationError,
)
from stepwise.execution.retry import ExponentialBackoff, RetryExecutor
from stepwise.orchestration.models import RetryPolicy, WorkflowStep


def make_step(max_attempts: int = 3, backoff_base_ms: float = 0.0) -> WorkflowStep:
    return WorkflowStep.external_call(
        "extract",
        "revit",
        "get_elements",
        retry_policy=RetryPolicy(max_attempts=max_attempts, backoff_base_ms=backoff_base_ms),
    )


class TestExponentialBackoff:
    """Tests for ExponentialBackoff delays."""

    def test_delay_without_jitter(self):
        """Delay doubles each attempt."""
        strategy = ExponentialBackoff(base_delay=0.1, jitter_max=0)
        assert strategy.next_delay(0) == pytest.approx(0.1)
        assert strategy.next_delay(1) == pytest.approx(0.2)
        assert strategy.next_delay(2) == pytest.approx(0.4)

    def test_delay_capped(self):
        """max_delay caps the exponential part."""
        strategy = ExponentialBackoff(base_delay=1.0, jitter_max=0, max_delay=3.0)
        assert strategy.next_delay(5) == 3.0

    @pytest.mark.parametrize("attempt", [1, 2, 3])
    def test_jitter_bounds(self, attempt):
        """Delay for attempt k with base 100 ms is in [100*2^(k-1), +100) ms."""
        strategy = ExponentialBackoff(base_delay=0.1, jitter_max=0.1)
        low = 0.1 * 2 ** (attempt - 1)
        for _ in range(50):
            delay = strategy.next_delay(attempt - 1)
            assert low <= delay < low + 0.1

    def test_from_policy_uses_settings_jitter(self, monkeypatch):
        """Jitter defaults to the configured milliseconds."""
        monkeypatch.setenv("STEPWISE_RETRY_JITTER_MAX_MS", "250")
        strategy = ExponentialBackoff.from_policy(RetryPolicy(backoff_base_ms=500))
        assert strategy.base_delay == 0.5
        assert strategy.jitter_max == 0.25


class TestRetryExecutor:
    """Tests for RetryExecutor.execute()."""

    def test_success_first_attempt(self):
        """A successful first attempt returns attempt count 1."""
        invoke = MagicMock(return_value="ok")
        result, attempts = RetryExecutor(jitter_max=0).execute(make_step(), invoke)
        assert (result, attempts) == ("ok", 1)
        invoke.assert_called_once()

    def test_retries_then_succeeds(self):
        """Retryable failures are retried until success."""
        invoke = MagicMock(side_effect=[ConnectionError("a"), TransientError("b"), "ok"])
        result, attempts = RetryExecutor(jitter_max=0).execute(make_step(), invoke)
        assert result == "ok"
        assert attempts == 3

    def test_exhaustion(self):
        """All attempts failing raises RetryExhaustedError with the last error."""
        last = TransientError("third")
        invoke = MagicMock(side_effect=[TransientError("first"), TransientError("second"), last])
        with pytest.raises(RetryExhaustedError) as exc_info:
            RetryExecutor(jitter_max=0).execute(make_step(), invoke)
        assert exc_info.value.attempts == 3
        assert exc_info.value.last_error is last
        assert invoke.call_count == 3

    def test_breaker_denial_consumes_budget(self):
        """Open-breaker errors are retried like any transient failure."""
        invoke = MagicMock(side_effect=CircuitBreakerOpenError("revit"))
        with pytest.raises(RetryExhaustedError) as exc_info:
            RetryExecutor(jitter_max=0).execute(make_step(max_attempts=3), invoke)
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, CircuitBreakerOpenError)

    def test_non_retryable_propagates_unchanged(self):
        """Non-retryable errors stop after one attempt and are not wrapped."""
        error = ValidationError("bad parameters")
        invoke = MagicMock(side_effect=error)
        with pytest.raises(ValidationError) as exc_info:
            RetryExecutor(jitter_max=0).execute(make_step(), invoke)
        assert exc_info.value is error
        invoke.assert_called_once()

    def test_single_attempt_policy(self):
        """max_attempts=1 never sleeps."""
        invoke = MagicMock(side_effect=TransientError("x"))
        with patch("threading.Event.wait") as wait:
            with pytest.raises(RetryExhaustedError):
                RetryExecutor(jitter_max=0).execute(make_step(max_attempts=1), invoke)
        wait.assert_not_called()

    def test_on_retry_callback(self):
        """on_retry sees (step_id, attempt, error, delay) before each wait."""
        seen = []
        executor = RetryExecutor(jitter_max=0, on_retry=lambda *args: seen.append(args))
        invoke = MagicMock(side_effect=[TransientError("x"), "ok"])
        executor.execute(make_step(backoff_base_ms=1), invoke)
        assert len(seen) == 1
        step_id, attempt, error, delay = seen[0]
        assert (step_id, attempt) == ("extract", 1)
        assert isinstance(error, TransientError)
        assert delay == pytest.approx(0.001)

    def test_delays_follow_backoff(self):
        """Waits use base * 2^(attempt-1)."""
        cancel = MagicMock(spec=threading.Event)
        cancel.is_set.return_value = False
        cancel.wait.return_value = False
        invoke = MagicMock(side_effect=TransientError("x"))
        with pytest.raises(RetryExhaustedError):
            RetryExecutor(jitter_max=0).execute(make_step(max_attempts=4, backoff_base_ms=100), invoke, cancel)
        delays = [c.args[0] for c in cancel.wait.call_args_list]
        assert delays == pytest.approx([0.1, 0.2, 0.4])


class TestCancellation:
    """Tests for cancellable retry waits."""

    def test_cancelled_before_first_attempt(self):
        """A set cancel event prevents any attempt."""
        cancel = threading.Event()
        cancel.set()
        invoke = MagicMock()
        with pytest.raises(ExecutionCancelledError):
            RetryExecutor(jitter_max=0).execute(make_step(), invoke, cancel)
        invoke.assert_not_called()

    def test_cancel_aborts_pending_wait(self):
        """Cancelling during a long backoff aborts without another attempt."""
        cancel = threading.Event()
        invoke = MagicMock(side_effect=TransientError("x"))
        executor = RetryExecutor(
            jitter_max=0,
            on_retry=lambda *args: threading.Timer(0.05, cancel.set).start(),
        )
        with pytest.raises(ExecutionCancelledError):
            executor.execute(make_step(max_attempts=3, backoff_base_ms=60_000), invoke, cancel)
        invoke.assert_called_once()
