"""Tests for step dispatch through the step executor."""

import pytest

from stepwise.core.errors import (
    CircuitBreakerOpenError,
    ConfigError,
    TargetUnavailableError,
    TransientError,
    UnknownTargetError,
    ValidationError,
)
from stepwise.execution.circuit_breaker import CircuitState
from stepwise.execution.collaborators import (
    EchoCollaborator,
    FailingCollaborator,
    FunctionCollaborator,
)
from stepwise.execution.connections import TargetDefinition
from stepwise.execution.step_executor import StepExecutor
from stepwise.orchestration.models import StepKind, WorkflowStep


@pytest.fixture
def executor(populated_registry, collaborators):
    return StepExecutor(populated_registry, collaborators)


class TestDispatch:
    """Routing by step kind."""

    def test_external_call_output(self, executor, echo):
        """Output is tagged with kind, operation and target."""
        step = WorkflowStep.external_call("extract", "revit", "get_elements", {"category": "walls"})
        output = executor.invoke(step)
        assert output.kind == StepKind.EXTERNAL_CALL
        assert output.target == "revit"
        assert output.operation == "get_elements"
        assert output.payload["parameters"] == {"category": "walls"}
        assert echo.call_count == 1

    def test_routes_by_kind(self, populated_registry):
        """Each kind reaches its own collaborator."""
        extraction, transform = EchoCollaborator(), EchoCollaborator()
        executor = StepExecutor(
            populated_registry,
            {StepKind.EXTERNAL_CALL: extraction, StepKind.DATA_TRANSFORM: transform},
        )
        executor.invoke(WorkflowStep.transform("shape", "to_table"))
        assert transform.call_count == 1
        assert extraction.call_count == 0

    def test_missing_collaborator(self, populated_registry):
        """A kind without a collaborator is a configuration error."""
        executor = StepExecutor(populated_registry, {})
        with pytest.raises(ConfigError):
            executor.invoke(WorkflowStep.transform("shape", "to_table"))

    def test_success_records_activity(self, executor, populated_registry, clock):
        """A successful guarded call refreshes the target's activity."""
        clock.advance(4)
        executor.invoke(WorkflowStep.cloud_operation("upload", "s3", "put_object"))
        assert populated_registry.record("s3").last_activity == clock.now
        assert populated_registry.breaker("s3").stats.successful_requests == 1


class TestGuardedCalls:
    """Breaker and connection checks for guarded kinds."""

    def test_open_breaker_denies_without_call(self, executor, populated_registry, echo):
        """An open breaker raises before reaching the collaborator."""
        populated_registry.breaker("revit").force_open()
        with pytest.raises(CircuitBreakerOpenError) as exc_info:
            executor.invoke(WorkflowStep.external_call("extract", "revit", "get_elements"))
        assert echo.call_count == 0
        assert exc_info.value.context.step == "extract"

    def test_disconnected_target(self, executor, populated_registry, echo):
        """A non-connected target fails and counts toward its breaker."""
        populated_registry.mark_disconnected("revit")
        with pytest.raises(TargetUnavailableError):
            executor.invoke(WorkflowStep.external_call("extract", "revit", "get_elements"))
        assert echo.call_count == 0
        assert populated_registry.breaker("revit").failure_count == 1

    def test_collaborator_failure_wrapped(self, populated_registry):
        """Foreign exceptions become TransientError and count as failures."""

        def boom(target, operation, parameters):
            raise ConnectionError("socket closed")

        executor = StepExecutor(populated_registry, {StepKind.EXTERNAL_CALL: FunctionCollaborator(boom)})
        with pytest.raises(TransientError) as exc_info:
            executor.invoke(WorkflowStep.external_call("extract", "revit", "get_elements"))
        assert isinstance(exc_info.value.__cause__, ConnectionError)
        assert exc_info.value.context.target == "revit"
        assert populated_registry.record("revit").last_error == "socket closed"
        assert populated_registry.breaker("revit").failure_count == 1

    def test_stepwise_error_passes_through(self, populated_registry):
        """Stepwise errors are re-raised as-is with step context added."""
        error = ValidationError("bad filter")
        failing = FailingCollaborator(error_factory=lambda target, op: error)
        executor = StepExecutor(populated_registry, {StepKind.EXTERNAL_CALL: failing})
        with pytest.raises(ValidationError) as exc_info:
            executor.invoke(WorkflowStep.external_call("extract", "revit", "get_elements"))
        assert exc_info.value is error
        assert error.context.step == "extract"

    def test_threshold_failures_open_breaker(self, populated_registry):
        """Repeated collaborator failures open the target's breaker."""
        executor = StepExecutor(populated_registry, {StepKind.EXTERNAL_CALL: FailingCollaborator()})
        step = WorkflowStep.external_call("extract", "revit", "get_elements")
        for _ in range(3):
            with pytest.raises(TransientError):
                executor.invoke(step)
        assert populated_registry.breaker("revit").state == CircuitState.OPEN
        with pytest.raises(CircuitBreakerOpenError):
            executor.invoke(step)


class TestUnguardedCalls:
    """Data-transform and desktop-automation steps skip the breaker."""

    def test_desktop_automation_ignores_open_breaker(self, executor, populated_registry, echo):
        """Desktop steps are dispatched even when the breaker is open."""
        populated_registry.breaker("autocad").force_open()
        executor.invoke(WorkflowStep.desktop_automation("click", "autocad", "press_button"))
        assert echo.call_count == 1

    def test_transform_failure_wrapped(self, populated_registry):
        """Transform failures are wrapped but touch no breaker."""

        def bad(target, operation, parameters):
            raise KeyError("column")

        executor = StepExecutor(populated_registry, {StepKind.DATA_TRANSFORM: FunctionCollaborator(bad)})
        with pytest.raises(TransientError):
            executor.invoke(WorkflowStep.transform("shape", "to_table"))
        assert all(populated_registry.breaker(t).failure_count == 0 for t in populated_registry.target_ids())


class TestCallTarget:
    """Tests for call_target(), used by fan-out."""

    def test_call_target(self, executor, echo):
        """call_target performs one guarded call."""
        output = executor.call_target(StepKind.EXTERNAL_CALL, "autocad", "get_layers", {"all": True})
        assert output.target == "autocad"
        assert echo.calls[0].parameters == {"all": True}

    def test_call_unknown_target(self, executor):
        """Unknown targets raise UnknownTargetError."""
        with pytest.raises(UnknownTargetError):
            executor.call_target(StepKind.EXTERNAL_CALL, "ghost", "ping", {})

    def test_registry_property(self, executor, populated_registry):
        """The executor exposes its registry."""
        assert executor.registry is populated_registry
        populated_registry.register(TargetDefinition("extra"))
        assert executor.registry.is_registered("extra")

    def test_guarded_step_without_target(self, executor, echo):
        """A guarded step stripped of its target raises ConfigError, not AssertionError."""
        step = WorkflowStep.external_call("extract", "revit", "get_elements")
        object.__setattr__(step, "target", None)
        with pytest.raises(ConfigError, match="has no target"):
            executor.invoke(step)
        assert echo.call_count == 0
