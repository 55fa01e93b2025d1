"""Step Executor — dispatch a step to its collaborator.

Holds no state of its own: a step is routed by :class:`StepKind` to the
collaborator registered for that kind.  Kinds that cross a network-like
boundary (external calls, cloud operations) are gated::

    breaker.allow()?  ── no ──▶ CircuitBreakerOpenError   (no call made)
         │ yes
    record.status == connected?  ── no ──▶ TargetUnavailableError (breaker failure)
         │ yes
    collaborator.call(...)
         ├── ok     ▶ registry.record_success  ▶ StepOutput
         └── raises ▶ registry.record_failure  ▶ TransientError(cause=...)

Data-transform and desktop-automation steps go straight to their
collaborator.  Exceptions from outside the Stepwise hierarchy are wrapped
in :class:`~stepwise.core.errors.TransientError` so the retry executor
treats them as retryable.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from stepwise.core.errors import (
    CircuitBreakerOpenError,
    ConfigError,
    StepwiseError,
    TargetUnavailableError,
    TransientError,
)
from stepwise.core.logging import get_logger
from stepwise.execution.collaborators import StepCollaborator
from stepwise.execution.connections import ConnectionRegistry, TargetStatus
from stepwise.orchestration.models import StepKind, StepOutput, WorkflowStep

logger = get_logger(__name__)


def _as_stepwise_error(error: Exception, step: WorkflowStep) -> StepwiseError:
    if isinstance(error, StepwiseError):
        if error.context.step is None:
            error.with_context(step=step.step_id)
        if error.context.target is None and step.target is not None:
            error.with_context(target=step.target)
        return error
    return TransientError(
        f"{step.kind.value} {step.operation} failed: {error}", cause=error
    ).with_context(step=step.step_id, target=step.target)


class StepExecutor:
    """Routes steps to collaborators with breaker and connection checks.

    Args:
        registry: Shared connection registry (breakers + records)
        collaborators: One adapter per step kind
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        collaborators: Mapping[StepKind, StepCollaborator],
    ) -> None:
        self._registry = registry
        self._collaborators = dict(collaborators)

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    def collaborator_for(self, kind: StepKind) -> StepCollaborator:
        collaborator = self._collaborators.get(kind)
        if collaborator is None:
            raise ConfigError(f"No collaborator registered for step kind {kind.value}")
        return collaborator

    def invoke(self, step: WorkflowStep) -> StepOutput:
        """Run one attempt of ``step``.

        Raises:
            CircuitBreakerOpenError: the target's breaker denied the call
            TargetUnavailableError: the target is not connected
            TransientError: the collaborator failed
            ConfigError: no collaborator for the step's kind
        """
        collaborator = self.collaborator_for(step.kind)
        if step.kind.guarded:
            payload = self._call_guarded(step, collaborator)
        else:
            payload = self._call_direct(step, collaborator)
        return StepOutput(
            kind=step.kind,
            operation=step.operation,
            target=step.target,
            payload=payload,
        )

    def call_target(
        self,
        kind: StepKind,
        target: str,
        operation: str,
        parameters: Mapping[str, Any],
    ) -> StepOutput:
        """One guarded call outside a workflow (used by multi-target fan-out)."""
        step = WorkflowStep(
            step_id=f"{operation}@{target}",
            kind=kind,
            target=target,
            operation=operation,
            parameters=parameters,
        )
        return self.invoke(step)

    def _call_guarded(self, step: WorkflowStep, collaborator: StepCollaborator) -> Any:
        target = step.target
        if target is None:
            raise ConfigError(f"Step {step.step_id} of kind {step.kind.value} has no target")
        breaker = self._registry.breaker(target)

        if not breaker.allow():
            logger.debug("step.breaker_denied", step=step.step_id, target=target)
            raise CircuitBreakerOpenError(target).with_context(step=step.step_id)

        record = self._registry.record(target)
        if record.status != TargetStatus.CONNECTED:
            error = TargetUnavailableError(target, record.status.value).with_context(
                step=step.step_id
            )
            self._registry.record_failure(target, error)
            raise error

        try:
            payload = collaborator.call(target, step.operation, step.parameters)
        except Exception as e:
            self._registry.record_failure(target, e)
            logger.debug(
                "step.call_failed",
                step=step.step_id,
                target=target,
                operation=step.operation,
                error=str(e),
            )
            wrapped = _as_stepwise_error(e, step)
            if wrapped is e:
                raise
            raise wrapped from e

        self._registry.record_success(target)
        return payload

    def _call_direct(self, step: WorkflowStep, collaborator: StepCollaborator) -> Any:
        try:
            return collaborator.call(step.target, step.operation, step.parameters)
        except Exception as e:
            logger.debug(
                "step.call_failed",
                step=step.step_id,
                operation=step.operation,
                error=str(e),
            )
            wrapped = _as_stepwise_error(e, step)
            if wrapped is e:
                raise
            raise wrapped from e


__all__ = ["StepExecutor"]
