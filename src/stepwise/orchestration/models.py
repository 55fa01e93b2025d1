"""
Orchestration models - workflow steps, definitions, executions and results.

Pure data structures with no dependency on the execution layer, so the
breaker, retry executor and step executor can import them freely.

Design Principles:
- Definitions are immutable (frozen dataclasses, read-only parameter maps)
- Steps are a tagged union: ``StepKind`` is the tag, one factory per kind
- Executions are mutable and owned by exactly one orchestrator run
- Results are produced once, at the end of a run

Example::

    from stepwise.orchestration.models import (
        RetryPolicy, WorkflowDefinition, WorkflowMetadata, WorkflowStep,
    )

    definition = WorkflowDefinition(
        workflow_id="assessment",
        name="Model assessment",
        steps=[
            WorkflowStep.external_call("extract", "revit", "get_elements"),
            WorkflowStep.transform("shape", "to_table", depends_on=["extract"]),
            WorkflowStep.cloud_operation(
                "upload", "s3", "put_object",
                depends_on=["shape"],
                retry_policy=RetryPolicy(max_attempts=5, backoff_base_ms=200),
            ),
        ],
        metadata=WorkflowMetadata(required_targets=("revit", "s3")),
    )
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any

from stepwise.core.errors import ValidationError


class StepKind(str, Enum):
    """Which collaborator a step is dispatched to."""

    EXTERNAL_CALL = "external_call"  # Data-extraction service
    DATA_TRANSFORM = "data_transform"  # Local transform stage, no target
    CLOUD_OPERATION = "cloud_operation"  # Storage/cloud service
    DESKTOP_AUTOMATION = "desktop_automation"  # UI automation agent

    @property
    def guarded(self) -> bool:
        """Whether calls cross a network-like boundary (breaker + connection checks)."""
        return self in (StepKind.EXTERNAL_CALL, StepKind.CLOUD_OPERATION)

    @property
    def requires_target(self) -> bool:
        return self is not StepKind.DATA_TRANSFORM


class ExecutionStatus(str, Enum):
    """Lifecycle of a single workflow execution."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


class ResultStatus(str, Enum):
    """Overall outcome of a finished execution."""

    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"  # Some steps completed before the failure


class StepOutcomeStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry configuration for a step.

    Attributes:
        max_attempts: Total attempts including the first (>= 1)
        backoff_base_ms: Wait before the second attempt; doubles each retry
    """

    max_attempts: int = 3
    backoff_base_ms: float = 1000.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValidationError(
                "max_attempts must be at least 1", field="max_attempts", value=self.max_attempts
            )
        if self.backoff_base_ms < 0:
            raise ValidationError(
                "backoff_base_ms must be non-negative",
                field="backoff_base_ms",
                value=self.backoff_base_ms,
            )


def _freeze(parameters: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(parameters or {}))


@dataclass(frozen=True, eq=False)
class WorkflowStep:
    """
    One unit of work, bound to a target and an operation.

    Use the factory methods rather than the constructor:
    - WorkflowStep.external_call() for data-extraction services
    - WorkflowStep.transform() for local transform stages
    - WorkflowStep.cloud_operation() for storage/cloud services
    - WorkflowStep.desktop_automation() for UI automation agents
    """

    step_id: str
    kind: StepKind
    operation: str
    target: str | None = None
    parameters: Mapping[str, Any] = field(default_factory=dict)
    depends_on: tuple[str, ...] = ()
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self) -> None:
        if not self.step_id:
            raise ValidationError("step_id must not be empty", field="step_id")
        if not self.operation:
            raise ValidationError(
                f"Step {self.step_id} has no operation", field="operation"
            )
        if self.kind.requires_target and not self.target:
            raise ValidationError(
                f"Step {self.step_id} ({self.kind.value}) requires a target",
                field="target",
            )
        if self.step_id in self.depends_on:
            raise ValidationError(
                f"Step {self.step_id} depends on itself", field="depends_on", value=self.step_id
            )
        object.__setattr__(self, "parameters", _freeze(self.parameters))
        object.__setattr__(self, "depends_on", tuple(self.depends_on))

    # =========================================================================
    # Factory Methods
    # =========================================================================

    @classmethod
    def external_call(
        cls,
        step_id: str,
        target: str,
        operation: str,
        parameters: Mapping[str, Any] | None = None,
        depends_on: Sequence[str] | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> WorkflowStep:
        """Create a step that calls a data-extraction service."""
        return cls(
            step_id=step_id,
            kind=StepKind.EXTERNAL_CALL,
            target=target,
            operation=operation,
            parameters=parameters or {},
            depends_on=tuple(depends_on or ()),
            retry_policy=retry_policy or RetryPolicy(),
        )

    @classmethod
    def transform(
        cls,
        step_id: str,
        operation: str,
        parameters: Mapping[str, Any] | None = None,
        depends_on: Sequence[str] | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> WorkflowStep:
        """Create a data-transform step (no external target)."""
        return cls(
            step_id=step_id,
            kind=StepKind.DATA_TRANSFORM,
            operation=operation,
            parameters=parameters or {},
            depends_on=tuple(depends_on or ()),
            retry_policy=retry_policy or RetryPolicy(),
        )

    @classmethod
    def cloud_operation(
        cls,
        step_id: str,
        target: str,
        operation: str,
        parameters: Mapping[str, Any] | None = None,
        depends_on: Sequence[str] | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> WorkflowStep:
        """Create a step that runs a storage/cloud operation."""
        return cls(
            step_id=step_id,
            kind=StepKind.CLOUD_OPERATION,
            target=target,
            operation=operation,
            parameters=parameters or {},
            depends_on=tuple(depends_on or ()),
            retry_policy=retry_policy or RetryPolicy(),
        )

    @classmethod
    def desktop_automation(
        cls,
        step_id: str,
        target: str,
        operation: str,
        parameters: Mapping[str, Any] | None = None,
        depends_on: Sequence[str] | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> WorkflowStep:
        """Create a step driven by a desktop-automation agent."""
        return cls(
            step_id=step_id,
            kind=StepKind.DESKTOP_AUTOMATION,
            target=target,
            operation=operation,
            parameters=parameters or {},
            depends_on=tuple(depends_on or ()),
            retry_policy=retry_policy or RetryPolicy(),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "kind": self.kind.value,
            "target": self.target,
            "operation": self.operation,
            "parameters": dict(self.parameters),
            "depends_on": list(self.depends_on),
            "retry_policy": {
                "max_attempts": self.retry_policy.max_attempts,
                "backoff_base_ms": self.retry_policy.backoff_base_ms,
            },
        }

    def __repr__(self) -> str:
        return f"WorkflowStep({self.step_id!r}, kind={self.kind.value}, target={self.target!r})"


@dataclass(frozen=True)
class WorkflowMetadata:
    """Definition-level metadata."""

    required_targets: tuple[str, ...] = ()
    estimated_duration_seconds: float | None = None
    tags: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "required_targets", tuple(self.required_targets))
        object.__setattr__(self, "tags", _freeze(self.tags))


@dataclass(frozen=True, eq=False)
class WorkflowDefinition:
    """An ordered list of steps plus the targets they need.

    Declaration order is execution order; a step may only depend on steps
    declared before it.
    """

    workflow_id: str
    steps: tuple[WorkflowStep, ...]
    name: str = ""
    description: str = ""
    metadata: WorkflowMetadata = field(default_factory=WorkflowMetadata)

    def __post_init__(self) -> None:
        if not self.workflow_id:
            raise ValidationError("workflow_id must not be empty", field="workflow_id")
        steps = tuple(self.steps)
        if not steps:
            raise ValidationError(
                f"Workflow {self.workflow_id} has no steps", field="steps"
            )
        seen: set[str] = set()
        duplicates = []
        for step in steps:
            if step.step_id in seen:
                duplicates.append(step.step_id)
            seen.add(step.step_id)
        if duplicates:
            raise ValidationError(
                f"Workflow {self.workflow_id} has duplicate step ids: {', '.join(duplicates)}",
                field="steps",
                value=duplicates,
            )
        object.__setattr__(self, "steps", steps)
        if not self.name:
            object.__setattr__(self, "name", self.workflow_id)

    @property
    def step_ids(self) -> list[str]:
        return [s.step_id for s in self.steps]

    def step_index(self, step_id: str) -> int:
        """Index of a step, or -1 if not present."""
        for i, step in enumerate(self.steps):
            if step.step_id == step_id:
                return i
        return -1

    def get_step(self, step_id: str) -> WorkflowStep | None:
        for step in self.steps:
            if step.step_id == step_id:
                return step
        return None


@dataclass(frozen=True)
class StepOutput:
    """Tagged payload returned by a collaborator call."""

    kind: StepKind
    operation: str
    target: str | None
    payload: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "operation": self.operation,
            "target": self.target,
            "payload": self.payload,
        }


@dataclass
class StepOutcome:
    """Result of running a single step through the retry executor."""

    step_id: str
    kind: StepKind
    status: StepOutcomeStatus
    attempts: int
    started_at: datetime
    completed_at: datetime
    output: StepOutput | None = None
    error: str | None = None
    error_type: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == StepOutcomeStatus.COMPLETED

    @property
    def duration_seconds(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logging/storage."""
        return {
            "step_id": self.step_id,
            "kind": self.kind.value,
            "status": self.status.value,
            "attempts": self.attempts,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "output": self.output.to_dict() if self.output else None,
            "error": self.error,
            "error_type": self.error_type,
        }


@dataclass
class WorkflowExecution:
    """Mutable state of one run. Written only by the orchestrator running it."""

    execution_id: str
    definition: WorkflowDefinition
    started_at: datetime
    status: ExecutionStatus = ExecutionStatus.PENDING
    current_step: int = 0
    step_results: dict[str, StepOutcome] = field(default_factory=dict)
    ended_at: datetime | None = None
    last_error: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    @property
    def total_steps(self) -> int:
        return len(self.definition.steps)


@dataclass
class WorkflowResult:
    """Terminal result of an execution, produced once."""

    execution_id: str
    workflow_id: str
    status: ResultStatus
    started_at: datetime
    completed_at: datetime
    outcomes: dict[str, StepOutcome] = field(default_factory=dict)
    completed_steps: list[str] = field(default_factory=list)
    failed_steps: list[str] = field(default_factory=list)
    error_step: str | None = None
    error: str | None = None
    error_type: str | None = None

    @property
    def duration_seconds(self) -> float:
        """Total elapsed time."""
        return (self.completed_at - self.started_at).total_seconds()

    @property
    def attempted_steps(self) -> list[str]:
        return list(self.outcomes)

    def output(self, step_id: str) -> Any:
        """Payload of a completed step, or None."""
        outcome = self.outcomes.get(step_id)
        if outcome is None or outcome.output is None:
            return None
        return outcome.output.payload

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logging/storage."""
        return {
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "completed_steps": list(self.completed_steps),
            "failed_steps": list(self.failed_steps),
            "error_step": self.error_step,
            "error": self.error,
            "error_type": self.error_type,
            "outcomes": {k: v.to_dict() for k, v in self.outcomes.items()},
        }


@dataclass(frozen=True)
class WorkflowStatus:
    """Point-in-time snapshot of an execution."""

    execution_id: str
    status: ExecutionStatus
    current_step: int
    total_steps: int
    progress: float
    started_at: datetime
    estimated_completion: datetime | None
    last_update: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "status": self.status.value,
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "progress": self.progress,
            "started_at": self.started_at.isoformat(),
            "estimated_completion": (
                self.estimated_completion.isoformat() if self.estimated_completion else None
            ),
            "last_update": self.last_update.isoformat(),
        }


__all__ = [
    "ExecutionStatus",
    "ResultStatus",
    "RetryPolicy",
    "StepKind",
    "StepOutcome",
    "StepOutcomeStatus",
    "StepOutput",
    "WorkflowDefinition",
    "WorkflowExecution",
    "WorkflowMetadata",
    "WorkflowResult",
    "WorkflowStatus",
    "WorkflowStep",
]
