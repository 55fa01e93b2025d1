"""
Stepwise Orchestration - workflow definitions and the orchestrator.

Architecture::

    models.py        Steps, definitions, executions, results (pure data)
    orchestrator.py  WorkflowOrchestrator: sequential runs, pause/resume/cancel,
                     status snapshots, multi-target fan-out

Step kinds::

    WorkflowStep.external_call()       data-extraction service   (breaker-guarded)
    WorkflowStep.transform()           local transform, no target
    WorkflowStep.cloud_operation()     storage/cloud service     (breaker-guarded)
    WorkflowStep.desktop_automation()  UI automation agent
"""

# models first: the execution layer imports them while the orchestrator loads
from stepwise.orchestration.models import (
    ExecutionStatus,
    ResultStatus,
    RetryPolicy,
    StepKind,
    StepOutcome,
    StepOutcomeStatus,
    StepOutput,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowMetadata,
    WorkflowResult,
    WorkflowStatus,
    WorkflowStep,
)
from stepwise.orchestration.orchestrator import WorkflowHandle, WorkflowOrchestrator

__all__ = [
    # Models
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
    # Orchestrator
    "WorkflowHandle",
    "WorkflowOrchestrator",
]
