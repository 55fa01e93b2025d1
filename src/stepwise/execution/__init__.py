"""
Stepwise Execution - fault tolerance and dispatch for workflow steps.

Architecture::

    circuit_breaker.py  Per-target breaker (closed / open / half_open)
    connections.py      ConnectionRegistry: records, locks and breakers per target
    retry.py            RetryExecutor: exponential backoff with jitter
    monitor.py          ConnectionMonitor: staleness, reconnection, fallbacks
    collaborators.py    StepCollaborator / TargetConnector protocols and adapters
    step_executor.py    StepExecutor: routes a step to its collaborator
"""

from stepwise.execution.circuit_breaker import (
    BreakerStatus,
    CircuitBreaker,
    CircuitState,
    CircuitStats,
)
from stepwise.execution.collaborators import (
    CallRecord,
    EchoCollaborator,
    FailingCollaborator,
    FlakyCollaborator,
    FunctionCollaborator,
    FunctionConnector,
    ScriptedCollaborator,
    StepCollaborator,
    TargetConnector,
)
from stepwise.execution.connections import (
    ConnectionRegistry,
    TargetDefinition,
    TargetProtocol,
    TargetRecord,
    TargetStatus,
)
from stepwise.execution.monitor import ConnectionMonitor, FallbackCandidate, MonitorReport
from stepwise.execution.retry import ExponentialBackoff, RetryExecutor, RetryStrategy
from stepwise.execution.step_executor import StepExecutor

__all__ = [
    # Circuit breaker
    "BreakerStatus",
    "CircuitBreaker",
    "CircuitState",
    "CircuitStats",
    # Collaborators
    "CallRecord",
    "EchoCollaborator",
    "FailingCollaborator",
    "FlakyCollaborator",
    "FunctionCollaborator",
    "FunctionConnector",
    "ScriptedCollaborator",
    "StepCollaborator",
    "TargetConnector",
    # Connections
    "ConnectionRegistry",
    "TargetDefinition",
    "TargetProtocol",
    "TargetRecord",
    "TargetStatus",
    # Monitor
    "ConnectionMonitor",
    "FallbackCandidate",
    "MonitorReport",
    # Retry
    "ExponentialBackoff",
    "RetryExecutor",
    "RetryStrategy",
    # Dispatch
    "StepExecutor",
]
