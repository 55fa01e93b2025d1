"""Collaborator protocols and adapters.

The core knows exactly one capability per step kind::

    call(target, operation, parameters) -> payload      (raises on failure)

and one capability for the connection monitor::

    connect(definition) -> None                         (raises on failure)

How a collaborator reaches its backing service (file system, object
storage, a managed model, UI automation) is its own business.  Concrete
adapters plug in here without touching the orchestrator.

Architecture::

    StepCollaborator (Protocol)
    ├── FunctionCollaborator   wraps a plain callable
    ├── EchoCollaborator       returns a description of the call
    ├── FailingCollaborator    always raises
    ├── FlakyCollaborator      fails the first N calls, then echoes
    └── ScriptedCollaborator   per-target behaviour (echo / fail / callable)

    TargetConnector (Protocol)
    └── FunctionConnector      wraps a plain callable

Every collaborator here counts its calls (``calls`` list) so tests can assert
that a denied breaker never reached the collaborator.

Example::

    collaborators = {
        StepKind.EXTERNAL_CALL: FunctionCollaborator(extraction_client.call),
        StepKind.DATA_TRANSFORM: FunctionCollaborator(run_transform),
        StepKind.CLOUD_OPERATION: FlakyCollaborator(failures=2),
        StepKind.DESKTOP_AUTOMATION: EchoCollaborator(),
    }
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from stepwise.core.errors import TransientError
from stepwise.core.logging import get_logger

if TYPE_CHECKING:
    from stepwise.execution.connections import TargetDefinition

logger = get_logger(__name__)


@runtime_checkable
class StepCollaborator(Protocol):
    """Narrow interface every step-kind adapter implements."""

    def call(
        self, target: str | None, operation: str, parameters: Mapping[str, Any]
    ) -> Any:
        """Perform ``operation`` on ``target``; return the payload or raise."""
        ...


@runtime_checkable
class TargetConnector(Protocol):
    """Re-establishes a connection to a target for the connection monitor."""

    def connect(self, definition: TargetDefinition) -> None:
        """Connect or raise."""
        ...


@dataclass(frozen=True)
class CallRecord:
    """One observed collaborator call."""

    target: str | None
    operation: str
    parameters: dict[str, Any]


class _RecordingCollaborator:
    """Base for adapters that keep a thread-safe call log."""

    def __init__(self) -> None:
        self._calls: list[CallRecord] = []
        self._calls_lock = threading.Lock()

    @property
    def calls(self) -> list[CallRecord]:
        with self._calls_lock:
            return list(self._calls)

    @property
    def call_count(self) -> int:
        with self._calls_lock:
            return len(self._calls)

    def _record(self, target: str | None, operation: str, parameters: Mapping[str, Any]) -> int:
        with self._calls_lock:
            self._calls.append(CallRecord(target, operation, dict(parameters)))
            return len(self._calls)


class FunctionCollaborator(_RecordingCollaborator):
    """Adapts ``fn(target, operation, parameters)`` to :class:`StepCollaborator`."""

    def __init__(self, fn: Callable[[str | None, str, Mapping[str, Any]], Any]) -> None:
        super().__init__()
        self._fn = fn

    def call(self, target: str | None, operation: str, parameters: Mapping[str, Any]) -> Any:
        self._record(target, operation, parameters)
        return self._fn(target, operation, parameters)


class FunctionConnector:
    """Adapts ``fn(definition)`` to :class:`TargetConnector`."""

    def __init__(self, fn: Callable[[TargetDefinition], None]) -> None:
        self._fn = fn

    def connect(self, definition: TargetDefinition) -> None:
        self._fn(definition)


class EchoCollaborator(_RecordingCollaborator):
    """Always succeeds, returning what it was asked to do."""

    def __init__(self, result: str = "success") -> None:
        super().__init__()
        self._result = result

    def call(self, target: str | None, operation: str, parameters: Mapping[str, Any]) -> Any:
        self._record(target, operation, parameters)
        return {
            "target": target,
            "operation": operation,
            "parameters": dict(parameters),
            "result": self._result,
        }


class FailingCollaborator(_RecordingCollaborator):
    """Always raises ``error_factory(target, operation)``.

    Defaults to a :class:`~stepwise.core.errors.TransientError`.
    """

    def __init__(
        self,
        message: str = "Simulated failure",
        error_factory: Callable[[str | None, str], Exception] | None = None,
    ) -> None:
        super().__init__()
        self._message = message
        self._error_factory = error_factory

    def call(self, target: str | None, operation: str, parameters: Mapping[str, Any]) -> Any:
        self._record(target, operation, parameters)
        if self._error_factory is not None:
            raise self._error_factory(target, operation)
        raise TransientError(f"{self._message}: {operation} on {target}")


class FlakyCollaborator(EchoCollaborator):
    """Fails the first ``failures`` calls, then behaves like :class:`EchoCollaborator`."""

    def __init__(self, failures: int = 1, message: str = "Simulated flake") -> None:
        super().__init__()
        self._failures = failures
        self._message = message

    def call(self, target: str | None, operation: str, parameters: Mapping[str, Any]) -> Any:
        # Record first so the call number is stable under concurrency
        number = self._record(target, operation, parameters)
        if number <= self._failures:
            raise ConnectionError(f"{self._message} ({number}/{self._failures})")
        return {
            "target": target,
            "operation": operation,
            "parameters": dict(parameters),
            "result": "success",
        }


class ScriptedCollaborator(_RecordingCollaborator):
    """Per-target behaviour.

    ``script`` maps a target id to either an ``Exception`` instance (raised
    on every call) or a callable ``(operation, parameters) -> payload``.
    Targets not in the script are echoed.
    """

    def __init__(self, script: Mapping[str | None, Any] | None = None) -> None:
        super().__init__()
        self._script = dict(script or {})

    def call(self, target: str | None, operation: str, parameters: Mapping[str, Any]) -> Any:
        self._record(target, operation, parameters)
        behaviour = self._script.get(target)
        if isinstance(behaviour, BaseException):
            raise behaviour
        if callable(behaviour):
            return behaviour(operation, parameters)
        return {"target": target, "operation": operation, "result": f"success_{target}"}


__all__ = [
    "CallRecord",
    "EchoCollaborator",
    "FailingCollaborator",
    "FlakyCollaborator",
    "FunctionCollaborator",
    "FunctionConnector",
    "ScriptedCollaborator",
    "StepCollaborator",
    "TargetConnector",
]
