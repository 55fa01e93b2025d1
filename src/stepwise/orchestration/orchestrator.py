"""Workflow Orchestrator — runs workflow definitions against registered targets.

The orchestrator takes a :class:`~stepwise.orchestration.models.WorkflowDefinition`
and executes its steps in declaration order.  Each step goes through the
:class:`~stepwise.execution.retry.RetryExecutor`, which calls the
:class:`~stepwise.execution.step_executor.StepExecutor`, which consults the
target's circuit breaker before contacting a collaborator.  It handles:

- **Validation** of required targets before an execution exists
- **Dependencies**: a step runs only if every prerequisite completed
- **Pause / resume / cancel** of a running execution
- **Status** snapshots with a linear completion estimate
- **Fan-out** of one operation across several targets
- **Background runs** on a worker pool (``submit_workflow``)
- **Retention** of at most ``max_retained_executions`` finished runs

Step failures never escape ``execute_workflow``; they are captured on the
returned :class:`~stepwise.orchestration.models.WorkflowResult`.  Only
definition-level problems (unknown required targets) raise.

Example::

    from stepwise import (
        EchoCollaborator, ResultStatus, StepKind, TargetDefinition,
        WorkflowDefinition, WorkflowOrchestrator, WorkflowStep,
    )

    with WorkflowOrchestrator(collaborators={
        StepKind.EXTERNAL_CALL: EchoCollaborator(),
        StepKind.DATA_TRANSFORM: EchoCollaborator(),
    }) as orchestrator:
        orchestrator.register_target(TargetDefinition("revit"))
        result = orchestrator.execute_workflow(WorkflowDefinition(
            workflow_id="assessment",
            steps=[
                WorkflowStep.external_call("extract", "revit", "get_elements"),
                WorkflowStep.transform("shape", "to_table", depends_on=["extract"]),
            ],
        ))

    if result.status == ResultStatus.COMPLETED:
        print(f"Success! Ran {len(result.completed_steps)} steps")
    else:
        print(f"Failed at {result.error_step}: {result.error}")
"""

from __future__ import annotations

import threading
from collections import Counter
from collections.abc import Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from stepwise.core.errors import (
    ExecutionCancelledError,
    ExecutionNotFoundError,
    UnknownTargetError,
    UnmetDependencyError,
)
from stepwise.core.logging import LogContext, get_logger
from stepwise.core.settings import StepwiseSettings, get_settings
from stepwise.core.timestamps import new_execution_id
from stepwise.execution.collaborators import StepCollaborator
from stepwise.execution.connections import ConnectionRegistry, TargetDefinition, TargetRecord
from stepwise.execution.retry import RetryExecutor
from stepwise.execution.step_executor import StepExecutor
from stepwise.orchestration.models import (
    ExecutionStatus,
    ResultStatus,
    StepKind,
    StepOutcome,
    StepOutcomeStatus,
    StepOutput,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowResult,
    WorkflowStatus,
    WorkflowStep,
)

logger = get_logger(__name__)


@dataclass
class _ExecutionState:
    """Run-time bookkeeping for one execution."""

    execution: WorkflowExecution
    # Set means steps may be dispatched; cleared while paused
    gate: threading.Event
    cancel: threading.Event
    lock: threading.RLock
    result: WorkflowResult | None = None


class WorkflowHandle:
    """Handle to a workflow running on the orchestrator's worker pool."""

    def __init__(self, execution_id: str, future: Future[WorkflowResult]) -> None:
        self.execution_id = execution_id
        self._future = future

    def done(self) -> bool:
        return self._future.done()

    def result(self, timeout: float | None = None) -> WorkflowResult:
        """Block until the run finishes (``TimeoutError`` after ``timeout``)."""
        return self._future.result(timeout)

    def __repr__(self) -> str:
        state = "done" if self.done() else "running"
        return f"WorkflowHandle({self.execution_id!r}, {state})"


class WorkflowOrchestrator:
    """
    Coordinates workflow executions over a shared connection registry.

    Args:
        registry: Connection registry (created from settings if omitted)
        collaborators: One adapter per step kind; ignored if ``step_executor`` is given
        step_executor: Pre-built step executor
        retry_executor: Pre-built retry executor
        settings: Overrides ``get_settings()``
    """

    def __init__(
        self,
        registry: ConnectionRegistry | None = None,
        collaborators: Mapping[StepKind, StepCollaborator] | None = None,
        step_executor: StepExecutor | None = None,
        retry_executor: RetryExecutor | None = None,
        settings: StepwiseSettings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        if registry is None:
            registry = step_executor.registry if step_executor is not None else ConnectionRegistry()
        self._registry = registry
        self._step_executor = step_executor or StepExecutor(registry, collaborators or {})
        self._retry_executor = retry_executor or RetryExecutor()
        self._clock = registry.clock

        self._executions: dict[str, _ExecutionState] = {}
        self._executions_lock = threading.Lock()
        self._pool: ThreadPoolExecutor | None = None
        self._pool_lock = threading.Lock()
        self._closing = threading.Event()

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    # =========================================================================
    # Targets
    # =========================================================================

    def register_target(self, definition: TargetDefinition) -> TargetRecord:
        return self._registry.register(definition)

    def list_targets(self) -> list[TargetRecord]:
        return self._registry.records()

    def active_connections(self) -> list[TargetRecord]:
        return self._registry.active_connections()

    # =========================================================================
    # Execution
    # =========================================================================

    def execute_workflow(
        self,
        definition: WorkflowDefinition,
        context: Mapping[str, Any] | None = None,
    ) -> WorkflowResult:
        """
        Run a workflow to completion on the calling thread.

        Raises:
            UnknownTargetError: a required target is not registered
        """
        state = self._prepare(definition, context)
        return self._run(state)

    def submit_workflow(
        self,
        definition: WorkflowDefinition,
        context: Mapping[str, Any] | None = None,
    ) -> WorkflowHandle:
        """
        Validate and create the execution now, run it on the worker pool.

        Raises:
            UnknownTargetError: a required target is not registered
            RuntimeError: the orchestrator was closed
        """
        pool = self._get_pool()
        state = self._prepare(definition, context)
        future = pool.submit(self._run, state)
        return WorkflowHandle(state.execution.execution_id, future)

    def _get_pool(self) -> ThreadPoolExecutor:
        with self._pool_lock:
            if self._closing.is_set():
                raise RuntimeError("cannot submit workflows after close()")
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self._settings.workflow_max_workers,
                    thread_name_prefix="stepwise-workflow",
                )
            return self._pool

    def _prepare(
        self,
        definition: WorkflowDefinition,
        context: Mapping[str, Any] | None,
    ) -> _ExecutionState:
        missing = self._registry.missing(definition.metadata.required_targets)
        if missing:
            logger.warning(
                "workflow.rejected",
                workflow=definition.workflow_id,
                missing_targets=missing,
            )
            raise UnknownTargetError(missing)

        execution = WorkflowExecution(
            execution_id=new_execution_id(),
            definition=definition,
            started_at=self._clock(),
            status=ExecutionStatus.RUNNING,
            context=dict(context or {}),
        )
        gate = threading.Event()
        gate.set()
        state = _ExecutionState(
            execution=execution,
            gate=gate,
            cancel=threading.Event(),
            lock=threading.RLock(),
        )
        with self._executions_lock:
            self._executions[execution.execution_id] = state
            self._evict_finished()
        return state

    def _evict_finished(self) -> None:
        # Caller holds _executions_lock; dicts keep insertion order, oldest first
        excess = len(self._executions) - self._settings.max_retained_executions
        if excess <= 0:
            return
        evicted = []
        for execution_id, state in self._executions.items():
            if len(evicted) == excess:
                break
            if state.execution.status.terminal:
                evicted.append(execution_id)
        for execution_id in evicted:
            del self._executions[execution_id]
        if evicted:
            logger.debug("workflow.evicted", executions=evicted)

    def _run(self, state: _ExecutionState) -> WorkflowResult:
        execution = state.execution
        definition = execution.definition
        completed: list[str] = []
        failed: list[str] = []
        error_step: str | None = None
        error: BaseException | None = None
        aborted = False

        with LogContext(execution_id=execution.execution_id, workflow=definition.workflow_id):
            logger.info(
                "workflow.start",
                steps=len(definition.steps),
                required_targets=list(definition.metadata.required_targets),
            )

            for index, step in enumerate(definition.steps):
                self._await_gate(state)
                if state.cancel.is_set():
                    error_step = step.step_id
                    error = ExecutionCancelledError().with_context(step=step.step_id)
                    aborted = True
                    break

                with state.lock:
                    execution.current_step = index

                unmet = [d for d in step.depends_on if d not in completed]
                if unmet:
                    error_step = step.step_id
                    error = UnmetDependencyError(step.step_id, unmet)
                    aborted = True
                    logger.error("step.unmet_dependency", step=step.step_id, missing=unmet)
                    break

                outcome, step_error = self._run_step(state, step)
                with state.lock:
                    execution.step_results[step.step_id] = outcome

                if outcome.succeeded:
                    completed.append(step.step_id)
                    continue

                failed.append(step.step_id)
                error_step = step.step_id
                error = step_error
                aborted = isinstance(step_error, ExecutionCancelledError)
                break

            ended_at = self._clock()
            with state.lock:
                # cancel() checks for a terminal status under this lock, so an
                # accepted cancel is always reflected in the result
                if state.cancel.is_set() and error is None:
                    error = ExecutionCancelledError()
                    aborted = True

                if aborted or (failed and not completed):
                    status = ResultStatus.FAILED
                elif failed:
                    status = ResultStatus.PARTIAL
                else:
                    status = ResultStatus.COMPLETED

                if status == ResultStatus.COMPLETED:
                    execution.status = ExecutionStatus.COMPLETED
                    execution.current_step = execution.total_steps
                else:
                    execution.status = ExecutionStatus.FAILED
                    execution.last_error = str(error) if error is not None else None
                execution.ended_at = ended_at

                result = WorkflowResult(
                    execution_id=execution.execution_id,
                    workflow_id=definition.workflow_id,
                    status=status,
                    started_at=execution.started_at,
                    completed_at=ended_at,
                    outcomes=dict(execution.step_results),
                    completed_steps=completed,
                    failed_steps=failed,
                    error_step=error_step,
                    error=str(error) if error is not None else None,
                    error_type=type(error).__name__ if error is not None else None,
                )
                state.result = result

            log = logger.info if status == ResultStatus.COMPLETED else logger.warning
            log(
                "workflow.complete",
                status=status.value,
                completed=len(completed),
                failed=len(failed),
                error_step=error_step,
                duration_seconds=round(result.duration_seconds, 3),
            )
        return result

    def _await_gate(self, state: _ExecutionState) -> None:
        if state.gate.is_set():
            return
        logger.info("workflow.paused_wait", step_index=state.execution.current_step)
        state.gate.wait()

    def _run_step(
        self, state: _ExecutionState, step: WorkflowStep
    ) -> tuple[StepOutcome, BaseException | None]:
        started_at = self._clock()
        logger.debug("step.start", step=step.step_id, kind=step.kind.value, target=step.target)

        attempts = 0

        def invoke(s: WorkflowStep) -> StepOutput:
            nonlocal attempts
            attempts += 1
            return self._step_executor.invoke(s)

        try:
            output, attempts = self._retry_executor.execute(step, invoke, state.cancel)
        except Exception as e:
            logger.warning(
                "step.failed",
                step=step.step_id,
                attempts=attempts,
                error=str(e),
                error_type=type(e).__name__,
            )
            outcome = StepOutcome(
                step_id=step.step_id,
                kind=step.kind,
                status=StepOutcomeStatus.FAILED,
                attempts=attempts,
                started_at=started_at,
                completed_at=self._clock(),
                error=str(e),
                error_type=type(e).__name__,
            )
            return outcome, e

        outcome = StepOutcome(
            step_id=step.step_id,
            kind=step.kind,
            status=StepOutcomeStatus.COMPLETED,
            attempts=attempts,
            started_at=started_at,
            completed_at=self._clock(),
            output=output,
        )
        logger.debug(
            "step.complete",
            step=step.step_id,
            attempts=attempts,
            duration_seconds=round(outcome.duration_seconds, 3),
        )
        return outcome, None

    # =========================================================================
    # Control
    # =========================================================================

    def _state(self, execution_id: str) -> _ExecutionState:
        with self._executions_lock:
            state = self._executions.get(execution_id)
        if state is None:
            raise ExecutionNotFoundError(execution_id)
        return state

    def pause(self, execution_id: str) -> bool:
        """Stop dispatching new steps; the step in flight finishes.

        Returns:
            True if the execution moved to ``paused``
        """
        state = self._state(execution_id)
        with state.lock:
            if state.execution.status != ExecutionStatus.RUNNING or self._closing.is_set():
                return False
            state.execution.status = ExecutionStatus.PAUSED
            state.gate.clear()
        logger.info("workflow.paused", execution_id=execution_id)
        return True

    def resume(self, execution_id: str) -> bool:
        """Resume a paused execution.

        Returns:
            True if it was paused and not already cancelled
        """
        state = self._state(execution_id)
        with state.lock:
            if state.execution.status != ExecutionStatus.PAUSED or state.cancel.is_set():
                return False
            state.execution.status = ExecutionStatus.RUNNING
            state.gate.set()
        logger.info("workflow.resumed", execution_id=execution_id)
        return True

    def cancel(self, execution_id: str) -> bool:
        """Abort an execution at its next suspension point.

        Releases a paused execution and interrupts a pending retry wait.
        A step already in flight runs to the end and is recorded, but the
        run still ends ``failed`` with ``ExecutionCancelledError``.

        Returns:
            False if the execution had already finished
        """
        state = self._state(execution_id)
        with state.lock:
            if state.execution.status.terminal:
                return False
            state.cancel.set()
            state.gate.set()
        logger.info("workflow.cancel_requested", execution_id=execution_id)
        return True

    def forget(self, execution_id: str) -> bool:
        """Drop a finished execution and its result.

        Returns:
            False if the execution is still active and was kept
        """
        with self._executions_lock:
            state = self._executions.get(execution_id)
            if state is None:
                raise ExecutionNotFoundError(execution_id)
            if not state.execution.status.terminal:
                return False
            del self._executions[execution_id]
        logger.debug("workflow.forgotten", execution_id=execution_id)
        return True

    # =========================================================================
    # Inspection
    # =========================================================================

    def get_execution(self, execution_id: str) -> WorkflowExecution:
        return self._state(execution_id).execution

    def get_result(self, execution_id: str) -> WorkflowResult | None:
        """The final result, or None while the execution is still running."""
        return self._state(execution_id).result

    def get_status(self, execution_id: str) -> WorkflowStatus:
        """
        Point-in-time snapshot of an execution.

        ``progress`` is ``current_step / total_steps * 100``.  While running,
        ``estimated_completion`` extrapolates linearly from elapsed time.
        """
        state = self._state(execution_id)
        now = self._clock()
        with state.lock:
            execution = state.execution
            total = execution.total_steps
            current = execution.current_step
            status = execution.status
            started_at = execution.started_at

        fraction = current / total if total else 0.0
        estimated: datetime | None = None
        if status == ExecutionStatus.RUNNING and fraction > 0:
            elapsed = (now - started_at).total_seconds()
            estimated = started_at + timedelta(seconds=elapsed / fraction)

        return WorkflowStatus(
            execution_id=execution_id,
            status=status,
            current_step=current,
            total_steps=total,
            progress=fraction * 100.0,
            started_at=started_at,
            estimated_completion=estimated,
            last_update=now,
        )

    def health_summary(self) -> dict[str, Any]:
        """Registry health plus execution counts by status."""
        with self._executions_lock:
            states = list(self._executions.values())
        counts = Counter(s.execution.status.value for s in states)
        summary = self._registry.health_summary()
        summary["executions"] = dict(counts)
        summary["active_executions"] = sum(
            1 for s in states if not s.execution.status.terminal
        )
        return summary

    # =========================================================================
    # Fan-out
    # =========================================================================

    def coordinate_multi_target(
        self,
        targets: Sequence[str],
        operation: str,
        parameters: Mapping[str, Any] | None = None,
        kind: StepKind = StepKind.EXTERNAL_CALL,
    ) -> dict[str, StepOutput]:
        """
        Run one operation against several targets concurrently.

        Waits for every call; a failing target never cancels the others.
        Failures are logged (and counted by the target's breaker) and left
        out of the returned mapping.
        """
        unique = list(dict.fromkeys(targets))
        if not unique:
            return {}

        params = dict(parameters or {})
        results: dict[str, StepOutput] = {}
        max_workers = min(len(unique), self._settings.fanout_max_workers)

        with ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="stepwise-fanout"
        ) as executor:
            futures = {
                executor.submit(self._step_executor.call_target, kind, target, operation, params): target
                for target in unique
            }
            for future in as_completed(futures):
                target = futures[future]
                try:
                    results[target] = future.result()
                except Exception as e:
                    logger.warning(
                        "fanout.target_failed",
                        target=target,
                        operation=operation,
                        error=str(e),
                        error_type=type(e).__name__,
                    )

        logger.info(
            "fanout.complete",
            operation=operation,
            targets=len(unique),
            succeeded=len(results),
            failed=len(unique) - len(results),
        )
        # Input order, not completion order
        return {t: results[t] for t in unique if t in results}

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def close(self, wait: bool = True) -> None:
        """Shut down the worker pool used by ``submit_workflow``.

        Running executions finish normally.  Paused executions would never
        wake up, so they are cancelled, and ``pause()`` is refused from here on.
        """
        self._closing.set()
        with self._executions_lock:
            states = list(self._executions.values())
        for state in states:
            with state.lock:
                if state.execution.status == ExecutionStatus.PAUSED:
                    state.cancel.set()
                    state.gate.set()
                    logger.info(
                        "workflow.cancelled_on_close",
                        execution_id=state.execution.execution_id,
                    )

        with self._pool_lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=wait)

    def __enter__(self) -> WorkflowOrchestrator:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


__all__ = [
    "WorkflowHandle",
    "WorkflowOrchestrator",
]
