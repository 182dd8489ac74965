"""
Workflow Engine

Execute workflows: validate, seed the variable store, run top-level steps
through the dispatcher and aggregate the results.
"""

import asyncio
import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from ..collaborators import (
    AgentRuntime,
    ApprovalChannel,
    CallbackApprovalChannel,
    RetrievalPipeline,
    ToolRegistry,
)
from ..config import ExecutionConfig
from ..errors import (
    ErrorKind,
    StepError,
    WorkflowCancelledError,
    WorkflowValidationError,
)
from ..runtime_data import StepResult, VariableStore
from .definition import WorkflowDefinition
from .dispatcher import ExecutionContext, StepDispatcher
from .retries import StepSupervisor


class WorkflowStatus(str, Enum):
    """Workflow execution status."""

    VALIDATING = "validating"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class WorkflowExecutionResult:
    """Result of workflow execution."""

    workflow_id: str
    execution_id: str
    status: WorkflowStatus
    output: Any = None
    error: Optional[StepError] = None
    step_results: Dict[str, StepResult] = field(default_factory=dict)
    variables: Dict[str, Any] = field(default_factory=dict)
    errors: List[StepError] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == WorkflowStatus.COMPLETED

    @property
    def duration(self) -> Optional[float]:
        """Wall-clock duration in seconds."""
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def all_step_results(self) -> Dict[str, StepResult]:
        """Top-level results followed by their nested results, depth-first."""
        flat: Dict[str, StepResult] = {}
        for step_id, result in self.step_results.items():
            flat[step_id] = result
            flat.update(result.flatten())
        return flat

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "workflow_id": self.workflow_id,
            "execution_id": self.execution_id,
            "status": self.status.value,
            "output": self.output,
            "error": self.error.to_dict() if self.error else None,
            "errors": [error.to_dict() for error in self.errors],
            "step_results": {
                step_id: result.to_dict()
                for step_id, result in self.step_results.items()
            },
            "variables": dict(self.variables),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
            "duration": self.duration,
            "metadata": dict(self.metadata),
        }


@dataclass
class ExecutionRecord:
    """Lightweight tracking entry for one execution of this engine."""

    execution_id: str
    workflow_id: str
    status: WorkflowStatus
    current_step: Optional[str] = None
    cancel_requested: bool = False
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None


class _RunState:
    """Mutable accumulator owned by the top-level loop of one execution."""

    def __init__(self, store: VariableStore, current_input: Any):
        self.store = store
        self.current_input = current_input
        self.output = current_input
        self.step_results: Dict[str, StepResult] = {}
        self.errors: List[StepError] = []
        self.cancelled: Optional[StepError] = None


class WorkflowEngine:
    """
    Workflow execution engine.

    Executes workflows step by step against pluggable collaborators. Business
    and collaborator failures are always reported through the returned
    WorkflowExecutionResult, never raised.
    """

    def __init__(
        self,
        agents: Optional[AgentRuntime] = None,
        tools: Optional[ToolRegistry] = None,
        pipelines: Optional[Dict[str, RetrievalPipeline]] = None,
        approvals: Union[ApprovalChannel, Callable[..., Any], None] = None,
        config: Optional[ExecutionConfig] = None,
        supervisor: Optional[StepSupervisor] = None,
        history_limit: int = 1000,
    ):
        """
        Initialize workflow engine.

        Args:
            agents: Agent runtime used by agent steps
            tools: Tool registry used by tool steps
            pipelines: Retrieval pipelines by id
            approvals: Approval channel, or a plain (prompt, options) handler
            config: Engine-level execution defaults
            supervisor: Timeout/retry supervisor (injectable for tests)
            history_limit: Finished execution records kept for tracking
        """
        self.logger = logging.getLogger(__name__)
        self.config = config or ExecutionConfig()

        if approvals is not None and not hasattr(approvals, "request_approval"):
            approvals = CallbackApprovalChannel(approvals)

        self.dispatcher = StepDispatcher(
            agents=agents,
            tools=tools,
            pipelines=pipelines,
            approvals=approvals,
            supervisor=supervisor,
        )
        self._executions: Dict[str, ExecutionRecord] = {}
        self.history_limit = history_limit

    async def execute(
        self,
        workflow: WorkflowDefinition,
        input: Any = None,
        config: Union[ExecutionConfig, Dict[str, Any], None] = None,
    ) -> WorkflowExecutionResult:
        """
        Execute a workflow.

        Args:
            workflow: Workflow definition
            input: Initial input; a mapping also seeds variables
            config: Per-call overrides, shallow-merged onto engine defaults

        Returns:
            WorkflowExecutionResult with execution outcome

        Raises:
            TypeError: If workflow or config has the wrong type
        """
        if not isinstance(workflow, WorkflowDefinition):
            raise TypeError(
                f"workflow must be a WorkflowDefinition, got {type(workflow).__name__}"
            )
        overrides = self._coerce_config(config)
        effective = self.config.merged(overrides)

        execution_id = str(uuid.uuid4())
        record = ExecutionRecord(
            execution_id=execution_id,
            workflow_id=workflow.id,
            status=WorkflowStatus.VALIDATING,
        )
        self._executions[execution_id] = record

        result = WorkflowExecutionResult(
            workflow_id=workflow.id,
            execution_id=execution_id,
            status=WorkflowStatus.VALIDATING,
            started_at=record.started_at,
            metadata=dict(workflow.metadata),
        )

        problems = workflow.validate()
        if problems:
            error = StepError.from_exception(WorkflowValidationError(problems))
            self.logger.warning(f"Workflow '{workflow.id}' is invalid: {error}")
            return self._finish(record, result, WorkflowStatus.FAILED, error=error)

        store = VariableStore(workflow.variables)
        if isinstance(input, Mapping):
            store = store.merge(input)
        store = store.merge(effective.variables)

        state = _RunState(store, input)
        timeout = self._workflow_timeout(workflow, overrides, effective)

        record.status = WorkflowStatus.RUNNING
        result.status = WorkflowStatus.RUNNING
        self.logger.info(
            f"Starting workflow '{workflow.id}' (execution: {execution_id}, "
            f"{len(workflow.steps)} steps, timeout: {timeout}s)"
        )

        context = ExecutionContext(
            execution_id=execution_id,
            workflow_id=workflow.id,
            config=effective,
            current_input=input,
        )

        try:
            await asyncio.wait_for(
                self._run_steps(workflow, state, context, record, effective),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            error = StepError(
                kind=ErrorKind.TIMEOUT,
                message=f"Workflow '{workflow.id}' timed out after {timeout}s",
            )
            self.logger.error(str(error))
            state.errors.append(error)
            return self._finish(record, result, WorkflowStatus.FAILED, state, error=error)
        except Exception as e:
            self.logger.error(f"Workflow execution failed: {e}", exc_info=True)
            error = StepError.from_exception(e, kind=ErrorKind.UNKNOWN)
            state.errors.append(error)
            return self._finish(record, result, WorkflowStatus.FAILED, state, error=error)

        if state.cancelled is not None:
            return self._finish(
                record, result, WorkflowStatus.FAILED, state, error=state.cancelled
            )

        failed = self._abort_error(state, effective)
        if failed is not None:
            return self._finish(record, result, WorkflowStatus.FAILED, state, error=failed)

        self.logger.info(
            f"Workflow '{workflow.id}' completed "
            f"({len(state.step_results)} steps, {len(state.errors)} errors)"
        )
        return self._finish(
            record, result, WorkflowStatus.COMPLETED, state, output=state.output
        )

    async def _run_steps(
        self,
        workflow: WorkflowDefinition,
        state: _RunState,
        context: ExecutionContext,
        record: ExecutionRecord,
        config: ExecutionConfig,
    ):
        """Run top-level steps in order, updating ``state`` as each one settles."""
        for step in workflow.steps:
            if record.cancel_requested:
                state.cancelled = StepError.from_exception(
                    WorkflowCancelledError(
                        f"Workflow '{workflow.id}' was cancelled before step '{step.id}'"
                    )
                )
                state.errors.append(state.cancelled)
                self.logger.warning(str(state.cancelled))
                return

            record.current_step = step.id
            context.current_input = state.current_input
            self.logger.info(f"Executing step '{step.id}' ({step.kind.value})")

            step_result = await self.dispatcher.dispatch(step, state.store, context)
            state.step_results[step.id] = step_result

            if step_result.succeeded:
                state.store = state.store.merge(step_result.writes)
                state.current_input = step_result.output
                state.output = step_result.output
                continue

            state.errors.append(step_result.error)
            if config.stop_on_error:
                self.logger.error(f"Step '{step.id}' failed: {step_result.error}")
                return

            # Continue with the last successful output as the next input
            self.logger.warning(
                f"Step '{step.id}' failed, continuing: {step_result.error}"
            )

    def _abort_error(
        self, state: _RunState, config: ExecutionConfig
    ) -> Optional[StepError]:
        if not config.stop_on_error or not state.step_results:
            return None
        last = list(state.step_results.values())[-1]
        return None if last.succeeded else last.error

    def _finish(
        self,
        record: ExecutionRecord,
        result: WorkflowExecutionResult,
        status: WorkflowStatus,
        state: Optional[_RunState] = None,
        output: Any = None,
        error: Optional[StepError] = None,
    ) -> WorkflowExecutionResult:
        result.status = status
        result.output = output if status == WorkflowStatus.COMPLETED else None
        result.error = error
        result.completed_at = datetime.utcnow()
        if state is not None:
            result.step_results = dict(state.step_results)
            result.variables = state.store.to_dict()
            result.errors = list(state.errors)
        elif error is not None:
            result.errors = [error]

        record.status = status
        record.completed_at = result.completed_at
        self._prune_history()
        return result

    def _prune_history(self):
        finished = [
            execution_id
            for execution_id, record in self._executions.items()
            if record.status not in (WorkflowStatus.VALIDATING, WorkflowStatus.RUNNING)
        ]
        for execution_id in finished[: max(0, len(finished) - self.history_limit)]:
            del self._executions[execution_id]

    def _coerce_config(
        self, config: Union[ExecutionConfig, Dict[str, Any], None]
    ) -> Optional[ExecutionConfig]:
        if config is None or isinstance(config, ExecutionConfig):
            return config
        if isinstance(config, dict):
            return ExecutionConfig(**config)
        raise TypeError(
            f"config must be an ExecutionConfig or dict, got {type(config).__name__}"
        )

    def _workflow_timeout(
        self,
        workflow: WorkflowDefinition,
        overrides: Optional[ExecutionConfig],
        effective: ExecutionConfig,
    ) -> float:
        if overrides is not None and "timeout" in overrides.model_fields_set:
            return overrides.timeout
        if workflow.timeout:
            return workflow.timeout
        return effective.timeout

    def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        """Get the tracking record of an execution, or None."""
        return self._executions.get(execution_id)

    def list_executions(self, workflow_id: Optional[str] = None) -> List[ExecutionRecord]:
        """
        List executions run by this engine.

        Args:
            workflow_id: Only list executions of this workflow

        Returns:
            Execution records in start order
        """
        return [
            record
            for record in self._executions.values()
            if workflow_id is None or record.workflow_id == workflow_id
        ]

    def list_active(self) -> List[ExecutionRecord]:
        """List executions that have not reached a terminal status."""
        return [
            record
            for record in self._executions.values()
            if record.status in (WorkflowStatus.VALIDATING, WorkflowStatus.RUNNING)
        ]

    def cancel(self, execution_id: str) -> bool:
        """
        Request cancellation of a running execution.

        The run stops before its next top-level step and ends FAILED with a
        ``CANCELLED`` error; the step in flight is allowed to finish.

        Args:
            execution_id: Execution to cancel

        Returns:
            True if an active execution was marked for cancellation
        """
        record = self._executions.get(execution_id)
        if record is None or record.status not in (
            WorkflowStatus.VALIDATING,
            WorkflowStatus.RUNNING,
        ):
            return False
        record.cancel_requested = True
        self.logger.info(f"Cancellation requested for execution {execution_id}")
        return True

    def forget(self, execution_id: str) -> bool:
        """Drop the tracking record of a finished execution."""
        record = self._executions.get(execution_id)
        if record is None or record.completed_at is None:
            return False
        del self._executions[execution_id]
        return True

    def clear_finished(self) -> int:
        """Drop all finished execution records and return how many were removed."""
        finished = [
            execution_id
            for execution_id, record in self._executions.items()
            if record.completed_at is not None
        ]
        for execution_id in finished:
            del self._executions[execution_id]
        return len(finished)
