"""
Step Dispatcher

Single step-execution algorithm, parameterized by step kind. Branch-bearing
kinds (conditional, parallel, loop) recurse into the same dispatcher for their
nested step lists.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Set, Tuple

from ..collaborators import (
    AgentRuntime,
    ApprovalChannel,
    ApprovalRequest,
    RetrievalPipeline,
    ToolRegistry,
    call_handler,
)
from ..config import ExecutionConfig
from ..errors import (
    ApprovalRejectedError,
    CollaboratorError,
    CollaboratorNotFoundError,
    WorkflowEngineError,
)
from ..runtime_data import (
    StepResult,
    VariableStore,
    evaluate_expression,
    is_truthy,
    render_template,
    resolve,
)
from .definition import (
    AgentStep,
    ConditionalStep,
    HumanInTheLoopStep,
    LoopStep,
    ParallelStep,
    RAGStep,
    Step,
    StepType,
    ToolStep,
    TransformStep,
)
from .retries import RetryPolicy, StepSupervisor

# Step kinds that invoke a unit of work directly (no nested step lists)
LEAF_STEP_TYPES = (StepType.AGENT, StepType.TOOL, StepType.RAG)


@dataclass
class ExecutionContext:
    """Per-execution data shared by every dispatch of one run."""

    execution_id: str
    workflow_id: str
    config: ExecutionConfig = field(default_factory=ExecutionConfig)
    current_input: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BranchOutcome:
    """Result of running one step list sequentially."""

    results: Dict[str, StepResult]
    writes: Dict[str, Any]
    store: VariableStore
    last: Optional[StepResult] = None

    @property
    def failed(self) -> bool:
        return self.last is not None and not self.last.succeeded

    @property
    def output(self) -> Any:
        return self.last.output if self.last else None


class StepDispatcher:
    """
    Dispatches steps to their kind-specific handler.

    Every invocation runs under the StepSupervisor, so exceptions raised by
    handlers or collaborators always come back as FAILED StepResults.
    """

    def __init__(
        self,
        agents: Optional[AgentRuntime] = None,
        tools: Optional[ToolRegistry] = None,
        pipelines: Optional[Mapping[str, RetrievalPipeline]] = None,
        approvals: Optional[ApprovalChannel] = None,
        supervisor: Optional[StepSupervisor] = None,
    ):
        """
        Initialize dispatcher.

        Args:
            agents: Agent runtime used by agent steps
            tools: Tool registry used by tool steps
            pipelines: Retrieval pipelines by id, used by RAG steps
            approvals: Approval channel used by human-in-the-loop steps
            supervisor: Timeout/retry supervisor
        """
        self.logger = logging.getLogger(__name__)
        self.agents = agents
        self.tools = tools
        self.pipelines = dict(pipelines or {})
        self.approvals = approvals
        self.supervisor = supervisor or StepSupervisor()

        # Branches of non-waiting parallel steps that are left running
        self._detached: Set["asyncio.Task[Any]"] = set()

        self._handlers: Dict[
            StepType, Callable[[Any, VariableStore, ExecutionContext], Awaitable[StepResult]]
        ] = {
            StepType.AGENT: self._run_agent,
            StepType.TOOL: self._run_tool,
            StepType.CONDITIONAL: self._run_conditional,
            StepType.PARALLEL: self._run_parallel,
            StepType.LOOP: self._run_loop,
            StepType.TRANSFORM: self._run_transform,
            StepType.HUMAN_IN_THE_LOOP: self._run_human,
            StepType.RAG: self._run_rag,
        }
        missing = [kind.value for kind in StepType if kind not in self._handlers]
        if missing:
            raise RuntimeError(f"No dispatch handler for step types: {', '.join(missing)}")

    async def dispatch(
        self, step: Step, store: VariableStore, context: ExecutionContext
    ) -> StepResult:
        """
        Execute one step against the store.

        Args:
            step: Step to execute
            store: Variable store visible to the step
            context: Execution context

        Returns:
            StepResult with the step's output, writes and nested results
        """
        handler = self._handlers[step.kind]
        started_at = datetime.utcnow()

        result = await self.supervisor.supervise(
            step.id,
            lambda: handler(step, store, context),
            retry_policy=self._retry_policy_for(step, context.config),
            timeout=self._timeout_for(step, context.config),
        )

        return replace(
            result,
            step_id=step.id,
            step_type=step.kind.value,
            started_at=started_at,
            completed_at=result.completed_at or datetime.utcnow(),
        )

    async def run_sequence(
        self,
        steps: Tuple[Step, ...],
        store: VariableStore,
        context: ExecutionContext,
    ) -> BranchOutcome:
        """
        Dispatch a step list in order, threading the store through each step.

        Stops at the first FAILED result.

        Args:
            steps: Ordered step list
            store: Store revision the list starts from
            context: Execution context

        Returns:
            BranchOutcome with the results of every dispatched step
        """
        results: Dict[str, StepResult] = {}
        writes: Dict[str, Any] = {}
        last: Optional[StepResult] = None

        for step in steps:
            self.logger.debug(f"Dispatching nested step '{step.id}' ({step.kind.value})")
            result = await self.dispatch(step, store, context)
            results[step.id] = result
            last = result
            if not result.succeeded:
                break
            store = store.merge(result.writes)
            writes.update(result.writes)

        return BranchOutcome(results=results, writes=writes, store=store, last=last)

    def _retry_policy_for(
        self, step: Step, config: ExecutionConfig
    ) -> Optional[RetryPolicy]:
        if step.retry is not None:
            return step.retry
        if step.kind in LEAF_STEP_TYPES and config.max_retries > 0:
            return RetryPolicy(
                max_retries=config.max_retries,
                initial_delay=config.retry_initial_delay,
                max_delay=config.retry_max_delay,
            )
        return None

    def _timeout_for(self, step: Step, config: ExecutionConfig) -> Optional[float]:
        if step.timeout:
            return step.timeout
        if step.kind in LEAF_STEP_TYPES or step.kind in (
            StepType.TRANSFORM,
            StepType.HUMAN_IN_THE_LOOP,
        ):
            return config.step_timeout
        # Branch-bearing steps are bounded by their nested steps and the run timeout
        return None

    async def _call_collaborator(self, description: str, call: Callable[[], Any]) -> Any:
        try:
            return await call()
        except WorkflowEngineError:
            raise
        except Exception as e:
            code = getattr(e, "code", None)
            raise CollaboratorError(
                f"{description} failed: {e}",
                code=str(code) if code is not None else None,
            ) from e

    def _agent_context(
        self, step: Step, store: VariableStore, context: ExecutionContext
    ) -> Dict[str, Any]:
        return {
            "execution_id": context.execution_id,
            "workflow_id": context.workflow_id,
            "step_id": step.id,
            "variables": store.to_dict(),
            "current_input": context.current_input,
        }

    @staticmethod
    def _writes(output_variable: Optional[str], output: Any) -> Dict[str, Any]:
        return {output_variable: output} if output_variable else {}

    async def _run_agent(
        self, step: AgentStep, store: VariableStore, context: ExecutionContext
    ) -> StepResult:
        if self.agents is None:
            raise CollaboratorNotFoundError("Agent runtime not configured")

        value = resolve(step.input, store)
        self.logger.info(f"Invoking agent '{step.agent_id}' for step '{step.id}'")
        agent_context = self._agent_context(step, store, context)

        output = await self._call_collaborator(
            f"Agent '{step.agent_id}'",
            lambda: self.agents.invoke(step.agent_id, value, agent_context),
        )
        return StepResult.completed(step.id, output, writes=self._writes(step.output, output))

    async def _run_tool(
        self, step: ToolStep, store: VariableStore, context: ExecutionContext
    ) -> StepResult:
        if self.tools is None:
            raise CollaboratorNotFoundError("Tool registry not configured")

        value = resolve(step.input, store)
        self.logger.info(f"Invoking tool '{step.tool_name}' for step '{step.id}'")

        output = await self._call_collaborator(
            f"Tool '{step.tool_name}'",
            lambda: self.tools.invoke(step.tool_name, value),
        )
        return StepResult.completed(step.id, output, writes=self._writes(step.output, output))

    async def _run_rag(
        self, step: RAGStep, store: VariableStore, context: ExecutionContext
    ) -> StepResult:
        pipeline = self.pipelines.get(step.pipeline)
        if pipeline is None:
            raise CollaboratorNotFoundError(f"RAG pipeline not found: {step.pipeline}")

        query = resolve(step.query, store)
        if not isinstance(query, str):
            raise ValueError(f"RAG query must be a string, got {type(query).__name__}")

        output = await self._call_collaborator(
            f"RAG pipeline '{step.pipeline}'",
            lambda: call_handler(pipeline.query, query, step.top_k),
        )
        return StepResult.completed(step.id, output, writes=self._writes(step.output, output))

    async def _run_transform(
        self, step: TransformStep, store: VariableStore, context: ExecutionContext
    ) -> StepResult:
        value = resolve(step.input, store)
        output = evaluate_expression(step.expression, store.set("$input", value))
        return StepResult.completed(step.id, output, writes=self._writes(step.output, output))

    async def _run_human(
        self, step: HumanInTheLoopStep, store: VariableStore, context: ExecutionContext
    ) -> StepResult:
        if self.approvals is None:
            raise CollaboratorNotFoundError("Approval channel not configured")

        request = ApprovalRequest(
            step_id=step.id,
            prompt=render_template(step.prompt, store),
            options=step.options,
            assignee=step.assignee,
            execution_id=context.execution_id,
        )
        response = await self._call_collaborator(
            f"Approval for step '{step.id}'",
            lambda: self.approvals.request_approval(request),
        )

        if step.options and response not in step.options:
            raise ApprovalRejectedError(
                f"Response '{response}' for step '{step.id}' is not one of: "
                f"{', '.join(step.options)}"
            )

        self.logger.info(f"Step '{step.id}' approved with response '{response}'")
        return StepResult.completed(
            step.id, response, writes=self._writes(step.output, response)
        )

    async def _run_conditional(
        self, step: ConditionalStep, store: VariableStore, context: ExecutionContext
    ) -> StepResult:
        rendered = render_template(step.condition, store)
        taken = is_truthy(rendered)
        branch = step.then_steps if taken else step.else_steps
        self.logger.debug(
            f"Conditional '{step.id}' resolved {rendered!r} -> "
            f"{'then' if taken else 'else'} ({len(branch)} steps)"
        )

        outcome = await self.run_sequence(branch, store, context)
        if outcome.failed:
            return StepResult.failed(step.id, outcome.last.error, children=outcome.results)

        return StepResult.completed(
            step.id, outcome.output, writes=outcome.writes, children=outcome.results
        )

    async def _run_parallel(
        self, step: ParallelStep, store: VariableStore, context: ExecutionContext
    ) -> StepResult:
        if not step.branches:
            return StepResult.completed(step.id, [])

        async def _run_branch(index: int, branch: Tuple[Step, ...]):
            # Every branch starts from the same snapshot
            return index, await self.run_sequence(branch, store, context)

        tasks = [
            asyncio.ensure_future(_run_branch(index, branch))
            for index, branch in enumerate(step.branches)
        ]

        if step.wait_for_all:
            return await self._join_all(step, tasks)
        return await self._join_first(step, tasks)

    async def _join_all(self, step: ParallelStep, tasks) -> StepResult:
        outcomes: Dict[int, BranchOutcome] = {}
        first_error = None

        try:
            for next_done in asyncio.as_completed(tasks):
                index, outcome = await next_done
                outcomes[index] = outcome
                # "First" is completion order, which varies between runs
                if outcome.failed and first_error is None:
                    first_error = outcome.last.error
                    self.logger.warning(
                        f"Parallel step '{step.id}' branch {index} failed: {first_error}"
                    )
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

        children: Dict[str, StepResult] = {}
        writes: Dict[str, Any] = {}
        writers: Dict[str, int] = {}
        for index in sorted(outcomes):
            outcome = outcomes[index]
            children.update(outcome.results)
            for name, value in outcome.writes.items():
                if name in writers:
                    self.logger.warning(
                        f"Parallel step '{step.id}': branches {writers[name]} and {index} "
                        f"both wrote '{name}'; branch {index} wins"
                    )
                writers[name] = index
                writes[name] = value

        if first_error is not None:
            return StepResult.failed(step.id, first_error, children=children)

        outputs = [outcomes[index].output for index in sorted(outcomes)]
        return StepResult.completed(step.id, outputs, writes=writes, children=children)

    async def _join_first(self, step: ParallelStep, tasks) -> StepResult:
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise

        for task in pending:
            self._detached.add(task)
            task.add_done_callback(self._detached.discard)

        index, outcome = min((task.result() for task in done), key=lambda item: item[0])
        self.logger.debug(
            f"Parallel step '{step.id}' resolved by branch {index}; "
            f"{len(pending)} branches left running"
        )

        if outcome.failed:
            return StepResult.failed(step.id, outcome.last.error, children=outcome.results)
        return StepResult.completed(
            step.id, outcome.output, writes=outcome.writes, children=outcome.results
        )

    async def _run_loop(
        self, step: LoopStep, store: VariableStore, context: ExecutionContext
    ) -> StepResult:
        collection = resolve(step.collection, store)
        if not isinstance(collection, (list, tuple)):
            raise ValueError(
                f"Loop collection must be a list, got {type(collection).__name__}"
            )

        iterations = len(collection)
        if step.max_iterations is not None:
            iterations = min(iterations, step.max_iterations)

        self.logger.info(
            f"Loop step '{step.id}' iterating over {iterations} of {len(collection)} items"
        )

        children: Dict[str, StepResult] = {}
        writes: Dict[str, Any] = {}
        outputs = []
        current = store

        for index in range(iterations):
            self.logger.debug(f"Loop iteration {index + 1}/{iterations}")
            iteration_store = current.set(step.item_variable, collection[index])
            outcome = await self.run_sequence(step.steps, iteration_store, context)

            # Only the latest invocation of each nested step is retained
            children.update(outcome.results)
            if outcome.failed:
                return StepResult.failed(step.id, outcome.last.error, children=children)

            # Later iterations see earlier writes; the item variable stays scoped
            current = current.merge(outcome.writes)
            writes.update(outcome.writes)
            outputs.append(outcome.output)

        return StepResult.completed(step.id, outputs, writes=writes, children=children)
