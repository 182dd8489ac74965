"""
Workflow Definition

The step model (one dataclass per step kind), the workflow description, and
their parsing, serialization and structural validation.
"""

import yaml
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar, Dict, Iterator, List, Optional, Tuple, Union

from ..runtime_data import VariableBinding
from .retries import RetryPolicy


class StepType(str, Enum):
    """Closed set of step kinds."""

    AGENT = "agent"
    TOOL = "tool"
    CONDITIONAL = "conditional"
    PARALLEL = "parallel"
    LOOP = "loop"
    TRANSFORM = "transform"
    HUMAN_IN_THE_LOOP = "human_in_the_loop"
    RAG = "rag"


@dataclass(frozen=True)
class AgentStep:
    """Invoke an agent with a resolved input."""

    kind: ClassVar[StepType] = StepType.AGENT

    id: str
    agent_id: str
    input: VariableBinding = field(default_factory=lambda: VariableBinding.literal(None))
    output: Optional[str] = None
    retry: Optional[RetryPolicy] = None
    timeout: Optional[float] = None


@dataclass(frozen=True)
class ToolStep:
    """Invoke a registered tool with a resolved input."""

    kind: ClassVar[StepType] = StepType.TOOL

    id: str
    tool_name: str
    input: VariableBinding = field(default_factory=lambda: VariableBinding.literal(None))
    output: Optional[str] = None
    retry: Optional[RetryPolicy] = None
    timeout: Optional[float] = None


@dataclass(frozen=True)
class ConditionalStep:
    """Run ``then_steps`` or ``else_steps`` depending on a rendered condition."""

    kind: ClassVar[StepType] = StepType.CONDITIONAL

    id: str
    condition: str
    then_steps: Tuple["Step", ...] = ()
    else_steps: Tuple["Step", ...] = ()
    retry: Optional[RetryPolicy] = None
    timeout: Optional[float] = None

    def __post_init__(self):
        object.__setattr__(self, "then_steps", tuple(self.then_steps))
        object.__setattr__(self, "else_steps", tuple(self.else_steps or ()))


@dataclass(frozen=True)
class ParallelStep:
    """Run each branch concurrently from the same variable snapshot."""

    kind: ClassVar[StepType] = StepType.PARALLEL

    id: str
    branches: Tuple[Tuple["Step", ...], ...] = ()
    wait_for_all: bool = True
    retry: Optional[RetryPolicy] = None
    timeout: Optional[float] = None

    def __post_init__(self):
        object.__setattr__(
            self, "branches", tuple(tuple(branch) for branch in self.branches)
        )


@dataclass(frozen=True)
class LoopStep:
    """Run ``steps`` once per item of a collection, up to ``max_iterations``."""

    kind: ClassVar[StepType] = StepType.LOOP

    id: str
    collection: VariableBinding
    item_variable: str = "item"
    steps: Tuple["Step", ...] = ()
    max_iterations: Optional[int] = None
    retry: Optional[RetryPolicy] = None
    timeout: Optional[float] = None

    def __post_init__(self):
        object.__setattr__(self, "steps", tuple(self.steps))


@dataclass(frozen=True)
class TransformStep:
    """Apply an expression to a resolved input without calling a collaborator."""

    kind: ClassVar[StepType] = StepType.TRANSFORM

    id: str
    input: VariableBinding
    expression: str
    output: str
    retry: Optional[RetryPolicy] = None
    timeout: Optional[float] = None


@dataclass(frozen=True)
class HumanInTheLoopStep:
    """Wait for an external approval signal or time out."""

    kind: ClassVar[StepType] = StepType.HUMAN_IN_THE_LOOP

    id: str
    prompt: str
    timeout: float
    options: Tuple[str, ...] = ()
    assignee: Optional[str] = None
    output: Optional[str] = None
    retry: Optional[RetryPolicy] = None

    def __post_init__(self):
        object.__setattr__(self, "options", tuple(self.options or ()))


@dataclass(frozen=True)
class RAGStep:
    """Query a retrieval pipeline."""

    kind: ClassVar[StepType] = StepType.RAG

    id: str
    pipeline: str
    query: VariableBinding
    top_k: Optional[int] = None
    output: Optional[str] = None
    retry: Optional[RetryPolicy] = None
    timeout: Optional[float] = None


Step = Union[
    AgentStep,
    ToolStep,
    ConditionalStep,
    ParallelStep,
    LoopStep,
    TransformStep,
    HumanInTheLoopStep,
    RAGStep,
]

STEP_CLASSES: Dict[StepType, type] = {
    StepType.AGENT: AgentStep,
    StepType.TOOL: ToolStep,
    StepType.CONDITIONAL: ConditionalStep,
    StepType.PARALLEL: ParallelStep,
    StepType.LOOP: LoopStep,
    StepType.TRANSFORM: TransformStep,
    StepType.HUMAN_IN_THE_LOOP: HumanInTheLoopStep,
    StepType.RAG: RAGStep,
}


def nested_step_lists(step: Step) -> List[Tuple[Step, ...]]:
    """Return the step lists nested directly inside ``step``."""
    if isinstance(step, ConditionalStep):
        return [step.then_steps, step.else_steps]
    if isinstance(step, ParallelStep):
        return list(step.branches)
    if isinstance(step, LoopStep):
        return [step.steps]
    return []


def iter_steps(steps: Tuple[Step, ...]) -> Iterator[Step]:
    """Walk a step tree depth-first."""
    for step in steps:
        yield step
        for nested in nested_step_lists(step):
            yield from iter_steps(nested)


def _pick(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _seconds(data: Dict[str, Any], key: str, camel_ms: str) -> Optional[float]:
    """Read a duration in seconds, accepting ``<key>_ms``/camelCase ms forms."""
    value = data.get(key)
    if value is not None:
        return float(value)
    millis = _pick(data, f"{key}_ms", camel_ms)
    return float(millis) / 1000.0 if millis is not None else None


def _binding(data: Dict[str, Any], *keys: str) -> Optional[VariableBinding]:
    for key in keys:
        if key in data:
            return VariableBinding.from_value(data[key])
    return None


def step_from_dict(data: Dict[str, Any]) -> Step:
    """
    Create a step from its dictionary description.

    Args:
        data: Step dictionary with a ``type`` discriminator

    Returns:
        Step instance

    Raises:
        ValueError: If the step type is unknown or a binding is malformed
    """
    if not isinstance(data, dict):
        raise ValueError(f"Step description must be a mapping, got {type(data).__name__}")

    raw_type = data.get("type", "")
    try:
        step_type = StepType(raw_type)
    except ValueError:
        valid = ", ".join(t.value for t in StepType)
        raise ValueError(
            f"Step '{data.get('id', '')}' has invalid type '{raw_type}'. "
            f"Must be one of: {valid}"
        )

    step_id = data.get("id", "")
    retry_data = data.get("retry")
    retry = RetryPolicy.from_dict(retry_data) if retry_data else None
    timeout = _seconds(data, "timeout", "timeoutMs")

    def _steps(items: Any) -> Tuple[Step, ...]:
        return tuple(step_from_dict(s) for s in (items or []))

    if step_type == StepType.AGENT:
        return AgentStep(
            id=step_id,
            agent_id=_pick(data, "agent_id", "agentId", "agent", default=""),
            input=_binding(data, "input") or VariableBinding.literal(None),
            output=data.get("output"),
            retry=retry,
            timeout=timeout,
        )
    elif step_type == StepType.TOOL:
        return ToolStep(
            id=step_id,
            tool_name=_pick(data, "tool_name", "toolName", "tool", default=""),
            input=_binding(data, "input") or VariableBinding.literal(None),
            output=data.get("output"),
            retry=retry,
            timeout=timeout,
        )
    elif step_type == StepType.CONDITIONAL:
        return ConditionalStep(
            id=step_id,
            condition=data.get("condition", ""),
            then_steps=_steps(data.get("then")),
            else_steps=_steps(data.get("else")),
            retry=retry,
            timeout=timeout,
        )
    elif step_type == StepType.PARALLEL:
        return ParallelStep(
            id=step_id,
            branches=tuple(_steps(branch) for branch in data.get("branches", [])),
            wait_for_all=bool(_pick(data, "wait_for_all", "waitForAll", default=True)),
            retry=retry,
            timeout=timeout,
        )
    elif step_type == StepType.LOOP:
        max_iterations = _pick(data, "max_iterations", "maxIterations")
        return LoopStep(
            id=step_id,
            collection=_binding(data, "collection", "items") or VariableBinding.literal(None),
            item_variable=_pick(data, "item_variable", "itemVariable", "item_var", default="item"),
            steps=_steps(data.get("steps")),
            max_iterations=int(max_iterations) if max_iterations is not None else None,
            retry=retry,
            timeout=timeout,
        )
    elif step_type == StepType.TRANSFORM:
        return TransformStep(
            id=step_id,
            input=_binding(data, "input") or VariableBinding.literal(None),
            expression=data.get("expression", ""),
            output=data.get("output", ""),
            retry=retry,
            timeout=timeout,
        )
    elif step_type == StepType.HUMAN_IN_THE_LOOP:
        return HumanInTheLoopStep(
            id=step_id,
            prompt=data.get("prompt", ""),
            timeout=timeout if timeout is not None else 0.0,
            options=tuple(data.get("options") or ()),
            assignee=data.get("assignee"),
            output=data.get("output"),
            retry=retry,
        )
    else:
        top_k = _pick(data, "top_k", "topK")
        return RAGStep(
            id=step_id,
            pipeline=data.get("pipeline", ""),
            query=_binding(data, "query") or VariableBinding.literal(None),
            top_k=int(top_k) if top_k is not None else None,
            output=data.get("output"),
            retry=retry,
            timeout=timeout,
        )


def step_to_dict(step: Step) -> Dict[str, Any]:
    """Convert a step to its dictionary description."""
    result: Dict[str, Any] = {"id": step.id, "type": step.kind.value}

    if isinstance(step, AgentStep):
        result["agent_id"] = step.agent_id
        result["input"] = step.input.to_dict()
    elif isinstance(step, ToolStep):
        result["tool_name"] = step.tool_name
        result["input"] = step.input.to_dict()
    elif isinstance(step, ConditionalStep):
        result["condition"] = step.condition
        result["then"] = [step_to_dict(s) for s in step.then_steps]
        if step.else_steps:
            result["else"] = [step_to_dict(s) for s in step.else_steps]
    elif isinstance(step, ParallelStep):
        result["branches"] = [[step_to_dict(s) for s in branch] for branch in step.branches]
        result["wait_for_all"] = step.wait_for_all
    elif isinstance(step, LoopStep):
        result["collection"] = step.collection.to_dict()
        result["item_variable"] = step.item_variable
        result["steps"] = [step_to_dict(s) for s in step.steps]
        if step.max_iterations is not None:
            result["max_iterations"] = step.max_iterations
    elif isinstance(step, TransformStep):
        result["input"] = step.input.to_dict()
        result["expression"] = step.expression
    elif isinstance(step, HumanInTheLoopStep):
        result["prompt"] = step.prompt
        if step.options:
            result["options"] = list(step.options)
        if step.assignee:
            result["assignee"] = step.assignee
    elif isinstance(step, RAGStep):
        result["pipeline"] = step.pipeline
        result["query"] = step.query.to_dict()
        if step.top_k is not None:
            result["top_k"] = step.top_k

    output = getattr(step, "output", None)
    if output:
        result["output"] = output
    if step.retry:
        result["retry"] = step.retry.to_dict()
    if step.timeout is not None:
        result["timeout"] = step.timeout

    return result


def validate_steps(steps: Tuple[Step, ...]) -> List[str]:
    """
    Validate a step tree.

    Checks non-empty ids, ids unique across the whole tree, and the required
    fields of each step kind.

    Args:
        steps: Top-level steps

    Returns:
        List of validation errors (empty if valid)
    """
    errors: List[str] = []
    seen = set()

    for step in iter_steps(tuple(steps)):
        if not isinstance(step, tuple(STEP_CLASSES.values())):
            errors.append(f"Unsupported step object: {step!r}")
            continue

        if not isinstance(step.id, str) or not step.id.strip():
            errors.append(f"{step.kind.value} step has an empty id")
        elif step.id in seen:
            errors.append(f"Duplicate step ID: {step.id}")
        else:
            seen.add(step.id)

        label = step.id or "<unnamed>"

        if step.retry is not None:
            errors.extend(f"Step '{label}' {problem}" for problem in step.retry.validate())
        if step.timeout is not None and step.timeout <= 0:
            errors.append(f"Step '{label}' timeout must be positive")

        for name in ("input", "collection", "query"):
            binding = getattr(step, name, None)
            if name in step.__dataclass_fields__ and not isinstance(binding, VariableBinding):
                errors.append(f"Step '{label}' {name} must be a VariableBinding")

        if isinstance(step, AgentStep):
            if not step.agent_id:
                errors.append(f"Agent step '{label}' must specify 'agent_id'")
        elif isinstance(step, ToolStep):
            if not step.tool_name:
                errors.append(f"Tool step '{label}' must specify 'tool_name'")
        elif isinstance(step, ConditionalStep):
            if not step.condition:
                errors.append(f"Conditional step '{label}' must specify 'condition'")
        elif isinstance(step, ParallelStep):
            if not step.branches:
                errors.append(f"Parallel step '{label}' must have at least one branch")
        elif isinstance(step, LoopStep):
            if not step.item_variable:
                errors.append(f"Loop step '{label}' must specify 'item_variable'")
            if not step.steps:
                errors.append(f"Loop step '{label}' must have at least one substep")
            if step.max_iterations is not None and step.max_iterations < 0:
                errors.append(f"Loop step '{label}' max_iterations must be >= 0")
        elif isinstance(step, TransformStep):
            if not step.expression:
                errors.append(f"Transform step '{label}' must specify 'expression'")
            if not step.output:
                errors.append(f"Transform step '{label}' must specify 'output'")
        elif isinstance(step, HumanInTheLoopStep):
            if not step.prompt:
                errors.append(f"Human-in-the-loop step '{label}' must specify 'prompt'")
        elif isinstance(step, RAGStep):
            if not step.pipeline:
                errors.append(f"RAG step '{label}' must specify 'pipeline'")
            if step.top_k is not None and step.top_k < 1:
                errors.append(f"RAG step '{label}' top_k must be >= 1")

    return errors


@dataclass(frozen=True)
class WorkflowTrigger:
    """Trigger descriptor (stored with the workflow, never executed)."""

    type: str
    config: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class WorkflowDefinition:
    """
    Workflow definition.

    Immutable once built; every execution reads it without modifying it.
    """

    id: str
    name: str = ""
    version: str = "1.0.0"
    steps: Tuple[Step, ...] = ()
    variables: Dict[str, Any] = field(default_factory=dict)
    timeout: Optional[float] = None
    description: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    triggers: Tuple[WorkflowTrigger, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "triggers", tuple(self.triggers))
        if not self.name:
            object.__setattr__(self, "name", self.id)

    @classmethod
    def from_yaml(cls, yaml_str: str) -> "WorkflowDefinition":
        """
        Parse workflow from YAML string.

        Args:
            yaml_str: YAML workflow definition

        Returns:
            WorkflowDefinition instance

        Raises:
            ValueError: If YAML is invalid
        """
        try:
            data = yaml.safe_load(yaml_str)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML: {e}")

        if not isinstance(data, dict) or "workflow" not in data:
            raise ValueError("YAML must contain 'workflow' key")

        return cls.from_dict(data["workflow"])

    @classmethod
    def from_file(cls, file_path: Union[str, Path]) -> "WorkflowDefinition":
        """
        Load workflow from YAML file.

        Raises:
            FileNotFoundError: If file doesn't exist
            ValueError: If YAML is invalid
        """
        path = Path(file_path)
        if not path.exists():
            raise FileNotFoundError(f"Workflow file not found: {file_path}")

        with open(path, "r", encoding="utf-8") as f:
            return cls.from_yaml(f.read())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowDefinition":
        """
        Create from dictionary.

        Args:
            data: Workflow definition dictionary

        Returns:
            WorkflowDefinition instance
        """
        workflow_id = data.get("id") or data.get("name") or "unnamed"
        triggers = tuple(
            WorkflowTrigger(type=t.get("type", "manual"), config=t.get("config") or {})
            for t in data.get("triggers") or []
        )

        return cls(
            id=workflow_id,
            name=data.get("name") or workflow_id,
            version=str(data.get("version", "1.0.0")),
            steps=tuple(step_from_dict(s) for s in data.get("steps") or []),
            variables=dict(data.get("variables") or {}),
            timeout=_seconds(data, "timeout", "timeoutMs"),
            description=data.get("description", ""),
            metadata=dict(data.get("metadata") or {}),
            triggers=triggers,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        result: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "steps": [step_to_dict(step) for step in self.steps],
            "variables": dict(self.variables),
            "metadata": dict(self.metadata),
        }
        if self.timeout is not None:
            result["timeout"] = self.timeout
        if self.triggers:
            result["triggers"] = [
                {"type": t.type, "config": dict(t.config)} for t in self.triggers
            ]
        return result

    def validate(self) -> List[str]:
        """
        Validate workflow definition.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if not self.id:
            errors.append("Workflow must have an id")
        if self.timeout is not None and self.timeout <= 0:
            errors.append("Workflow timeout must be positive")

        errors.extend(validate_steps(self.steps))
        return errors

    def all_step_ids(self) -> List[str]:
        """Get all step IDs including nested steps, depth-first."""
        return [step.id for step in iter_steps(self.steps)]

    def get_step(self, step_id: str) -> Optional[Step]:
        """Get a step anywhere in the tree by ID."""
        for step in iter_steps(self.steps):
            if step.id == step_id:
                return step
        return None

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"WorkflowDefinition(id='{self.id}', "
            f"version='{self.version}', steps={len(self.steps)})"
        )
