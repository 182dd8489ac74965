"""
Tests for WorkflowDefinition
"""

import tempfile
from pathlib import Path

import pytest

from workflow_engine.runtime_data import BindingKind, VariableBinding
from workflow_engine.workflows.definition import (
    AgentStep,
    ConditionalStep,
    HumanInTheLoopStep,
    LoopStep,
    ParallelStep,
    RAGStep,
    StepType,
    ToolStep,
    TransformStep,
    WorkflowDefinition,
    step_from_dict,
    step_to_dict,
)

WORKFLOW_YAML = """
workflow:
  id: review-flow
  name: "Review flow"
  version: "2.1.0"
  timeout_ms: 120000
  variables:
    threshold: 3
  triggers:
    - type: webhook
      config:
        path: /hooks/review
  steps:
    - id: fetch
      type: tool
      tool_name: fetch_document
      input:
        type: variable
        name: documentId
      output: document
    - id: check
      type: conditional
      condition: "${document.ready}"
      then:
        - id: analyze
          type: agent
          agentId: analyzer
          input: "${document.body}"
          output: analysis
      else:
        - id: wait
          type: human_in_the_loop
          prompt: "Document not ready"
          timeoutMs: 5000
          options: [Retry, Skip]
"""


class TestStepFromDict:
    """Tests for step parsing."""

    def test_agent_step_aliases(self):
        """Test parsing an agent step with key aliases."""
        step = step_from_dict(
            {"id": "a", "type": "agent", "agent": "explore", "input": "${q}", "output": "answer"}
        )

        assert isinstance(step, AgentStep)
        assert step.agent_id == "explore"
        assert step.input == VariableBinding.expression("${q}")
        assert step.output == "answer"

    def test_tool_step_with_retry_and_timeout(self):
        """Test parsing a tool step with retry and timeout."""
        step = step_from_dict(
            {
                "id": "t",
                "type": "tool",
                "toolName": "search",
                "timeoutMs": 1500,
                "retry": {"maxRetries": 2, "initialDelay": 0.5},
            }
        )

        assert isinstance(step, ToolStep)
        assert step.tool_name == "search"
        assert step.timeout == 1.5
        assert step.retry.max_retries == 2
        assert step.retry.initial_delay == 0.5
        assert step.input == VariableBinding.literal(None)

    def test_parallel_step(self):
        """Test parsing a parallel step."""
        step = step_from_dict(
            {
                "id": "p",
                "type": "parallel",
                "waitForAll": False,
                "branches": [
                    [{"id": "b1", "type": "tool", "tool_name": "x"}],
                    [{"id": "b2", "type": "tool", "tool_name": "y"}],
                ],
            }
        )

        assert isinstance(step, ParallelStep)
        assert step.wait_for_all is False
        assert [branch[0].id for branch in step.branches] == ["b1", "b2"]

    def test_loop_step_short_keys(self):
        """Test parsing a loop step with short keys."""
        step = step_from_dict(
            {
                "id": "l",
                "type": "loop",
                "items": {"type": "variable", "name": "numbers"},
                "item_var": "num",
                "maxIterations": 3,
                "steps": [
                    {"id": "inc", "type": "transform", "input": "${num}", "expression": "${$input}1", "output": "x"}
                ],
            }
        )

        assert isinstance(step, LoopStep)
        assert step.collection == VariableBinding.variable("numbers")
        assert step.item_variable == "num"
        assert step.max_iterations == 3
        assert isinstance(step.steps[0], TransformStep)

    def test_rag_step(self):
        """Test parsing a RAG step."""
        step = step_from_dict(
            {"id": "r", "type": "rag", "pipeline": "docs", "query": "${q}", "topK": 5}
        )

        assert isinstance(step, RAGStep)
        assert step.top_k == 5
        assert step.query.kind == BindingKind.EXPRESSION

    def test_invalid_type(self):
        """Test that an unknown step type is rejected."""
        with pytest.raises(ValueError, match="invalid type"):
            step_from_dict({"id": "x", "type": "teleport"})

    def test_round_trip(self):
        """Test step serialization round trip."""
        data = {
            "id": "h",
            "type": "human_in_the_loop",
            "prompt": "Approve?",
            "options": ["Yes", "No"],
            "timeout": 30.0,
            "output": "decision",
        }
        step = step_from_dict(data)

        assert isinstance(step, HumanInTheLoopStep)
        assert step_to_dict(step) == data


class TestWorkflowDefinition:
    """Tests for WorkflowDefinition."""

    def test_from_yaml(self):
        """Test loading a workflow from YAML."""
        workflow = WorkflowDefinition.from_yaml(WORKFLOW_YAML)

        assert workflow.id == "review-flow"
        assert workflow.version == "2.1.0"
        assert workflow.timeout == 120.0
        assert workflow.variables == {"threshold": 3}
        assert workflow.triggers[0].type == "webhook"
        assert workflow.triggers[0].config == {"path": "/hooks/review"}
        assert len(workflow.steps) == 2
        assert workflow.validate() == []

    def test_from_yaml_requires_workflow_key(self):
        """Test that YAML without a workflow key is rejected."""
        with pytest.raises(ValueError, match="workflow"):
            WorkflowDefinition.from_yaml("steps: []")

    def test_from_yaml_invalid(self):
        """Test that invalid YAML is rejected."""
        with pytest.raises(ValueError, match="Invalid YAML"):
            WorkflowDefinition.from_yaml("workflow: [unclosed")

    def test_from_file(self):
        """Test loading a workflow from a file."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "flow.yaml"
            path.write_text(WORKFLOW_YAML, encoding="utf-8")

            workflow = WorkflowDefinition.from_file(path)

        assert workflow.name == "Review flow"

    def test_from_file_missing(self):
        """Test loading a workflow file that does not exist."""
        with pytest.raises(FileNotFoundError):
            WorkflowDefinition.from_file("/nonexistent/flow.yaml")

    def test_all_step_ids_and_get_step(self):
        """Test listing step ids and finding nested steps."""
        workflow = WorkflowDefinition.from_yaml(WORKFLOW_YAML)

        assert workflow.all_step_ids() == ["fetch", "check", "analyze", "wait"]
        assert workflow.get_step("wait").timeout == 5.0
        assert workflow.get_step("nope") is None

    def test_name_defaults_to_id(self):
        """Test that the name defaults to the id."""
        assert WorkflowDefinition(id="flow").name == "flow"

    def test_to_dict_round_trip(self):
        """Test workflow serialization round trip."""
        workflow = WorkflowDefinition.from_yaml(WORKFLOW_YAML)

        assert WorkflowDefinition.from_dict(workflow.to_dict()) == workflow

    def test_empty_workflow_is_valid(self):
        """Test that a workflow with no steps is valid."""
        assert WorkflowDefinition(id="empty").validate() == []


class TestValidation:
    """Tests for structural validation."""

    def test_duplicate_ids_across_tree(self):
        """Test that duplicate ids in nested steps are caught."""
        workflow = WorkflowDefinition(
            id="dup",
            steps=(
                ToolStep(id="same", tool_name="a"),
                ConditionalStep(
                    id="cond",
                    condition="${x}",
                    then_steps=(ToolStep(id="same", tool_name="b"),),
                ),
            ),
        )

        assert "Duplicate step ID: same" in workflow.validate()

    def test_empty_id(self):
        """Test that empty step ids are caught."""
        workflow = WorkflowDefinition(id="w", steps=(ToolStep(id="", tool_name="a"),))

        assert any("empty id" in error for error in workflow.validate())

    def test_required_fields_per_kind(self):
        """Test required fields for each step kind."""
        workflow = WorkflowDefinition(
            id="w",
            steps=(
                AgentStep(id="a", agent_id=""),
                TransformStep(id="t", input=VariableBinding.literal(1), expression="", output=""),
                HumanInTheLoopStep(id="h", prompt="ok?", timeout=0),
                ParallelStep(id="p"),
            ),
        )
        errors = workflow.validate()

        assert "Agent step 'a' must specify 'agent_id'" in errors
        assert "Transform step 't' must specify 'expression'" in errors
        assert "Transform step 't' must specify 'output'" in errors
        assert "Step 'h' timeout must be positive" in errors
        assert "Parallel step 'p' must have at least one branch" in errors

    def test_invalid_retry_policy(self):
        """Test that invalid retry policies are caught."""
        step = step_from_dict({"id": "t", "type": "tool", "tool_name": "x", "retry": {"max_retries": -1}})

        errors = WorkflowDefinition(id="w", steps=(step,)).validate()

        assert "Step 't' max_retries must be >= 0" in errors

    def test_step_type_values(self):
        """Test the step type values."""
        assert {t.value for t in StepType} == {
            "agent",
            "tool",
            "conditional",
            "parallel",
            "loop",
            "transform",
            "human_in_the_loop",
            "rag",
        }
