"""
Workflow System

Declarative orchestration of agents, tools, retrieval pipelines and human
approvals.

This module provides:
- Workflow definition and validation (dict/YAML based)
- Workflow execution engine with error aggregation
- Multiple step types (agent, tool, conditional, parallel, loop, transform,
  human-in-the-loop, rag)
- Timeout and retry supervision
"""

from ..runtime_data import StepResult, StepStatus, VariableStore
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
    WorkflowDefinition,
    WorkflowTrigger,
)
from .dispatcher import ExecutionContext, StepDispatcher
from .engine import (
    ExecutionRecord,
    WorkflowEngine,
    WorkflowExecutionResult,
    WorkflowStatus,
)
from .retries import RetryPolicies, RetryPolicy, StepSupervisor

__all__ = [
    "StepResult",
    "StepStatus",
    "VariableStore",
    # Definition
    "AgentStep",
    "ConditionalStep",
    "HumanInTheLoopStep",
    "LoopStep",
    "ParallelStep",
    "RAGStep",
    "Step",
    "StepType",
    "ToolStep",
    "TransformStep",
    "WorkflowDefinition",
    "WorkflowTrigger",
    # Execution
    "ExecutionContext",
    "StepDispatcher",
    "ExecutionRecord",
    "WorkflowEngine",
    "WorkflowExecutionResult",
    "WorkflowStatus",
    # Retries
    "RetryPolicies",
    "RetryPolicy",
    "StepSupervisor",
]
