"""
Workflow Engine

In-process orchestrator that executes declarative workflows of typed steps
against pluggable agents, tools, retrieval pipelines and approval channels.
"""

from .collaborators import (
    AgentRegistry,
    ApprovalRequest,
    CallbackApprovalChannel,
    InMemoryApprovalChannel,
    ToolRegistry,
)
from .config import ExecutionConfig, load_execution_config
from .errors import (
    ApprovalRejectedError,
    CollaboratorError,
    CollaboratorNotFoundError,
    ErrorKind,
    StepError,
    StepTimeoutError,
    WorkflowCancelledError,
    WorkflowEngineError,
    WorkflowValidationError,
)
from .runtime_data import StepResult, StepStatus, VariableBinding, VariableStore
from .workflows import (
    RetryPolicies,
    RetryPolicy,
    WorkflowDefinition,
    WorkflowEngine,
    WorkflowExecutionResult,
    WorkflowStatus,
)

__version__ = "0.1.0"

__all__ = [
    "AgentRegistry",
    "ApprovalRequest",
    "CallbackApprovalChannel",
    "InMemoryApprovalChannel",
    "ToolRegistry",
    "ExecutionConfig",
    "load_execution_config",
    "ApprovalRejectedError",
    "CollaboratorError",
    "CollaboratorNotFoundError",
    "ErrorKind",
    "StepError",
    "StepTimeoutError",
    "WorkflowCancelledError",
    "WorkflowEngineError",
    "WorkflowValidationError",
    "StepResult",
    "StepStatus",
    "VariableBinding",
    "VariableStore",
    "RetryPolicies",
    "RetryPolicy",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowExecutionResult",
    "WorkflowStatus",
]
