"""
Workflow Errors

Error kinds, the StepError record stored on failed results, and the
exception types raised inside the engine.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorKind(str, Enum):
    """Classification of a step or workflow failure."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    TIMEOUT = "TIMEOUT"
    COLLABORATOR_ERROR = "COLLABORATOR_ERROR"
    UNKNOWN = "UNKNOWN"


class WorkflowEngineError(Exception):
    """Base class for workflow-related failures."""

    kind = ErrorKind.UNKNOWN


class WorkflowValidationError(WorkflowEngineError):
    """Raised when a workflow description is structurally invalid."""

    kind = ErrorKind.VALIDATION_ERROR

    def __init__(self, problems: List[str]):
        self.problems = list(problems)
        super().__init__(f"Workflow validation failed: {', '.join(self.problems)}")


class StepTimeoutError(WorkflowEngineError):
    """Raised when a step or a whole workflow exceeds its allotted time."""

    kind = ErrorKind.TIMEOUT
    code = "TIMEOUT"


class WorkflowCancelledError(WorkflowEngineError):
    """Raised when an execution is cancelled between top-level steps."""

    code = "CANCELLED"


class CollaboratorError(WorkflowEngineError):
    """Raised when an agent, tool, pipeline or approval channel fails."""

    kind = ErrorKind.COLLABORATOR_ERROR

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code or ErrorKind.COLLABORATOR_ERROR.value


class CollaboratorNotFoundError(CollaboratorError):
    """Raised when a named agent, tool or pipeline is not registered."""

    def __init__(self, message: str):
        super().__init__(message, code="NOT_FOUND")


class ApprovalRejectedError(CollaboratorError):
    """Raised when a human response is not one of the allowed options."""

    def __init__(self, message: str):
        super().__init__(message, code="INVALID_RESPONSE")


@dataclass(frozen=True)
class StepError:
    """Failure payload carried by a FAILED step or workflow result."""

    kind: ErrorKind
    message: str
    step_id: Optional[str] = None
    code: Optional[str] = None
    exception_type: Optional[str] = None

    def __post_init__(self):
        if self.code is None:
            object.__setattr__(self, "code", self.kind.value)

    def __str__(self) -> str:
        return self.message

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        step_id: Optional[str] = None,
        kind: Optional[ErrorKind] = None,
    ) -> "StepError":
        """
        Build a StepError from a raised exception.

        Args:
            exc: The exception that ended the invocation
            step_id: Step the failure belongs to
            kind: Explicit classification, otherwise derived from the exception

        Returns:
            StepError instance
        """
        if kind is None:
            kind = classify_exception(exc)
        code = getattr(exc, "code", None)
        if not isinstance(code, str) or not code:
            code = kind.value
        message = str(exc) or exc.__class__.__name__
        return cls(
            kind=kind,
            message=message,
            step_id=step_id,
            code=code,
            exception_type=exc.__class__.__name__,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "step_id": self.step_id,
            "code": self.code,
            "exception_type": self.exception_type,
        }


def classify_exception(exc: BaseException) -> ErrorKind:
    """Map an exception onto an ErrorKind."""
    if isinstance(exc, WorkflowEngineError):
        return exc.kind
    if isinstance(exc, asyncio.TimeoutError):
        return ErrorKind.TIMEOUT
    return ErrorKind.UNKNOWN
