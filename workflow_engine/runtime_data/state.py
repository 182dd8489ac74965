"""
Workflow State

Step results and the immutable variable store threaded through an execution.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, Optional

from ..errors import StepError


class StepStatus(str, Enum):
    """Status of a dispatched step."""

    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class StepResult:
    """
    Result of one step invocation.

    ``writes`` holds the variable bindings the step produced; the caller merges
    them into the next store revision. ``children`` holds the results of nested
    steps that were actually dispatched (Conditional, Parallel, Loop).
    """

    step_id: str
    status: StepStatus
    output: Any = None
    error: Optional[StepError] = None
    step_type: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    retry_count: int = 0
    writes: Dict[str, Any] = field(default_factory=dict)
    children: Dict[str, "StepResult"] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == StepStatus.COMPLETED

    @classmethod
    def completed(cls, step_id: str, output: Any = None, **kwargs: Any) -> "StepResult":
        """Create a COMPLETED result."""
        return cls(step_id=step_id, status=StepStatus.COMPLETED, output=output, **kwargs)

    @classmethod
    def failed(cls, step_id: str, error: StepError, **kwargs: Any) -> "StepResult":
        """Create a FAILED result."""
        return cls(step_id=step_id, status=StepStatus.FAILED, error=error, **kwargs)

    def flatten(self) -> Dict[str, "StepResult"]:
        """Return nested results depth-first, keyed by step id."""
        flat: Dict[str, StepResult] = {}
        for child_id, child in self.children.items():
            flat[child_id] = child
            flat.update(child.flatten())
        return flat

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "step_id": self.step_id,
            "step_type": self.step_type,
            "status": self.status.value,
            "output": self.output,
            "error": self.error.to_dict() if self.error else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
            "retry_count": self.retry_count,
            "writes": dict(self.writes),
            "children": {
                child_id: child.to_dict() for child_id, child in self.children.items()
            },
        }


class VariableStore(Mapping):
    """
    Immutable key/value mapping of workflow variables.

    Every update returns a new revision; existing revisions never change, so
    concurrent branches can each hold their own copy without locking.
    """

    __slots__ = ("_data", "_revision")

    def __init__(self, data: Optional[Mapping] = None, revision: int = 0):
        self._data: Dict[str, Any] = dict(data or {})
        self._revision = revision

    @property
    def revision(self) -> int:
        """Number of updates applied since the store was seeded."""
        return self._revision

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def set(self, name: str, value: Any) -> "VariableStore":
        """Return a new revision with ``name`` bound to ``value``."""
        return self.merge({name: value})

    def merge(self, writes: Mapping) -> "VariableStore":
        """Return a new revision with all ``writes`` applied (writes win)."""
        if not writes:
            return self
        data = dict(self._data)
        data.update(writes)
        return VariableStore(data, self._revision + 1)

    def lookup(self, path: str) -> Any:
        """
        Look up a variable, optionally navigating a dotted path.

        An exact key match wins; otherwise the first segment names the variable
        and later segments index into mappings and sequences. Anything missing
        resolves to None.

        Args:
            path: Variable name or dotted path (e.g. "document.content")

        Returns:
            Value at path or None
        """
        if path in self._data:
            return self._data[path]

        parts = path.split(".")
        if parts[0] not in self._data:
            return None

        obj = self._data[parts[0]]
        for part in parts[1:]:
            if isinstance(obj, Mapping):
                obj = obj.get(part)
            elif isinstance(obj, (list, tuple)) and part.lstrip("-").isdigit():
                index = int(part)
                obj = obj[index] if -len(obj) <= index < len(obj) else None
            else:
                return None
            if obj is None:
                return None
        return obj

    def to_dict(self) -> Dict[str, Any]:
        """Return a plain dictionary copy."""
        return dict(self._data)

    def __repr__(self) -> str:
        return f"VariableStore(revision={self._revision}, keys={sorted(self._data)})"
