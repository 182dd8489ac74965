from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class ExecutionConfig(BaseModel):
    """Execution settings for a workflow run (durations in seconds)."""

    model_config = ConfigDict(extra="forbid")

    timeout: float = Field(default=300.0, gt=0)
    step_timeout: float = Field(default=60.0, gt=0)
    stop_on_error: bool = True
    max_retries: int = Field(default=0, ge=0)
    retry_initial_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=30.0, ge=0)
    variables: Dict[str, Any] = Field(default_factory=dict)

    def merged(self, overrides: Optional["ExecutionConfig"]) -> "ExecutionConfig":
        """Shallow-merge the fields explicitly set on ``overrides`` onto this config."""
        if overrides is None:
            return self
        update = {name: getattr(overrides, name) for name in overrides.model_fields_set}
        return self.model_copy(update=update)
