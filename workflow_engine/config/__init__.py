"""Execution configuration for the workflow engine."""

from .manager import DEFAULT_SETTINGS, ENV_MAPPING, load_execution_config
from .types import ExecutionConfig

__all__ = [
    "DEFAULT_SETTINGS",
    "ENV_MAPPING",
    "ExecutionConfig",
    "load_execution_config",
]
