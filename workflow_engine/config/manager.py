import logging
import os
from typing import Any, Dict, Mapping, Optional

from .types import ExecutionConfig

logger = logging.getLogger(__name__)

# Settings that can be loaded from the environment, with their types
DEFAULT_SETTINGS = {
    "timeout": (300.0, float),
    "step_timeout": (60.0, float),
    "stop_on_error": (True, bool),
    "max_retries": (0, int),
    "retry_initial_delay": (1.0, float),
    "retry_max_delay": (30.0, float),
}

ENV_PREFIX = "WORKFLOW_"

# Each setting can be set via its prefixed uppercase env var
ENV_MAPPING = {f"{ENV_PREFIX}{setting.upper()}": setting for setting in DEFAULT_SETTINGS}


def _convert_value(value: str, target_type: type) -> Any:
    """Convert string value to target type"""
    if target_type == bool:
        return value.strip().lower() in ("true", "1", "yes", "on")
    return target_type(value.strip())


def load_execution_config(
    environ: Optional[Mapping[str, str]] = None, **overrides: Any
) -> ExecutionConfig:
    """
    Build an ExecutionConfig from environment variables.

    Args:
        environ: Environment mapping (defaults to os.environ)
        **overrides: Explicit settings, taking precedence over the environment

    Returns:
        ExecutionConfig instance

    Raises:
        ValueError: If an environment value cannot be converted
    """
    environ = os.environ if environ is None else environ
    settings: Dict[str, Any] = {}

    for env_name, setting in ENV_MAPPING.items():
        raw = environ.get(env_name)
        if raw is None or raw == "":
            continue
        _, target_type = DEFAULT_SETTINGS[setting]
        try:
            settings[setting] = _convert_value(raw, target_type)
        except ValueError:
            raise ValueError(f"Invalid value for {env_name}: {raw!r}")
        logger.debug(f"Loaded setting '{setting}' from {env_name}")

    settings.update(overrides)
    return ExecutionConfig(**settings)
