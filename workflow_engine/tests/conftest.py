"""Shared fixtures for workflow engine tests."""

import pytest

from workflow_engine.collaborators import AgentRegistry, ToolRegistry
from workflow_engine.workflows.retries import StepSupervisor


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def supervisor(recording_sleep):
    """Supervisor without real backoff waits or jitter."""
    return StepSupervisor(sleep=recording_sleep, rand=lambda: 0.5)


@pytest.fixture
def tools():
    registry = ToolRegistry()
    registry.register("echo", lambda value: value)
    registry.register("upper", lambda value: str(value).upper())
    registry.register("double", lambda value: value * 2)
    return registry


@pytest.fixture
def agents():
    registry = AgentRegistry()
    registry.register("echo", lambda value, context: value)
    return registry
