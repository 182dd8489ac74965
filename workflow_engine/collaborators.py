"""
Collaborators

Narrow interfaces for the external units of work a workflow invokes (agents,
tools, retrieval pipelines, human approval channels) plus in-memory
implementations for wiring and tests.
"""

import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple, Union

from .errors import CollaboratorError, CollaboratorNotFoundError

Handler = Callable[..., Union[Any, Awaitable[Any]]]


async def call_handler(handler: Handler, *args: Any) -> Any:
    """Call a sync or async handler and return its result."""
    result = handler(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class AgentRuntime(Protocol):
    """Executes agents by identifier."""

    async def invoke(self, agent_id: str, input: Any, context: Dict[str, Any]) -> Any:
        ...


class RetrievalPipeline(Protocol):
    """Answers retrieval queries."""

    async def query(self, query: str, top_k: Optional[int] = None) -> Any:
        ...


class AgentRegistry:
    """Registry of agents callable by workflows."""

    def __init__(self):
        """Initialize agent registry."""
        self._agents: Dict[str, Handler] = {}

    def register(self, agent_id: str, handler: Handler):
        """
        Register an agent.

        Args:
            agent_id: Agent identifier
            handler: Sync or async callable taking (input, context)
        """
        self._agents[agent_id] = handler

    def unregister(self, agent_id: str):
        """Remove an agent if registered."""
        self._agents.pop(agent_id, None)

    def has(self, agent_id: str) -> bool:
        return agent_id in self._agents

    def list_agents(self) -> List[str]:
        """
        List registered agents.

        Returns:
            List of agent identifiers
        """
        return list(self._agents.keys())

    async def invoke(self, agent_id: str, input: Any, context: Dict[str, Any]) -> Any:
        """
        Invoke an agent.

        Raises:
            CollaboratorNotFoundError: If the agent is not registered
        """
        handler = self._agents.get(agent_id)
        if handler is None:
            raise CollaboratorNotFoundError(f"Unknown agent: {agent_id}")
        return await call_handler(handler, input, context)


class ToolRegistry:
    """Registry of tools callable by workflows."""

    def __init__(self):
        """Initialize tool registry."""
        self._tools: Dict[str, Handler] = {}

    def register(self, name: str, handler: Handler):
        """
        Register a tool.

        Args:
            name: Tool name
            handler: Sync or async callable taking the resolved input
        """
        self._tools[name] = handler

    def unregister(self, name: str):
        """Remove a tool if registered."""
        self._tools.pop(name, None)

    def get(self, name: str) -> Optional[Handler]:
        """Get a tool handler by name, or None."""
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def list_tools(self) -> List[str]:
        """
        List all registered tools.

        Returns:
            List of tool names
        """
        return list(self._tools.keys())

    async def invoke(self, name: str, input: Any) -> Any:
        """
        Invoke a tool.

        Raises:
            CollaboratorNotFoundError: If the tool is not registered
        """
        handler = self._tools.get(name)
        if handler is None:
            raise CollaboratorNotFoundError(f"Tool not found: {name}")
        return await call_handler(handler, input)


@dataclass(frozen=True)
class ApprovalRequest:
    """A pending human decision."""

    step_id: str
    prompt: str
    options: Tuple[str, ...] = ()
    assignee: Optional[str] = None
    execution_id: Optional[str] = None
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=datetime.utcnow)


class ApprovalChannel(Protocol):
    """Source of external approval signals."""

    async def request_approval(self, request: ApprovalRequest) -> str:
        ...


class InMemoryApprovalChannel:
    """
    Approval channel that parks each request until it is answered.

    ``respond`` and ``reject`` settle a pending request from outside the
    workflow; a request that is never answered is ended by the step timeout.
    """

    def __init__(self):
        """Initialize approval channel."""
        self.logger = logging.getLogger(__name__)
        self._pending: Dict[str, Tuple[ApprovalRequest, "asyncio.Future[str]"]] = {}
        self._waiters: List["asyncio.Future[ApprovalRequest]"] = []

    async def request_approval(self, request: ApprovalRequest) -> str:
        loop = asyncio.get_running_loop()
        future: "asyncio.Future[str]" = loop.create_future()
        self._pending[request.request_id] = (request, future)
        self.logger.info(
            f"Approval requested for step '{request.step_id}' "
            f"(request: {request.request_id}, assignee: {request.assignee})"
        )

        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(request)

        try:
            return await future
        finally:
            self._pending.pop(request.request_id, None)

    def pending(self) -> List[ApprovalRequest]:
        """List requests still waiting for a response."""
        return [request for request, _ in self._pending.values()]

    async def wait_for_request(self) -> ApprovalRequest:
        """Return the oldest pending request, waiting for one if none exists."""
        if self._pending:
            return next(iter(self._pending.values()))[0]
        future: "asyncio.Future[ApprovalRequest]" = (
            asyncio.get_running_loop().create_future()
        )
        self._waiters.append(future)
        try:
            return await future
        finally:
            if future in self._waiters:
                self._waiters.remove(future)

    def respond(self, request_id: str, response: str) -> bool:
        """
        Settle a pending request with the chosen response.

        Returns:
            True if a pending request was settled
        """
        entry = self._pending.get(request_id)
        if entry is None or entry[1].done():
            return False
        entry[1].set_result(response)
        return True

    def reject(self, request_id: str, reason: str = "Approval request rejected") -> bool:
        """
        Fail a pending request.

        Returns:
            True if a pending request was settled
        """
        entry = self._pending.get(request_id)
        if entry is None or entry[1].done():
            return False
        entry[1].set_exception(CollaboratorError(reason, code="REJECTED"))
        return True


class CallbackApprovalChannel:
    """Adapts a plain ``(prompt, options) -> response`` handler."""

    def __init__(self, handler: Handler):
        self._handler = handler

    async def request_approval(self, request: ApprovalRequest) -> str:
        return await call_handler(self._handler, request.prompt, list(request.options))
