"""Agent invocation interface used by ordering runs."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any, Protocol

from backlog_planner.errors import BacklogPlannerError


class AgentInvocationError(RuntimeError):
    """Agent execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class AgentRoutingError(BacklogPlannerError):
    """No usable agent could be resolved for a command."""


@dataclass(slots=True)
class AgentProfile:
    """Resolved agent: which CLI to run and with which model."""

    id: str
    slug: str
    adapter: str
    default_model: str
    command_template: str


@dataclass(slots=True)
class AgentInvocation:
    """Prompt plus context labels passed to the agent."""

    input: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class AgentInvocationResult:
    output: str
    adapter: str


@dataclass(slots=True)
class AgentChunk:
    output: str


class AgentInvoker(Protocol):
    """Protocol implemented by agent runners."""

    def invoke(self, agent: AgentProfile, invocation: AgentInvocation) -> AgentInvocationResult:
        """Run the agent and return its complete output."""

    def invoke_stream(
        self,
        agent: AgentProfile,
        invocation: AgentInvocation,
    ) -> Iterator[AgentChunk]:
        """Run the agent and yield output as it arrives."""


class AgentRouter(Protocol):
    """Protocol implemented by agent routing."""

    def resolve_agent_for_command(
        self,
        command_name: str,
        override_agent_slug: str | None = None,
    ) -> AgentProfile:
        """Return the agent to use for a command, honoring an explicit override."""
