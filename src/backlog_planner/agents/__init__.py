"""CLI agent collaborators used by ordering runs."""

from backlog_planner.agents.base import (
    AgentChunk,
    AgentInvocation,
    AgentInvocationError,
    AgentInvocationResult,
    AgentInvoker,
    AgentProfile,
    AgentRouter,
    AgentRoutingError,
)
from backlog_planner.agents.cli_agent import CliAgentInvoker
from backlog_planner.agents.routing import AgentRoutingDefaults, SettingsAgentRouter

__all__ = [
    "AgentChunk",
    "AgentInvocation",
    "AgentInvocationError",
    "AgentInvocationResult",
    "AgentInvoker",
    "AgentProfile",
    "AgentRouter",
    "AgentRoutingDefaults",
    "AgentRoutingError",
    "CliAgentInvoker",
    "SettingsAgentRouter",
]
