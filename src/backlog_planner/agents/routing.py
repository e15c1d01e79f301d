"""Routing resolution of CLI agents for planner commands."""

from __future__ import annotations

from dataclasses import dataclass

from backlog_planner.agents.base import AgentProfile, AgentRoutingError
from backlog_planner.config import SUPPORTED_AGENTS, Settings


@dataclass(slots=True)
class AgentRoutingDefaults:
    """Settings snapshot used to resolve agents per command."""

    default_agent: str
    command_agents: dict[str, str]
    command_templates: dict[str, str]
    models: dict[str, str]

    @classmethod
    def from_settings(cls, settings: Settings) -> AgentRoutingDefaults:
        """Snapshot agent settings; templates are checked when an agent is resolved."""

        agents = settings.agents
        return cls(
            default_agent=_normalize_agent(agents.default_agent),
            command_agents={
                command.strip().lower(): _normalize_agent(agent)
                for command, agent in agents.command_agents.items()
            },
            command_templates=dict(agents.command_templates),
            models=dict(agents.models),
        )


class SettingsAgentRouter:
    """Resolve agents from configuration: override, then per-command, then default."""

    def __init__(self, defaults: AgentRoutingDefaults) -> None:
        self.defaults = defaults

    @classmethod
    def from_settings(cls, settings: Settings) -> SettingsAgentRouter:
        return cls(AgentRoutingDefaults.from_settings(settings))

    def resolve_agent_for_command(
        self,
        command_name: str,
        override_agent_slug: str | None = None,
    ) -> AgentProfile:
        if override_agent_slug is not None and override_agent_slug.strip():
            agent = _normalize_agent(override_agent_slug)
        else:
            agent = self.defaults.command_agents.get(
                command_name.strip().lower(),
                self.defaults.default_agent,
            )
        _validate_supported_agent(agent)
        command_template = self.defaults.command_templates.get(agent, "").strip()
        if not command_template:
            raise AgentRoutingError(f"Empty command template for agent={agent!r}")
        model = self.defaults.models.get(agent, "").strip()
        if not model:
            raise AgentRoutingError(f"Empty model id for agent={agent!r}")
        return AgentProfile(
            id=agent,
            slug=agent,
            adapter=f"{agent}-cli",
            default_model=model,
            command_template=command_template,
        )


def _normalize_agent(value: str) -> str:
    return value.strip().lower()


def _validate_supported_agent(agent: str) -> None:
    if agent in SUPPORTED_AGENTS:
        return
    raise AgentRoutingError(f"Unsupported agent: {agent!r}. Use codex, claude, or gemini.")
