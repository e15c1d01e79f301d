"""Runtime configuration for the backlog planner."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

SUPPORTED_AGENTS = ("claude", "codex", "gemini")
VALID_STAGES = ("foundation", "backend", "frontend", "other")
PLANNING_CONTEXT_POLICIES = ("best_effort", "require_any", "require_sds_or_openapi")

DEFAULT_COMMAND_TEMPLATES = {
    "codex": "codex exec --sandbox read-only --model {model} {prompt}",
    "claude": "claude -p --model {model} -- {prompt}",
    "gemini": "gemini --model {model} --prompt {prompt}",
}
DEFAULT_MODELS = {
    "codex": "gpt-5-codex",
    "claude": "sonnet",
    "gemini": "gemini-2.5-pro",
}


@dataclass(slots=True)
class AgentSettings:
    """CLI agent routing and execution settings."""

    default_agent: str = "codex"
    command_templates: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_COMMAND_TEMPLATES),
    )
    models: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_MODELS))
    timeout_seconds: int = 600
    command_agents: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class DocdexSettings:
    """Planning document search service settings."""

    base_url: str | None = None
    repo_id: str | None = None
    timeout_seconds: float = 30.0


@dataclass(slots=True)
class OrderingSettings:
    """Defaults applied to task ordering runs."""

    stage_order: tuple[str, ...] = VALID_STAGES
    planning_context_policy: str = "best_effort"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".backlog_planner/workspace.db")
    sqlite_busy_timeout_ms: int = 5_000
    record_telemetry: bool = True
    agents: AgentSettings = field(default_factory=AgentSettings)
    docdex: DocdexSettings = field(default_factory=DocdexSettings)
    ordering: OrderingSettings = field(default_factory=OrderingSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path
            or Path(os.getenv("BACKLOG_PLANNER_DB_PATH", ".backlog_planner/workspace.db")),
            sqlite_busy_timeout_ms=int(
                os.getenv("BACKLOG_PLANNER_SQLITE_BUSY_TIMEOUT_MS", "5000"),
            ),
            record_telemetry=_env_bool("BACKLOG_PLANNER_RECORD_TELEMETRY", default=True),
            agents=AgentSettings(
                default_agent=os.getenv("BACKLOG_PLANNER_DEFAULT_AGENT", "codex").strip().lower(),
                command_templates={
                    agent: os.getenv(
                        f"BACKLOG_PLANNER_{agent.upper()}_COMMAND_TEMPLATE",
                        DEFAULT_COMMAND_TEMPLATES[agent],
                    )
                    for agent in SUPPORTED_AGENTS
                },
                models={
                    agent: os.getenv(
                        f"BACKLOG_PLANNER_{agent.upper()}_MODEL",
                        DEFAULT_MODELS[agent],
                    )
                    for agent in SUPPORTED_AGENTS
                },
                timeout_seconds=int(os.getenv("BACKLOG_PLANNER_AGENT_TIMEOUT_SECONDS", "600")),
                command_agents=_collect_command_agents(),
            ),
            docdex=DocdexSettings(
                base_url=os.getenv("BACKLOG_PLANNER_DOCDEX_URL", "").strip() or None,
                repo_id=os.getenv("BACKLOG_PLANNER_DOCDEX_REPO_ID", "").strip() or None,
                timeout_seconds=float(os.getenv("BACKLOG_PLANNER_DOCDEX_TIMEOUT_SECONDS", "30")),
            ),
            ordering=OrderingSettings(
                stage_order=_collect_stage_order(),
                planning_context_policy=os.getenv(
                    "BACKLOG_PLANNER_PLANNING_CONTEXT_POLICY",
                    "best_effort",
                )
                .strip()
                .lower(),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on unsupported or out-of-range values."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("BACKLOG_PLANNER_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.agents.default_agent not in SUPPORTED_AGENTS:
            raise ValueError(
                f"Unsupported default agent: {self.agents.default_agent!r}. "
                "Use codex, claude, or gemini.",
            )
        if self.agents.timeout_seconds <= 0:
            raise ValueError("BACKLOG_PLANNER_AGENT_TIMEOUT_SECONDS must be > 0.")
        for command_name, agent in self.agents.command_agents.items():
            if agent not in SUPPORTED_AGENTS:
                raise ValueError(
                    f"Unsupported agent {agent!r} configured for command {command_name!r}.",
                )
        if self.docdex.timeout_seconds <= 0:
            raise ValueError("BACKLOG_PLANNER_DOCDEX_TIMEOUT_SECONDS must be > 0.")
        unknown_stages = [
            stage for stage in self.ordering.stage_order if stage not in VALID_STAGES
        ]
        if unknown_stages:
            raise ValueError(
                f"Unknown stages in BACKLOG_PLANNER_STAGE_ORDER: {', '.join(unknown_stages)}",
            )
        if self.ordering.planning_context_policy not in PLANNING_CONTEXT_POLICIES:
            raise ValueError(
                "Unsupported planning context policy: "
                f"{self.ordering.planning_context_policy!r}. "
                f"Use one of {PLANNING_CONTEXT_POLICIES}.",
            )


def _collect_stage_order() -> tuple[str, ...]:
    raw = os.getenv("BACKLOG_PLANNER_STAGE_ORDER", "").strip()
    if not raw:
        return VALID_STAGES
    return tuple(part.strip().lower() for part in raw.split(",") if part.strip())


def _collect_command_agents() -> dict[str, str]:
    raw = os.getenv("BACKLOG_PLANNER_COMMAND_AGENTS", "").strip()
    if not raw:
        return {}

    mapping: dict[str, str] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "=" not in token:
            raise ValueError(
                "Invalid BACKLOG_PLANNER_COMMAND_AGENTS entry: "
                f"{token!r}. Expected format '<command>=<agent>'.",
            )
        command_name, agent = token.split("=", 1)
        mapping[command_name.strip().lower()] = agent.strip().lower()
    return mapping


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
