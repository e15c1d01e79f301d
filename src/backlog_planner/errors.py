"""Error hierarchy shared by the planner services."""

from __future__ import annotations


class BacklogPlannerError(RuntimeError):
    """Base class for fatal planner errors surfaced to the CLI."""


class WorkspaceNotFoundError(BacklogPlannerError):
    """Workspace database file does not exist."""


class WorkspaceSchemaError(BacklogPlannerError):
    """Workspace database lacks tables required by the planner."""

    def __init__(self, missing_tables: list[str]) -> None:
        super().__init__(
            "Workspace database is missing required tables: "
            f"{', '.join(missing_tables)}. Run `backlog-planner init` first.",
        )
        self.missing_tables = missing_tables


class UnknownScopeError(BacklogPlannerError):
    """Project, epic, or story key could not be resolved."""


class PlanningContextError(BacklogPlannerError):
    """Planning context policy rejected the resolved documents."""
