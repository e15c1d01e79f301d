"""Dependency-aware task ordering and backlog aggregation for agent-driven workspaces."""

__version__ = "0.1.0"
