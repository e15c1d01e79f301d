"""Domain models for task ordering runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from backlog_planner.models import DependencyRow, EpicRow, ProjectRow, StoryRow, TaskRow


class TaskStage(str, Enum):
    """Execution stage used as an ordering tie-break."""

    FOUNDATION = "foundation"
    BACKEND = "backend"
    FRONTEND = "frontend"
    OTHER = "other"


DEFAULT_STAGE_ORDER = (
    TaskStage.FOUNDATION.value,
    TaskStage.BACKEND.value,
    TaskStage.FRONTEND.value,
    TaskStage.OTHER.value,
)


@dataclass(slots=True)
class TaskClassification:
    """Stage, foundation flag, and the keyword hits that produced them."""

    stage: str
    foundation: bool
    reasons: list[str] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class DependencyImpact:
    """How many tasks completing a task unblocks."""

    direct: int = 0
    total: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"direct": self.direct, "total": self.total}


@dataclass(slots=True)
class TaskNode:
    """Task with its dependency rows for one ordering invocation."""

    task: TaskRow
    dependencies: list[DependencyRow]
    missing_dependencies: list[str]

    @property
    def id(self) -> str:
        return self.task.id

    @property
    def key(self) -> str:
        return self.task.key

    def dependency_keys(self) -> list[str]:
        keys: list[str] = []
        for dependency in self.dependencies:
            key = dependency.depends_on_key or dependency.depends_on_task_id
            if key:
                keys.append(key)
        return keys


@dataclass(slots=True)
class TaskOrderItem:
    """One entry of the computed execution order."""

    task_id: str
    task_key: str
    title: str
    status: str
    story_points: float | None
    priority: int
    epic_id: str
    epic_key: str
    story_id: str
    story_key: str
    story_title: str
    dependency_keys: list[str]
    dependency_impact: DependencyImpact
    cycle_detected: bool = False
    metadata: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "task_id": self.task_id,
            "task_key": self.task_key,
            "title": self.title,
            "status": self.status,
            "story_points": self.story_points,
            "priority": self.priority,
            "epic_id": self.epic_id,
            "epic_key": self.epic_key,
            "story_id": self.story_id,
            "story_key": self.story_key,
            "story_title": self.story_title,
            "dependency_keys": list(self.dependency_keys),
            "dependency_impact": self.dependency_impact.to_dict(),
            "metadata": self.metadata,
        }
        if self.cycle_detected:
            payload["cycle_detected"] = True
        return payload


@dataclass(slots=True)
class TaskOrderingRequest:
    """Inputs for one `order-tasks` run."""

    project_key: str
    epic_key: str | None = None
    story_key: str | None = None
    assignee: str | None = None
    statuses: tuple[str, ...] = ()
    agent_name: str | None = None
    agent_stream: bool = True
    stage_order: tuple[str, ...] = ()
    inject_foundation_deps: bool = True
    infer_dependencies: bool = False
    enrich_metadata: bool = True
    apply: bool = True
    planning_context_policy: str = "best_effort"


@dataclass(slots=True)
class TaskOrderingResult:
    """Ordered tasks plus the degraded-path warnings collected on the way."""

    project: ProjectRow
    ordered: list[TaskOrderItem]
    warnings: list[str]
    epic: EpicRow | None = None
    story: StoryRow | None = None
    job_id: str | None = None
    command_run_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "project": {"id": self.project.id, "key": self.project.key, "name": self.project.name},
            "epic": (
                {"id": self.epic.id, "key": self.epic.key, "title": self.epic.title}
                if self.epic is not None
                else None
            ),
            "ordered": [item.to_dict() for item in self.ordered],
            "warnings": list(self.warnings),
            "job_id": self.job_id,
            "command_run_id": self.command_run_id,
        }
