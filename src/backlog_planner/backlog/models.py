"""Backlog summary types."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from backlog_planner.models import DONE_STATUSES, TaskStatus, is_review_status


class BacklogLane(str, Enum):
    """Status-derived backlog bucket, in execution order."""

    IMPLEMENTATION = "implementation"
    REVIEW = "review"
    QA = "qa"
    DONE = "done"


LANE_ORDER = (BacklogLane.IMPLEMENTATION, BacklogLane.REVIEW, BacklogLane.QA, BacklogLane.DONE)
LANE_RANK = {lane: index for index, lane in enumerate(LANE_ORDER)}

IMPLEMENTATION_STATUSES = frozenset({TaskStatus.NOT_STARTED.value, TaskStatus.IN_PROGRESS.value})
QA_STATUSES = frozenset({TaskStatus.READY_TO_QA.value})

STORY_STATUS_PRECEDENCE = (
    TaskStatus.COMPLETED.value,
    TaskStatus.CANCELLED.value,
    TaskStatus.READY_TO_QA.value,
    TaskStatus.READY_TO_CODE_REVIEW.value,
    TaskStatus.CHANGES_REQUESTED.value,
    TaskStatus.IN_PROGRESS.value,
    TaskStatus.NOT_STARTED.value,
)


def lane_for_status(status: str | None) -> BacklogLane:
    normalized = (status or "").lower()
    if normalized in IMPLEMENTATION_STATUSES:
        return BacklogLane.IMPLEMENTATION
    if is_review_status(normalized):
        return BacklogLane.REVIEW
    if normalized in QA_STATUSES:
        return BacklogLane.QA
    if normalized in DONE_STATUSES:
        return BacklogLane.DONE
    return BacklogLane.IMPLEMENTATION


def derive_story_status(statuses: set[str]) -> str | None:
    """Pick the most advanced status present among a story's tasks."""

    for status in STORY_STATUS_PRECEDENCE:
        if status in statuses:
            return status
    return None


def truncate(value: str | None, limit: int = 100) -> str:
    if not value:
        return ""
    if len(value) <= limit:
        return value
    return f"{value[: limit - 3]}..."


@dataclass(slots=True)
class LaneTotals:
    tasks: int = 0
    story_points: float = 0


@dataclass(slots=True)
class BacklogTotals:
    """Task counts and story points per lane."""

    implementation: LaneTotals = field(default_factory=LaneTotals)
    review: LaneTotals = field(default_factory=LaneTotals)
    qa: LaneTotals = field(default_factory=LaneTotals)
    done: LaneTotals = field(default_factory=LaneTotals)

    def add(self, lane: BacklogLane, story_points: float | None) -> None:
        totals: LaneTotals = getattr(self, lane.value)
        totals.tasks += 1
        if story_points is not None and math.isfinite(story_points):
            totals.story_points += story_points


@dataclass(slots=True)
class TaskBacklogRow:
    task_id: str
    task_key: str
    epic_key: str
    user_story_key: str
    title: str
    description: str
    status: str
    story_points: float | None
    priority: int | None
    assignee: str | None
    dependency_keys: list[str]

    @property
    def lane(self) -> BacklogLane:
        return lane_for_status(self.status)


@dataclass(slots=True)
class StoryBacklogSummary:
    user_story_id: str
    user_story_key: str
    epic_key: str
    title: str
    description: str | None
    priority: int | None
    status: str | None = None
    totals: BacklogTotals = field(default_factory=BacklogTotals)


@dataclass(slots=True)
class EpicBacklogSummary:
    epic_id: str
    epic_key: str
    title: str
    description: str | None
    priority: int | None
    totals: BacklogTotals = field(default_factory=BacklogTotals)
    stories: list[StoryBacklogSummary] = field(default_factory=list)


@dataclass(slots=True)
class CrossLaneDependency:
    """Dependency whose target sits in a different lane than the dependent task."""

    task_key: str
    depends_on_key: str
    task_lane: str
    dependency_lane: str


@dataclass(slots=True)
class BacklogOrderingMeta:
    requested: bool
    applied: bool = False
    reason: str = "default_order"


@dataclass(slots=True)
class BacklogScope:
    project_id: str | None = None
    project_key: str | None = None
    epic_key: str | None = None
    user_story_key: str | None = None
    assignee: str | None = None


@dataclass(slots=True)
class BacklogQuery:
    """Inputs for one `backlog` view."""

    project_key: str | None = None
    epic_key: str | None = None
    story_key: str | None = None
    assignee: str | None = None
    statuses: tuple[str, ...] = ()
    order_by_dependencies: bool = False
    verbose: bool = False


@dataclass(slots=True)
class BacklogResult:
    """Backlog summary, collected warnings, and ordering/cross-lane metadata."""

    scope: BacklogScope
    totals: BacklogTotals
    epics: list[EpicBacklogSummary]
    tasks: list[TaskBacklogRow]
    warnings: list[str]
    ordering: BacklogOrderingMeta
    cross_lane_dependencies: list[CrossLaneDependency]

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": {
                "scope": asdict(self.scope),
                "totals": asdict(self.totals),
                "epics": [asdict(epic) for epic in self.epics],
                "tasks": [asdict(task) for task in self.tasks],
            },
            "warnings": list(self.warnings),
            "meta": {
                "ordering": asdict(self.ordering),
                "cross_lane_dependencies": {
                    "count": len(self.cross_lane_dependencies),
                    "dependencies": [asdict(dep) for dep in self.cross_lane_dependencies],
                },
            },
        }
