"""Domain models for workspace backlog rows."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Task lifecycle states stored in the workspace."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    CHANGES_REQUESTED = "changes_requested"
    READY_TO_CODE_REVIEW = "ready_to_code_review"
    READY_TO_REVIEW = "ready_to_review"
    READY_TO_QA = "ready_to_qa"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RelationType(str, Enum):
    """Origin of a dependency edge."""

    BLOCKS = "blocks"
    INFERRED_FOUNDATION = "inferred_foundation"
    INFERRED_AGENT = "inferred_agent"


REVIEW_STATUSES = (TaskStatus.READY_TO_CODE_REVIEW.value, TaskStatus.READY_TO_REVIEW.value)
DONE_STATUSES = frozenset({TaskStatus.COMPLETED.value, TaskStatus.CANCELLED.value})
DEFAULT_ORDERING_STATUSES = (
    TaskStatus.NOT_STARTED.value,
    TaskStatus.IN_PROGRESS.value,
    TaskStatus.CHANGES_REQUESTED.value,
    TaskStatus.READY_TO_CODE_REVIEW.value,
    TaskStatus.READY_TO_QA.value,
)
BLOCKED_STATUS_WARNING = "Status 'blocked' is no longer supported; ignoring it in order-tasks."


def is_review_status(status: str | None) -> bool:
    """Return True for any member of the ready-to-review family."""

    return (status or "").strip().lower() in REVIEW_STATUSES


def normalize_status_filter(statuses: Iterable[str] | None) -> tuple[tuple[str, ...], list[str]]:
    """Normalize a status filter for ordering runs.

    Returns the effective statuses and the warnings produced while normalizing.
    An empty filter selects the default ordering statuses.
    """

    raw = [status.strip().lower() for status in (statuses or ()) if status and status.strip()]
    if not raw:
        return DEFAULT_ORDERING_STATUSES, []

    warnings: list[str] = []
    if "blocked" in raw:
        warnings.append(BLOCKED_STATUS_WARNING)

    normalized: list[str] = []
    for status in raw:
        if status == "blocked":
            continue
        expanded = REVIEW_STATUSES if status in REVIEW_STATUSES else (status,)
        for value in expanded:
            if value not in normalized:
                normalized.append(value)
    if not normalized:
        return DEFAULT_ORDERING_STATUSES, warnings
    return tuple(normalized), warnings


@dataclass(slots=True)
class ProjectRow:
    """Project scope row."""

    id: str
    key: str
    name: str | None = None


@dataclass(slots=True)
class EpicRow:
    """Epic scope row."""

    id: str
    key: str
    project_id: str
    title: str
    description: str | None = None
    priority: int | None = None


@dataclass(slots=True)
class StoryRow:
    """User story scope row."""

    id: str
    key: str
    epic_id: str
    project_id: str
    title: str
    description: str | None = None
    priority: int | None = None


@dataclass(slots=True)
class TaskRow:
    """Task joined with its epic and story ordering attributes."""

    id: str
    key: str
    title: str
    description: str
    status: str
    project_id: str
    epic_id: str
    epic_key: str
    story_id: str
    story_key: str
    created_at: datetime
    updated_at: datetime
    type: str | None = None
    story_points: float | None = None
    priority: int | None = None
    assignee_human: str | None = None
    epic_title: str = ""
    epic_description: str | None = None
    epic_priority: int | None = None
    story_title: str = ""
    story_description: str | None = None
    story_priority: int | None = None
    metadata: dict[str, Any] | None = None


@dataclass(slots=True)
class DependencyRow:
    """Dependency edge with the resolved target key and status."""

    task_id: str
    depends_on_task_id: str | None
    depends_on_key: str | None = None
    depends_on_status: str | None = None
    relation_type: str = RelationType.BLOCKS.value


@dataclass(slots=True)
class DependencyInsert:
    """Dependency edge staged for a batch insert."""

    task_id: str
    depends_on_task_id: str
    relation_type: str
    depends_on_key: str | None = None


@dataclass(slots=True)
class TaskScope:
    """Selection filters shared by ordering and backlog queries."""

    project_id: str | None = None
    epic_id: str | None = None
    story_id: str | None = None
    assignee: str | None = None
    statuses: tuple[str, ...] = ()


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task row."""

    key: str
    title: str
    story_id: str
    description: str = ""
    type: str | None = None
    status: str = TaskStatus.NOT_STARTED.value
    story_points: float | None = None
    priority: int | None = None
    assignee_human: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
