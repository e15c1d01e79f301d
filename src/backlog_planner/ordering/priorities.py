"""Dense priority assignment for tasks and the stories and epics that contain them."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from backlog_planner.ordering.models import TaskNode
from backlog_planner.storage.repository import PriorityPlan, TaskPriorityUpdate


def build_priority_plan(
    ordered: Sequence[TaskNode],
    metadata_by_task: Mapping[str, dict[str, Any]] | None = None,
) -> PriorityPlan:
    """Assign `index + 1` to each task; rank epics and stories by their best task."""

    tasks: list[TaskPriorityUpdate] = []
    epic_best: dict[str, int] = {}
    story_best: dict[str, int] = {}
    for index, node in enumerate(ordered):
        priority = index + 1
        tasks.append(
            TaskPriorityUpdate(
                task_id=node.id,
                priority=priority,
                metadata=metadata_by_task.get(node.id) if metadata_by_task is not None else None,
            ),
        )
        epic_best[node.task.epic_id] = min(epic_best.get(node.task.epic_id, priority), priority)
        story_best[node.task.story_id] = min(
            story_best.get(node.task.story_id, priority),
            priority,
        )
    return PriorityPlan(
        tasks=tasks,
        epic_priorities=_dense_ranks(epic_best),
        story_priorities=_dense_ranks(story_best),
    )


def _dense_ranks(best: dict[str, int]) -> dict[str, int]:
    # sorted() is stable, so equal minima keep grouping order.
    ranked = sorted(best.items(), key=lambda item: item[1])
    return {group_id: rank for rank, (group_id, _) in enumerate(ranked, start=1)}
