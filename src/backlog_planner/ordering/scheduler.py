"""Cycle-tolerant topological scheduling with a multi-key tie-break."""

from __future__ import annotations

import heapq
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from backlog_planner.models import TaskStatus
from backlog_planner.ordering.heuristics import resolve_classification
from backlog_planner.ordering.models import (
    DEFAULT_STAGE_ORDER,
    DependencyImpact,
    TaskClassification,
    TaskNode,
)

STATUS_RANK = {
    TaskStatus.IN_PROGRESS.value: 0,
    TaskStatus.CHANGES_REQUESTED.value: 0,
    TaskStatus.NOT_STARTED.value: 1,
    TaskStatus.READY_TO_CODE_REVIEW.value: 2,
    TaskStatus.READY_TO_REVIEW.value: 2,
    TaskStatus.READY_TO_QA.value: 3,
    TaskStatus.COMPLETED.value: 4,
    TaskStatus.CANCELLED.value: 4,
}
_UNRANKED = math.inf


@dataclass(slots=True)
class SchedulingContext:
    """Per-run inputs to the task comparator."""

    impact: Mapping[str, DependencyImpact] = field(default_factory=dict)
    complexity: Mapping[str, float] = field(default_factory=dict)
    missing_context: set[str] = field(default_factory=set)
    stage_order: Mapping[str, int] = field(default_factory=lambda: build_stage_order_map(()))
    agent_rank: Mapping[str, int] | None = None
    classifications: dict[str, TaskClassification] = field(default_factory=dict)

    def classification(self, node: TaskNode) -> TaskClassification:
        cached = self.classifications.get(node.id)
        if cached is None:
            cached = resolve_classification(node.task)
            self.classifications[node.id] = cached
        return cached


@dataclass(slots=True)
class ScheduleResult:
    """Execution order; cycle members are appended after the acyclic prefix."""

    ordered: list[TaskNode]
    cycle: bool
    cycle_members: set[str]


def build_stage_order_map(stage_order: Sequence[str]) -> dict[str, int]:
    """Map stage -> rank, ignoring unknown stages; empty input uses the default order."""

    mapping: dict[str, int] = {}
    for index, stage in enumerate(stage_order):
        normalized = stage.strip().lower()
        if normalized in DEFAULT_STAGE_ORDER and normalized not in mapping:
            mapping[normalized] = index
    if not mapping:
        mapping = {stage: index for index, stage in enumerate(DEFAULT_STAGE_ORDER)}
    return mapping


def task_sort_key(node: TaskNode, context: SchedulingContext) -> tuple:
    """Comparator key; earlier elements take precedence over later ones."""

    task = node.task
    classification = context.classification(node)
    stage_rank = context.stage_order.get(
        classification.stage,
        context.stage_order.get("other", _UNRANKED),
    )
    impact = context.impact.get(node.id)
    if context.agent_rank is None:
        agent_rank: tuple[int, float] = (0, 0)
    elif node.id in context.agent_rank:
        agent_rank = (0, context.agent_rank[node.id])
    else:
        agent_rank = (1, 0)
    return (
        _nulls_last(task.epic_priority),
        _nulls_last(task.story_priority),
        node.id in context.missing_context,
        not classification.foundation,
        stage_rank,
        -(impact.total if impact is not None else 0),
        -context.complexity.get(node.id, 0),
        agent_rank,
        _nulls_last(task.priority),
        _nulls_last(task.story_points),
        task.created_at.timestamp(),
        STATUS_RANK.get(task.status.lower(), _UNRANKED),
        task.key,
    )


def topological_sort(
    nodes: Sequence[TaskNode],
    dependents: Mapping[str, Sequence[str]],
    context: SchedulingContext,
) -> ScheduleResult:
    """Kahn's algorithm with the ready set kept in a heap keyed by `task_sort_key`.

    Tasks left with unmet in-degree sit on a cycle; they are appended in
    comparator order and reported as cycle members instead of being dropped.
    """

    node_by_id = {node.id: node for node in nodes}
    indegree = dict.fromkeys(node_by_id, 0)
    for targets in dependents.values():
        for target in targets:
            if target in indegree:
                indegree[target] += 1

    keys = {node.id: task_sort_key(node, context) for node in nodes}
    ready = [(keys[node.id], node.id) for node in nodes if indegree[node.id] == 0]
    heapq.heapify(ready)

    ordered: list[TaskNode] = []
    visited: set[str] = set()
    while ready:
        _, current = heapq.heappop(ready)
        ordered.append(node_by_id[current])
        visited.add(current)
        for neighbor in dependents.get(current, ()):
            if neighbor not in indegree:
                continue
            indegree[neighbor] -= 1
            if indegree[neighbor] == 0:
                heapq.heappush(ready, (keys[neighbor], neighbor))

    cycle_members = {node.id for node in nodes if node.id not in visited}
    if cycle_members:
        remaining = sorted(
            (node for node in nodes if node.id in cycle_members),
            key=lambda node: keys[node.id],
        )
        ordered.extend(remaining)
    return ScheduleResult(ordered=ordered, cycle=bool(cycle_members), cycle_members=cycle_members)


def _nulls_last(value: float | None) -> float:
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return _UNRANKED
    return value
