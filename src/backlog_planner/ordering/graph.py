"""Dependency graph construction, reachability, and impact analysis."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass

from backlog_planner.models import DONE_STATUSES, DependencyRow, TaskRow
from backlog_planner.ordering.models import DependencyImpact, TaskNode


@dataclass(slots=True)
class DependencyGraph:
    """Task nodes with the reverse adjacency used for impact and scheduling."""

    nodes: list[TaskNode]
    dependents: dict[str, list[str]]
    missing_refs: list[str]


def build_task_nodes(
    tasks: Sequence[TaskRow],
    dependencies: Mapping[str, Sequence[DependencyRow]],
) -> DependencyGraph:
    """Partition each task's edges into in-scope and missing references.

    Edges to tasks outside the selection are treated as satisfied when the
    target is done; otherwise the target key is reported as missing.
    """

    task_ids = {task.id for task in tasks}
    dependents: dict[str, list[str]] = {}
    missing_refs: dict[str, None] = {}
    nodes: list[TaskNode] = []
    for task in tasks:
        rows = list(dependencies.get(task.id, ()))
        missing: list[str] = []
        for row in rows:
            if not row.depends_on_task_id:
                reference = row.depends_on_key or "unknown"
                missing.append(reference)
                missing_refs[reference] = None
                continue
            if row.depends_on_task_id not in task_ids:
                if (row.depends_on_status or "").lower() not in DONE_STATUSES:
                    reference = row.depends_on_key or row.depends_on_task_id
                    missing.append(reference)
                    missing_refs[reference] = None
                continue
            dependents.setdefault(row.depends_on_task_id, []).append(task.id)
        nodes.append(TaskNode(task=task, dependencies=rows, missing_dependencies=missing))
    return DependencyGraph(nodes=nodes, dependents=dependents, missing_refs=list(missing_refs))


def build_dependency_graph(
    tasks: Sequence[TaskRow],
    dependencies: Mapping[str, Sequence[DependencyRow]],
) -> dict[str, set[str]]:
    """Forward adjacency `task_id -> {in-scope dependency ids}`."""

    task_ids = {task.id for task in tasks}
    graph: dict[str, set[str]] = {}
    for task in tasks:
        edges = {
            row.depends_on_task_id
            for row in dependencies.get(task.id, ())
            if row.depends_on_task_id and row.depends_on_task_id in task_ids
        }
        if edges:
            graph[task.id] = edges
    return graph


def has_dependency_path(graph: Mapping[str, Iterable[str]], from_id: str, to_id: str) -> bool:
    """Return True when `from_id` already depends on `to_id`, directly or transitively."""

    if from_id == to_id:
        return True
    visited: set[str] = set()
    stack = [from_id]
    while stack:
        current = stack.pop()
        if current == to_id:
            return True
        if current in visited:
            continue
        visited.add(current)
        for neighbor in graph.get(current, ()):
            if neighbor not in visited:
                stack.append(neighbor)
    return False


def compute_dependency_impact(
    dependents: Mapping[str, Sequence[str]],
) -> dict[str, DependencyImpact]:
    """Count direct and distinct transitive dependents for every task.

    Walks `dependents` with an explicit stack. A child that is still on the
    active stack (a cycle) contributes only itself. Results are memoized by id.
    """

    reach: dict[str, set[str]] = {}
    for root in dependents:
        if root in reach:
            continue
        partial: dict[str, set[str]] = {root: set()}
        on_stack = {root}
        stack = [(root, iter(dict.fromkeys(dependents.get(root, ()))))]
        while stack:
            node, children = stack[-1]
            child = next(children, None)
            if child is None:
                stack.pop()
                on_stack.discard(node)
                found = partial.pop(node)
                found.discard(node)
                reach[node] = found
                if stack:
                    partial[stack[-1][0]].update(found)
                continue
            partial[node].add(child)
            if child in reach:
                partial[node].update(reach[child])
            elif child not in on_stack:
                on_stack.add(child)
                partial[child] = set()
                stack.append((child, iter(dict.fromkeys(dependents.get(child, ())))))

    return {
        task_id: DependencyImpact(
            direct=len(dependents.get(task_id, ())),
            total=len(found),
        )
        for task_id, found in reach.items()
    }
