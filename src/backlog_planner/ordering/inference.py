"""Cycle-safe edge injection: foundation-first edges and agent-inferred dependencies."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from backlog_planner.models import DependencyInsert, DependencyRow, RelationType, TaskRow
from backlog_planner.ordering.graph import build_dependency_graph, has_dependency_path
from backlog_planner.ordering.heuristics import resolve_classification
from backlog_planner.ordering.models import TaskClassification
from backlog_planner.ordering.output_parser import extract_json

logger = logging.getLogger(__name__)

SKIPPED_EDGE_SAMPLE_LIMIT = 5


@dataclass(slots=True)
class InferredDependency:
    """Dependency keys an agent proposed for one task."""

    task_key: str
    depends_on_keys: list[str]


@dataclass(slots=True)
class EdgeInjectionReport:
    """Edges staged for insert plus the ones rejected because they would close a cycle."""

    relation_type: str
    inserts: list[DependencyInsert] = field(default_factory=list)
    skipped_cycles: int = 0
    skipped_samples: list[str] = field(default_factory=list)


def plan_edge_inserts(
    tasks: Sequence[TaskRow],
    dependencies: Mapping[str, Sequence[DependencyRow]],
    candidates: Iterable[tuple[TaskRow, TaskRow]],
    *,
    relation_type: str,
) -> EdgeInjectionReport:
    """Stage `task -> depends_on` edges that are new and keep the graph acyclic.

    Each accepted edge is added to the working graph so later candidates are
    checked against it.
    """

    graph = build_dependency_graph(tasks, dependencies)
    existing: dict[str, set[str]] = {
        task.id: {
            row.depends_on_task_id
            for row in dependencies.get(task.id, ())
            if row.depends_on_task_id
        }
        for task in tasks
    }
    report = EdgeInjectionReport(relation_type=relation_type)
    for task, depends_on in candidates:
        if task.id == depends_on.id:
            continue
        task_existing = existing.setdefault(task.id, set())
        if depends_on.id in task_existing:
            continue
        if has_dependency_path(graph, depends_on.id, task.id):
            report.skipped_cycles += 1
            if len(report.skipped_samples) < SKIPPED_EDGE_SAMPLE_LIMIT:
                report.skipped_samples.append(f"{task.key}->{depends_on.key}")
            continue
        report.inserts.append(
            DependencyInsert(
                task_id=task.id,
                depends_on_task_id=depends_on.id,
                relation_type=relation_type,
                depends_on_key=depends_on.key,
            ),
        )
        task_existing.add(depends_on.id)
        graph.setdefault(task.id, set()).add(depends_on.id)
    return report


def inject_foundation_dependencies(
    tasks: Sequence[TaskRow],
    dependencies: Mapping[str, Sequence[DependencyRow]],
    *,
    classify: Callable[[TaskRow], TaskClassification] = resolve_classification,
) -> EdgeInjectionReport:
    """Make every non-foundation task depend on every foundation task, cycle-safe."""

    foundation_flags = {task.id: classify(task).foundation for task in tasks}
    foundation_tasks = [task for task in tasks if foundation_flags[task.id]]
    other_tasks = [task for task in tasks if not foundation_flags[task.id]]
    if not foundation_tasks or not other_tasks:
        return EdgeInjectionReport(relation_type=RelationType.INFERRED_FOUNDATION.value)
    report = plan_edge_inserts(
        tasks,
        dependencies,
        ((task, foundation) for task in other_tasks for foundation in foundation_tasks),
        relation_type=RelationType.INFERRED_FOUNDATION.value,
    )
    logger.info(
        "Foundation injection: %d foundation tasks, %d staged edges, %d skipped for cycles",
        len(foundation_tasks),
        len(report.inserts),
        report.skipped_cycles,
    )
    return report


def apply_inferred_dependencies(
    tasks: Sequence[TaskRow],
    dependencies: Mapping[str, Sequence[DependencyRow]],
    inferred: Sequence[InferredDependency],
) -> EdgeInjectionReport:
    """Resolve agent-inferred keys to tasks and stage the cycle-safe edges."""

    task_by_key = {task.key: task for task in tasks}
    candidates: list[tuple[TaskRow, TaskRow]] = []
    for entry in inferred:
        task = task_by_key.get(entry.task_key)
        if task is None:
            continue
        for depends_on_key in entry.depends_on_keys:
            depends_on = task_by_key.get(depends_on_key)
            if depends_on is not None:
                candidates.append((task, depends_on))
    return plan_edge_inserts(
        tasks,
        dependencies,
        candidates,
        relation_type=RelationType.INFERRED_AGENT.value,
    )


def merge_inserts(
    tasks: Sequence[TaskRow],
    dependencies: dict[str, list[DependencyRow]],
    inserts: Sequence[DependencyInsert],
) -> None:
    """Add staged edges to the in-memory dependency map."""

    task_by_id = {task.id: task for task in tasks}
    for insert in inserts:
        target = task_by_id.get(insert.depends_on_task_id)
        dependencies.setdefault(insert.task_id, []).append(
            DependencyRow(
                task_id=insert.task_id,
                depends_on_task_id=insert.depends_on_task_id,
                depends_on_key=target.key if target is not None else insert.depends_on_key,
                depends_on_status=target.status if target is not None else None,
                relation_type=insert.relation_type,
            ),
        )


def injection_warnings(report: EdgeInjectionReport, *, persisted: bool) -> list[str]:
    """Summarize an injection report as one count warning plus one cycle-skip warning."""

    label = (
        "foundation"
        if report.relation_type == RelationType.INFERRED_FOUNDATION.value
        else "agent"
    )
    warnings: list[str] = []
    count = len(report.inserts)
    if count:
        if not persisted:
            warnings.append(f"Dry run: inferred {count} {label} deps (not persisted).")
        elif label == "foundation":
            warnings.append(f"Injected {count} inferred foundation deps.")
        else:
            warnings.append(f"Applied {count} inferred agent deps.")
    if report.skipped_cycles:
        message = f"Skipped {report.skipped_cycles} inferred {label} deps due to cycles."
        if report.skipped_samples:
            message = f"{message} Sample: {', '.join(report.skipped_samples)}"
        warnings.append(message)
    return warnings


def parse_dependency_inference_output(
    output: str,
    valid_task_keys: set[str],
    warnings: list[str],
) -> list[InferredDependency]:
    """Validate an agent's dependency inference response.

    Accepts `{"dependencies": [...]}`, `{"deps": [...]}`, or a bare list.
    Invalid entries are counted per category and reported once per category.
    """

    parsed = extract_json(output)
    if parsed is None:
        warnings.append("Agent dependency inference output could not be parsed; skipping.")
        return []
    entries = _dependency_entries(parsed)
    if entries is None:
        warnings.append("Agent dependency inference missing dependencies list; skipping.")
        return []

    dependencies_by_task: dict[str, dict[str, None]] = {}
    invalid_tasks = 0
    invalid_deps = 0
    self_deps = 0
    for entry in entries:
        task_key = _first_str(entry, "task_key", "taskKey")
        if task_key is None or task_key not in valid_task_keys:
            invalid_tasks += 1
            continue
        raw_depends = _first_present(entry, "depends_on", "dependsOn")
        if raw_depends is None:
            continue
        if not isinstance(raw_depends, list):
            invalid_deps += 1
            continue
        deps = dependencies_by_task.get(task_key, {})
        for dep in raw_depends:
            if not isinstance(dep, str):
                invalid_deps += 1
            elif dep == task_key:
                self_deps += 1
            elif dep not in valid_task_keys:
                invalid_deps += 1
            else:
                deps[dep] = None
        if deps:
            dependencies_by_task[task_key] = deps

    if invalid_tasks:
        warnings.append(f"Agent dependency inference ignored {invalid_tasks} invalid task keys.")
    if invalid_deps:
        warnings.append(
            f"Agent dependency inference ignored {invalid_deps} invalid dependency keys.",
        )
    if self_deps:
        warnings.append(f"Agent dependency inference ignored {self_deps} self-dependencies.")
    return [
        InferredDependency(task_key=task_key, depends_on_keys=list(deps))
        for task_key, deps in dependencies_by_task.items()
    ]


def _dependency_entries(parsed: Any) -> list[Any] | None:
    if isinstance(parsed, list):
        return parsed
    if isinstance(parsed, dict):
        for field_name in ("dependencies", "deps"):
            value = parsed.get(field_name)
            if isinstance(value, list):
                return value
    return None


def _first_str(entry: Any, *names: str) -> str | None:
    if not isinstance(entry, dict):
        return None
    for name in names:
        value = entry.get(name)
        if isinstance(value, str):
            return value
    return None


def _first_present(entry: dict[str, Any], *names: str) -> Any | None:
    for name in names:
        value = entry.get(name)
        if value is not None:
            return value
    return None
