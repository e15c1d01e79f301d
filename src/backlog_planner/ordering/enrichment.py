"""Complexity scoring and ordering metadata merged onto each task."""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from backlog_planner.ordering.heuristics import classify_task, resolve_classification
from backlog_planner.ordering.models import DependencyImpact, TaskNode, TaskStage

STAGE_WEIGHTS = {
    TaskStage.BACKEND.value: 2.0,
    TaskStage.FRONTEND.value: 1.5,
    TaskStage.FOUNDATION.value: 1.2,
    TaskStage.OTHER.value: 1.0,
}
TEXT_WEIGHT_CAP = 6
TEXT_WEIGHT_CHARS = 200


@dataclass(slots=True)
class EnrichmentResult:
    """Merged task metadata and complexity scores keyed by task id."""

    metadata_by_task: dict[str, dict[str, Any]] = field(default_factory=dict)
    complexity_by_task: dict[str, float] = field(default_factory=dict)


def complexity_band(score: float) -> str:
    if score < 12:
        return "low"
    if score < 24:
        return "medium"
    if score < 40:
        return "high"
    return "very_high"


def complexity_score(  # noqa: PLR0913
    *,
    story_points: float | None,
    impact_total: int,
    dependency_count: int,
    text_length: int,
    stage: str,
    foundation: bool,
    missing_context_open: bool,
) -> float:
    text_weight = min(TEXT_WEIGHT_CAP, math.ceil(text_length / TEXT_WEIGHT_CHARS))
    score = (
        (story_points or 0) * 5
        + impact_total * 3
        + dependency_count * 2
        + text_weight * STAGE_WEIGHTS.get(stage, 1.0)
        + (2 if foundation else 0)
        + (4 if missing_context_open else 0)
    )
    return round(max(1.0, score), 2)


def build_ordering_metadata(
    nodes: Sequence[TaskNode],
    impact: Mapping[str, DependencyImpact],
    missing_context: set[str],
    *,
    doc_context_source: str | None = None,
) -> EnrichmentResult:
    """Compute complexity and merge the `ordering` block into each task's metadata."""

    result = EnrichmentResult()
    for node in nodes:
        task = node.task
        classification = resolve_classification(task)
        inferred = classify_task(
            title=task.title,
            description=task.description,
            task_type=task.type,
        )
        impact_entry = impact.get(node.id, DependencyImpact())
        dependency_count = len(node.dependencies)
        missing_context_open = node.id in missing_context
        score = complexity_score(
            story_points=task.story_points,
            impact_total=impact_entry.total,
            dependency_count=dependency_count,
            text_length=len(f"{task.title or ''} {task.description or ''}".strip()),
            stage=classification.stage,
            foundation=classification.foundation,
            missing_context_open=missing_context_open,
        )
        result.complexity_by_task[node.id] = score

        existing = dict(task.metadata or {})
        existing_ordering = existing.get("ordering")
        if not isinstance(existing_ordering, dict):
            existing_ordering = {}
        reasons = list(inferred.reasons)
        if isinstance(existing.get("stage"), str):
            reasons.insert(0, f"metadata:stage:{existing['stage'].lower()}")
        if isinstance(existing.get("foundation"), bool):
            reasons.insert(0, f"metadata:foundation:{str(existing['foundation']).lower()}")

        ordering: dict[str, Any] = {
            **existing_ordering,
            "stage": classification.stage,
            "foundation": classification.foundation,
            "dependency_impact": impact_entry.to_dict(),
            "dependency_count": dependency_count,
            "complexity_score": score,
            "complexity_band": complexity_band(score),
            "missing_context_open": missing_context_open,
            "classification_reasons": reasons,
        }
        if doc_context_source is not None:
            ordering["doc_context_source"] = doc_context_source
        result.metadata_by_task[node.id] = {
            **existing,
            "stage": classification.stage,
            "foundation": classification.foundation,
            "ordering": ordering,
        }
    return result
