from __future__ import annotations

import allure
import pytest

from backlog_planner.ordering.enrichment import (
    build_ordering_metadata,
    complexity_band,
    complexity_score,
)
from backlog_planner.ordering.graph import build_task_nodes
from backlog_planner.ordering.heuristics import classify_task, resolve_classification
from backlog_planner.ordering.models import DependencyImpact
from backlog_planner.ordering.priorities import build_priority_plan

pytestmark = [
    allure.epic("Task Ordering"),
    allure.feature("Classification And Enrichment"),
]


def test_classify_backend_foundation_title() -> None:
    classification = classify_task(
        title="Setup Express server",
        description=None,
        task_type=None,
    )

    assert classification.stage == "backend"
    assert classification.foundation is True
    assert classification.reasons == [
        "backend:express",
        "backend:server",
        "foundation:setup",
        "foundation:express",
        "foundation:server",
    ]


def test_classify_frontend_from_description() -> None:
    classification = classify_task(
        title="Style the checkout page",
        description="CSS tweaks",
        task_type="feature",
    )

    assert classification.stage == "frontend"
    assert classification.foundation is False


def test_foundation_keywords_only_count_in_title() -> None:
    classification = classify_task(
        title="Write docs",
        description="setup steps for newcomers",
        task_type=None,
    )

    assert classification.stage == "other"
    assert classification.foundation is False


def test_chore_type_marks_foundation() -> None:
    classification = classify_task(title="Bump deps", description=None, task_type="Chore")

    assert classification.stage == "foundation"
    assert classification.foundation is True
    assert classification.reasons == ["type:chore"]


@pytest.mark.parametrize(
    ("metadata", "stage", "foundation"),
    [
        ({"stage": "Frontend"}, "frontend", False),
        ({"stage": "foundation"}, "foundation", True),
        ({"stage": "backend", "foundation": True}, "backend", True),
        ({"stage": "bogus"}, "backend", False),
    ],
)
def test_metadata_overrides_heuristics(task_factory, metadata, stage, foundation) -> None:
    task = task_factory("T1", title="Add orders endpoint", metadata=metadata)

    classification = resolve_classification(task)

    assert classification.stage == stage
    assert classification.foundation is foundation


def test_complexity_score_components() -> None:
    score = complexity_score(
        story_points=3,
        impact_total=2,
        dependency_count=1,
        text_length=250,
        stage="backend",
        foundation=True,
        missing_context_open=True,
    )

    assert score == 33.0
    assert complexity_band(score) == "high"


def test_complexity_score_floor_and_text_cap() -> None:
    floor = complexity_score(
        story_points=None,
        impact_total=0,
        dependency_count=0,
        text_length=0,
        stage="other",
        foundation=False,
        missing_context_open=False,
    )
    capped = complexity_score(
        story_points=None,
        impact_total=0,
        dependency_count=0,
        text_length=5_000,
        stage="other",
        foundation=False,
        missing_context_open=False,
    )

    assert floor == 1.0
    assert capped == 6.0


@pytest.mark.parametrize(
    ("score", "band"),
    [(11.99, "low"), (12, "medium"), (23.9, "medium"), (24, "high"), (40, "very_high")],
)
def test_complexity_band_thresholds(score, band) -> None:
    assert complexity_band(score) == band


def test_ordering_metadata_merges_existing_keys(task_factory) -> None:
    task = task_factory(
        "T1",
        title="Render form",
        metadata={"stage": "backend", "custom": 1, "ordering": {"note": "keep"}},
    )
    nodes = build_task_nodes([task], {}).nodes

    result = build_ordering_metadata(
        nodes,
        {task.id: DependencyImpact(direct=1, total=2)},
        {task.id},
        doc_context_source="docdex:sds/a.md",
    )

    assert result.complexity_by_task == {task.id: 12.0}
    assert result.metadata_by_task[task.id] == {
        "stage": "backend",
        "custom": 1,
        "foundation": False,
        "ordering": {
            "note": "keep",
            "stage": "backend",
            "foundation": False,
            "dependency_impact": {"direct": 1, "total": 2},
            "dependency_count": 0,
            "complexity_score": 12.0,
            "complexity_band": "medium",
            "missing_context_open": True,
            "classification_reasons": ["metadata:stage:backend", "frontend:render"],
            "doc_context_source": "docdex:sds/a.md",
        },
    }


def test_priority_plan_ranks_groups_by_best_task(task_factory) -> None:
    tasks = [
        task_factory("B", epic_id="e2", story_id="s2"),
        task_factory("A", epic_id="e1", story_id="s1"),
        task_factory("C", epic_id="e1", story_id="s3"),
        task_factory("D", epic_id="e2", story_id="s2"),
    ]
    nodes = build_task_nodes(tasks, {}).nodes

    plan = build_priority_plan(nodes, {"id-A": {"stage": "other"}})

    assert [(update.task_id, update.priority) for update in plan.tasks] == [
        ("id-B", 1),
        ("id-A", 2),
        ("id-C", 3),
        ("id-D", 4),
    ]
    assert plan.tasks[1].metadata == {"stage": "other"}
    assert plan.tasks[0].metadata is None
    assert plan.epic_priorities == {"e2": 1, "e1": 2}
    assert plan.story_priorities == {"s2": 1, "s1": 2, "s3": 3}
