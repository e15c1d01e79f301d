from __future__ import annotations

import allure
import pytest

from backlog_planner.backlog.models import (
    BacklogLane,
    BacklogQuery,
    CrossLaneDependency,
    derive_story_status,
    lane_for_status,
    truncate,
)
from backlog_planner.backlog.service import BacklogService
from backlog_planner.config import Settings
from backlog_planner.errors import UnknownScopeError
from backlog_planner.ordering.service import TaskOrderingService
from backlog_planner.storage.repository import WorkspaceRepository

pytestmark = [
    allure.epic("Backlog"),
    allure.feature("Backlog Aggregation"),
]


@pytest.fixture()
def backlog(seed, db_path) -> BacklogService:
    return BacklogService(
        repository=seed.repository,
        ordering_factory=lambda: TaskOrderingService(repository=WorkspaceRepository(db_path)),
    )


def _keys(result) -> list[str]:
    return [row.task_key for row in result.tasks]


@pytest.mark.parametrize(
    ("status", "lane"),
    [
        ("not_started", BacklogLane.IMPLEMENTATION),
        ("IN_PROGRESS", BacklogLane.IMPLEMENTATION),
        ("changes_requested", BacklogLane.IMPLEMENTATION),
        ("ready_to_code_review", BacklogLane.REVIEW),
        ("ready_to_review", BacklogLane.REVIEW),
        ("ready_to_qa", BacklogLane.QA),
        ("completed", BacklogLane.DONE),
        ("cancelled", BacklogLane.DONE),
        (None, BacklogLane.IMPLEMENTATION),
    ],
)
def test_lane_for_status(status, lane) -> None:
    assert lane_for_status(status) is lane


def test_story_status_and_truncate_helpers() -> None:
    assert derive_story_status({"in_progress", "ready_to_qa"}) == "ready_to_qa"
    assert derive_story_status({"not_started"}) == "not_started"
    assert derive_story_status(set()) is None
    assert truncate("x" * 120) == "x" * 97 + "..."
    assert truncate(None) == ""


def test_lane_totals_summaries_and_default_order(seed, backlog) -> None:
    urgent_story = seed.repository.create_story(
        epic_id=seed.epic.id,
        key="PROJ-S2",
        title="Payments",
        priority=1,
    )
    seed.task("PROJ-A", story_points=3)
    seed.task("PROJ-B", status="in_progress", story_points=2)
    seed.task("PROJ-C", status="ready_to_review", story_points=1)
    seed.task("PROJ-D", status="ready_to_qa", story_points=5)
    seed.task("PROJ-E", status="completed", story_points=8)
    seed.task("PROJ-F", status="cancelled")
    seed.task("PROJ-G", status="changes_requested", story=urgent_story)

    result = backlog.get_backlog(BacklogQuery(project_key="PROJ"))

    assert _keys(result) == ["PROJ-G", "PROJ-A", "PROJ-B", "PROJ-C", "PROJ-D", "PROJ-E", "PROJ-F"]
    totals = result.totals
    assert (totals.implementation.tasks, totals.implementation.story_points) == (3, 5)
    assert (totals.review.tasks, totals.review.story_points) == (1, 1)
    assert (totals.qa.tasks, totals.qa.story_points) == (1, 5)
    assert (totals.done.tasks, totals.done.story_points) == (2, 8)

    [epic] = result.epics
    assert epic.epic_key == "PROJ-E1"
    assert epic.totals.done.tasks == 2
    assert [story.user_story_key for story in epic.stories] == ["PROJ-S2", "PROJ-S1"]
    assert [story.status for story in epic.stories] == ["changes_requested", "completed"]
    assert epic.stories[1].totals.implementation.tasks == 2

    payload = result.to_dict()
    assert payload["meta"]["ordering"] == {
        "requested": False,
        "applied": False,
        "reason": "default_order",
    }
    assert payload["summary"]["scope"]["project_key"] == "PROJ"
    assert payload["warnings"] == []


def test_cross_lane_dependencies_are_reported(seed, backlog) -> None:
    building = seed.task("PROJ-A", status="in_progress")
    shipped = seed.task("PROJ-B", status="completed")
    sibling = seed.task("PROJ-C")
    seed.depends(building, shipped)
    seed.depends(building, sibling)

    result = backlog.get_backlog(BacklogQuery(project_key="PROJ"))

    assert result.cross_lane_dependencies == [
        CrossLaneDependency(
            task_key="PROJ-A",
            depends_on_key="PROJ-B",
            task_lane="implementation",
            dependency_lane="done",
        ),
    ]
    assert result.warnings == [
        "Cross-lane dependencies detected (1). Ordering by lane may be misleading.",
    ]
    assert result.to_dict()["meta"]["cross_lane_dependencies"]["count"] == 1


def test_dependency_ordering_reuses_the_scheduler(seed, backlog) -> None:
    dependent = seed.task("PROJ-A")
    blocker = seed.task("PROJ-B")
    seed.task("PROJ-C", status="completed")
    seed.depends(dependent, blocker)

    result = backlog.get_backlog(BacklogQuery(project_key="PROJ", order_by_dependencies=True))

    assert _keys(result) == ["PROJ-B", "PROJ-A", "PROJ-C"]
    assert result.ordering.applied is True
    assert result.ordering.reason == "dependency_graph"
    assert "Dry run: priorities and dependency inferences were not persisted." in result.warnings
    stored = seed.repository.get_task_by_key("PROJ-B")
    assert stored.priority is None


def test_dependency_ordering_without_project_uses_lane_order(seed, backlog) -> None:
    dependent = seed.task("PROJ-A")
    blocker = seed.task("PROJ-B")
    seed.depends(dependent, blocker)

    result = backlog.get_backlog(BacklogQuery(order_by_dependencies=True))

    assert _keys(result) == ["PROJ-B", "PROJ-A"]
    assert result.ordering.reason == "missing_project_scope"
    assert result.ordering.applied is False
    assert result.warnings == [
        "Dependency ordering requires a project scope; using default ordering.",
    ]
    assert result.scope.project_key is None


def test_failed_dependency_ordering_falls_back_to_heuristics(seed) -> None:
    first = seed.task("PROJ-A")
    second = seed.task("PROJ-B")
    seed.depends(first, second)
    seed.depends(second, first)

    def broken_factory() -> TaskOrderingService:
        raise RuntimeError("workspace locked")

    service = BacklogService(repository=seed.repository, ordering_factory=broken_factory)

    result = service.get_backlog(
        BacklogQuery(project_key="PROJ", order_by_dependencies=True, verbose=True),
    )

    assert _keys(result) == ["PROJ-A", "PROJ-B"]
    assert result.ordering.reason == "heuristic_fallback"
    assert result.warnings == [
        "Dependency ordering failed; falling back to heuristic ordering. workspace locked",
        "Dependency cycle detected in implementation bucket. Falling back to priority order.",
    ]


def test_story_scope_without_project(seed, backlog) -> None:
    seed.task("PROJ-A")

    result = backlog.get_backlog(BacklogQuery(story_key="PROJ-S1", statuses=("NOT_STARTED",)))

    assert _keys(result) == ["PROJ-A"]
    assert result.scope.user_story_key == "PROJ-S1"


@pytest.mark.parametrize(
    ("query", "message"),
    [
        (BacklogQuery(project_key="NOPE"), "Unknown project key: NOPE"),
        (BacklogQuery(project_key="PROJ", epic_key="PROJ-E9"), "Unknown epic key: PROJ-E9"),
        (
            BacklogQuery(project_key="PROJ", story_key="PROJ-S9"),
            "Unknown user story key: PROJ-S9",
        ),
    ],
)
def test_unknown_scope_keys_raise(backlog, query, message) -> None:
    with pytest.raises(UnknownScopeError, match=message):
        backlog.get_backlog(query)


def test_dependency_ordering_ignores_blank_agent_templates(seed, db_path, monkeypatch) -> None:
    monkeypatch.setenv("BACKLOG_PLANNER_CODEX_COMMAND_TEMPLATE", " ")
    dependent = seed.task("PROJ-A")
    blocker = seed.task("PROJ-B")
    seed.depends(dependent, blocker)

    with BacklogService.create(Settings.from_env(db_path)) as service:
        result = service.get_backlog(
            BacklogQuery(project_key="PROJ", order_by_dependencies=True),
        )

    assert _keys(result) == ["PROJ-B", "PROJ-A"]
    assert result.ordering.reason == "dependency_graph"
