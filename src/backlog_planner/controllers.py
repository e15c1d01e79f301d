"""Controllers for planner CLI commands."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from backlog_planner.backlog.models import LANE_ORDER, BacklogQuery, BacklogResult, truncate
from backlog_planner.backlog.service import BacklogService
from backlog_planner.config import Settings
from backlog_planner.ordering.models import TaskOrderingRequest, TaskOrderingResult
from backlog_planner.ordering.service import TaskOrderingService
from backlog_planner.storage.repository import WorkspaceRepository


@dataclass(slots=True)
class InitCommand:
    """CLI inputs for workspace initialization."""

    db_path: Path | None


@dataclass(slots=True)
class OrderTasksCommand:
    """CLI inputs for dependency-aware task ordering."""

    db_path: Path | None
    project_key: str
    epic_key: str | None = None
    story_key: str | None = None
    assignee: str | None = None
    statuses: tuple[str, ...] = ()
    agent: str | None = None
    agent_stream: bool = True
    infer_dependencies: bool = False
    stage_order: str | None = None
    inject_foundation: bool = True
    enrich_metadata: bool = True
    apply: bool = True
    planning_context_policy: str | None = None
    as_json: bool = False


@dataclass(slots=True)
class BacklogCommand:
    """CLI inputs for the backlog view."""

    db_path: Path | None
    project_key: str | None = None
    epic_key: str | None = None
    story_key: str | None = None
    assignee: str | None = None
    statuses: tuple[str, ...] = ()
    order_by_dependencies: bool = False
    verbose: bool = False
    as_json: bool = False


class BacklogPlannerCliController:
    """Coordinates planner command execution."""

    def __init__(self, *, stream_sink: Callable[[str], None] | None = None) -> None:
        self.stream_sink = stream_sink

    def init(self, command: InitCommand) -> list[str]:
        settings = _settings(command.db_path)
        repository = WorkspaceRepository(
            settings.db_path,
            sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        )
        try:
            repository.init_schema()
        finally:
            repository.close()
        return [f"Workspace ready: {settings.db_path}"]

    def order_tasks(self, command: OrderTasksCommand) -> list[str]:
        settings = _settings(command.db_path)
        stage_order = (
            tuple(part.strip().lower() for part in command.stage_order.split(",") if part.strip())
            if command.stage_order
            else settings.ordering.stage_order
        )
        request = TaskOrderingRequest(
            project_key=command.project_key,
            epic_key=command.epic_key,
            story_key=command.story_key,
            assignee=command.assignee,
            statuses=command.statuses,
            agent_name=command.agent,
            agent_stream=command.agent_stream,
            stage_order=stage_order,
            inject_foundation_deps=command.inject_foundation,
            infer_dependencies=command.infer_dependencies,
            enrich_metadata=command.enrich_metadata,
            apply=command.apply,
            planning_context_policy=(
                command.planning_context_policy or settings.ordering.planning_context_policy
            ),
        )
        with _ordering_service(settings, stream_sink=self.stream_sink) as service:
            result = service.order_tasks(request)
        if command.as_json:
            return [json.dumps(result.to_dict(), indent=2, ensure_ascii=False)]
        return render_ordering(result)

    def backlog(self, command: BacklogCommand) -> list[str]:
        settings = _settings(command.db_path)
        query = BacklogQuery(
            project_key=command.project_key,
            epic_key=command.epic_key,
            story_key=command.story_key,
            assignee=command.assignee,
            statuses=command.statuses,
            order_by_dependencies=command.order_by_dependencies,
            verbose=command.verbose,
        )
        with BacklogService.create(settings) as service:
            result = service.get_backlog(query)
        if command.as_json:
            return [json.dumps(result.to_dict(), indent=2, ensure_ascii=False)]
        return render_backlog(result)


def render_ordering(result: TaskOrderingResult) -> list[str]:
    scope = f"project={result.project.key}"
    if result.epic is not None:
        scope += f" epic={result.epic.key}"
    if result.story is not None:
        scope += f" story={result.story.key}"
    lines = [f"Ordered {len(result.ordered)} tasks: {scope}"]
    for item in result.ordered:
        deps = ",".join(item.dependency_keys) or "-"
        points = "-" if item.story_points is None else f"{item.story_points:g}"
        line = (
            f"{item.priority:>4}. {item.task_key} [{item.status}] {truncate(item.title, 60)} "
            f"sp={points} impact={item.dependency_impact.direct}/{item.dependency_impact.total} "
            f"deps={deps}"
        )
        if item.cycle_detected:
            line += " cycle=yes"
        lines.append(line)
    lines.extend(f"Warning: {warning}" for warning in result.warnings)
    return lines


def render_backlog(result: BacklogResult) -> list[str]:
    scope = result.scope
    lines = [
        "Backlog: "
        f"project={scope.project_key or '-'} epic={scope.epic_key or '-'} "
        f"story={scope.user_story_key or '-'} assignee={scope.assignee or '-'}",
    ]
    for lane in LANE_ORDER:
        totals = getattr(result.totals, lane.value)
        lines.append(f"  {lane.value}: tasks={totals.tasks} story_points={totals.story_points:g}")
    for epic in result.epics:
        lines.append(
            f"Epic {epic.epic_key} (priority={epic.priority if epic.priority is not None else '-'})"
            f": {truncate(epic.title, 80)}",
        )
        for story in epic.stories:
            lines.append(
                f"  Story {story.user_story_key} [{story.status or '-'}]: "
                f"{truncate(story.title, 80)}",
            )
    lines.append(
        f"Tasks (ordering={result.ordering.reason}, "
        f"applied={'yes' if result.ordering.applied else 'no'}):",
    )
    for task in result.tasks:
        lines.append(
            f"  {task.task_key} [{task.status}] {task.lane.value} "
            f"priority={task.priority if task.priority is not None else '-'} "
            f"{truncate(task.title, 60)} :: {truncate(task.description)}",
        )
    lines.extend(f"Warning: {warning}" for warning in result.warnings)
    return lines


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


@contextmanager
def _ordering_service(
    settings: Settings,
    *,
    stream_sink: Callable[[str], None] | None,
) -> Iterator[TaskOrderingService]:
    service = TaskOrderingService.create(settings, stream_sink=stream_sink)
    try:
        yield service
    finally:
        service.close()
