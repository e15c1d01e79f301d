"""Backlog view: lane totals, epic/story summaries, and lane-aware ordering."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence

from backlog_planner.backlog.models import (
    LANE_ORDER,
    LANE_RANK,
    BacklogOrderingMeta,
    BacklogQuery,
    BacklogResult,
    BacklogScope,
    BacklogTotals,
    CrossLaneDependency,
    EpicBacklogSummary,
    StoryBacklogSummary,
    TaskBacklogRow,
    derive_story_status,
)
from backlog_planner.config import Settings
from backlog_planner.errors import UnknownScopeError
from backlog_planner.models import (
    DependencyRow,
    EpicRow,
    ProjectRow,
    StoryRow,
    TaskRow,
    TaskScope,
)
from backlog_planner.ordering.models import TaskOrderingRequest
from backlog_planner.ordering.service import TaskOrderingService
from backlog_planner.storage.repository import WorkspaceRepository
from backlog_planner.storage.sqlmodel_models import REQUIRED_BACKLOG_TABLES

logger = logging.getLogger(__name__)

_NULLS_LAST = float("inf")

OrderingServiceFactory = Callable[[], TaskOrderingService]


class BacklogService:
    """Summarize a backlog selection by lane, epic, and story."""

    def __init__(
        self,
        *,
        repository: WorkspaceRepository,
        ordering_factory: OrderingServiceFactory | None = None,
    ) -> None:
        self.repository = repository
        self.ordering_factory = ordering_factory

    @classmethod
    def create(cls, settings: Settings) -> BacklogService:
        repository = WorkspaceRepository(
            settings.db_path,
            sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        )
        try:
            repository.ensure_ready(REQUIRED_BACKLOG_TABLES)
        except Exception:
            repository.close()
            raise
        return cls(
            repository=repository,
            ordering_factory=lambda: TaskOrderingService.create(settings, record_telemetry=False),
        )

    def close(self) -> None:
        self.repository.close()

    def __enter__(self) -> BacklogService:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def get_backlog(self, query: BacklogQuery) -> BacklogResult:
        warnings: list[str] = []
        project, epic, story = self._resolve_scope(query)
        tasks = self.repository.fetch_tasks(
            TaskScope(
                project_id=project.id if project else None,
                epic_id=epic.id if epic else None,
                story_id=story.id if story else None,
                assignee=query.assignee,
                statuses=tuple(status.strip().lower() for status in query.statuses),
            ),
        )
        dependencies = self.repository.fetch_dependencies(task.id for task in tasks)

        totals = BacklogTotals()
        epics: dict[str, EpicBacklogSummary] = {}
        stories: dict[str, StoryBacklogSummary] = {}
        story_statuses: dict[str, set[str]] = {}
        rows: list[TaskBacklogRow] = []
        for task in tasks:
            row = _to_backlog_row(task, dependencies)
            lane = row.lane
            totals.add(lane, task.story_points)

            epic_summary = epics.get(task.epic_id)
            if epic_summary is None:
                epic_summary = EpicBacklogSummary(
                    epic_id=task.epic_id,
                    epic_key=task.epic_key,
                    title=task.epic_title,
                    description=task.epic_description,
                    priority=task.epic_priority,
                )
                epics[task.epic_id] = epic_summary
            epic_summary.totals.add(lane, task.story_points)

            story_summary = stories.get(task.story_id)
            if story_summary is None:
                story_summary = StoryBacklogSummary(
                    user_story_id=task.story_id,
                    user_story_key=task.story_key,
                    epic_key=task.epic_key,
                    title=task.story_title,
                    description=task.story_description,
                    priority=task.story_priority,
                )
                stories[task.story_id] = story_summary
                epic_summary.stories.append(story_summary)
            story_summary.totals.add(lane, task.story_points)
            story_statuses.setdefault(task.story_id, set()).add(task.status.lower())
            rows.append(row)

        for story_id, summary in stories.items():
            summary.status = derive_story_status(story_statuses[story_id])

        cross_lane = find_cross_lane_dependencies(rows)
        if cross_lane:
            warnings.append(
                f"Cross-lane dependencies detected ({len(cross_lane)}). "
                "Ordering by lane may be misleading.",
            )

        sort_keys = _DefaultOrderKeys(tasks)
        ordering = BacklogOrderingMeta(requested=query.order_by_dependencies)
        if not query.order_by_dependencies:
            ordered = sort_keys.sort(rows)
        elif project is None:
            warnings.append("Dependency ordering requires a project scope; using default ordering.")
            ordering.reason = "missing_project_scope"
            ordered = order_by_lane(rows, sort_keys, warnings, verbose=query.verbose)
        else:
            ordered = self._order_by_dependencies(
                rows,
                query,
                project=project,
                epic=epic,
                story=story,
                sort_keys=sort_keys,
                ordering=ordering,
                warnings=warnings,
            )

        return BacklogResult(
            scope=BacklogScope(
                project_id=project.id if project else None,
                project_key=project.key if project else None,
                epic_key=epic.key if epic else None,
                user_story_key=story.key if story else None,
                assignee=query.assignee,
            ),
            totals=totals,
            epics=sort_epics(list(epics.values())),
            tasks=ordered,
            warnings=warnings,
            ordering=ordering,
            cross_lane_dependencies=cross_lane,
        )

    def _resolve_scope(
        self,
        query: BacklogQuery,
    ) -> tuple[ProjectRow | None, EpicRow | None, StoryRow | None]:
        project: ProjectRow | None = None
        if query.project_key:
            project = self.repository.get_project(query.project_key)
            if project is None:
                raise UnknownScopeError(f"Unknown project key: {query.project_key}")
        epic: EpicRow | None = None
        if query.epic_key:
            epic = self.repository.get_epic(
                query.epic_key,
                project_id=project.id if project else None,
            )
            if epic is None:
                raise UnknownScopeError(f"Unknown epic key: {query.epic_key}")
        story: StoryRow | None = None
        if query.story_key:
            scope_id = epic.id if epic else (project.id if project else None)
            story = self.repository.get_story_in_scope(query.story_key, scope_id)
            if story is None:
                raise UnknownScopeError(f"Unknown user story key: {query.story_key}")
        return project, epic, story

    def _order_by_dependencies(  # noqa: PLR0913
        self,
        rows: list[TaskBacklogRow],
        query: BacklogQuery,
        *,
        project: ProjectRow,
        epic: EpicRow | None,
        story: StoryRow | None,
        sort_keys: _DefaultOrderKeys,
        ordering: BacklogOrderingMeta,
        warnings: list[str],
    ) -> list[TaskBacklogRow]:
        try:
            if self.ordering_factory is None:
                raise RuntimeError("dependency ordering is not configured")
            with self.ordering_factory() as service:
                result = service.order_tasks(
                    TaskOrderingRequest(
                        project_key=project.key,
                        epic_key=epic.key if epic else None,
                        story_key=story.key if story else None,
                        assignee=query.assignee,
                        statuses=query.statuses,
                        inject_foundation_deps=False,
                        enrich_metadata=False,
                        apply=False,
                    ),
                )
        except Exception as error:  # noqa: BLE001
            logger.info("Dependency ordering failed: %s", error)
            prefix = "Dependency ordering failed; falling back to heuristic ordering."
            warnings.append(f"{prefix} {error}" if query.verbose else prefix)
            ordering.applied = False
            ordering.reason = "heuristic_fallback"
            return order_by_lane(rows, sort_keys, warnings, verbose=query.verbose)

        ordering.applied = True
        ordering.reason = "dependency_graph"
        position = {item.task_id: index for index, item in enumerate(result.ordered)}
        warnings.extend(result.warnings)
        return sorted(rows, key=lambda row: (position.get(row.task_id, _NULLS_LAST), row.task_key))


class _DefaultOrderKeys:
    """Default comparator: lane, epic priority, story priority, task priority, key."""

    def __init__(self, tasks: Sequence[TaskRow]) -> None:
        self.epic_priority = {task.epic_key: task.epic_priority for task in tasks}
        self.story_priority = {task.story_key: task.story_priority for task in tasks}

    def key(self, row: TaskBacklogRow) -> tuple:
        return (
            LANE_RANK[row.lane],
            _nulls_last(self.epic_priority.get(row.epic_key)),
            _nulls_last(self.story_priority.get(row.user_story_key)),
            _nulls_last(row.priority),
            row.task_key,
        )

    def sort(self, rows: Sequence[TaskBacklogRow]) -> list[TaskBacklogRow]:
        return sorted(rows, key=self.key)


def order_by_lane(
    rows: Sequence[TaskBacklogRow],
    sort_keys: _DefaultOrderKeys,
    warnings: list[str],
    *,
    verbose: bool,
) -> list[TaskBacklogRow]:
    """Heuristic order: per lane, a dependency sort seeded by the default order.

    A lane containing a cycle keeps its default order.
    """

    all_keys = {row.task_key for row in rows}
    ordered: list[TaskBacklogRow] = []
    for lane in LANE_ORDER:
        lane_rows = [row for row in rows if row.lane is lane]
        sorted_rows, had_cycle, missing_reference = _lane_topological_sort(
            lane_rows,
            all_keys,
            sort_keys,
        )
        if had_cycle and verbose:
            warnings.append(
                f"Dependency cycle detected in {lane.value} bucket. "
                "Falling back to priority order.",
            )
        if missing_reference and verbose:
            warnings.append(
                f"Missing dependency reference in {lane.value} bucket. Ordering may be partial.",
            )
        ordered.extend(sorted_rows)
    return ordered


def _lane_topological_sort(
    rows: Sequence[TaskBacklogRow],
    all_keys: set[str],
    sort_keys: _DefaultOrderKeys,
) -> tuple[list[TaskBacklogRow], bool, bool]:
    if not rows:
        return [], False, False
    fallback = sort_keys.sort(rows)
    rank = {row.task_id: index for index, row in enumerate(fallback)}
    by_key = {row.task_key: row for row in rows}
    indegree = dict.fromkeys(rank, 0)
    dependents: dict[str, list[TaskBacklogRow]] = {}
    missing_reference = False
    for row in rows:
        for dependency_key in row.dependency_keys:
            if dependency_key not in all_keys:
                missing_reference = True
                continue
            dependency = by_key.get(dependency_key)
            if dependency is None:
                continue
            indegree[row.task_id] += 1
            dependents.setdefault(dependency.task_id, []).append(row)

    ready = sorted(
        (row for row in rows if indegree[row.task_id] == 0),
        key=lambda r: rank[r.task_id],
    )
    result: list[TaskBacklogRow] = []
    while ready:
        current = ready.pop(0)
        result.append(current)
        for dependent in dependents.get(current.task_id, ()):
            indegree[dependent.task_id] -= 1
            if indegree[dependent.task_id] == 0:
                ready.append(dependent)
        ready.sort(key=lambda r: rank[r.task_id])

    if len(result) != len(rows):
        return fallback, True, missing_reference
    return result, False, missing_reference


def find_cross_lane_dependencies(rows: Sequence[TaskBacklogRow]) -> list[CrossLaneDependency]:
    """Dependencies within the selection whose lanes differ, sorted by task then dependency key."""

    lane_by_key = {row.task_key: row.lane for row in rows}
    results: list[CrossLaneDependency] = []
    for row in rows:
        for dependency_key in row.dependency_keys:
            dependency_lane = lane_by_key.get(dependency_key)
            if dependency_lane is None or dependency_lane is row.lane:
                continue
            results.append(
                CrossLaneDependency(
                    task_key=row.task_key,
                    depends_on_key=dependency_key,
                    task_lane=row.lane.value,
                    dependency_lane=dependency_lane.value,
                ),
            )
    return sorted(results, key=lambda item: (item.task_key, item.depends_on_key))


def sort_epics(epics: list[EpicBacklogSummary]) -> list[EpicBacklogSummary]:
    """Order epics, and stories within each epic, by priority (nulls last) then key."""

    for epic in epics:
        epic.stories.sort(key=lambda story: (_nulls_last(story.priority), story.user_story_key))
    return sorted(epics, key=lambda epic: (_nulls_last(epic.priority), epic.epic_key))


def _to_backlog_row(
    task: TaskRow,
    dependencies: Mapping[str, Sequence[DependencyRow]],
) -> TaskBacklogRow:
    return TaskBacklogRow(
        task_id=task.id,
        task_key=task.key,
        epic_key=task.epic_key,
        user_story_key=task.story_key,
        title=task.title,
        description=task.description or "",
        status=task.status,
        story_points=task.story_points,
        priority=task.priority,
        assignee=task.assignee_human,
        dependency_keys=[
            row.depends_on_key
            for row in dependencies.get(task.id, ())
            if row.depends_on_task_id and row.depends_on_key
        ],
    )


def _nulls_last(value: float | None) -> float:
    return _NULLS_LAST if value is None else value
