"""Workspace repository backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func, inspect, or_
from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import aliased
from sqlmodel import Session, col, select

from backlog_planner.errors import WorkspaceNotFoundError, WorkspaceSchemaError
from backlog_planner.models import (
    DependencyInsert,
    DependencyRow,
    EpicRow,
    ProjectRow,
    RelationType,
    StoryRow,
    TaskCreate,
    TaskRow,
    TaskScope,
)
from backlog_planner.storage.alembic_runner import upgrade_head
from backlog_planner.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware,
    utc_now,
)
from backlog_planner.storage.sqlmodel_models import (
    Epic,
    Project,
    Task,
    TaskComment,
    TaskDependency,
    UserStory,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TaskPriorityUpdate:
    """Dense priority (and optional merged metadata) for one task."""

    task_id: str
    priority: int
    metadata: dict[str, Any] | None = None


@dataclass(slots=True)
class PriorityPlan:
    """All priority writes produced by one ordering run."""

    tasks: list[TaskPriorityUpdate]
    epic_priorities: dict[str, int]
    story_priorities: dict[str, int]


class WorkspaceRepository:
    """Backlog persistence facade over the workspace database."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Create the database file if needed and run schema migrations."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path)

    def missing_tables(self, required: Sequence[str]) -> list[str]:
        """Return required table names absent from the database."""

        existing = set(inspect(self.engine).get_table_names())
        return [name for name in required if name not in existing]

    def ensure_ready(self, required: Sequence[str]) -> None:
        """Fail fast when the workspace file or its required tables are missing."""

        if not self.db_path.exists():
            raise WorkspaceNotFoundError(
                f"No workspace DB found at {self.db_path}. Run `backlog-planner init` first.",
            )
        missing = self.missing_tables(required)
        if missing:
            raise WorkspaceSchemaError(missing)

    def get_project(self, key: str) -> ProjectRow | None:
        with Session(self.engine) as session:
            row = session.exec(select(Project).where(Project.key == key)).one_or_none()
            if row is None:
                return None
            return ProjectRow(id=row.id, key=row.key, name=row.name)

    def get_epic(self, key: str, *, project_id: str | None = None) -> EpicRow | None:
        """Look up an epic by key, optionally restricted to one project."""

        with Session(self.engine) as session:
            statement = select(Epic).where(Epic.key == key)
            if project_id is not None:
                statement = statement.where(Epic.project_id == project_id)
            row = session.exec(statement.order_by(col(Epic.created_at).asc())).first()
            if row is None:
                return None
            return _to_epic_row(row)

    def get_story(
        self,
        key: str,
        *,
        project_id: str | None = None,
        epic_id: str | None = None,
    ) -> StoryRow | None:
        """Look up a user story by key within the given project and/or epic."""

        with Session(self.engine) as session:
            statement = select(UserStory).where(UserStory.key == key)
            if project_id is not None:
                statement = statement.where(UserStory.project_id == project_id)
            if epic_id is not None:
                statement = statement.where(UserStory.epic_id == epic_id)
            row = session.exec(statement.order_by(col(UserStory.created_at).asc())).first()
            if row is None:
                return None
            return _to_story_row(row)

    def get_story_in_scope(self, key: str, scope_id: str | None = None) -> StoryRow | None:
        """Look up a user story whose epic or project id equals `scope_id`."""

        with Session(self.engine) as session:
            statement = select(UserStory).where(UserStory.key == key)
            if scope_id is not None:
                statement = statement.where(
                    or_(col(UserStory.epic_id) == scope_id, col(UserStory.project_id) == scope_id),
                )
            row = session.exec(statement.order_by(col(UserStory.created_at).asc())).first()
            if row is None:
                return None
            return _to_story_row(row)

    def fetch_tasks(self, scope: TaskScope) -> list[TaskRow]:
        """Fetch tasks joined with epic and story, ordered by creation time then key."""

        statement = (
            select(Task, Epic, UserStory)
            .join(Epic, col(Epic.id) == col(Task.epic_id))
            .join(UserStory, col(UserStory.id) == col(Task.user_story_id))
        )
        if scope.project_id is not None:
            statement = statement.where(col(Task.project_id) == scope.project_id)
        if scope.epic_id is not None:
            statement = statement.where(col(Task.epic_id) == scope.epic_id)
        if scope.story_id is not None:
            statement = statement.where(col(Task.user_story_id) == scope.story_id)
        if scope.assignee:
            statement = statement.where(
                func.lower(col(Task.assignee_human)) == scope.assignee.lower(),
            )
        if scope.statuses:
            statement = statement.where(
                func.lower(col(Task.status)).in_([status.lower() for status in scope.statuses]),
            )
        statement = statement.order_by(col(Task.created_at).asc(), col(Task.key).asc())

        with Session(self.engine) as session:
            return [
                _to_task_row(task, epic, story) for task, epic, story in session.exec(statement)
            ]

    def fetch_dependencies(self, task_ids: Iterable[str]) -> dict[str, list[DependencyRow]]:
        """Group dependency edges by dependent task id, resolving target key and status."""

        ids = list(task_ids)
        if not ids:
            return {}
        target = aliased(Task)
        statement = (
            select(TaskDependency, target.key, target.status)
            .outerjoin(target, target.id == TaskDependency.depends_on_task_id)
            .where(col(TaskDependency.task_id).in_(ids))
            .order_by(col(TaskDependency.id).asc())
        )
        grouped: dict[str, list[DependencyRow]] = {}
        with Session(self.engine) as session:
            for edge, target_key, target_status in session.exec(statement):
                grouped.setdefault(edge.task_id, []).append(
                    DependencyRow(
                        task_id=edge.task_id,
                        depends_on_task_id=edge.depends_on_task_id,
                        depends_on_key=target_key or edge.depends_on_key,
                        depends_on_status=target_status,
                        relation_type=edge.relation_type,
                    ),
                )
        return grouped

    def load_missing_context(self, task_ids: Iterable[str]) -> set[str]:
        """Return ids of tasks with an open `missing_context` comment."""

        ids = list(task_ids)
        if not ids:
            return set()
        statement = (
            select(TaskComment.task_id)
            .where(
                col(TaskComment.task_id).in_(ids),
                func.lower(col(TaskComment.category)) == "missing_context",
                col(TaskComment.status).is_(None) | (func.lower(col(TaskComment.status)) == "open"),
            )
            .distinct()
        )
        with Session(self.engine) as session:
            return set(session.exec(statement).all())

    def insert_task_dependencies(self, inserts: Sequence[DependencyInsert]) -> int:
        """Batch insert dependency edges, ignoring pairs that already exist."""

        if not inserts:
            return 0
        now = to_db_datetime(utc_now())
        statement = (
            sqlite_insert(TaskDependency)
            .values(
                [
                    {
                        "task_id": item.task_id,
                        "depends_on_task_id": item.depends_on_task_id,
                        "depends_on_key": item.depends_on_key,
                        "relation_type": item.relation_type,
                        "created_at": now,
                    }
                    for item in inserts
                ],
            )
            .on_conflict_do_nothing(index_elements=["task_id", "depends_on_task_id"])
        )
        with Session(self.engine) as session:
            result = session.exec(statement)
            session.commit()
            inserted = max(0, result.rowcount or 0)
        logger.info("Inserted %d of %d dependency edges", inserted, len(inserts))
        return inserted

    def persist_priority_plan(self, plan: PriorityPlan) -> None:
        """Write task, story, and epic priorities in a single transaction."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            for update in plan.tasks:
                values: dict[str, Any] = {"priority": update.priority, "updated_at": now}
                if update.metadata is not None:
                    values["metadata_json"] = json.dumps(update.metadata, ensure_ascii=False)
                session.exec(
                    sa_update(Task).where(col(Task.id) == update.task_id).values(**values),
                )
            for epic_id, priority in plan.epic_priorities.items():
                session.exec(
                    sa_update(Epic)
                    .where(col(Epic.id) == epic_id)
                    .values(priority=priority, updated_at=now),
                )
            for story_id, priority in plan.story_priorities.items():
                session.exec(
                    sa_update(UserStory)
                    .where(col(UserStory.id) == story_id)
                    .values(priority=priority, updated_at=now),
                )
            session.commit()

    def create_project(self, key: str, *, name: str | None = None) -> ProjectRow:
        """Return the project with `key`, creating it when absent."""

        existing = self.get_project(key)
        if existing is not None:
            return existing
        with Session(self.engine) as session:
            row = Project(id=str(uuid4()), key=key, name=name, created_at=utc_now())
            session.add(row)
            session.commit()
            return ProjectRow(id=row.id, key=row.key, name=row.name)

    def create_epic(  # noqa: PLR0913
        self,
        *,
        project_id: str,
        key: str,
        title: str,
        description: str | None = None,
        priority: int | None = None,
    ) -> EpicRow:
        now = utc_now()
        with Session(self.engine) as session:
            row = Epic(
                id=str(uuid4()),
                key=key,
                project_id=project_id,
                title=title,
                description=description,
                priority=priority,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_epic_row(row)

    def create_story(  # noqa: PLR0913
        self,
        *,
        epic_id: str,
        key: str,
        title: str,
        description: str | None = None,
        priority: int | None = None,
    ) -> StoryRow:
        now = utc_now()
        with Session(self.engine) as session:
            epic = session.exec(select(Epic).where(Epic.id == epic_id)).one()
            row = UserStory(
                id=str(uuid4()),
                key=key,
                epic_id=epic_id,
                project_id=epic.project_id,
                title=title,
                description=description,
                priority=priority,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_story_row(row)

    def create_task(self, payload: TaskCreate) -> TaskRow:
        """Create a task under an existing story."""

        created_at = payload.created_at or utc_now()
        with Session(self.engine) as session:
            story = session.exec(select(UserStory).where(UserStory.id == payload.story_id)).one()
            epic = session.exec(select(Epic).where(Epic.id == story.epic_id)).one()
            row = Task(
                id=str(uuid4()),
                key=payload.key,
                project_id=story.project_id,
                epic_id=story.epic_id,
                user_story_id=story.id,
                title=payload.title,
                description=payload.description,
                task_type=payload.type,
                status=payload.status,
                story_points=payload.story_points,
                priority=payload.priority,
                assignee_human=payload.assignee_human,
                metadata_json=(
                    json.dumps(payload.metadata, ensure_ascii=False) if payload.metadata else None
                ),
                created_at=to_db_datetime(created_at),
                updated_at=to_db_datetime(created_at),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task_row(row, epic, story)

    def add_dependency(
        self,
        *,
        task_id: str,
        depends_on_task_id: str,
        relation_type: str = RelationType.BLOCKS.value,
    ) -> None:
        with Session(self.engine) as session:
            target = session.exec(select(Task).where(Task.id == depends_on_task_id)).one()
            session.add(
                TaskDependency(
                    task_id=task_id,
                    depends_on_task_id=depends_on_task_id,
                    depends_on_key=target.key,
                    relation_type=relation_type,
                    created_at=utc_now(),
                ),
            )
            session.commit()

    def add_task_comment(
        self,
        *,
        task_id: str,
        category: str,
        status: str | None = "open",
        body: str = "",
    ) -> None:
        with Session(self.engine) as session:
            session.add(
                TaskComment(
                    task_id=task_id,
                    category=category,
                    status=status,
                    body=body,
                    created_at=utc_now(),
                ),
            )
            session.commit()

    def get_task_by_key(self, key: str, *, project_id: str | None = None) -> TaskRow | None:
        statement = (
            select(Task, Epic, UserStory)
            .join(Epic, col(Epic.id) == col(Task.epic_id))
            .join(UserStory, col(UserStory.id) == col(Task.user_story_id))
            .where(col(Task.key) == key)
        )
        if project_id is not None:
            statement = statement.where(col(Task.project_id) == project_id)
        with Session(self.engine) as session:
            found = session.exec(statement).first()
            if found is None:
                return None
            task, epic, story = found
            return _to_task_row(task, epic, story)


def _to_epic_row(row: Epic) -> EpicRow:
    return EpicRow(
        id=row.id,
        key=row.key,
        project_id=row.project_id,
        title=row.title,
        description=row.description,
        priority=row.priority,
    )


def _to_story_row(row: UserStory) -> StoryRow:
    return StoryRow(
        id=row.id,
        key=row.key,
        epic_id=row.epic_id,
        project_id=row.project_id,
        title=row.title,
        description=row.description,
        priority=row.priority,
    )


def _to_task_row(task: Task, epic: Epic, story: UserStory) -> TaskRow:
    return TaskRow(
        id=task.id,
        key=task.key,
        title=task.title,
        description=task.description or "",
        type=task.task_type,
        status=task.status,
        story_points=task.story_points,
        priority=task.priority,
        assignee_human=task.assignee_human,
        project_id=task.project_id,
        epic_id=epic.id,
        epic_key=epic.key,
        epic_title=epic.title,
        epic_description=epic.description,
        epic_priority=epic.priority,
        story_id=story.id,
        story_key=story.key,
        story_title=story.title,
        story_description=story.description,
        story_priority=story.priority,
        created_at=to_utc_aware(task.created_at),
        updated_at=to_utc_aware(task.updated_at),
        metadata=_load_metadata(task.metadata_json),
    )


def _load_metadata(raw: str | None) -> dict[str, Any] | None:
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed task metadata_json")
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed
