"""SQLModel ORM tables for the workspace database."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlmodel import Field, SQLModel

REQUIRED_ORDERING_TABLES = ("projects", "epics", "user_stories", "tasks", "task_dependencies")
REQUIRED_BACKLOG_TABLES = ("projects", "epics", "user_stories", "tasks")
REQUIRED_TELEMETRY_TABLES = ("command_runs", "jobs", "token_usage")


class Project(SQLModel, table=True):
    __tablename__ = "projects"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("key", name="uq_projects_key"),)

    id: str = Field(primary_key=True)
    key: str
    name: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Epic(SQLModel, table=True):
    __tablename__ = "epics"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("project_id", "key", name="uq_epics_project_key"),)

    id: str = Field(primary_key=True)
    key: str
    project_id: str = Field(
        sa_column=Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False),
    )
    title: str
    description: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    priority: int | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class UserStory(SQLModel, table=True):
    __tablename__ = "user_stories"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("project_id", "key", name="uq_user_stories_project_key"),
    )

    id: str = Field(primary_key=True)
    key: str
    epic_id: str = Field(
        sa_column=Column(String, ForeignKey("epics.id", ondelete="CASCADE"), nullable=False),
    )
    project_id: str = Field(
        sa_column=Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False),
    )
    title: str
    description: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    priority: int | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Task(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("project_id", "key", name="uq_tasks_project_key"),
        Index("idx_tasks_project_status", "project_id", "status"),
        Index("idx_tasks_user_story", "user_story_id"),
    )

    id: str = Field(primary_key=True)
    key: str
    project_id: str = Field(
        sa_column=Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False),
    )
    epic_id: str = Field(
        sa_column=Column(String, ForeignKey("epics.id", ondelete="CASCADE"), nullable=False),
    )
    user_story_id: str = Field(
        sa_column=Column(String, ForeignKey("user_stories.id", ondelete="CASCADE"), nullable=False),
    )
    title: str
    description: str = Field(
        default="",
        sa_column=Column(Text, nullable=False, server_default=""),
    )
    task_type: str | None = Field(default=None, sa_column=Column("type", String, nullable=True))
    status: str
    story_points: float | None = Field(default=None, sa_column=Column(Float, nullable=True))
    priority: int | None = None
    assignee_human: str | None = None
    metadata_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskDependency(SQLModel, table=True):
    __tablename__ = "task_dependencies"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "task_id",
            "depends_on_task_id",
            name="uq_task_dependencies_task_depends_on",
        ),
        Index("idx_task_dependencies_task", "task_id"),
    )

    id: int | None = Field(default=None, sa_column=Column(Integer, primary_key=True))
    task_id: str = Field(
        sa_column=Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False),
    )
    depends_on_task_id: str | None = Field(
        default=None,
        sa_column=Column(String, ForeignKey("tasks.id", ondelete="SET NULL"), nullable=True),
    )
    depends_on_key: str | None = None
    relation_type: str = Field(
        default="blocks",
        sa_column=Column(String, nullable=False, server_default="blocks"),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskComment(SQLModel, table=True):
    __tablename__ = "task_comments"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_comments_task", "task_id"),)

    id: int | None = Field(default=None, sa_column=Column(Integer, primary_key=True))
    task_id: str = Field(
        sa_column=Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False),
    )
    category: str
    status: str | None = None
    body: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CommandRun(SQLModel, table=True):
    __tablename__ = "command_runs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_command_runs_command", "command_name"),)

    id: str = Field(primary_key=True)
    command_name: str
    project_key: str | None = None
    status: str
    processed_items: int | None = None
    error_summary: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_jobs_command_run", "command_run_id"),)

    id: str = Field(primary_key=True)
    command_run_id: str | None = Field(
        default=None,
        sa_column=Column(String, ForeignKey("command_runs.id", ondelete="SET NULL"), nullable=True),
    )
    job_type: str
    command_name: str | None = None
    project_key: str | None = None
    status: str
    payload_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    processed_items: int | None = None
    error_summary: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TokenUsage(SQLModel, table=True):
    __tablename__ = "token_usage"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_token_usage_command_run", "command_run_id"),)

    id: int | None = Field(default=None, sa_column=Column(Integer, primary_key=True))
    command_run_id: str | None = Field(
        default=None,
        sa_column=Column(String, ForeignKey("command_runs.id", ondelete="SET NULL"), nullable=True),
    )
    job_id: str | None = Field(
        default=None,
        sa_column=Column(String, ForeignKey("jobs.id", ondelete="SET NULL"), nullable=True),
    )
    project_id: str | None = None
    command_name: str
    action: str
    agent_id: str | None = None
    model_name: str | None = None
    tokens_prompt: int | None = None
    tokens_completion: int | None = None
    tokens_total: int | None = None
    metadata_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
