"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from sqlmodel import Session

from backlog_planner.agents.base import (
    AgentChunk,
    AgentInvocation,
    AgentInvocationError,
    AgentInvocationResult,
    AgentProfile,
    AgentRoutingError,
)
from backlog_planner.docdex import DocdexDocument, DocdexError
from backlog_planner.models import EpicRow, ProjectRow, StoryRow, TaskCreate, TaskRow
from backlog_planner.storage.repository import WorkspaceRepository
from backlog_planner.storage.sqlmodel_models import Task

BASE_TIME = datetime(2026, 1, 5, 9, 0, tzinfo=UTC)


@dataclass(slots=True)
class BacklogSeeder:
    """Creates backlog rows with strictly increasing creation times."""

    repository: WorkspaceRepository
    project: ProjectRow
    epic: EpicRow
    story: StoryRow
    created: int = 0

    def task(self, key: str, *, title: str | None = None, story: StoryRow | None = None, **kwargs):
        self.created += 1
        return self.repository.create_task(
            TaskCreate(
                key=key,
                title=title or f"Task {key}",
                story_id=(story or self.story).id,
                created_at=kwargs.pop("created_at", BASE_TIME + timedelta(minutes=self.created)),
                **kwargs,
            ),
        )

    def depends(self, task: TaskRow, on: TaskRow) -> None:
        self.repository.add_dependency(task_id=task.id, depends_on_task_id=on.id)

    def delete_task(self, task: TaskRow) -> None:
        with Session(self.repository.engine) as session:
            session.delete(session.get(Task, task.id))
            session.commit()


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "workspace.db"


@pytest.fixture()
def workspace(db_path: Path) -> Iterator[WorkspaceRepository]:
    repository = WorkspaceRepository(db_path)
    repository.init_schema()
    yield repository
    repository.close()


@pytest.fixture()
def seed(workspace: WorkspaceRepository) -> BacklogSeeder:
    project = workspace.create_project("PROJ", name="Project")
    epic = workspace.create_epic(project_id=project.id, key="PROJ-E1", title="Core flow")
    story = workspace.create_story(epic_id=epic.id, key="PROJ-S1", title="Checkout")
    return BacklogSeeder(repository=workspace, project=project, epic=epic, story=story)


@dataclass
class FakeRouter:
    """Resolves every command to one fixed agent, or fails."""

    error: str | None = None
    calls: list[tuple[str, str | None]] = field(default_factory=list)

    def resolve_agent_for_command(
        self,
        command_name: str,
        override_agent_slug: str | None = None,
    ) -> AgentProfile:
        self.calls.append((command_name, override_agent_slug))
        if self.error:
            raise AgentRoutingError(self.error)
        slug = override_agent_slug or "codex"
        return AgentProfile(
            id=f"agent-{slug}",
            slug=slug,
            adapter=f"{slug}-cli",
            default_model="test-model",
            command_template="unused {prompt}",
        )


@dataclass
class FakeInvoker:
    """Replies per phase; optionally fails streaming to exercise the fallback."""

    replies: dict[str, str] = field(default_factory=dict)
    fail_stream: bool = False
    prompts: list[tuple[str, str]] = field(default_factory=list)
    streamed: int = 0

    def invoke(self, agent: AgentProfile, invocation: AgentInvocation) -> AgentInvocationResult:
        phase = str(invocation.metadata.get("phase"))
        self.prompts.append((phase, invocation.input))
        return AgentInvocationResult(output=self.replies.get(phase, ""), adapter=agent.adapter)

    def invoke_stream(self, agent: AgentProfile, invocation: AgentInvocation):
        if self.fail_stream:
            raise AgentInvocationError("stream closed", transient=True)
        self.streamed += 1
        output = self.invoke(agent, invocation).output
        midpoint = len(output) // 2
        yield AgentChunk(output=output[:midpoint])
        yield AgentChunk(output=output[midpoint:])


@dataclass
class FakeDocdex:
    """Returns canned documents per doc type; `None` key answers profile queries."""

    documents: dict[str | None, list[DocdexDocument]] = field(default_factory=dict)
    error: str | None = None
    queries: list[dict[str, str | None]] = field(default_factory=list)

    def search(
        self,
        *,
        project_key: str | None = None,
        doc_type: str | None = None,
        profile: str | None = None,
        query: str | None = None,
    ) -> list[DocdexDocument]:
        self.queries.append(
            {"project_key": project_key, "doc_type": doc_type, "profile": profile, "query": query},
        )
        if self.error:
            raise DocdexError(self.error)
        return list(self.documents.get(doc_type, []))


@pytest.fixture()
def fake_router() -> FakeRouter:
    return FakeRouter()


@pytest.fixture()
def fake_invoker() -> FakeInvoker:
    return FakeInvoker()


@pytest.fixture()
def fake_docdex() -> FakeDocdex:
    return FakeDocdex()


@pytest.fixture()
def task_factory():
    """Build in-memory `TaskRow`s; creation time follows call order."""

    counter = {"value": 0}

    def _make(key: str, **overrides) -> TaskRow:
        counter["value"] += 1
        created_at = BASE_TIME + timedelta(minutes=counter["value"])
        values = {
            "id": f"id-{key}",
            "key": key,
            "title": f"Task {key}",
            "description": "",
            "status": "not_started",
            "project_id": "p1",
            "epic_id": "e1",
            "epic_key": "E1",
            "story_id": "s1",
            "story_key": "S1",
            "created_at": created_at,
            "updated_at": created_at,
        }
        values.update(overrides)
        return TaskRow(**values)

    return _make
