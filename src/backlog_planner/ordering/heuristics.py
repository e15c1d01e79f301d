"""Keyword heuristics that classify tasks into execution stages."""

from __future__ import annotations

import re

from backlog_planner.models import TaskRow
from backlog_planner.ordering.models import TaskClassification, TaskStage

FOUNDATION_KEYWORDS = frozenset(
    {
        "initialize",
        "scaffold",
        "setup",
        "install",
        "configure",
        "express",
        "server",
        "openapi",
        "spec",
        "sds",
    },
)
BACKEND_KEYWORDS = frozenset(
    {"api", "endpoint", "server", "express", "db", "database", "storage", "persistence"},
)
FRONTEND_KEYWORDS = frozenset({"ui", "html", "css", "dom", "render", "style", "frontend"})

VALID_STAGES = frozenset(stage.value for stage in TaskStage)

_TOKEN_SPLIT = re.compile(r"[^a-z0-9]+")


def classify_task(
    *,
    title: str | None,
    description: str | None,
    task_type: str | None,
) -> TaskClassification:
    """Infer stage and foundation flag from task text.

    Foundation keywords are matched against the title only; backend and
    frontend keywords against title and description.
    """

    title_tokens = _tokenize(title)
    tokens = title_tokens + _tokenize(description)
    backend_hits = [token for token in tokens if token in BACKEND_KEYWORDS]
    frontend_hits = [token for token in tokens if token in FRONTEND_KEYWORDS]
    foundation_hits = [token for token in title_tokens if token in FOUNDATION_KEYWORDS]
    is_chore = (task_type or "").lower() == "chore"
    foundation = is_chore or bool(foundation_hits)

    stage = TaskStage.OTHER
    if backend_hits:
        stage = TaskStage.BACKEND
    elif frontend_hits:
        stage = TaskStage.FRONTEND
    elif foundation:
        stage = TaskStage.FOUNDATION

    reasons = [f"backend:{hit}" for hit in backend_hits]
    reasons.extend(f"frontend:{hit}" for hit in frontend_hits)
    reasons.extend(f"foundation:{hit}" for hit in foundation_hits)
    if is_chore:
        reasons.append("type:chore")
    return TaskClassification(stage=stage.value, foundation=foundation, reasons=reasons)


def resolve_classification(task: TaskRow) -> TaskClassification:
    """Prefer explicit `metadata.stage`/`metadata.foundation`, else text heuristics."""

    metadata = task.metadata or {}
    raw_stage = metadata.get("stage")
    stage = raw_stage.lower() if isinstance(raw_stage, str) else None
    if stage in VALID_STAGES:
        raw_foundation = metadata.get("foundation")
        if isinstance(raw_foundation, bool):
            foundation = raw_foundation
        else:
            foundation = stage == TaskStage.FOUNDATION.value
        return TaskClassification(stage=stage, foundation=foundation)
    return classify_task(title=task.title, description=task.description, task_type=task.type)


def _tokenize(value: str | None) -> list[str]:
    if not value:
        return []
    return [token for token in _TOKEN_SPLIT.split(value.lower()) if token]
