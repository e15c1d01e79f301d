"""Prompt builders for agent-assisted ordering."""

from __future__ import annotations

import json
from collections.abc import Sequence

from backlog_planner.models import EpicRow, ProjectRow, StoryRow
from backlog_planner.ordering.models import DependencyImpact, TaskNode
from backlog_planner.ordering.planning_context import DocContext

SDS_DEPENDENCY_GUIDE = "\n".join(
    [
        "SDS hints for dependency-aware ordering:",
        "- Enforce topological ordering: never place a task before any of its dependencies.",
        "- Prioritize tasks that unlock the most downstream work (direct + indirect dependents).",
        "- Tie-break by existing priority, then lower story points, then older tasks, "
        "then status (in_progress before not_started).",
    ],
)


def build_inference_prompt(
    nodes: Sequence[TaskNode],
    *,
    project: ProjectRow,
    epic: EpicRow | None,
    story: StoryRow | None,
    doc_context: DocContext | None,
) -> str:
    summary = {
        "project": project.key,
        "epic": epic.key if epic else None,
        "story": story.key if story else None,
        "tasks": [
            {
                "task_key": node.key,
                "epic_key": node.task.epic_key,
                "story_key": node.task.story_key,
                "title": node.task.title,
                "description": node.task.description,
                "type": node.task.type,
                "depends_on": node.dependency_keys(),
            }
            for node in nodes
        ],
    }
    return _join(
        [
            "You are inferring dependencies across epics, stories, and tasks.",
            "Return ONLY JSON matching:",
            '{"dependencies":[{"task_key":"<key>","depends_on":["<key>"]}]}',
            "Only include task_key values from the input.",
            "Do not add self-dependencies. Omit empty depends_on arrays.",
            f"Doc context:\n{doc_context.content}" if doc_context else None,
            "Task summary:",
            json.dumps(summary, indent=2),
        ],
    )


def build_ranking_prompt(
    initial_order: Sequence[TaskNode],
    impact: dict[str, DependencyImpact],
    *,
    project: ProjectRow,
    epic: EpicRow | None,
    statuses: Sequence[str],
    doc_context: DocContext | None,
) -> str:
    summary = {
        "project": project.key,
        "epic": epic.key if epic else None,
        "statuses": list(statuses),
        "tasks": [
            {
                "task_key": node.key,
                "title": node.task.title,
                "status": node.task.status,
                "story_points": node.task.story_points,
                "priority": node.task.priority,
                "depends_on": node.dependency_keys(),
                "dependency_impact": impact.get(node.id, DependencyImpact()).to_dict(),
            }
            for node in initial_order
        ],
    }
    return _join(
        [
            "You are assisting with dependency-aware task ordering.",
            "Dependencies must NEVER be violated: "
            "a task cannot appear before any of its dependencies.",
            SDS_DEPENDENCY_GUIDE,
            f"Doc context:\n{doc_context.content}" if doc_context else None,
            "Given the current order, suggest a refined tie-break ordering "
            "(most depended-on first) and return JSON:",
            '{"order":[{"task_key":"<key>","note":"optional rationale"}]}',
            "Only include task_keys from the input. Do not invent tasks.",
            "If the current order is fine, return the same order.",
            "Task summary:",
            json.dumps(summary, indent=2),
        ],
    )


def _join(parts: Sequence[str | None]) -> str:
    return "\n\n".join(part for part in parts if part)
