"""Turn an agent re-ranking response into a tie-break rank map."""

from __future__ import annotations

from collections.abc import Sequence

from backlog_planner.ordering.models import TaskNode
from backlog_planner.ordering.output_parser import extract_json

_FALLBACK_SUFFIX = "using dependency-only ordering."


def parse_agent_ranking(
    output: str,
    nodes: Sequence[TaskNode],
    warnings: list[str],
) -> dict[str, int] | None:
    """Map task id -> agent rank from `{"order": [...]}` or a bare list.

    Entries are task keys or objects with `task_key`/`taskKey`/`key`; a key
    repeated later overrides its earlier position. Unknown keys are ignored.
    """

    parsed = extract_json(output)
    if parsed is None:
        warnings.append(f"Agent output could not be parsed; {_FALLBACK_SUFFIX}")
        return None
    order = parsed if isinstance(parsed, list) else None
    if isinstance(parsed, dict):
        order = parsed.get("order")
    if not isinstance(order, list):
        warnings.append(f"Agent output missing order list; {_FALLBACK_SUFFIX}")
        return None

    ranking: dict[str, int] = {}
    for index, entry in enumerate(order):
        key = _entry_key(entry)
        if key is not None:
            ranking[key] = index

    id_by_key = {node.key: node.id for node in nodes}
    mapped = {
        id_by_key[task_key]: index for task_key, index in ranking.items() if task_key in id_by_key
    }
    if not mapped:
        warnings.append(f"Agent output contained no known task keys; {_FALLBACK_SUFFIX}")
        return None
    return mapped


def _entry_key(entry: object) -> str | None:
    if isinstance(entry, str):
        return entry
    if isinstance(entry, dict):
        for name in ("task_key", "taskKey", "key"):
            value = entry.get(name)
            if value is not None:
                return value if isinstance(value, str) else None
    return None
