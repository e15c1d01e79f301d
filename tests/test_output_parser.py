from __future__ import annotations

import allure

from backlog_planner.ordering.output_parser import extract_json, extract_json_blocks

pytestmark = [
    allure.epic("Task Ordering"),
    allure.feature("Agent Output Parsing"),
]


def test_extract_json_prefers_fenced_block() -> None:
    raw = 'Here you go:\n```json\n{"order": ["A"]}\n```\nand also {"order": ["B"]}'

    assert extract_json(raw) == {"order": ["A"]}


def test_extract_json_strips_think_spans() -> None:
    raw = '<think>maybe {"order": ["X"]} first</think>{"order": ["B", "A"]}'

    assert extract_json(raw) == {"order": ["B", "A"]}


def test_extract_json_scans_balanced_blocks_from_last() -> None:
    raw = 'draft {"order": ["A"]} then final {"order": ["B"]} done'

    assert extract_json(raw) == {"order": ["B"]}


def test_extract_json_ignores_brackets_inside_strings() -> None:
    raw = 'noise {"note": "use } carefully", "order": ["A"]} trailing'

    assert extract_json(raw) == {"note": "use } carefully", "order": ["A"]}


def test_extract_json_returns_none_for_unparsable_output() -> None:
    assert extract_json("no json here {broken") is None
    assert extract_json("") is None
    assert extract_json(None) is None


def test_extract_json_blocks_returns_top_level_blocks_only() -> None:
    blocks = extract_json_blocks('a {"x": [1, 2]} b [3] c')

    assert blocks == ['{"x": [1, 2]}', "[3]"]
