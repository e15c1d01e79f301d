"""Best-effort JSON recovery from free-form agent output."""

from __future__ import annotations

import json
import re
from typing import Any

_FENCED_JSON = re.compile(r"```json([\s\S]*?)```")
_THINK_BLOCK = re.compile(r"<think>[\s\S]*?</think>")

_CLOSERS = {"{": "}", "[": "]"}


def extract_json(raw: str | None) -> Any | None:
    """Return the first JSON value recoverable from agent output, or None.

    Candidates are tried in order: fenced ```json blocks, the text with
    `<think>` spans removed, then the raw text. Each candidate is parsed whole
    first, then as balanced `{...}`/`[...]` blocks starting from the last one.
    """

    if not raw:
        return None
    fenced = [match.group(1) for match in _FENCED_JSON.finditer(raw)]
    stripped = _THINK_BLOCK.sub("", raw)
    for candidate in (*fenced, stripped, raw):
        if not candidate.strip():
            continue
        parsed = _try_parse(candidate)
        if parsed is not None:
            return parsed
    return None


def extract_json_blocks(value: str) -> list[str]:
    """Top-level balanced JSON object/array substrings, ignoring brackets inside strings."""

    results: list[str] = []
    expected: list[str] = []
    start = -1
    in_string = False
    escaped = False
    for index, char in enumerate(value):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
            continue
        if char in _CLOSERS:
            if not expected:
                start = index
            expected.append(_CLOSERS[char])
            continue
        if expected and char == expected[-1]:
            expected.pop()
            if not expected and start >= 0:
                results.append(value[start : index + 1])
                start = -1
    return results


def _try_parse(value: str) -> Any | None:
    direct = _loads(value)
    if direct is not None:
        return direct
    for block in reversed(extract_json_blocks(value)):
        parsed = _loads(block)
        if parsed is not None:
            return parsed
    return None


def _loads(value: str) -> Any | None:
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return None
