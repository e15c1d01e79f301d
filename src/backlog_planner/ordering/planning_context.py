"""Planning document context for ordering runs, resolved through Docdex."""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

import yaml

from backlog_planner.docdex import DocdexDocument, DocdexError, DocumentSearch
from backlog_planner.errors import PlanningContextError

logger = logging.getLogger(__name__)

OPENAPI_HINTS_LIMIT = 20
OPENAPI_METHODS = frozenset({"get", "post", "put", "patch", "delete", "options", "head", "trace"})
SEGMENT_LIMIT = 3
SEGMENT_CHAR_LIMIT = 800
FALLBACK_QUERY = "sds requirements architecture openapi swagger"

_PLANNING_DOC_HINT = re.compile(
    r"(sds|pdr|rfp|requirements|architecture|openapi|swagger|design)",
    re.IGNORECASE,
)
_SDS_WORD = re.compile(r"\bsds\b")
_OPENAPI_WORD = re.compile(r"(openapi|swagger)")


class DocContextKind(str, Enum):
    SDS = "sds"
    OPENAPI = "openapi"
    FALLBACK = "fallback"


class PlanningContextPolicy(str, Enum):
    BEST_EFFORT = "best_effort"
    REQUIRE_ANY = "require_any"
    REQUIRE_SDS_OR_OPENAPI = "require_sds_or_openapi"


@dataclass(slots=True)
class DocContext:
    """Rendered planning context handed to prompts and metadata."""

    content: str
    source: str
    kind: DocContextKind


def classify_doc_context_kind(document: DocdexDocument) -> DocContextKind:
    doc_type = (document.doc_type or "").lower()
    label = f"{document.path or ''} {document.title or ''}".lower()
    if "sds" in doc_type or _SDS_WORD.search(label):
        return DocContextKind.SDS
    if "openapi" in doc_type or "swagger" in doc_type or _OPENAPI_WORD.search(label):
        return DocContextKind.OPENAPI
    return DocContextKind.FALLBACK


def build_openapi_hint_summary(documents: list[DocdexDocument]) -> str:
    """Summarize `x-mcoda-task-hints` of OpenAPI operations, one line per operation."""

    lines: list[str] = []
    for document in documents:
        if classify_doc_context_kind(document) is not DocContextKind.OPENAPI:
            continue
        raw_content = document.content
        if not raw_content or not raw_content.strip():
            raw_content = "\n\n".join(segment.content for segment in document.segments)
        parsed = parse_structured_doc(raw_content)
        if parsed is None or not isinstance(parsed.get("paths"), dict):
            continue
        for api_path, path_item in parsed["paths"].items():
            if not isinstance(path_item, dict):
                continue
            for method, operation in path_item.items():
                normalized_method = str(method).lower()
                if normalized_method not in OPENAPI_METHODS or not isinstance(operation, dict):
                    continue
                hints = operation.get("x-mcoda-task-hints")
                if not isinstance(hints, dict):
                    continue
                lines.append(f"- {normalized_method.upper()} {api_path} :: {_format_hints(hints)}")
                if len(lines) >= OPENAPI_HINTS_LIMIT:
                    return "\n".join(lines)
    return "\n".join(lines)


def parse_structured_doc(raw: str) -> dict[str, Any] | None:
    """Parse a YAML or JSON document body into a mapping."""

    if not raw or not raw.strip():
        return None
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return None
    return parsed if isinstance(parsed, dict) else None


def build_doc_context(
    search: DocumentSearch,
    project_key: str,
    warnings: list[str],
) -> DocContext | None:
    """Resolve the best planning document; Docdex failures become a warning."""

    try:
        documents = search.search(doc_type="SDS", project_key=project_key)
        if not documents:
            documents = search.search(doc_type="OPENAPI", project_key=project_key)
        if not documents:
            documents = search.search(
                project_key=project_key,
                profile="workspace-code",
                query=FALLBACK_QUERY,
            )
    except DocdexError as error:
        warnings.append(f"Docdex context unavailable: {error}")
        return None
    if not documents:
        return None

    document = next((entry for entry in documents if _is_planning_doc(entry)), documents[0])
    kind = classify_doc_context_kind(document)
    segments = document.segments[:SEGMENT_LIMIT]
    if segments:
        body = "\n\n".join(
            f"### {segment.heading or f'Segment {index}'}\n{_truncate(segment.content)}"
            for index, segment in enumerate(segments, start=1)
        )
    else:
        body = document.content or ""

    blocks = ["[Planning context]", document.title or document.path or document.id, body]
    hints = build_openapi_hint_summary([document])
    if hints:
        blocks.append(f"[OPENAPI_HINTS]\n{hints}")
    logger.debug("Planning context resolved from %s (kind=%s)", document.id, kind.value)
    return DocContext(
        content="\n\n".join(block for block in blocks if block),
        source=document.id or document.path or "sds",
        kind=kind,
    )


def enforce_planning_context_policy(policy: str, context: DocContext | None) -> None:
    """Raise `PlanningContextError` when the resolved context violates the policy."""

    resolved = PlanningContextPolicy(policy)
    if resolved is PlanningContextPolicy.BEST_EFFORT:
        return
    if resolved is PlanningContextPolicy.REQUIRE_ANY:
        if context is None:
            raise PlanningContextError(
                "Planning context is required but no planning documents were resolved "
                "(policy=require_any).",
            )
        return
    if context is None:
        raise PlanningContextError(
            "Planning context is required from SDS/OpenAPI sources, but none were resolved "
            "(policy=require_sds_or_openapi).",
        )
    if context.kind not in (DocContextKind.SDS, DocContextKind.OPENAPI):
        raise PlanningContextError(
            "Planning context policy require_sds_or_openapi rejected source "
            f"'{context.source}' (kind={context.kind.value}).",
        )


def estimate_tokens(text: str) -> int:
    return max(1, math.ceil(len(text) / 4))


def _is_planning_doc(document: DocdexDocument) -> bool:
    doc_type = (document.doc_type or "").lower()
    if "sds" in doc_type or "pdr" in doc_type or "rfp" in doc_type:
        return True
    label = f"{document.path or ''} {document.title or ''}"
    return bool(_PLANNING_DOC_HINT.search(label))


def _truncate(content: str) -> str:
    if len(content) > SEGMENT_CHAR_LIMIT:
        return f"{content[:SEGMENT_CHAR_LIMIT]}..."
    return content


def _format_hints(hints: dict[str, Any]) -> str:
    service = hints.get("service") if isinstance(hints.get("service"), str) else "-"
    capability = hints.get("capability") if isinstance(hints.get("capability"), str) else "-"
    stage = hints.get("stage") if isinstance(hints.get("stage"), str) else "-"
    raw_complexity = hints.get("complexity")
    if (
        isinstance(raw_complexity, int | float)
        and not isinstance(raw_complexity, bool)
        and math.isfinite(raw_complexity)
    ):
        complexity = f"{raw_complexity:.1f}"
    else:
        complexity = "-"
    deps = _count_strings(hints.get("depends_on_operations"))
    tests = hints.get("test_requirements")
    if not isinstance(tests, dict):
        tests = {}
    counts = "/".join(
        str(_count_strings(tests.get(name))) for name in ("unit", "component", "integration", "api")
    )
    return (
        f"service={service}; capability={capability}; stage={stage}; "
        f"complexity={complexity}; deps={deps}; tests(u/c/i/a)={counts}"
    )


def _count_strings(value: Any) -> int:
    if not isinstance(value, list):
        return 0
    return sum(1 for entry in value if isinstance(entry, str))
