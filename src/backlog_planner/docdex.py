"""HTTP client for the Docdex planning-document search service."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
SEARCH_LIMIT = 8


class DocdexError(RuntimeError):
    """Docdex request failed or returned an unreadable payload."""


@dataclass(slots=True)
class DocdexSegment:
    """One section of a search hit."""

    content: str
    heading: str | None = None


@dataclass(slots=True)
class DocdexDocument:
    """Search hit normalized across the Docdex payload variants."""

    id: str
    doc_type: str
    path: str | None = None
    title: str | None = None
    content: str | None = None
    segments: list[DocdexSegment] = field(default_factory=list)


class DocumentSearch(Protocol):
    """Protocol for planning-document lookups."""

    def search(
        self,
        *,
        project_key: str | None = None,
        doc_type: str | None = None,
        profile: str | None = None,
        query: str | None = None,
    ) -> list[DocdexDocument]:
        """Return documents matching the filter, best matches first."""


class DocdexClient:
    """Docdex search client; returns no documents when no base URL is configured."""

    def __init__(
        self,
        *,
        base_url: str | None,
        repo_id: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") if base_url else None
        headers = {"Content-Type": "application/json"}
        if repo_id:
            headers["x-docdex-repo-id"] = repo_id
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
            transport=transport,
            follow_redirects=True,
        )

    def search(
        self,
        *,
        project_key: str | None = None,
        doc_type: str | None = None,
        profile: str | None = None,
        query: str | None = None,
    ) -> list[DocdexDocument]:
        if self.base_url is None:
            return []
        params: dict[str, str] = {}
        text = " ".join(part for part in (query, doc_type, project_key) if part).strip()
        if text:
            params["q"] = text
        if profile:
            params["profile"] = profile
        if doc_type:
            params["doc_type"] = doc_type
        if project_key:
            params["project_key"] = project_key
        params["limit"] = str(SEARCH_LIMIT)

        logger.debug("Docdex search %s", params)
        try:
            response = self._client.get(f"{self.base_url}/search", params=params)
        except httpx.HTTPError as error:
            logger.warning("Docdex request failed: %s", error)
            raise DocdexError(f"Docdex request failed: {error}") from error
        if not response.is_success:
            raise DocdexError(
                f"Docdex request failed ({response.status_code}): {response.text}",
            )
        try:
            payload = response.json()
        except ValueError as error:
            raise DocdexError("Docdex returned a non-JSON search payload.") from error
        return coerce_search_results(payload, fallback_doc_type=doc_type)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> DocdexClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def coerce_search_results(
    raw: Any,
    *,
    fallback_doc_type: str | None = None,
) -> list[DocdexDocument]:
    """Normalize a list, `{"results": [...]}`, or `{"hits": [...]}` payload."""

    if isinstance(raw, list):
        items = raw
    elif isinstance(raw, dict) and isinstance(raw.get("results"), list):
        items = raw["results"]
    elif isinstance(raw, dict) and isinstance(raw.get("hits"), list):
        items = raw["hits"]
    else:
        items = []

    documents: list[DocdexDocument] = []
    for index, item in enumerate(items, start=1):
        if not isinstance(item, dict):
            continue
        doc_id = str(_first(item, "doc_id", "docId", "id") or f"doc-{index}")
        path = _first(item, "path", "file", "rel_path", "file_path")
        title = _first(item, "title", "name", "file_name")
        doc_type = _first(item, "doc_type", "docType", "type") or infer_doc_type(
            path,
            fallback=fallback_doc_type or "DOC",
        )
        snippet = _first(item, "snippet", "summary", "excerpt")
        content = _first(item, "content") or snippet
        raw_segments = item.get("segments")
        if isinstance(raw_segments, list):
            segments = [
                DocdexSegment(
                    content=str(_first(segment, "content", "text") or ""),
                    heading=_first(segment, "heading", "title"),
                )
                for segment in raw_segments
                if isinstance(segment, dict)
            ]
        elif snippet:
            segments = [DocdexSegment(content=str(snippet))]
        else:
            segments = []
        documents.append(
            DocdexDocument(
                id=doc_id,
                doc_type=str(doc_type),
                path=path,
                title=title,
                content=content,
                segments=segments,
            ),
        )
    return documents


def infer_doc_type(path: str | None, *, fallback: str = "DOC") -> str:
    if not path:
        return fallback
    name = PurePosixPath(path).name.lower()
    if "openapi" in name or "swagger" in name:
        return "OPENAPI"
    if "sds" in name:
        return "SDS"
    if "pdr" in name:
        return "PDR"
    if "rfp" in name:
        return "RFP"
    return fallback


def _first(item: dict[str, Any], *names: str) -> Any | None:
    for name in names:
        value = item.get(name)
        if value is not None:
            return value
    return None
