"""Citation markers in response text.

The model cites a source by writing ``^[Document Name.pdf]`` right after the
claim it supports. Parsing happens in two steps: :func:`scan_citation_markers`
finds markers in completed text without interpreting them, and the functions
below assign numbers, render or validate on top of that scan. Numbers follow
the order in which documents are first cited.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence

from studyrag.metrics.observability import PipelineMetrics, get_logger
from studyrag.models import Citation, CitationMap, SearchResult

CITATION_PATTERN = re.compile(r"\^\[([^\]]+)\]")
MISSING_DOCUMENT_ERROR = "Document has been deleted or is no longer accessible"

_logger = get_logger("citations")


@dataclass(frozen=True)
class CitationMarker:
    start: int
    end: int
    document_name: str


@dataclass(frozen=True)
class CitationValidation:
    is_valid: bool
    document_exists: bool
    error: str | None = None


def scan_citation_markers(text: str) -> list[CitationMarker]:
    """Every ``^[name]`` marker in ``text`` with its span, in textual order."""

    return [
        CitationMarker(start=match.start(), end=match.end(), document_name=match.group(1).strip())
        for match in CITATION_PATTERN.finditer(text)
    ]


def assign_citation_numbers(
    markers: Sequence[CitationMarker],
    documents: Mapping[str, str],
    *,
    existing: CitationMap | None = None,
) -> CitationMap:
    """Number cited documents by first appearance.

    ``documents`` maps a document name to its id; markers naming anything else
    are left unnumbered. ``existing`` numbers are kept and extended.
    """

    citation_map: CitationMap = dict(existing or {})
    numbered = {citation.document_name for citation in citation_map.values()}
    for marker in markers:
        name = marker.document_name
        if name in numbered:
            continue
        document_id = documents.get(name)
        if document_id is None:
            _logger.warning("citations.unknown_document", document_name=name)
            continue
        number = len(citation_map) + 1
        citation_map[str(number)] = Citation(citation_number=number, document_id=document_id, document_name=name)
        numbered.add(name)
        PipelineMetrics.citations_assigned.inc()
    return citation_map


def create_document_name_lookup(citation_map: CitationMap) -> dict[str, Citation]:
    return {citation.document_name: citation for citation in citation_map.values()}


def render_citations(text: str, citation_map: CitationMap) -> str:
    """Replace resolvable markers with ``[n]``; unknown markers stay as written."""

    lookup = create_document_name_lookup(citation_map)

    def substitute(match: re.Match[str]) -> str:
        citation = lookup.get(match.group(1).strip())
        if citation is None:
            return match.group(0)
        return f"[{citation.citation_number}]"

    return CITATION_PATTERN.sub(substitute, text)


def citation_positions(text: str, citation_map: CitationMap) -> list[tuple[int, Citation]]:
    lookup = create_document_name_lookup(citation_map)
    return [
        (marker.start, lookup[marker.document_name])
        for marker in scan_citation_markers(text)
        if marker.document_name in lookup
    ]


def extract_citations_from_content(content: str, search_results: Iterable[SearchResult]) -> CitationMap:
    """Citation map for ``content``, accepting only documents returned by searches."""

    documents = {result.document_name: result.document_id for result in search_results}
    return assign_citation_numbers(scan_citation_markers(content), documents)


class CitationStreamTracker:
    """Assigns citation numbers while response text arrives in pieces.

    Only the completed prefix is scanned; an unterminated ``^[`` at the end of
    the buffer waits for the next delta. Numbers never change once assigned.
    """

    def __init__(self, documents: Mapping[str, str]) -> None:
        self._documents = dict(documents)
        self._buffer = ""
        self._scanned_to = 0
        self._citation_map: CitationMap = {}

    @property
    def text(self) -> str:
        return self._buffer

    @property
    def citation_map(self) -> CitationMap:
        return dict(self._citation_map)

    def feed(self, delta: str) -> list[Citation]:
        """Append ``delta``; return citations first assigned by it."""

        self._buffer += delta
        safe_end = self._safe_end()
        if safe_end <= self._scanned_to:
            return []
        window = self._buffer[self._scanned_to : safe_end]
        before = len(self._citation_map)
        self._citation_map = assign_citation_numbers(
            scan_citation_markers(window),
            self._documents,
            existing=self._citation_map,
        )
        self._scanned_to = safe_end
        return [self._citation_map[str(number)] for number in range(before + 1, len(self._citation_map) + 1)]

    def render(self) -> str:
        return render_citations(self._buffer, self._citation_map)

    def _safe_end(self) -> int:
        open_at = self._buffer.rfind("^[", self._scanned_to)
        if open_at != -1 and self._buffer.find("]", open_at) == -1:
            return open_at
        if self._buffer.endswith("^"):
            return len(self._buffer) - 1
        return len(self._buffer)


def validate_citation_map(citation_map: Mapping[str, Any]) -> bool:
    """True when every key is numeric and every entry names a document id and name."""

    for key, value in citation_map.items():
        if not str(key).isdigit():
            return False
        if isinstance(value, Citation):
            document_id, document_name = value.document_id, value.document_name
        elif isinstance(value, Mapping):
            document_id, document_name = value.get("documentId"), value.get("documentName")
        else:
            return False
        if not document_id or not document_name:
            return False
    return True


def sanitize_citation_map(raw: Any) -> CitationMap:
    """Parse a persisted citation map, dropping malformed records instead of failing."""

    if not isinstance(raw, Mapping):
        return {}
    citation_map: CitationMap = {}
    for key, value in raw.items():
        key_text = str(key)
        if not key_text.isdigit() or int(key_text) < 1 or not isinstance(value, Mapping):
            _logger.warning("citations.malformed_record", key=key_text)
            continue
        document_id = value.get("documentId")
        document_name = value.get("documentName")
        if not isinstance(document_id, str) or not document_id.strip():
            _logger.warning("citations.malformed_record", key=key_text)
            continue
        if not isinstance(document_name, str) or not document_name.strip():
            _logger.warning("citations.malformed_record", key=key_text)
            continue
        citation_map[str(int(key_text))] = Citation(
            citation_number=int(key_text),
            document_id=document_id,
            document_name=document_name,
        )
    return citation_map


def citation_map_to_json(citation_map: CitationMap) -> dict[str, dict[str, str]]:
    return {key: citation.to_dict() for key, citation in citation_map.items()}


def validate_citations_against_documents(
    citation_map: CitationMap,
    existing_document_ids: Iterable[str],
) -> dict[str, CitationValidation]:
    existing = set(existing_document_ids)
    results: dict[str, CitationValidation] = {}
    for key, citation in citation_map.items():
        if citation.document_id in existing:
            results[key] = CitationValidation(is_valid=True, document_exists=True)
        else:
            results[key] = CitationValidation(is_valid=False, document_exists=False, error=MISSING_DOCUMENT_ERROR)
    return results


def citation_label(citation: Citation, validation: CitationValidation | None = None) -> str:
    if validation is not None and not validation.document_exists:
        return f"[{citation.citation_number}] document does not exist"
    return f"[{citation.citation_number}] {citation.document_name}"


__all__ = [
    "CITATION_PATTERN",
    "CitationMarker",
    "CitationStreamTracker",
    "CitationValidation",
    "MISSING_DOCUMENT_ERROR",
    "assign_citation_numbers",
    "citation_label",
    "citation_map_to_json",
    "citation_positions",
    "create_document_name_lookup",
    "extract_citations_from_content",
    "render_citations",
    "sanitize_citation_map",
    "scan_citation_markers",
    "validate_citation_map",
    "validate_citations_against_documents",
]
