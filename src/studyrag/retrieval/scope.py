"""Study document lookups: access validation, name resolution and cached references."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Mapping, Sequence

from studyrag.cache.metadata import (
    MetadataCache,
    document_names_key,
    document_references_key,
    study_context_key,
)
from studyrag.embeddings.store import ChunkStore
from studyrag.errors import AccessDeniedError, InvalidQueryError
from studyrag.metrics.observability import get_logger
from studyrag.models import DocumentRecord, SearchScope

MAX_NAME_SUGGESTIONS = 3
MAX_EDIT_DISTANCE = 2


@dataclass(frozen=True)
class DocumentMatch:
    name: str
    document_id: str
    status: str


@dataclass(frozen=True)
class NameSuggestion:
    query: str
    suggestions: List[str]


@dataclass(frozen=True)
class DocumentLookupResult:
    found: List[DocumentMatch] = field(default_factory=list)
    not_found: List[str] = field(default_factory=list)
    alternatives: List[NameSuggestion] = field(default_factory=list)
    available_documents: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class StudyDocumentContext:
    total_documents: int
    available_names: List[str]


def _owned_key(base: str, scope: SearchScope) -> str:
    return f"{base}:{scope.user_id}"


def levenshtein_distance(left: str, right: str) -> int:
    if len(left) < len(right):
        left, right = right, left
    previous = list(range(len(right) + 1))
    for i, left_char in enumerate(left, start=1):
        current = [i]
        for j, right_char in enumerate(right, start=1):
            cost = 0 if left_char == right_char else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


class ScopeResolver:
    """Resolves documents for a caller scope, caching study-level lookups."""

    def __init__(self, store: ChunkStore, cache: MetadataCache, *, metadata_ttl: float = 1800.0) -> None:
        self._store = store
        self._cache = cache
        self._metadata_ttl = metadata_ttl
        self._logger = get_logger("scope")

    async def study_documents(self, scope: SearchScope) -> list[DocumentRecord]:
        """Every document of the caller's study, newest first."""

        study_scope = scope.narrowed(None)

        async def fetch() -> list[DocumentRecord]:
            records = await self._store.list_documents(study_scope)
            return sorted(records, key=lambda record: record.uploaded_at, reverse=True)

        records = await self._cache.get_or_fetch(
            _owned_key(document_references_key(scope.study_id), scope),
            fetch,
            ttl=self._metadata_ttl,
        )
        return [record for record in records if record.user_id == scope.user_id]

    async def validate_document_access(self, scope: SearchScope, document_ids: Sequence[str]) -> tuple[str, ...]:
        """Return ``document_ids`` if all belong to the study, else raise ``AccessDeniedError``."""

        requested = tuple(dict.fromkeys(document_ids))
        if not requested:
            raise InvalidQueryError("No document IDs provided for specific search")
        known = {record.document_id for record in await self.study_documents(scope)}
        denied = tuple(document_id for document_id in requested if document_id not in known)
        if denied:
            self._logger.warning(
                "scope.access_denied",
                study_id=scope.study_id,
                user_id=scope.user_id,
                document_ids=list(denied),
            )
            raise AccessDeniedError("Access denied to one or more specified documents", document_ids=denied)
        return requested

    async def document_names(self, scope: SearchScope, document_ids: Sequence[str]) -> dict[str, str]:
        ids = sorted(set(document_ids))
        if not ids:
            return {}

        async def fetch() -> dict[str, str]:
            records = await self.study_documents(scope)
            return {record.document_id: record.name for record in records if record.document_id in ids}

        names: Mapping[str, str] = await self._cache.get_or_fetch(_owned_key(document_names_key(ids), scope), fetch)
        return dict(names)

    async def study_context(self, scope: SearchScope) -> StudyDocumentContext:
        async def fetch() -> StudyDocumentContext:
            records = await self.study_documents(scope)
            ready = [record.name for record in records if record.status == "READY"]
            return StudyDocumentContext(total_documents=len(records), available_names=ready)

        return await self._cache.get_or_fetch(_owned_key(study_context_key(scope.study_id), scope), fetch, ttl=self._metadata_ttl)

    async def find_document_ids(self, scope: SearchScope, document_names: Sequence[str]) -> DocumentLookupResult:
        """Resolve file names to document ids; unmatched names get near-miss suggestions."""

        if not document_names:
            raise InvalidQueryError("At least one document name is required")
        records = await self.study_documents(scope)
        result = DocumentLookupResult(available_documents=[record.name for record in records])
        for query_name in document_names:
            lowered = query_name.lower()
            exact = next((record for record in records if record.name.lower() == lowered), None)
            if exact is not None:
                result.found.append(DocumentMatch(name=exact.name, document_id=exact.document_id, status=exact.status))
                continue
            result.not_found.append(query_name)
            suggestions = [
                record.name
                for record in records
                if lowered in record.name.lower()
                or record.name.lower() in lowered
                or levenshtein_distance(record.name.lower(), lowered) <= MAX_EDIT_DISTANCE
            ][:MAX_NAME_SUGGESTIONS]
            if suggestions:
                result.alternatives.append(NameSuggestion(query=query_name, suggestions=suggestions))
        return result


__all__ = [
    "DocumentLookupResult",
    "DocumentMatch",
    "NameSuggestion",
    "ScopeResolver",
    "StudyDocumentContext",
    "levenshtein_distance",
]
