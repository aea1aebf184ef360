"""Shared domain models used across the retrieval engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Literal, Sequence, Tuple

from studyrag.errors import ScopeError

DocumentStatus = Literal["PROCESSING", "READY", "FAILED"]


@dataclass(frozen=True)
class SearchScope:
    """Caller scope threaded through every retrieval call.

    ``document_ids`` narrows the search to an allowlist inside the study; ``None``
    means every document in the study.
    """

    user_id: str
    study_id: str
    document_ids: Tuple[str, ...] | None = None

    def __post_init__(self) -> None:
        if not (self.user_id or "").strip():
            raise ScopeError("Scope requires a user id")
        if not (self.study_id or "").strip():
            raise ScopeError("Scope requires a study id")
        if self.document_ids is not None and not isinstance(self.document_ids, tuple):
            object.__setattr__(self, "document_ids", tuple(self.document_ids))

    def narrowed(self, document_ids: Sequence[str] | None) -> "SearchScope":
        """Return a copy restricted to ``document_ids``."""

        if document_ids is None:
            return SearchScope(user_id=self.user_id, study_id=self.study_id)
        return SearchScope(user_id=self.user_id, study_id=self.study_id, document_ids=tuple(document_ids))


@dataclass(frozen=True)
class DocumentRecord:
    """Document registered in a study."""

    document_id: str
    study_id: str
    user_id: str
    name: str
    status: DocumentStatus = "READY"
    chunk_count: int = 0
    uploaded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class Chunk:
    """Indexed passage of a document; the embedding is written once at indexing time."""

    chunk_id: str
    document_id: str
    document_name: str
    content: str
    chunk_index: int
    embedding: Tuple[float, ...] | None = None


@dataclass(frozen=True)
class SearchResult:
    """Chunk scored against a single query."""

    chunk_id: str
    document_id: str
    document_name: str
    content: str
    similarity: float
    chunk_index: int


@dataclass(frozen=True)
class DocumentGroup:
    """Search results of one document, sorted by similarity descending."""

    document_id: str
    document_name: str
    chunks: Tuple[SearchResult, ...]


@dataclass(frozen=True)
class Citation:
    """Numbered reference from response text to a source document."""

    citation_number: int
    document_id: str
    document_name: str

    def to_dict(self) -> dict[str, str]:
        return {"documentId": self.document_id, "documentName": self.document_name}


CitationMap = Dict[str, Citation]


@dataclass(frozen=True)
class TextChunk:
    """Output of document chunking; ``content`` equals ``text[start_position:end_position]``."""

    content: str
    chunk_index: int
    start_position: int
    end_position: int


@dataclass(frozen=True)
class EmbeddingStats:
    """Embedding coverage for a study."""

    total_chunks: int
    chunks_with_embeddings: int
    documents_with_embeddings: int
    average_chunk_length: int


__all__ = [
    "Chunk",
    "Citation",
    "CitationMap",
    "DocumentGroup",
    "DocumentRecord",
    "DocumentStatus",
    "EmbeddingStats",
    "SearchResult",
    "SearchScope",
    "TextChunk",
]
