"""Exception hierarchy shared across the retrieval engine."""

from __future__ import annotations


class StudyRagError(Exception):
    """Base class for all engine errors."""


class ScopeError(StudyRagError, ValueError):
    """Raised when a caller scope is missing its user or study identifier."""


class InvalidQueryError(StudyRagError, ValueError):
    """Raised for deterministic input problems (empty query, bad limits)."""


class AccessDeniedError(StudyRagError):
    """Raised when requested documents fall outside the caller's study."""

    def __init__(self, message: str, *, document_ids: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.document_ids = document_ids


class DocumentNotFoundError(StudyRagError, LookupError):
    """Raised when a referenced document or chunk does not exist."""


class EmbeddingError(StudyRagError):
    """Raised by embedding backends when a vector cannot be produced."""


class TransientEmbeddingError(EmbeddingError):
    """Embedding failure worth retrying (timeouts, rate limits, 5xx)."""


class EmbeddingUnavailableError(StudyRagError):
    """Raised when the embedding service is still failing after all retries."""

    def __init__(self, message: str, *, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class EmbeddingCodecError(StudyRagError, ValueError):
    """Raised when stored embedding bytes cannot be decoded."""


class CacheInvalidationError(StudyRagError):
    """Raised when cache invalidation keeps failing after all retries."""


__all__ = [
    "AccessDeniedError",
    "CacheInvalidationError",
    "DocumentNotFoundError",
    "EmbeddingCodecError",
    "EmbeddingError",
    "EmbeddingUnavailableError",
    "InvalidQueryError",
    "ScopeError",
    "StudyRagError",
    "TransientEmbeddingError",
]
