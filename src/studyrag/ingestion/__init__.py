"""Document chunking and indexing."""

from .chunking import (
    ChunkingOptions,
    ChunkValidation,
    chunk_text,
    merge_overlapping_chunks,
    normalize_text,
    validate_chunks,
)
from .service import DocumentIndexer, InvalidationPolicy

__all__ = [
    "ChunkValidation",
    "ChunkingOptions",
    "DocumentIndexer",
    "InvalidationPolicy",
    "chunk_text",
    "merge_overlapping_chunks",
    "normalize_text",
    "validate_chunks",
]
