"""Metadata caching."""

from .metadata import (
    CacheStats,
    MetadataCache,
    document_names_key,
    document_references_key,
    invalidate_document_cache,
    invalidate_study_cache,
    run_periodic_cleanup,
    study_context_key,
    study_metadata_key,
    study_stats_key,
)

__all__ = [
    "CacheStats",
    "MetadataCache",
    "document_names_key",
    "document_references_key",
    "invalidate_document_cache",
    "invalidate_study_cache",
    "run_periodic_cleanup",
    "study_context_key",
    "study_metadata_key",
    "study_stats_key",
]
