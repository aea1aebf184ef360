"""Retrieval: vector search, scope resolution and multi-query orchestration."""

from .orchestrator import (
    MultiQueryResult,
    MultiQueryRetriever,
    OrchestratorConfig,
    RepresentativeContent,
    StudySummaryRetriever,
    balance_by_document,
    deduplicate,
    group_by_document,
    rank,
)
from .scope import DocumentLookupResult, ScopeResolver
from .service import Retriever, SearchConfig, VectorSearchEngine, format_search_results

__all__ = [
    "DocumentLookupResult",
    "MultiQueryResult",
    "MultiQueryRetriever",
    "OrchestratorConfig",
    "RepresentativeContent",
    "Retriever",
    "ScopeResolver",
    "SearchConfig",
    "StudySummaryRetriever",
    "VectorSearchEngine",
    "balance_by_document",
    "deduplicate",
    "format_search_results",
    "group_by_document",
    "rank",
]
