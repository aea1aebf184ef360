"""Multi-query retrieval: concurrent fan-out, deduplication and per-document balancing."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Sequence, Tuple

from studyrag.metrics.observability import PipelineMetrics, get_logger
from studyrag.models import DocumentGroup, SearchResult, SearchScope
from studyrag.retrieval.service import Retriever

ProgressCallback = Callable[[str, Dict[str, Any]], Awaitable[None]]

SIGNATURE_LENGTH = 100

STUDY_CONTEXT_QUERIES: Tuple[str, ...] = (
    "research objective goal purpose aim study",
    "methodology method approach interview protocol",
    "key findings main themes important insights",
)
STUDY_DETAIL_QUERIES: Tuple[str, ...] = (
    "surprising unexpected interesting notable specific",
    "key pain point major challenge significant problem",
)


@dataclass(frozen=True)
class OrchestratorConfig:
    max_per_document: int = 5
    final_limit: int = 20


@dataclass(frozen=True)
class SubQueryOutcome:
    query: str
    results: Tuple[SearchResult, ...] = ()
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class MultiQueryResult:
    results: List[SearchResult] = field(default_factory=list)
    outcomes: List[SubQueryOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.succeeded)

    @property
    def failed(self) -> int:
        return sum(1 for outcome in self.outcomes if not outcome.succeeded)

    @property
    def is_empty(self) -> bool:
        return not self.results


def deduplicate(results: Sequence[SearchResult]) -> list[SearchResult]:
    """Drop results whose first 100 characters repeat an earlier result (case-insensitive)."""

    seen: set[str] = set()
    unique: list[SearchResult] = []
    for result in results:
        signature = result.content[:SIGNATURE_LENGTH].lower().strip()
        if signature in seen:
            continue
        seen.add(signature)
        unique.append(result)
    return unique


def balance_by_document(results: Sequence[SearchResult], max_per_document: int = 5) -> list[SearchResult]:
    """Keep at most ``max_per_document`` best results of each document."""

    by_document: dict[str, list[SearchResult]] = {}
    for result in results:
        by_document.setdefault(result.document_id, []).append(result)
    balanced: list[SearchResult] = []
    for document_results in by_document.values():
        document_results.sort(key=lambda result: result.similarity, reverse=True)
        balanced.extend(document_results[:max_per_document])
    return balanced


def rank(results: Sequence[SearchResult], final_limit: int = 20) -> list[SearchResult]:
    return sorted(results, key=lambda result: result.similarity, reverse=True)[:final_limit]


def group_by_document(results: Sequence[SearchResult]) -> list[DocumentGroup]:
    """Group results per document in first-seen order; chunks sorted by similarity."""

    grouped: dict[str, list[SearchResult]] = {}
    for result in results:
        grouped.setdefault(result.document_id, []).append(result)
    return [
        DocumentGroup(
            document_id=document_id,
            document_name=chunks[0].document_name,
            chunks=tuple(sorted(chunks, key=lambda result: result.similarity, reverse=True)),
        )
        for document_id, chunks in grouped.items()
    ]


class MultiQueryRetriever:
    """Runs several searches concurrently and merges them into one ranked list.

    A failing sub-query is logged and excluded; the batch only ends up empty when
    every sub-query failed or found nothing. Cancelling ``retrieve`` cancels the
    in-flight searches and discards their results.
    """

    def __init__(self, retriever: Retriever, config: OrchestratorConfig | None = None) -> None:
        self._retriever = retriever
        self._config = config or OrchestratorConfig()
        self._logger = get_logger("orchestrator")

    async def retrieve(
        self,
        queries: Sequence[str],
        scope: SearchScope,
        *,
        limit_per_query: int,
        min_similarity: float,
        progress: ProgressCallback | None = None,
    ) -> MultiQueryResult:
        start = time.perf_counter()
        total = len(queries)

        async def run_one(index: int, query: str) -> SubQueryOutcome:
            if progress is not None:
                await progress("searching", {"query": query, "current": index + 1, "total": total})
            try:
                found = await self._retriever.search(
                    query,
                    scope,
                    limit=limit_per_query,
                    min_similarity=min_similarity,
                )
            except Exception as exc:
                PipelineMetrics.subquery_failures.inc()
                self._logger.warning("orchestrator.subquery_failed", query=query, error=str(exc))
                if progress is not None:
                    await progress("search-error", {"query": query, "current": index + 1, "total": total, "error": str(exc)})
                return SubQueryOutcome(query=query, error=str(exc))
            if progress is not None:
                await progress(
                    "search-complete",
                    {"query": query, "current": index + 1, "total": total, "resultsFound": len(found)},
                )
            return SubQueryOutcome(query=query, results=tuple(found))

        outcomes = list(await asyncio.gather(*(run_one(index, query) for index, query in enumerate(queries))))
        # Merge in query order so the ranking does not depend on completion order.
        merged = [result for outcome in outcomes for result in outcome.results]
        unique = deduplicate(merged)
        balanced = balance_by_document(unique, self._config.max_per_document)
        ranked = rank(balanced, self._config.final_limit)
        result = MultiQueryResult(results=ranked, outcomes=outcomes)
        self._logger.info(
            "orchestrator.complete",
            study_id=scope.study_id,
            queries=total,
            failed=result.failed,
            merged=len(merged),
            returned=len(ranked),
            duration_seconds=time.perf_counter() - start,
        )
        return result


@dataclass(frozen=True)
class RepresentativeContent:
    formatted_content: str
    total_chunks: int
    document_count: int
    context_queries: int
    detail_queries: int

    @property
    def is_empty(self) -> bool:
        return self.total_chunks == 0


def format_representative_content(results: Sequence[SearchResult]) -> str:
    by_name: dict[str, list[SearchResult]] = {}
    for result in results:
        by_name.setdefault(result.document_name, []).append(result)
    sections: list[str] = []
    for document_name, chunks in by_name.items():
        ordered = sorted(chunks, key=lambda result: result.similarity, reverse=True)
        excerpts = "\n\n".join(f"{index}. {chunk.content.strip()}" for index, chunk in enumerate(ordered, start=1))
        sections.append(f"**Document: {document_name}**\n({len(ordered)} key excerpts)\n\n{excerpts}")
    return "\n\n---\n\n".join(sections)


class StudySummaryRetriever:
    """Collects a representative sample of a study for summary generation."""

    def __init__(
        self,
        retriever: Retriever,
        *,
        results_per_query: int = 2,
        min_similarity: float = 0.1,
        config: OrchestratorConfig | None = None,
    ) -> None:
        self._multi = MultiQueryRetriever(retriever, config)
        self._results_per_query = results_per_query
        self._min_similarity = min_similarity

    async def representative_content(self, scope: SearchScope) -> RepresentativeContent:
        batch = await self._multi.retrieve(
            STUDY_CONTEXT_QUERIES + STUDY_DETAIL_QUERIES,
            scope,
            limit_per_query=self._results_per_query,
            min_similarity=self._min_similarity,
        )
        if batch.is_empty:
            return RepresentativeContent(
                formatted_content="",
                total_chunks=0,
                document_count=0,
                context_queries=len(STUDY_CONTEXT_QUERIES),
                detail_queries=len(STUDY_DETAIL_QUERIES),
            )
        return RepresentativeContent(
            formatted_content=format_representative_content(batch.results),
            total_chunks=len(batch.results),
            document_count=len({result.document_id for result in batch.results}),
            context_queries=len(STUDY_CONTEXT_QUERIES),
            detail_queries=len(STUDY_DETAIL_QUERIES),
        )


__all__ = [
    "MultiQueryResult",
    "MultiQueryRetriever",
    "OrchestratorConfig",
    "ProgressCallback",
    "RepresentativeContent",
    "STUDY_CONTEXT_QUERIES",
    "STUDY_DETAIL_QUERIES",
    "StudySummaryRetriever",
    "SubQueryOutcome",
    "balance_by_document",
    "deduplicate",
    "format_representative_content",
    "group_by_document",
    "rank",
]
