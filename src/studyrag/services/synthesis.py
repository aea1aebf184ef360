"""Research synthesis flow: multi-query search, grouping and structured answer."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Sequence
from uuid import uuid4

from studyrag.citations.synthesis import (
    ResolvedSynthesis,
    SynthesisBackend,
    TemplateSynthesizer,
    resolve_structured_citations,
)
from studyrag.errors import InvalidQueryError
from studyrag.metrics.observability import get_logger
from studyrag.models import DocumentGroup, SearchScope
from studyrag.retrieval.orchestrator import MultiQueryRetriever, group_by_document
from studyrag.retrieval.scope import ScopeResolver
from studyrag.streaming.events import (
    EventStream,
    SynthesisCompleteEvent,
    SynthesisProgressEvent,
    ToolCallEndEvent,
    ToolCallStartEvent,
)

SYNTHESIS_TOOL_NAME = "synthesize_research_findings"
MAX_SEARCH_QUERIES = 5


@dataclass(frozen=True)
class SynthesisOutcome:
    status: Literal["complete", "no_results"]
    message: str
    synthesis_id: str | None = None
    resolved: ResolvedSynthesis | None = None
    groups: List[DocumentGroup] = field(default_factory=list)
    failed_queries: int = 0


class ResearchSynthesizer:
    """Runs the ``synthesize_research_findings`` tool end to end."""

    def __init__(
        self,
        retriever: MultiQueryRetriever,
        *,
        backend: SynthesisBackend | None = None,
        resolver: ScopeResolver | None = None,
        limit_per_query: int = 8,
        min_similarity: float = 0.1,
    ) -> None:
        self._retriever = retriever
        self._backend = backend or TemplateSynthesizer()
        self._resolver = resolver
        self._limit_per_query = limit_per_query
        self._min_similarity = min_similarity
        self._logger = get_logger("synthesis")

    async def synthesize(
        self,
        research_question: str,
        search_queries: Sequence[str],
        scope: SearchScope,
        *,
        document_ids: Sequence[str] | None = None,
        events: EventStream | None = None,
    ) -> SynthesisOutcome:
        if not (research_question or "").strip():
            raise InvalidQueryError("Research question cannot be empty")
        queries = [query for query in search_queries if query and query.strip()]
        if not 1 <= len(queries) <= MAX_SEARCH_QUERIES:
            raise InvalidQueryError(f"Provide between 1 and {MAX_SEARCH_QUERIES} search queries")

        async def emit(event: Any) -> None:
            if events is not None:
                await events.emit(event)

        async def progress(stage: str, payload: Dict[str, Any]) -> None:
            await emit(SynthesisProgressEvent(stage=stage, progress=payload))

        await emit(
            ToolCallStartEvent(
                tool_name=SYNTHESIS_TOOL_NAME,
                parameters={
                    "researchQuestion": research_question,
                    "searchQueries": list(queries),
                    "documentIds": list(document_ids or []),
                },
            )
        )
        try:
            search_scope = scope.narrowed(None)
            if document_ids:
                if self._resolver is not None:
                    document_ids = await self._resolver.validate_document_access(scope, document_ids)
                search_scope = scope.narrowed(document_ids)
            batch = await self._retriever.retrieve(
                queries,
                search_scope,
                limit_per_query=self._limit_per_query,
                min_similarity=self._min_similarity,
                progress=progress,
            )
            if batch.is_empty:
                self._logger.info("synthesis.no_results", study_id=scope.study_id, failed=batch.failed)
                await emit(ToolCallEndEvent(tool_name=SYNTHESIS_TOOL_NAME, success=False, error="No relevant content found"))
                return SynthesisOutcome(
                    status="no_results",
                    message="No relevant content was found for the provided queries.",
                    failed_queries=batch.failed,
                )

            groups = group_by_document(batch.results)
            await progress(
                "grouping",
                {"message": f"Organizing {len(batch.results)} results from {len(groups)} documents"},
            )
            await progress("analyzing", {"message": f"Analyzing insights across {len(groups)} documents..."})
            start = time.perf_counter()
            parsed = await self._backend.synthesize(research_question=research_question, groups=groups)
            resolved = resolve_structured_citations(parsed, groups)
            synthesis_id = f"synthesis-{uuid4().hex[:12]}"
            if events is not None:
                await events.emit_citations(list(resolved.citation_map.values()))
            await emit(
                SynthesisCompleteEvent(
                    synthesis=parsed.structured.model_dump(by_alias=True),
                    synthesis_id=synthesis_id,
                )
            )
            await emit(ToolCallEndEvent(tool_name=SYNTHESIS_TOOL_NAME, success=True))
        except Exception as exc:
            self._logger.error("synthesis.failed", study_id=scope.study_id, error=str(exc))
            await emit(ToolCallEndEvent(tool_name=SYNTHESIS_TOOL_NAME, success=False, error=str(exc)))
            raise
        self._logger.info(
            "synthesis.complete",
            study_id=scope.study_id,
            documents=len(groups),
            citations=len(resolved.citation_map),
            failed_queries=batch.failed,
            duration_seconds=time.perf_counter() - start,
        )
        return SynthesisOutcome(
            status="complete",
            message=(
                f"Research synthesis complete. Generated structured analysis with "
                f"{len(resolved.citations)} document citations from {len(groups)} documents."
            ),
            synthesis_id=synthesis_id,
            resolved=resolved,
            groups=groups,
            failed_queries=batch.failed,
        )


__all__ = ["ResearchSynthesizer", "SYNTHESIS_TOOL_NAME", "SynthesisOutcome"]
