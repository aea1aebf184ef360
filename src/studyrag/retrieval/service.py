"""Vector search over a study's chunks."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Protocol, Sequence

from studyrag.embeddings.service import EmbeddingFailure, EmbeddingService
from studyrag.embeddings.similarity import cosine_similarity
from studyrag.embeddings.store import ChunkStore
from studyrag.errors import (
    AccessDeniedError,
    DocumentNotFoundError,
    EmbeddingUnavailableError,
    InvalidQueryError,
)
from studyrag.metrics.observability import PipelineMetrics, get_logger
from studyrag.models import EmbeddingStats, SearchResult, SearchScope
from studyrag.retrieval.scope import ScopeResolver


@dataclass(frozen=True)
class SearchConfig:
    """Defaults applied when a caller does not pass limits explicitly."""

    default_limit: int = 5
    min_similarity: float = 0.1


class Retriever(Protocol):
    """Return ranked passages for one query inside a scope."""

    async def search(
        self,
        query: str,
        scope: SearchScope,
        *,
        limit: int | None = None,
        min_similarity: float | None = None,
    ) -> Sequence[SearchResult]:
        """Return results sorted by similarity descending."""


class VectorSearchEngine:
    """Brute-force cosine search over the scoped chunk set."""

    def __init__(
        self,
        store: ChunkStore,
        embeddings: EmbeddingService,
        *,
        resolver: ScopeResolver | None = None,
        config: SearchConfig | None = None,
    ) -> None:
        self._store = store
        self._embeddings = embeddings
        self._resolver = resolver
        self._config = config or SearchConfig()
        self._logger = get_logger("search")

    async def search(
        self,
        query: str,
        scope: SearchScope,
        *,
        limit: int | None = None,
        min_similarity: float | None = None,
    ) -> list[SearchResult]:
        """Embed ``query`` and return the best matching chunks in ``scope``.

        Raises ``InvalidQueryError`` for an empty query or a non-positive limit,
        ``AccessDeniedError`` when the scope names documents outside the study
        (checked before any embedding work), and ``EmbeddingUnavailableError``
        when the query cannot be embedded.
        """

        if not (query or "").strip():
            raise InvalidQueryError("Search query cannot be empty")
        effective_limit = self._config.default_limit if limit is None else limit
        if effective_limit < 1:
            raise InvalidQueryError("Search limit must be at least 1")
        if scope.document_ids is not None:
            await self._check_access(scope)
        embedded = await self._embeddings.embed_query(query)
        if isinstance(embedded, EmbeddingFailure):
            raise EmbeddingUnavailableError(
                f"Failed to embed query: {embedded.error}",
                attempts=embedded.attempts,
            ) from embedded.error
        return await self.search_with_embedding(
            embedded.vector,
            scope,
            limit=effective_limit,
            min_similarity=min_similarity,
        )

    async def search_with_embedding(
        self,
        vector: Sequence[float],
        scope: SearchScope,
        *,
        limit: int | None = None,
        min_similarity: float | None = None,
        exclude_chunk_id: str | None = None,
    ) -> list[SearchResult]:
        effective_limit = self._config.default_limit if limit is None else limit
        threshold = self._config.min_similarity if min_similarity is None else min_similarity
        start = time.perf_counter()
        candidates = await self._store.fetch_candidates(scope, exclude_chunk_id=exclude_chunk_id)
        scored: list[SearchResult] = []
        for chunk in candidates:
            try:
                similarity = cosine_similarity(vector, chunk.embedding or ())
            except Exception as exc:
                self._logger.warning("search.chunk_skipped", chunk_id=chunk.chunk_id, error=str(exc))
                continue
            if similarity >= threshold:
                scored.append(
                    SearchResult(
                        chunk_id=chunk.chunk_id,
                        document_id=chunk.document_id,
                        document_name=chunk.document_name,
                        content=chunk.content,
                        similarity=similarity,
                        chunk_index=chunk.chunk_index,
                    )
                )
        # list.sort is stable: equal scores keep store order.
        scored.sort(key=lambda result: result.similarity, reverse=True)
        results = scored[:effective_limit]
        duration = time.perf_counter() - start
        PipelineMetrics.observe_retrieval(duration, len(results), (result.similarity for result in results))
        self._logger.info(
            "search.complete",
            study_id=scope.study_id,
            candidate_count=len(candidates),
            result_count=len(results),
            min_similarity=threshold,
            duration_seconds=duration,
        )
        return results

    async def find_similar_chunks(
        self,
        chunk_id: str,
        scope: SearchScope,
        *,
        limit: int | None = None,
        min_similarity: float | None = None,
    ) -> list[SearchResult]:
        """Chunks of the same study that resemble ``chunk_id``, excluding itself."""

        source = await self._store.get_chunk(scope, chunk_id)
        if source is None or source.embedding is None:
            raise DocumentNotFoundError(f"Chunk not found or has no embedding: {chunk_id}")
        return await self.search_with_embedding(
            source.embedding,
            scope.narrowed(None),
            limit=limit,
            min_similarity=min_similarity,
            exclude_chunk_id=chunk_id,
        )

    async def embedding_stats(self, scope: SearchScope) -> EmbeddingStats:
        chunks = await self._store.fetch_chunks(scope)
        embedded = [chunk for chunk in chunks if chunk.embedding is not None]
        total_length = sum(len(chunk.content) for chunk in chunks)
        return EmbeddingStats(
            total_chunks=len(chunks),
            chunks_with_embeddings=len(embedded),
            documents_with_embeddings=len({chunk.document_id for chunk in embedded}),
            average_chunk_length=round(total_length / len(chunks)) if chunks else 0,
        )

    async def _check_access(self, scope: SearchScope) -> None:
        requested = scope.document_ids or ()
        if self._resolver is not None:
            await self._resolver.validate_document_access(scope, requested)
            return
        if not requested:
            raise InvalidQueryError("No document IDs provided for specific search")
        known = {record.document_id for record in await self._store.list_documents(scope.narrowed(None))}
        denied = tuple(document_id for document_id in requested if document_id not in known)
        if denied:
            raise AccessDeniedError("Access denied to one or more specified documents", document_ids=denied)


def format_search_results(results: Sequence[SearchResult]) -> str:
    if not results:
        return "No relevant content found."
    return "\n---\n\n".join(
        f"[{index}] {result.document_name} ({round(result.similarity * 100)}% match)\n{result.content.strip()}\n"
        for index, result in enumerate(results, start=1)
    )


__all__ = ["Retriever", "SearchConfig", "VectorSearchEngine", "format_search_results"]
