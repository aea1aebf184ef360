"""Document indexing: chunk, embed, store and invalidate cached study metadata."""

from __future__ import annotations

import time
from dataclasses import dataclass
from uuid import NAMESPACE_URL, uuid4, uuid5

from studyrag.cache.metadata import MetadataCache, invalidate_document_cache, invalidate_study_cache
from studyrag.embeddings.service import EmbeddingService
from studyrag.embeddings.store import ChunkStore
from studyrag.errors import CacheInvalidationError, DocumentNotFoundError, EmbeddingUnavailableError, InvalidQueryError
from studyrag.ingestion.chunking import ChunkingOptions, chunk_text
from studyrag.metrics.observability import PipelineMetrics, get_logger
from studyrag.models import Chunk, DocumentRecord, SearchScope


@dataclass(frozen=True)
class InvalidationPolicy:
    attempts: int = 3
    base_delay_seconds: float = 0.1


class DocumentIndexer:
    """The only write path into the chunk store."""

    _logger = get_logger("indexing")

    def __init__(
        self,
        store: ChunkStore,
        embeddings: EmbeddingService,
        cache: MetadataCache,
        *,
        chunking: ChunkingOptions | None = None,
        invalidation: InvalidationPolicy | None = None,
    ) -> None:
        self._store = store
        self._embeddings = embeddings
        self._cache = cache
        self._chunking = chunking or ChunkingOptions()
        self._invalidation = invalidation or InvalidationPolicy()

    async def index_text(
        self,
        scope: SearchScope,
        document_name: str,
        text: str,
        *,
        document_id: str | None = None,
    ) -> DocumentRecord:
        """Index ``text`` as a document of the scope's study.

        When embedding fails the document is recorded as ``FAILED`` without
        chunks and ``EmbeddingUnavailableError`` is re-raised.
        """

        if not (document_name or "").strip():
            raise InvalidQueryError("Document name is required")
        start = time.perf_counter()
        document_id = document_id or uuid4().hex
        pieces = chunk_text(text, self._chunking)
        if not pieces:
            raise InvalidQueryError(f"Document {document_name} has no text to index")
        processing = DocumentRecord(
            document_id=document_id,
            study_id=scope.study_id,
            user_id=scope.user_id,
            name=document_name,
            status="PROCESSING",
        )
        await self._store.add_document(processing)
        try:
            vectors = await self._embeddings.embed_documents([piece.content for piece in pieces])
        except EmbeddingUnavailableError:
            failed = DocumentRecord(
                document_id=document_id,
                study_id=scope.study_id,
                user_id=scope.user_id,
                name=document_name,
                status="FAILED",
                uploaded_at=processing.uploaded_at,
            )
            await self._store.add_document(failed)
            self._logger.error("indexing.embedding_failed", document_id=document_id, study_id=scope.study_id)
            await self._invalidate(scope.study_id, [document_id])
            raise
        chunks = [
            Chunk(
                chunk_id=uuid5(NAMESPACE_URL, f"{document_id}:{piece.chunk_index}").hex,
                document_id=document_id,
                document_name=document_name,
                content=piece.content,
                chunk_index=piece.chunk_index,
                embedding=vector,
            )
            for piece, vector in zip(pieces, vectors)
        ]
        ready = DocumentRecord(
            document_id=document_id,
            study_id=scope.study_id,
            user_id=scope.user_id,
            name=document_name,
            status="READY",
            chunk_count=len(chunks),
            uploaded_at=processing.uploaded_at,
        )
        written = await self._store.add_chunks(ready, chunks)
        await self._store.add_document(ready)
        duration = time.perf_counter() - start
        PipelineMetrics.observe_indexing(duration, written)
        self._logger.info(
            "indexing.complete",
            document_id=document_id,
            study_id=scope.study_id,
            chunk_count=written,
            duration_seconds=duration,
        )
        await self._invalidate(scope.study_id, [document_id])
        return ready

    async def delete_document(self, scope: SearchScope, document_id: str) -> None:
        deleted = await self._store.delete_document(scope, document_id)
        if not deleted:
            raise DocumentNotFoundError(f"Document not found: {document_id}")
        self._logger.info("indexing.deleted", document_id=document_id, study_id=scope.study_id)
        await self._invalidate(scope.study_id, [document_id])

    async def _invalidate(self, study_id: str, document_ids: list[str]) -> bool:
        """Drop cached metadata; a failure is logged and never blocks the mutation."""

        try:
            await invalidate_study_cache(
                self._cache,
                study_id,
                attempts=self._invalidation.attempts,
                base_delay=self._invalidation.base_delay_seconds,
            )
            invalidate_document_cache(self._cache, document_ids)
        except CacheInvalidationError as exc:
            self._logger.error("indexing.cache_stale", study_id=study_id, error=str(exc))
            return False
        return True


__all__ = ["DocumentIndexer", "InvalidationPolicy"]
