"""Chunk store implementations.

Retrieval only reads from a store; the write methods exist for the indexer.
Every read is filtered by the caller's scope so chunks outside the user's
study (or outside an explicit document allowlist) are never returned.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Mapping, MutableMapping, Protocol, Sequence

import chromadb
from chromadb.api import ClientAPI

from studyrag.embeddings.codec import deserialize_embedding, serialize_embedding
from studyrag.errors import AccessDeniedError, EmbeddingCodecError
from studyrag.models import Chunk, DocumentRecord, SearchScope

LOGGER = logging.getLogger(__name__)


class ChunkStore(Protocol):
    """Protocol for scoped chunk persistence backends."""

    async def fetch_candidates(
        self,
        scope: SearchScope,
        *,
        exclude_chunk_id: str | None = None,
    ) -> Sequence[Chunk]:
        """Return scoped chunks that carry an embedding."""

    async def fetch_chunks(self, scope: SearchScope) -> Sequence[Chunk]:
        """Return every scoped chunk, with or without an embedding."""

    async def get_chunk(self, scope: SearchScope, chunk_id: str) -> Chunk | None:
        """Return one chunk of the caller's study."""

    async def list_documents(self, scope: SearchScope) -> Sequence[DocumentRecord]:
        """Return the documents visible in ``scope``."""

    async def add_document(self, record: DocumentRecord) -> None:
        """Register or update a document record.

        Raises ``AccessDeniedError`` when the id belongs to another user or study.
        """

    async def add_chunks(self, record: DocumentRecord, chunks: Sequence[Chunk]) -> int:
        """Replace the chunks of ``record``; returns how many were written."""

    async def delete_document(self, scope: SearchScope, document_id: str) -> bool:
        """Remove a document and its chunks."""


@dataclass(frozen=True)
class _ChunkRow:
    chunk_id: str
    document_id: str
    content: str
    chunk_index: int
    embedding: bytes | None


def _check_owner(existing: DocumentRecord, record: DocumentRecord) -> None:
    if existing.user_id != record.user_id or existing.study_id != record.study_id:
        raise AccessDeniedError(
            f"Access denied: document {record.document_id} belongs to another study",
            document_ids=(record.document_id,),
        )


def _in_scope(record: DocumentRecord, scope: SearchScope) -> bool:
    if record.user_id != scope.user_id or record.study_id != scope.study_id:
        return False
    if scope.document_ids is not None and record.document_id not in scope.document_ids:
        return False
    return True


class InMemoryChunkStore:
    """Process-local store keeping embeddings as packed float32 bytes."""

    def __init__(self) -> None:
        self._documents: dict[str, DocumentRecord] = {}
        self._rows: dict[str, list[_ChunkRow]] = {}

    async def add_document(self, record: DocumentRecord) -> None:
        existing = self._documents.get(record.document_id)
        if existing is not None:
            _check_owner(existing, record)
        self._documents[record.document_id] = record
        self._rows.setdefault(record.document_id, [])

    async def add_chunks(self, record: DocumentRecord, chunks: Sequence[Chunk]) -> int:
        existing = self._documents.get(record.document_id)
        if existing is None:
            await self.add_document(record)
        else:
            _check_owner(existing, record)
        rows: list[_ChunkRow] = []
        for chunk in chunks:
            embedding = serialize_embedding(chunk.embedding) if chunk.embedding is not None else None
            rows.append(
                _ChunkRow(
                    chunk_id=chunk.chunk_id,
                    document_id=record.document_id,
                    content=chunk.content,
                    chunk_index=chunk.chunk_index,
                    embedding=embedding,
                )
            )
        self._rows[record.document_id] = rows
        return len(chunks)

    def add_raw_chunk(
        self,
        document_id: str,
        *,
        chunk_id: str,
        content: str,
        chunk_index: int,
        embedding: bytes | None,
    ) -> None:
        """Insert a row with pre-encoded embedding bytes."""

        self._rows.setdefault(document_id, []).append(
            _ChunkRow(chunk_id=chunk_id, document_id=document_id, content=content, chunk_index=chunk_index, embedding=embedding)
        )

    async def delete_document(self, scope: SearchScope, document_id: str) -> bool:
        record = self._documents.get(document_id)
        if record is None or not _in_scope(record, scope.narrowed(None)):
            return False
        del self._documents[document_id]
        self._rows.pop(document_id, None)
        return True

    async def list_documents(self, scope: SearchScope) -> Sequence[DocumentRecord]:
        return [record for record in self._documents.values() if _in_scope(record, scope)]

    async def fetch_chunks(self, scope: SearchScope) -> Sequence[Chunk]:
        return [self._to_chunk(row, decode=False) for row in self._scoped_rows(scope)]

    async def fetch_candidates(
        self,
        scope: SearchScope,
        *,
        exclude_chunk_id: str | None = None,
    ) -> Sequence[Chunk]:
        candidates: list[Chunk] = []
        for row in self._scoped_rows(scope):
            if row.embedding is None or row.chunk_id == exclude_chunk_id:
                continue
            try:
                candidates.append(self._to_chunk(row, decode=True))
            except EmbeddingCodecError as exc:
                LOGGER.warning("Skipping chunk %s with undecodable embedding: %s", row.chunk_id, exc)
        return candidates

    async def get_chunk(self, scope: SearchScope, chunk_id: str) -> Chunk | None:
        for row in self._scoped_rows(scope.narrowed(None)):
            if row.chunk_id == chunk_id:
                return self._to_chunk(row, decode=row.embedding is not None)
        return None

    def _scoped_rows(self, scope: SearchScope) -> list[_ChunkRow]:
        rows: list[_ChunkRow] = []
        for document_id, record in self._documents.items():
            if _in_scope(record, scope):
                rows.extend(self._rows.get(document_id, ()))
        return rows

    def _to_chunk(self, row: _ChunkRow, *, decode: bool) -> Chunk:
        record = self._documents[row.document_id]
        embedding = tuple(deserialize_embedding(row.embedding)) if decode and row.embedding is not None else None
        return Chunk(
            chunk_id=row.chunk_id,
            document_id=row.document_id,
            document_name=record.name,
            content=row.content,
            chunk_index=row.chunk_index,
            embedding=embedding,
        )


class ChromaChunkStore:
    """Chroma-backed chunk store; document records are derived from chunk metadata."""

    def __init__(
        self,
        collection_name: str = "studyrag-chunks",
        *,
        client: ClientAPI | None = None,
        persist_directory: str | Path | None = None,
    ) -> None:
        if client is not None:
            self._client = client
        elif persist_directory is not None:
            self._client = chromadb.PersistentClient(path=str(persist_directory))
        else:
            self._client = chromadb.EphemeralClient()
        self._collection = self._client.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": "cosine"},
        )

    async def add_document(self, record: DocumentRecord) -> None:
        # Records only exist through their chunks' metadata.
        await self._ensure_owner(record)

    async def add_chunks(self, record: DocumentRecord, chunks: Sequence[Chunk]) -> int:
        embedded = [chunk for chunk in chunks if chunk.embedding is not None]
        if len(embedded) < len(chunks):
            LOGGER.warning(
                "Chroma store skipping %d chunk(s) without embeddings for %s",
                len(chunks) - len(embedded),
                record.document_id,
            )
        await self._ensure_owner(record)
        await asyncio.to_thread(self._collection.delete, where={"document_id": record.document_id})
        if not embedded:
            return 0
        await asyncio.to_thread(
            self._collection.upsert,
            ids=[chunk.chunk_id for chunk in embedded],
            documents=[chunk.content for chunk in embedded],
            embeddings=[list(chunk.embedding or ()) for chunk in embedded],
            metadatas=[self._serialize_chunk(record, chunk) for chunk in embedded],
        )
        return len(embedded)

    async def _ensure_owner(self, record: DocumentRecord) -> None:
        existing = await asyncio.to_thread(
            self._collection.get,
            where={"document_id": record.document_id},
            limit=1,
            include=["metadatas"],
        )
        for metadata in existing.get("metadatas") or []:
            owner = replace(
                record,
                user_id=str(metadata.get("user_id", "")),
                study_id=str(metadata.get("study_id", "")),
            )
            _check_owner(owner, record)

    async def delete_document(self, scope: SearchScope, document_id: str) -> bool:
        where = self._where(scope.narrowed([document_id]))
        existing = await asyncio.to_thread(self._collection.get, where=where, include=[])
        if not existing.get("ids"):
            return False
        await asyncio.to_thread(self._collection.delete, where=where)
        return True

    async def list_documents(self, scope: SearchScope) -> Sequence[DocumentRecord]:
        batch = await asyncio.to_thread(self._collection.get, where=self._where(scope), include=["metadatas"])
        records: dict[str, DocumentRecord] = {}
        for metadata in batch.get("metadatas") or []:
            if not isinstance(metadata, Mapping):
                continue
            document_id = str(metadata.get("document_id", ""))
            current = records.get(document_id)
            if current is None:
                records[document_id] = DocumentRecord(
                    document_id=document_id,
                    study_id=str(metadata.get("study_id", "")),
                    user_id=str(metadata.get("user_id", "")),
                    name=str(metadata.get("document_name", "")),
                    status="READY",
                    chunk_count=1,
                )
            else:
                records[document_id] = replace(current, chunk_count=current.chunk_count + 1)
        return sorted(records.values(), key=lambda record: record.name.lower())

    async def fetch_chunks(self, scope: SearchScope) -> Sequence[Chunk]:
        return await self._get_chunks(self._where(scope))

    async def fetch_candidates(
        self,
        scope: SearchScope,
        *,
        exclude_chunk_id: str | None = None,
    ) -> Sequence[Chunk]:
        chunks = await self._get_chunks(self._where(scope))
        return [
            chunk
            for chunk in chunks
            if chunk.embedding is not None and chunk.chunk_id != exclude_chunk_id
        ]

    async def get_chunk(self, scope: SearchScope, chunk_id: str) -> Chunk | None:
        chunks = await self._get_chunks(self._where(scope.narrowed(None)), ids=[chunk_id])
        return chunks[0] if chunks else None

    async def _get_chunks(self, where: Mapping[str, Any], ids: list[str] | None = None) -> list[Chunk]:
        result = await asyncio.to_thread(
            self._collection.get,
            ids=ids,
            where=where,
            include=["embeddings", "documents", "metadatas"],
        )
        chunk_ids = result.get("ids") or []
        documents = result.get("documents")
        metadatas = result.get("metadatas")
        embeddings = result.get("embeddings")
        if documents is None:
            documents = [""] * len(chunk_ids)
        if metadatas is None:
            metadatas = [{}] * len(chunk_ids)
        if embeddings is None:
            embeddings = [None] * len(chunk_ids)
        chunks = [
            self._deserialize_chunk(chunk_id, document, metadata, embedding)
            for chunk_id, document, metadata, embedding in zip(chunk_ids, documents, metadatas, embeddings)
        ]
        chunks.sort(key=lambda chunk: (chunk.document_name.lower(), chunk.document_id, chunk.chunk_index))
        return chunks

    @staticmethod
    def _where(scope: SearchScope) -> dict[str, Any]:
        clauses: list[dict[str, Any]] = [{"user_id": scope.user_id}, {"study_id": scope.study_id}]
        if scope.document_ids is not None:
            clauses.append({"document_id": {"$in": list(scope.document_ids) or [""]}})
        return {"$and": clauses}

    @staticmethod
    def _serialize_chunk(record: DocumentRecord, chunk: Chunk) -> MutableMapping[str, Any]:
        return {
            "user_id": record.user_id,
            "study_id": record.study_id,
            "document_id": record.document_id,
            "document_name": record.name,
            "chunk_index": chunk.chunk_index,
        }

    @staticmethod
    def _deserialize_chunk(
        chunk_id: str,
        document: str | None,
        metadata: Mapping[str, Any] | None,
        embedding: Any,
    ) -> Chunk:
        metadata = metadata or {}
        vector = tuple(float(value) for value in embedding) if embedding is not None else None
        return Chunk(
            chunk_id=chunk_id,
            document_id=str(metadata.get("document_id", "")),
            document_name=str(metadata.get("document_name", "")),
            content=document or "",
            chunk_index=int(metadata.get("chunk_index", 0)),
            embedding=vector,
        )


__all__ = ["ChromaChunkStore", "ChunkStore", "InMemoryChunkStore"]
