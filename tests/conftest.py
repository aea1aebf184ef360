from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Dict, Sequence

import pytest

from studyrag.cache.metadata import MetadataCache
from studyrag.embeddings.service import EmbeddingConfig, EmbeddingService
from studyrag.embeddings.store import InMemoryChunkStore
from studyrag.models import Chunk, DocumentRecord, SearchScope
from studyrag.retrieval.scope import ScopeResolver
from studyrag.retrieval.service import VectorSearchEngine

QUERY_VECTOR = (1.0, 0.0)


def vector_for(similarity: float) -> tuple[float, float]:
    """Unit vector whose cosine with ``QUERY_VECTOR`` equals ``similarity``."""

    return (similarity, math.sqrt(max(0.0, 1.0 - similarity * similarity)))


class StubBackend:
    """Embeds every query as ``QUERY_VECTOR`` unless mapped explicitly."""

    batch_size = 128

    def __init__(self, vectors: Dict[str, Sequence[float]] | None = None) -> None:
        self.vectors = dict(vectors or {})
        self.queries: list[str] = []

    async def embed_query(self, text: str):
        self.queries.append(text)
        return tuple(self.vectors.get(text, QUERY_VECTOR))

    async def embed_documents(self, texts):
        return [tuple(self.vectors.get(text, QUERY_VECTOR)) for text in texts]


async def _no_sleep(_: float) -> None:
    return None


def make_embeddings(backend=None) -> EmbeddingService:
    return EmbeddingService(backend or StubBackend(), EmbeddingConfig(dim=2, retry_delay_seconds=0.0), sleep=_no_sleep)


async def seed_document(
    store: InMemoryChunkStore,
    document_id: str,
    name: str,
    similarities: Sequence[float],
    *,
    user_id: str = "u1",
    study_id: str = "s1",
    age_minutes: int = 0,
) -> DocumentRecord:
    record = DocumentRecord(
        document_id=document_id,
        study_id=study_id,
        user_id=user_id,
        name=name,
        chunk_count=len(similarities),
        uploaded_at=datetime(2024, 5, 1, tzinfo=timezone.utc) - timedelta(minutes=age_minutes),
    )
    chunks = [
        Chunk(
            chunk_id=f"{document_id}-{index}",
            document_id=document_id,
            document_name=name,
            content=f"{name} passage {index} at {similarity}",
            chunk_index=index,
            embedding=vector_for(similarity),
        )
        for index, similarity in enumerate(similarities)
    ]
    await store.add_document(record)
    await store.add_chunks(record, chunks)
    return record


@pytest.fixture
def scope() -> SearchScope:
    return SearchScope(user_id="u1", study_id="s1")


@pytest.fixture
def store() -> InMemoryChunkStore:
    return InMemoryChunkStore()


@pytest.fixture
def cache() -> MetadataCache:
    return MetadataCache()


@pytest.fixture
def backend() -> StubBackend:
    return StubBackend()


@pytest.fixture
def resolver(store, cache) -> ScopeResolver:
    return ScopeResolver(store, cache)


@pytest.fixture
def engine(store, backend, resolver) -> VectorSearchEngine:
    return VectorSearchEngine(store, make_embeddings(backend), resolver=resolver)


@pytest.fixture
async def study(store):
    """A.pdf with chunks at 0.9/0.6/0.3 and B.pdf at 0.8/0.4, plus foreign documents."""

    a = await seed_document(store, "doc-a", "A.pdf", [0.9, 0.6, 0.3], age_minutes=10)
    b = await seed_document(store, "doc-b", "B.pdf", [0.8, 0.4])
    await seed_document(store, "doc-x", "X.pdf", [0.99], study_id="s2")
    await seed_document(store, "doc-y", "Y.pdf", [0.99], user_id="u2")
    return a, b
