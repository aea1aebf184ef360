"""Embedding codec, similarity, services and chunk stores."""

from .codec import deserialize_embedding, serialize_embedding
from .service import (
    EmbeddingBackend,
    EmbeddingConfig,
    EmbeddingFailure,
    EmbeddingResult,
    EmbeddingService,
    EmbeddingSuccess,
    HashEmbeddingBackend,
    LangChainEmbeddingBackend,
    VoyageEmbeddingBackend,
)
from .similarity import cosine_similarity, normalize
from .store import ChromaChunkStore, ChunkStore, InMemoryChunkStore

__all__ = [
    "ChromaChunkStore",
    "ChunkStore",
    "EmbeddingBackend",
    "EmbeddingConfig",
    "EmbeddingFailure",
    "EmbeddingResult",
    "EmbeddingService",
    "EmbeddingSuccess",
    "HashEmbeddingBackend",
    "InMemoryChunkStore",
    "LangChainEmbeddingBackend",
    "VoyageEmbeddingBackend",
    "cosine_similarity",
    "deserialize_embedding",
    "normalize",
    "serialize_embedding",
]
