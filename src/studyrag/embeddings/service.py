"""Embedding backends and the retrying embedding service."""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol, Sequence, Tuple, Union

import httpx
from langchain_community.embeddings import HuggingFaceEmbeddings
from langchain_core.embeddings import Embeddings as LangChainEmbeddings
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_fixed

from studyrag.embeddings.similarity import normalize
from studyrag.errors import EmbeddingError, EmbeddingUnavailableError, TransientEmbeddingError
from studyrag.metrics.observability import PipelineMetrics

LOGGER = logging.getLogger(__name__)

Vector = Tuple[float, ...]

PERMANENT_HTTP_CODES = frozenset({400, 401, 403, 404, 422})


@dataclass(frozen=True)
class EmbeddingConfig:
    """Configuration for embedding backends and the retry policy around them."""

    model: str = "BAAI/bge-small-en-v1.5"
    dim: int = 384
    use_model: bool = False
    device: str | None = None
    normalize: bool = True
    cache_folder: str | None = None
    max_retries: int = 3
    retry_delay_seconds: float = 1.0
    batch_size: int = 128


@dataclass(frozen=True)
class EmbeddingSuccess:
    vector: Vector
    attempts: int = 1


@dataclass(frozen=True)
class EmbeddingFailure:
    error: BaseException
    attempts: int


EmbeddingResult = Union[EmbeddingSuccess, EmbeddingFailure]


class EmbeddingBackend(Protocol):
    """Protocol describing embedding behaviour."""

    batch_size: int

    async def embed_query(self, text: str) -> Vector:
        """Return embedding vector for a query string."""

    async def embed_documents(self, texts: Sequence[str]) -> Sequence[Vector]:
        """Return one vector per text, in order."""


class HashEmbeddingBackend:
    """Deterministic lightweight embedding fallback used for testing."""

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or EmbeddingConfig()
        self.batch_size = self._config.batch_size

    def _hash_to_vector(self, text: str) -> Vector:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        repeat = (self._config.dim + len(digest) - 1) // len(digest)
        raw = (digest * repeat)[: self._config.dim]
        vector = [byte / 255.0 for byte in raw]
        if self._config.normalize:
            return normalize(vector)
        return tuple(vector)

    async def embed_query(self, text: str) -> Vector:
        return self._hash_to_vector(text)

    async def embed_documents(self, texts: Sequence[str]) -> Sequence[Vector]:
        return [self._hash_to_vector(text) for text in texts]


class LangChainEmbeddingBackend:
    """Embedding backend that optionally leverages sentence-embedding models via LangChain."""

    def __init__(
        self,
        config: EmbeddingConfig | None = None,
        *,
        client: LangChainEmbeddings | None = None,
    ) -> None:
        self._config = config or EmbeddingConfig()
        self.batch_size = self._config.batch_size
        self._delegate = HashEmbeddingBackend(self._config)
        self._client: LangChainEmbeddings | None = client
        if client is not None:
            return
        if not self._config.use_model:
            LOGGER.info("LangChainEmbeddingBackend running in hash-only mode.")
            return
        try:
            model_kwargs = {"device": self._config.device} if self._config.device else {}
            self._client = HuggingFaceEmbeddings(
                model_name=self._config.model,
                model_kwargs=model_kwargs,
                cache_folder=self._config.cache_folder,
                encode_kwargs={"normalize_embeddings": self._config.normalize},
            )
            LOGGER.info("Loaded embedding model %s", self._config.model)
        except Exception as exc:  # pragma: no cover - model download/runtime guard
            LOGGER.warning("Falling back to hash embeddings: %s", exc)
            self._client = None

    async def embed_query(self, text: str) -> Vector:
        if self._client is None:
            return await self._delegate.embed_query(text)
        vector = await self._client.aembed_query(text)
        return self._finish(vector)

    async def embed_documents(self, texts: Sequence[str]) -> Sequence[Vector]:
        if not texts:
            return []
        if self._client is None:
            return await self._delegate.embed_documents(texts)
        vectors = await self._client.aembed_documents(list(texts))
        if len(vectors) != len(texts):
            LOGGER.error("Embedding backend returned %d vectors for %d texts", len(vectors), len(texts))
            raise EmbeddingError("Mismatch between number of texts and embedding vectors")
        if vectors and len(vectors[0]) != self._config.dim:
            LOGGER.warning(
                "Embedding dim mismatch: configured=%d, actual=%d",
                self._config.dim,
                len(vectors[0]),
            )
        return [self._finish(vector) for vector in vectors]

    def _finish(self, vector: Sequence[float]) -> Vector:
        if not self._config.normalize:
            return tuple(vector)
        return normalize(vector)


class VoyageEmbeddingBackend:
    """HTTP client for the Voyage embeddings API."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "voyage-large-2",
        base_url: str = "https://api.voyageai.com/v1",
        timeout_seconds: float = 30.0,
        batch_size: int = 128,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key:
            raise EmbeddingError("Voyage API key is not configured")
        self._model = model
        self.batch_size = batch_size
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout_seconds)
        self._headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}

    async def embed_query(self, text: str) -> Vector:
        vectors = await self._request([text], input_type="query")
        return vectors[0]

    async def embed_documents(self, texts: Sequence[str]) -> Sequence[Vector]:
        if not texts:
            return []
        if len(texts) > self.batch_size:
            raise EmbeddingError(f"Batch of {len(texts)} exceeds Voyage limit of {self.batch_size}")
        return await self._request(list(texts), input_type="document")

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, texts: list[str], *, input_type: str) -> list[Vector]:
        payload = {"input": texts, "model": self._model, "input_type": input_type}
        try:
            response = await self._client.post("/embeddings", json=payload, headers=self._headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            code = exc.response.status_code
            message = f"Voyage API error {code}: {exc.response.text[:200]}"
            if code in PERMANENT_HTTP_CODES:
                raise EmbeddingError(message) from exc
            raise TransientEmbeddingError(message) from exc
        except httpx.TransportError as exc:
            raise TransientEmbeddingError(f"Voyage API unreachable: {exc}") from exc
        data = response.json().get("data") or []
        if len(data) != len(texts):
            raise EmbeddingError(f"Voyage returned {len(data)} embeddings for {len(texts)} inputs")
        ordered = sorted(data, key=lambda item: item.get("index", 0))
        return [tuple(float(value) for value in item["embedding"]) for item in ordered]


def is_transient_error(exc: BaseException) -> bool:
    """Decide whether an embedding failure is worth another attempt."""

    if isinstance(exc, TransientEmbeddingError):
        return True
    if isinstance(exc, (EmbeddingError, ValueError, TypeError)):
        return False
    status_code = getattr(getattr(exc, "response", None), "status_code", None)
    if isinstance(status_code, int):
        return status_code not in PERMANENT_HTTP_CODES
    return True


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    PipelineMetrics.embedding_retries.inc()
    LOGGER.warning(
        "Embedding attempt %d failed, retrying: %s",
        retry_state.attempt_number,
        exc,
    )


class EmbeddingService:
    """Wraps a backend with the fixed-delay retry policy and tagged results."""

    def __init__(
        self,
        backend: EmbeddingBackend,
        config: EmbeddingConfig | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._backend = backend
        self._config = config or EmbeddingConfig()
        self._sleep = sleep

    @property
    def backend(self) -> EmbeddingBackend:
        return self._backend

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(max(1, self._config.max_retries)),
            wait=wait_fixed(self._config.retry_delay_seconds),
            retry=retry_if_exception(is_transient_error),
            before_sleep=_log_retry,
            sleep=self._sleep,
            reraise=True,
        )

    async def embed_query(self, text: str) -> EmbeddingResult:
        """Embed a query; never raises for backend failures."""

        if not (text or "").strip():
            return EmbeddingFailure(error=EmbeddingError("Cannot embed empty text"), attempts=0)
        attempts = 0
        try:
            async for attempt in self._retrying():
                with attempt:
                    attempts += 1
                    vector = await self._backend.embed_query(text)
        except Exception as exc:
            PipelineMetrics.embedding_failures.inc()
            LOGGER.error("Query embedding failed after %d attempt(s): %s", attempts, exc)
            return EmbeddingFailure(error=exc, attempts=attempts)
        return EmbeddingSuccess(vector=tuple(vector), attempts=attempts)

    async def embed_documents(self, texts: Sequence[str]) -> list[Vector]:
        """Embed texts in backend-sized batches, preserving order.

        Raises ``EmbeddingUnavailableError`` once a batch exhausts its retries.
        """

        if not texts:
            return []
        batch_size = max(1, min(self._config.batch_size, getattr(self._backend, "batch_size", self._config.batch_size)))
        vectors: list[Vector] = []
        for start in range(0, len(texts), batch_size):
            batch = list(texts[start : start + batch_size])
            attempts = 0
            try:
                async for attempt in self._retrying():
                    with attempt:
                        attempts += 1
                        produced = await self._backend.embed_documents(batch)
            except Exception as exc:
                PipelineMetrics.embedding_failures.inc()
                raise EmbeddingUnavailableError(
                    f"Failed to embed batch starting at {start}: {exc}", attempts=attempts
                ) from exc
            if len(produced) != len(batch):
                raise EmbeddingError(f"Backend returned {len(produced)} vectors for {len(batch)} texts")
            vectors.extend(tuple(vector) for vector in produced)
        return vectors


__all__ = [
    "EmbeddingBackend",
    "EmbeddingConfig",
    "EmbeddingFailure",
    "EmbeddingResult",
    "EmbeddingService",
    "EmbeddingSuccess",
    "HashEmbeddingBackend",
    "LangChainEmbeddingBackend",
    "VoyageEmbeddingBackend",
    "is_transient_error",
]
