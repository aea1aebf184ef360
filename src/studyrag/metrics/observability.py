"""Observability helpers for studyrag."""

from __future__ import annotations

import logging
from contextvars import ContextVar
from typing import Iterable

import structlog
from prometheus_client import Counter, Gauge, Histogram

_logger_configured = False
_correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="-")


def configure_logging(level: int = logging.INFO) -> None:
    global _logger_configured  # noqa: PLW0603 - module-level guard
    if _logger_configured:
        return
    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _logger_configured = True


def bind_correlation_id(correlation_id: str) -> None:
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
    _correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    structlog.contextvars.clear_contextvars()
    _correlation_id_var.set("-")


def get_correlation_id() -> str:
    return _correlation_id_var.get()


def get_logger(name: str = "studyrag") -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


def _clamp_score(score: float) -> float:
    if score < -1.0:
        return -1.0
    if score > 1.0:
        return 1.0
    return score


class PipelineMetrics:
    """Prometheus metrics for retrieval, caching and indexing stages."""

    indexing_latency = Histogram(
        "studyrag_indexing_duration_seconds",
        "Time spent chunking, embedding and storing a document.",
        buckets=(0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
    )
    indexing_chunks = Histogram(
        "studyrag_indexing_chunk_count",
        "Chunks produced per indexed document.",
        buckets=(0, 1, 5, 10, 20, 40, 80, 160),
    )
    retrieval_latency = Histogram(
        "studyrag_retrieval_duration_seconds",
        "Time spent answering a single vector search.",
        buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0),
    )
    retrieved_chunk_count = Histogram(
        "studyrag_retrieved_chunk_count",
        "Number of chunks returned by a vector search.",
        buckets=(0, 1, 2, 3, 5, 8, 13, 21),
    )
    similarity_score = Histogram(
        "studyrag_similarity_score",
        "Cosine similarity of returned chunks.",
        buckets=(-0.5, 0.0, 0.1, 0.25, 0.5, 0.75, 1.0),
    )
    subquery_failures = Counter(
        "studyrag_subquery_failures_total",
        "Sub-queries excluded from a multi-query batch because they failed.",
    )
    embedding_retries = Counter(
        "studyrag_embedding_retries_total",
        "Embedding calls retried after a transient failure.",
    )
    embedding_failures = Counter(
        "studyrag_embedding_failures_total",
        "Embedding calls that failed after exhausting retries.",
    )
    cache_events = Counter(
        "studyrag_cache_events_total",
        "Metadata cache lookups and evictions.",
        ["event"],
    )
    cache_size = Gauge(
        "studyrag_cache_entries",
        "Entries currently held by the metadata cache.",
    )
    citations_assigned = Counter(
        "studyrag_citations_assigned_total",
        "Citation numbers assigned to response text.",
    )

    @classmethod
    def observe_indexing(cls, duration_seconds: float, chunk_count: int) -> None:
        cls.indexing_latency.observe(duration_seconds)
        cls.indexing_chunks.observe(chunk_count)

    @classmethod
    def observe_retrieval(
        cls,
        duration_seconds: float,
        chunk_count: int,
        scores: Iterable[float],
    ) -> None:
        cls.retrieval_latency.observe(duration_seconds)
        cls.retrieved_chunk_count.observe(chunk_count)
        for score in scores:
            cls.similarity_score.observe(_clamp_score(score))

    @classmethod
    def observe_cache(cls, event: str, size: int | None = None) -> None:
        cls.cache_events.labels(event=event).inc()
        if size is not None:
            cls.cache_size.set(size)


__all__ = [
    "PipelineMetrics",
    "bind_correlation_id",
    "clear_correlation_id",
    "configure_logging",
    "get_correlation_id",
    "get_logger",
]
