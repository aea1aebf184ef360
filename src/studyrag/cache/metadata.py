"""In-process TTL cache for study metadata.

The cache is constructed once per process and injected into its consumers.
Entries expire lazily: an expired entry is removed and reported as a miss the
next time it is read. ``cleanup`` sweeps everything that has expired.
"""

from __future__ import annotations

import asyncio
import fnmatch
import time
from collections import OrderedDict
from dataclasses import dataclass
from threading import RLock
from typing import Any, Awaitable, Callable, Iterable, Literal, TypeVar

from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt, wait_exponential

from studyrag.errors import CacheInvalidationError
from studyrag.metrics.observability import PipelineMetrics, get_logger

T = TypeVar("T")

EvictionPolicy = Literal["fifo", "lru"]

_logger = get_logger("cache")


@dataclass(frozen=True)
class CacheEntry:
    data: Any
    timestamp: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now >= self.timestamp + self.ttl


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int
    evictions: int
    expired: int
    size: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class MetadataCache:
    """Bounded key/value cache with per-entry TTL and glob invalidation."""

    def __init__(
        self,
        *,
        max_entries: int = 1000,
        default_ttl: float = 300.0,
        eviction: EvictionPolicy = "fifo",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        self._max_entries = max_entries
        self._default_ttl = default_ttl
        self._eviction = eviction
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = RLock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expired = 0

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                PipelineMetrics.observe_cache("miss")
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                self._expired += 1
                self._misses += 1
                PipelineMetrics.observe_cache("miss", len(self._entries))
                return None
            if self._eviction == "lru":
                self._entries.move_to_end(key)
            self._hits += 1
            PipelineMetrics.observe_cache("hit")
            return entry.data

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        effective_ttl = self._default_ttl if ttl is None else ttl
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            elif len(self._entries) >= self._max_entries:
                self._entries.popitem(last=False)
                self._evictions += 1
                PipelineMetrics.observe_cache("eviction")
            self._entries[key] = CacheEntry(data=value, timestamp=self._clock(), ttl=effective_ttl)
            PipelineMetrics.cache_size.set(len(self._entries))

    def has(self, key: str) -> bool:
        """True when ``key`` holds an unexpired entry; does not touch hit/miss counts."""

        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if entry.is_expired(self._clock()):
                del self._entries[key]
                self._expired += 1
                return False
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0
            self._evictions = 0
            self._expired = 0
            PipelineMetrics.cache_size.set(0)

    def keys_matching(self, pattern: str) -> list[str]:
        with self._lock:
            return [key for key in self._entries if fnmatch.fnmatchcase(key, pattern)]

    def invalidate_pattern(self, pattern: str) -> int:
        """Delete every key matching the glob ``pattern``; returns the count removed."""

        with self._lock:
            doomed = [key for key in self._entries if fnmatch.fnmatchcase(key, pattern)]
            for key in doomed:
                del self._entries[key]
            PipelineMetrics.cache_size.set(len(self._entries))
        if doomed:
            _logger.info("cache.invalidated", pattern=pattern, count=len(doomed))
        return len(doomed)

    def cleanup(self) -> int:
        """Remove expired entries; returns the count removed."""

        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
            self._expired += len(expired)
            PipelineMetrics.cache_size.set(len(self._entries))
        return len(expired)

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                expired=self._expired,
                size=len(self._entries),
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    async def get_or_fetch(
        self,
        key: str,
        fetch: Callable[[], Awaitable[T]],
        ttl: float | None = None,
    ) -> T:
        """Return the cached value for ``key``, awaiting ``fetch`` on a miss.

        Nothing is stored when ``fetch`` raises or is cancelled.
        """

        cached = self.get(key)
        if cached is not None:
            return cached
        value = await fetch()
        self.set(key, value, ttl)
        return value


# Key helpers


def study_metadata_key(study_id: str) -> str:
    return f"study:{study_id}:metadata"


def study_context_key(study_id: str) -> str:
    return f"study:{study_id}:context"


def document_references_key(study_id: str) -> str:
    return f"study:{study_id}:doc-refs"


def study_stats_key(study_id: str) -> str:
    return f"study:{study_id}:stats"


def document_names_key(document_ids: Iterable[str]) -> str:
    return f"docs:{','.join(sorted(document_ids))}:names"


def _log_invalidation_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    _logger.warning("cache.invalidation_retry", attempt=retry_state.attempt_number, error=str(exc))


async def invalidate_study_cache(
    cache: MetadataCache,
    study_id: str,
    *,
    attempts: int = 3,
    base_delay: float = 0.1,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> int:
    """Drop every ``study:{id}:*`` entry, retrying with exponential backoff.

    Raises ``CacheInvalidationError`` after the final attempt fails. Callers that
    mutate documents catch it and carry on.
    """

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=base_delay, min=base_delay),
        before_sleep=_log_invalidation_retry,
        sleep=sleep,
        reraise=True,
    )
    try:
        async for attempt in retrying:
            with attempt:
                removed = cache.invalidate_pattern(f"study:{study_id}:*")
    except Exception as exc:
        _logger.error("cache.invalidation_failed", study_id=study_id, attempts=attempts, error=str(exc))
        raise CacheInvalidationError(f"Failed to invalidate cache for study {study_id}: {exc}") from exc
    return removed


def invalidate_document_cache(cache: MetadataCache, document_ids: Iterable[str]) -> int:
    return sum(cache.invalidate_pattern(f"*{document_id}*") for document_id in document_ids)


async def run_periodic_cleanup(cache: MetadataCache, interval_seconds: float) -> None:
    """Sweep expired entries every ``interval_seconds`` until cancelled."""

    while True:
        await asyncio.sleep(interval_seconds)
        removed = cache.cleanup()
        if removed:
            _logger.info("cache.cleanup", removed=removed, size=len(cache))


__all__ = [
    "CacheEntry",
    "CacheStats",
    "EvictionPolicy",
    "MetadataCache",
    "document_names_key",
    "document_references_key",
    "invalidate_document_cache",
    "invalidate_study_cache",
    "run_periodic_cleanup",
    "study_context_key",
    "study_metadata_key",
    "study_stats_key",
]
