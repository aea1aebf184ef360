"""Runtime configuration for the studyrag services."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed configuration model."""

    model_config = SettingsConfigDict(env_prefix="studyrag_", env_file=".env", case_sensitive=False)

    environment: Literal["dev", "test", "prod"] = "dev"

    # Embeddings
    embedding_backend: Literal["hash", "huggingface", "voyage"] = "hash"
    embedding_model: str = "BAAI/bge-small-en-v1.5"
    embedding_dim: int = 384
    embedding_max_retries: int = 3
    embedding_retry_delay_seconds: float = 1.0
    embedding_batch_size: int = 128
    voyage_api_key: str | None = None
    voyage_model: str = "voyage-large-2"
    voyage_base_url: str = "https://api.voyageai.com/v1"
    voyage_timeout_seconds: float = 30.0

    # Chunk store
    chroma_enabled: bool = False
    chroma_persist_dir: Path | None = None
    chroma_collection: str = "studyrag-chunks"
    chroma_host: str | None = None
    chroma_port: int | None = None
    chroma_ssl: bool = False

    # Chunking
    chunk_size: int = 1000
    chunk_overlap: int = 200
    chunk_min_size: int = 100
    chunk_preserve_paragraphs: bool = True

    # Search
    search_default_limit: int = 5
    search_tool_default_limit: int = 3
    search_max_limit: int = 15
    search_min_similarity: float = 0.1

    # Multi-query orchestration
    orchestrator_max_per_document: int = 5
    orchestrator_final_limit: int = 20
    orchestrator_limit_per_query: int = 8

    # Metadata cache
    cache_max_entries: int = 1000
    cache_default_ttl_seconds: float = 300.0
    cache_eviction: Literal["fifo", "lru"] = "fifo"
    cache_cleanup_interval_seconds: float = 600.0
    cache_study_metadata_ttl_seconds: float = 1800.0
    cache_invalidation_attempts: int = 3
    cache_invalidation_base_delay_seconds: float = 0.1

    # Synthesis
    synthesis_backend: Literal["template", "openai"] = "template"
    synthesis_model: str = "gpt-4o-mini"
    synthesis_temperature: float = 0.1
    synthesis_max_tokens: int = 1500
    openai_api_key: str | None = None

    # CORS
    cors_allow_origins: tuple[str, ...] = ()
    cors_allow_credentials: bool = False
    cors_allow_methods: tuple[str, ...] = ("GET", "POST", "DELETE", "OPTIONS")
    cors_allow_headers: tuple[str, ...] = ("*",)

    # Security
    api_key: str | None = None  # if set, required in X-API-Key header
    rate_limit_requests: int = 100  # per window per user and route; 0 disables
    rate_limit_window_seconds: float = 60.0

    @property
    def is_test(self) -> bool:
        return self.environment == "test"


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Return settings, optionally overriding values without mutating cache."""

    if override:
        return Settings(**override)
    return _cached_settings()
