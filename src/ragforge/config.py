"""Runtime configuration for the ragforge ingestion pipeline."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed configuration model."""

    model_config = SettingsConfigDict(env_prefix="ragforge_", env_file=".env", case_sensitive=False)

    environment: Literal["dev", "test", "prod"] = "dev"
    log_level: str = "INFO"

    # Chunking
    chunk_size: int = 512
    chunk_overlap: int = 50
    preserve_headers: bool = True
    chunk_by_headers: bool = True
    group_related_items: bool = True
    max_depth: int = 5

    # Embedding generation
    batch_size: int = 10
    embedding_concurrency: int = 4
    max_embedding_retries: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    retry_backoff_multiplier: float = 2.0

    # Circuit breaker around the embedding service
    circuit_failure_threshold: int = 5
    circuit_timeout_seconds: float = 60.0

    # Persistence retries
    max_store_retries: int = 2

    embedding_model: str = "BAAI/bge-small-en-v1.5"
    embedding_dim: int = 384
    use_model_embeddings: bool = False
    embedding_device: str | None = None

    chroma_persist_dir: Path = Path("./.chroma")
    chroma_collection: str = "ragforge-chunks"
    chroma_host: str | None = None
    chroma_port: int | None = None
    chroma_ssl: bool = False

    # Upload safety
    max_upload_size_mb: int = 50

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
