"""Embedding clients and chunk stores."""

from .service import (
    EmbeddingClient,
    EmbeddingConfig,
    HashEmbeddingClient,
    HealthCheck,
    LangChainEmbeddingClient,
    check_embedding_health,
    check_store_health,
)
from .store import ChromaChunkStore, ChunkStore, InMemoryChunkStore, StoredChunk

__all__ = [
    "ChromaChunkStore",
    "ChunkStore",
    "EmbeddingClient",
    "EmbeddingConfig",
    "HashEmbeddingClient",
    "HealthCheck",
    "InMemoryChunkStore",
    "LangChainEmbeddingClient",
    "StoredChunk",
    "check_embedding_health",
    "check_store_health",
]
