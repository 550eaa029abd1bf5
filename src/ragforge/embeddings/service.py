"""Embedding clients consumed by the ingestion pipeline."""

from __future__ import annotations

import hashlib
import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Literal, Protocol, Sequence, Tuple

from langchain_community.embeddings import HuggingFaceEmbeddings
from langchain_core.embeddings import Embeddings as LangChainEmbeddings

from ragforge.errors import PipelineError, embedding_error

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmbeddingConfig:
    """Configuration for embedding clients."""

    model: str = "BAAI/bge-small-en-v1.5"
    dim: int = 384
    device: str | None = None
    normalize: bool = True
    cache_folder: str | None = None


class EmbeddingClient(Protocol):
    """Turns one piece of text into a vector; calls may fail transiently."""

    def embed(self, text: str) -> Sequence[float]:
        """Return the embedding vector for *text*."""


def _normalize(vector: Sequence[float]) -> Tuple[float, ...]:
    norm = math.sqrt(sum(value * value for value in vector)) or 1.0
    return tuple(value / norm for value in vector)


class HashEmbeddingClient:
    """Deterministic lightweight embedding client used for tests and dry runs."""

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or EmbeddingConfig()

    def embed(self, text: str) -> Tuple[float, ...]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        repeat = (self._config.dim + len(digest) - 1) // len(digest)
        raw = (digest * repeat)[: self._config.dim]
        vector = [byte / 255.0 for byte in raw]
        if self._config.normalize:
            return _normalize(vector)
        return tuple(vector)


class LangChainEmbeddingClient:
    """Embedding client delegating to a LangChain ``Embeddings`` implementation.

    Without an explicit delegate a ``HuggingFaceEmbeddings`` model is loaded
    from the configuration. Any failure raised by the delegate is reported as
    a recoverable ``embedding`` pipeline error so the caller's retry policy
    applies.
    """

    def __init__(self, config: EmbeddingConfig | None = None, *, delegate: LangChainEmbeddings | None = None) -> None:
        self._config = config or EmbeddingConfig()
        if delegate is None:
            model_kwargs = {"device": self._config.device} if self._config.device else {}
            delegate = HuggingFaceEmbeddings(
                model_name=self._config.model,
                model_kwargs=model_kwargs,
                encode_kwargs={"normalize_embeddings": self._config.normalize},
                cache_folder=self._config.cache_folder,
            )
            LOGGER.info("Loaded embedding model %s", self._config.model)
        self._delegate = delegate

    def embed(self, text: str) -> Tuple[float, ...]:
        try:
            vector = self._delegate.embed_query(text)
        except PipelineError:
            raise
        except Exception as exc:
            raise embedding_error(f"Embedding request failed: {exc}") from exc
        if vector is None or len(vector) == 0:
            raise embedding_error("Embedding backend returned an empty vector")
        if len(vector) != self._config.dim:
            LOGGER.warning("Embedding dim mismatch: configured=%d, actual=%d", self._config.dim, len(vector))
        return _normalize(vector) if self._config.normalize else tuple(vector)


@dataclass(frozen=True)
class HealthCheck:
    """Result of probing an external dependency."""

    service: str
    status: Literal["healthy", "unhealthy"]
    response_time_ms: float
    last_checked: datetime
    error: str | None = None


def _timed_health(service: str, check: Callable[[], Any]) -> HealthCheck:
    start = time.perf_counter()
    try:
        check()
    except Exception as exc:
        return HealthCheck(
            service=service,
            status="unhealthy",
            response_time_ms=(time.perf_counter() - start) * 1000,
            last_checked=datetime.now(timezone.utc),
            error=str(exc),
        )
    return HealthCheck(
        service=service,
        status="healthy",
        response_time_ms=(time.perf_counter() - start) * 1000,
        last_checked=datetime.now(timezone.utc),
    )


def check_embedding_health(client: EmbeddingClient, *, service: str = "embedding") -> HealthCheck:
    """Embed a short probe string and report how the client behaved."""

    def _check() -> None:
        vector = client.embed("health check")
        if vector is None or len(vector) == 0:
            raise ValueError("empty embedding vector")

    return _timed_health(service, _check)


def check_store_health(store: Any, *, service: str = "store") -> HealthCheck:
    """Read the job statistics of *store* and report whether the read succeeded."""

    return _timed_health(service, store.processing_stats)
