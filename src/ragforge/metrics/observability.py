"""Observability helpers for ragforge."""

from __future__ import annotations

import logging
import time

import structlog
from prometheus_client import Counter, Gauge, Histogram

_logger_configured = False

_CIRCUIT_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


def _resolve_level(level: int | str | None) -> int:
    if level is None:
        return logging.INFO
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        return resolved if isinstance(resolved, int) else logging.INFO
    return level


def configure_logging(level: int | str | None = None) -> None:
    """Configure structlog JSON output.

    Without a level this only runs once; an explicit level always applies,
    so a configured ``log_level`` wins over the INFO default picked up at
    import time.
    """

    global _logger_configured  # noqa: PLW0603 - module-level guard
    if _logger_configured and level is None:
        return
    resolved = _resolve_level(level)
    logging.basicConfig(level=resolved, format="%(message)s")
    logging.getLogger().setLevel(resolved)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(resolved),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Loggers created at import time must see later level changes.
        cache_logger_on_first_use=False,
    )
    _logger_configured = True


def bind_document_id(document_id: str) -> None:
    structlog.contextvars.bind_contextvars(document_id=document_id)


def clear_document_id() -> None:
    structlog.contextvars.unbind_contextvars("document_id")


def get_logger(name: str = "ragforge") -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


class PipelineMetrics:
    """Prometheus metrics for pipeline stages."""

    ingestion_latency = Histogram(
        "ragforge_ingestion_duration_seconds",
        "Time spent processing one document end to end.",
        buckets=(0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
    )
    ingestion_chunks = Histogram(
        "ragforge_ingestion_chunk_count",
        "Chunks produced per document.",
        buckets=(0, 1, 5, 10, 20, 40, 80, 160),
    )
    embedding_batch_latency = Histogram(
        "ragforge_embedding_batch_duration_seconds",
        "Time spent embedding one batch, retries included.",
        buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 30.0),
    )
    embedding_retries = Counter(
        "ragforge_embedding_retries_total",
        "Embedding batch attempts that were retried.",
    )
    jobs = Counter(
        "ragforge_jobs_total",
        "Ingestion jobs by final status.",
        ["status"],
    )
    circuit_state = Gauge(
        "ragforge_circuit_state",
        "Circuit breaker state (0 closed, 1 half open, 2 open).",
        ["breaker"],
    )

    @classmethod
    def observe_ingestion(cls, duration_seconds: float, chunk_count: int) -> None:
        cls.ingestion_latency.observe(duration_seconds)
        cls.ingestion_chunks.observe(chunk_count)

    @classmethod
    def observe_embedding_batch(cls, duration_seconds: float) -> None:
        cls.embedding_batch_latency.observe(duration_seconds)

    @classmethod
    def record_retry(cls) -> None:
        cls.embedding_retries.inc()

    @classmethod
    def record_job(cls, status: str) -> None:
        cls.jobs.labels(status=status).inc()

    @classmethod
    def set_circuit_state(cls, breaker: str, state: str) -> None:
        cls.circuit_state.labels(breaker=breaker).set(_CIRCUIT_STATE_VALUES.get(state, -1))


class TimedSection:
    """Context manager capturing elapsed time for metrics."""

    def __init__(self, callback) -> None:
        self._callback = callback
        self._start = 0.0

    def __enter__(self) -> "TimedSection":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: D401
        duration = time.perf_counter() - self._start
        self._callback(duration)


__all__ = [
    "PipelineMetrics",
    "TimedSection",
    "bind_document_id",
    "clear_document_id",
    "configure_logging",
    "get_logger",
]
