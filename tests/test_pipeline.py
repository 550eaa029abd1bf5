from __future__ import annotations

import json
import threading
from typing import Sequence

import pytest
import structlog

from ragforge.config import get_settings
from ragforge.embeddings import EmbeddingConfig, HashEmbeddingClient, InMemoryChunkStore, StoredChunk
from ragforge.errors import ErrorKind, PipelineError, processing_error
from ragforge.models import DocumentType
from ragforge.pipeline import DocumentPipeline, PipelineConfig, build_pipeline
from ragforge.progress import ProgressTracker
from ragforge.resilience import CircuitBreaker, CircuitState, RetryConfig

MARKDOWN = "# Setup\nUnpack the unit and mount it.\n\n# Calibration\nRun the sensor calibration routine."


class _FlakyClient:
    """Fails the first *failures* calls, then embeds deterministically."""

    def __init__(self, failures: int = 0, error: Exception | None = None) -> None:
        self._delegate = HashEmbeddingClient(EmbeddingConfig(dim=8))
        self._failures = failures
        self._error = error or ConnectionError("embedding service timeout")
        self._lock = threading.Lock()
        self.calls = 0

    def embed(self, text: str) -> Sequence[float]:
        with self._lock:
            self.calls += 1
            failing = self.calls <= self._failures
        if failing:
            raise self._error
        return self._delegate.embed(text)


class _ShortStore(InMemoryChunkStore):
    def store_chunks(self, records: Sequence[StoredChunk]) -> Sequence[str]:
        return list(super().store_chunks(records))[:-1]


class _FlakyStore(InMemoryChunkStore):
    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.attempts = 0

    def store_chunks(self, records: Sequence[StoredChunk]) -> Sequence[str]:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ConnectionError("database unavailable")
        return super().store_chunks(records)


class _BrokenReporter:
    def initialize(self, document_id: str, filename: str) -> None:
        raise RuntimeError("websocket gone")

    def update(self, document_id: str, update) -> None:
        raise RuntimeError("websocket gone")


def _config(**overrides) -> PipelineConfig:
    values = {
        "embedding_retry": RetryConfig(max_retries=3, base_delay=0.0),
        "store_retry": RetryConfig(max_retries=2, base_delay=0.0),
        "embedding_concurrency": 2,
    }
    values.update(overrides)
    return PipelineConfig(**values)


def _pipeline(client=None, store=None, reporter=None, **config) -> DocumentPipeline:
    return DocumentPipeline(
        client or HashEmbeddingClient(EmbeddingConfig(dim=8)),
        store if store is not None else InMemoryChunkStore(),
        reporter=reporter,
        config=_config(**config),
    )


def test_markdown_document_is_chunked_embedded_and_stored():
    store = InMemoryChunkStore()
    tracker = ProgressTracker()
    seen: list[tuple[str, int]] = []
    tracker.subscribe("doc-1", lambda snapshot: seen.append((snapshot.stage, snapshot.progress)))
    pipeline = _pipeline(store=store, reporter=tracker)

    result = pipeline.process(MARKDOWN, "guide.md", DocumentType.MARKDOWN, "doc-1")

    assert result.status == "completed"
    assert result.chunk_count == result.embedding_count == 2
    assert [chunk.chunk_id for chunk in result.chunks] == ["header-0", "header-1"]
    assert all(chunk.embedding is not None and len(chunk.embedding) == 8 for chunk in result.chunks)
    stored = store.get_document_chunks("doc-1")
    assert [record.text for record in stored] == [chunk.text for chunk in result.chunks]
    assert stored[0].metadata["chunk_id"] == "header-0"
    job = store.get_job("doc-1")
    assert (job["stage"], job["progress"], job["status"]) == ("completed", 100, "completed")
    assert seen == [
        ("upload", 0),
        ("parsing", 25),
        ("chunking", 50),
        ("embedding", 75),
        ("storing", 90),
        ("completed", 100),
    ]
    assert result.metadata["document_type"] == "markdown"


def test_record_collection_document_is_processed():
    faq = [
        {"question": f"Question {i}?", "answer": f"Answer {i}.", "category": "general" if i % 2 else "setup"}
        for i in range(6)
    ]
    store = InMemoryChunkStore()
    pipeline = _pipeline(store=store, batch_size=1)

    result = pipeline.process(json.dumps(faq), "faq.json", "json", "doc-2")

    assert result.status == "completed"
    assert result.chunk_count == 2
    assert len(store.get_document_chunks("doc-2")) == 2


def test_batches_cover_every_chunk():
    text = "\n\n".join(f"# Section {i}\nBody text number {i}." for i in range(7))
    client = _FlakyClient()
    pipeline = _pipeline(client=client, batch_size=3)

    result = pipeline.process(text, "many.md", "markdown", "doc-3")

    assert result.embedding_count == 7
    assert client.calls == 7


def test_transient_embedding_failures_are_retried():
    client = _FlakyClient(failures=2)
    pipeline = _pipeline(client=client, embedding_concurrency=1)

    result = pipeline.process("# Only\nOne small section.", "one.md", "markdown", "doc-4")

    assert result.status == "completed"
    assert client.calls == 3
    assert pipeline.breaker.state is CircuitState.CLOSED


def test_exhausted_embedding_retries_fail_the_job():
    client = _FlakyClient(failures=100)
    store = InMemoryChunkStore()
    tracker = ProgressTracker()
    pipeline = _pipeline(
        client=client,
        store=store,
        reporter=tracker,
        embedding_retry=RetryConfig(max_retries=2, base_delay=0.0),
        circuit_failure_threshold=10,
    )

    with pytest.raises(PipelineError) as excinfo:
        pipeline.process("# Only\nOne small section.", "one.md", "markdown", "doc-5")

    error = excinfo.value
    assert error.kind is ErrorKind.EMBEDDING
    assert error.retry_count == 2
    assert error.document_id == "doc-5"
    assert client.calls == 3
    job = store.get_job("doc-5")
    assert (job["stage"], job["progress"], job["status"]) == ("error", 0, "failed")
    assert tracker.get_state("doc-5").status == "failed"
    assert store.get_document_chunks("doc-5") == []


def test_non_recoverable_embedding_failure_is_not_retried():
    client = _FlakyClient(failures=100, error=processing_error("model rejected input", "embedding"))
    pipeline = _pipeline(client=client, embedding_concurrency=1)

    with pytest.raises(PipelineError) as excinfo:
        pipeline.process("# Only\nOne small section.", "one.md", "markdown", "doc-6")

    assert excinfo.value.kind is ErrorKind.PROCESSING
    assert client.calls == 1


def test_open_circuit_rejects_without_calling_client():
    breaker = CircuitBreaker(1, 60.0, name="shared")
    with pytest.raises(ConnectionError):
        breaker.call(_FlakyClient(failures=1).embed, "warm-up")
    client = _FlakyClient()
    pipeline = DocumentPipeline(client, InMemoryChunkStore(), config=_config(), breaker=breaker)

    with pytest.raises(PipelineError) as excinfo:
        pipeline.process("# Only\nOne small section.", "one.md", "markdown", "doc-7")

    assert excinfo.value.kind is ErrorKind.CIRCUIT_OPEN
    assert client.calls == 0


def test_persisted_count_mismatch_is_a_processing_error():
    store = _ShortStore()
    pipeline = _pipeline(store=store)

    with pytest.raises(PipelineError) as excinfo:
        pipeline.process(MARKDOWN, "guide.md", "markdown", "doc-8")

    assert excinfo.value.kind is ErrorKind.PROCESSING
    assert excinfo.value.stage == "storing"
    assert store.get_job("doc-8")["status"] == "failed"


def test_store_failures_are_retried():
    store = _FlakyStore(failures=2)
    pipeline = _pipeline(store=store)

    result = pipeline.process(MARKDOWN, "guide.md", "markdown", "doc-9")

    assert result.status == "completed"
    assert store.attempts == 3
    assert len(store.get_document_chunks("doc-9")) == 2


def test_store_failures_exhausted_raise_store_error():
    store = _FlakyStore(failures=100)
    pipeline = _pipeline(store=store)

    with pytest.raises(PipelineError) as excinfo:
        pipeline.process(MARKDOWN, "guide.md", "markdown", "doc-10")

    assert excinfo.value.kind is ErrorKind.STORE
    assert store.attempts == 3


def test_cancelled_before_start_is_recorded_as_failed():
    store = InMemoryChunkStore()
    cancel = threading.Event()
    cancel.set()
    pipeline = _pipeline(store=store)

    with pytest.raises(PipelineError) as excinfo:
        pipeline.process(MARKDOWN, "guide.md", "markdown", "doc-11", cancel_event=cancel)

    assert excinfo.value.kind is ErrorKind.CANCELLED
    assert store.get_job("doc-11") is None or store.get_job("doc-11")["status"] == "failed"


def test_cancellation_between_batches_stops_the_job():
    cancel = threading.Event()

    class _CancellingClient(_FlakyClient):
        def embed(self, text: str) -> Sequence[float]:
            cancel.set()
            return super().embed(text)

    client = _CancellingClient()
    store = InMemoryChunkStore()
    pipeline = _pipeline(client=client, store=store, batch_size=1, embedding_concurrency=1)

    with pytest.raises(PipelineError) as excinfo:
        pipeline.process(MARKDOWN, "guide.md", "markdown", "doc-12", cancel_event=cancel)

    assert excinfo.value.kind is ErrorKind.CANCELLED
    assert client.calls == 1
    job = store.get_job("doc-12")
    assert (job["stage"], job["status"]) == ("error", "failed")
    assert store.get_document_chunks("doc-12") == []


def test_progress_reporter_failures_are_swallowed():
    pipeline = _pipeline(reporter=_BrokenReporter())

    result = pipeline.process(MARKDOWN, "guide.md", "markdown", "doc-13")

    assert result.status == "completed"


def test_invalid_inputs_are_validation_errors():
    pipeline = _pipeline()

    with pytest.raises(PipelineError) as bad_json:
        pipeline.process("{broken", "faq.json", "json", "doc-14")
    with pytest.raises(PipelineError) as bad_type:
        pipeline.process("data", "file.pdf", "pdf", "doc-15")
    with pytest.raises(PipelineError) as empty:
        pipeline.process("   ", "blank.md", "markdown", "doc-16")

    assert bad_json.value.kind is ErrorKind.VALIDATION
    assert bad_type.value.kind is ErrorKind.VALIDATION
    assert bad_type.value.document_id == "doc-15"
    assert empty.value.kind is ErrorKind.VALIDATION
    assert empty.value.stage == "chunking"


def test_document_id_is_generated_when_missing():
    result = _pipeline().process(MARKDOWN, "guide.md", "markdown")

    assert result.document_id
    assert result.filename == "guide.md"


def test_build_pipeline_uses_settings():
    settings = get_settings({"batch_size": 4, "chunk_size": 256, "environment": "test"})
    store = InMemoryChunkStore()
    pipeline = build_pipeline(settings, store=store, owner="ops")

    result = pipeline.process(MARKDOWN, "guide.md", "markdown", "doc-17")

    assert pipeline.config.batch_size == 4
    assert pipeline.config.markdown.chunk_size == 256
    assert result.status == "completed"
    assert store.get_job("doc-17")["owner"] == "ops"


def test_reingesting_a_document_replaces_its_chunks():
    store = InMemoryChunkStore()
    pipeline = _pipeline(store=store)
    long_doc = "\n\n".join(f"# Section {index}\nBody text for section {index}." for index in range(5))

    first = pipeline.process(long_doc, "guide.md", DocumentType.MARKDOWN, "doc-x")
    second = pipeline.process("# Only\nshort", "guide.md", DocumentType.MARKDOWN, "doc-x")

    assert first.chunk_count == 5
    assert second.chunk_count == 1
    assert [record.text for record in store.get_document_chunks("doc-x")] == [second.chunks[0].text]
    assert store.get_job("doc-x")["chunk_count"] == 1
    assert store.count() == 1


class _ArrayVector:
    """Sequence whose truth value is ambiguous, like a numpy array."""

    def __init__(self, values: Sequence[float]) -> None:
        self._values = list(values)

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self):
        return iter(self._values)

    def __bool__(self) -> bool:
        raise ValueError("The truth value of an array with more than one element is ambiguous.")


class _ArrayClient:
    def __init__(self, dim: int = 8) -> None:
        self._dim = dim

    def embed(self, text: str) -> _ArrayVector:
        if text.startswith("# Empty"):
            return _ArrayVector([])
        return _ArrayVector([0.5] * self._dim)


def test_array_like_vectors_are_accepted():
    result = _pipeline(client=_ArrayClient()).process(MARKDOWN, "guide.md", DocumentType.MARKDOWN, "doc-arr")

    assert result.status == "completed"
    assert all(chunk.embedding == (0.5,) * 8 for chunk in result.chunks)


def test_empty_array_like_vector_is_an_embedding_error():
    with pytest.raises(PipelineError) as excinfo:
        _pipeline(client=_ArrayClient()).process("# Empty\nnothing here", "guide.md", DocumentType.MARKDOWN, "doc-e")

    assert excinfo.value.kind is ErrorKind.EMBEDDING
    assert "Empty embedding" in excinfo.value.message


class _ContextRecordingClient:
    def __init__(self) -> None:
        self._delegate = HashEmbeddingClient(EmbeddingConfig(dim=8))
        self._lock = threading.Lock()
        self.document_ids: list[object] = []

    def embed(self, text: str) -> Sequence[float]:
        with self._lock:
            self.document_ids.append(structlog.contextvars.get_contextvars().get("document_id"))
        return self._delegate.embed(text)


def test_embedding_workers_see_the_bound_document_id():
    client = _ContextRecordingClient()

    _pipeline(client=client).process(MARKDOWN, "guide.md", DocumentType.MARKDOWN, "doc-ctx")

    assert client.document_ids == ["doc-ctx", "doc-ctx"]
    assert "document_id" not in structlog.contextvars.get_contextvars()
