"""Document ingestion pipeline: parse, chunk, embed, store."""

from __future__ import annotations

import threading
import time
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from contextvars import copy_context
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Sequence, Tuple, TypeVar
from uuid import uuid4

import chromadb

from ragforge.chunking import Chunker, MarkdownChunker, MarkdownConfig, RecordChunker, RecordConfig
from ragforge.config import Settings, get_settings
from ragforge.embeddings import (
    ChromaChunkStore,
    ChunkStore,
    EmbeddingClient,
    EmbeddingConfig,
    HashEmbeddingClient,
    LangChainEmbeddingClient,
    StoredChunk,
)
from ragforge.errors import (
    ErrorKind,
    PipelineError,
    cancelled_error,
    embedding_error,
    error_report,
    processing_error,
    store_error,
    validation_error,
)
from ragforge.metrics.observability import (
    PipelineMetrics,
    TimedSection,
    bind_document_id,
    clear_document_id,
    get_logger,
)
from ragforge.models import Chunk, DocumentType, ParsedDocument, ProcessingResult, ProcessingState, SourceDocument
from ragforge.progress import ProgressReporter
from ragforge.resilience import CircuitBreaker, RetryConfig, RetryPolicy

T = TypeVar("T")


@dataclass(frozen=True)
class PipelineConfig:
    """Knobs for :class:`DocumentPipeline`."""

    markdown: MarkdownConfig = field(default_factory=MarkdownConfig)
    records: RecordConfig = field(default_factory=RecordConfig)
    batch_size: int = 10
    embedding_concurrency: int = 4
    embedding_retry: RetryConfig = field(default_factory=RetryConfig)
    store_retry: RetryConfig = field(default_factory=lambda: RetryConfig(max_retries=2))
    circuit_failure_threshold: int = 5
    circuit_timeout: float = 60.0
    owner: str | None = None

    @classmethod
    def from_settings(cls, settings: Settings, *, owner: str | None = None) -> "PipelineConfig":
        return cls(
            markdown=MarkdownConfig(
                chunk_size=settings.chunk_size,
                chunk_overlap=settings.chunk_overlap,
                chunk_by_headers=settings.chunk_by_headers,
                preserve_headers=settings.preserve_headers,
            ),
            records=RecordConfig(
                chunk_size=settings.chunk_size,
                chunk_overlap=settings.chunk_overlap,
                group_related_items=settings.group_related_items,
                max_depth=settings.max_depth,
            ),
            batch_size=settings.batch_size,
            embedding_concurrency=settings.embedding_concurrency,
            embedding_retry=RetryConfig(
                max_retries=settings.max_embedding_retries,
                base_delay=settings.retry_base_delay_seconds,
                max_delay=settings.retry_max_delay_seconds,
                backoff_multiplier=settings.retry_backoff_multiplier,
            ),
            store_retry=RetryConfig(
                max_retries=settings.max_store_retries,
                base_delay=settings.retry_base_delay_seconds,
                max_delay=settings.retry_max_delay_seconds,
                backoff_multiplier=settings.retry_backoff_multiplier,
            ),
            circuit_failure_threshold=settings.circuit_failure_threshold,
            circuit_timeout=settings.circuit_timeout_seconds,
            owner=owner,
        )


class DocumentPipeline:
    """Turn one uploaded document into stored, embedded chunks.

    A job moves ``upload -> parsing -> chunking -> embedding -> storing ->
    completed``; any failure moves it to ``error`` and the
    :class:`~ragforge.errors.PipelineError` is re-raised to the caller.
    Chunk batches are embedded one after another while the items of a batch
    run on a thread pool, each call going through the shared circuit
    breaker. A set ``cancel_event`` stops the job at the next stage or batch
    boundary and interrupts backoff waits.
    """

    _logger = get_logger("pipeline")

    def __init__(
        self,
        embedding_client: EmbeddingClient,
        store: ChunkStore,
        reporter: ProgressReporter | None = None,
        config: PipelineConfig | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self._config = config or PipelineConfig()
        self._client = embedding_client
        self._store = store
        self._reporter = reporter
        self._breaker = breaker or CircuitBreaker(
            self._config.circuit_failure_threshold,
            self._config.circuit_timeout,
            name="embedding",
        )
        self._chunkers: Mapping[DocumentType, Chunker] = {
            DocumentType.MARKDOWN: MarkdownChunker(self._config.markdown),
            DocumentType.RECORD_COLLECTION: RecordChunker(self._config.records),
        }

    @property
    def config(self) -> PipelineConfig:
        return self._config

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    def process(
        self,
        content: str,
        filename: str,
        document_type: DocumentType | str,
        document_id: str | None = None,
        *,
        cancel_event: threading.Event | None = None,
    ) -> ProcessingResult:
        document_id = document_id or uuid4().hex
        cancel = cancel_event or threading.Event()
        state = ProcessingState(document_id=document_id, filename=filename)
        start = time.perf_counter()
        bind_document_id(document_id)
        try:
            self._initialize(state)
            self._retry_store(
                lambda: self._store.create_job(
                    document_id,
                    filename,
                    self._config.owner,
                    {"document_type": str(getattr(document_type, "value", document_type))},
                ),
                cancel,
                stage="upload",
                document_id=document_id,
            )
            doc_type = DocumentType.coerce(document_type)
            chunker = self._chunkers[doc_type]

            self._advance(state, "parsing", cancel)
            parsed = self._parse(chunker, SourceDocument(content, doc_type, document_id, filename))

            self._advance(state, "chunking", cancel)
            chunks = self._chunk(chunker, parsed, document_id)

            self._advance(state, "embedding", cancel)
            vectors = self._embed_all(chunks, document_id, cancel)
            if len(vectors) != len(chunks):
                raise processing_error(
                    f"Embedding count mismatch: {len(chunks)} chunks, {len(vectors)} embeddings",
                    "embedding",
                    document_id=document_id,
                )
            embedded = [chunk.with_embedding(vector) for chunk, vector in zip(chunks, vectors, strict=True)]

            self._advance(state, "storing", cancel)
            stored_ids = self._persist(embedded, filename, document_id, cancel)
            if len(stored_ids) != len(embedded):
                raise processing_error(
                    f"Store persisted {len(stored_ids)} of {len(embedded)} chunks",
                    "storing",
                    document_id=document_id,
                )

            state.advance("completed")
            self._report(state)
        except PipelineError as exc:
            self._fail(state, exc.for_document(document_id))
            raise
        except Exception as exc:
            error = processing_error(str(exc) or type(exc).__name__, state.stage, document_id=document_id)
            self._fail(state, error)
            raise error from exc
        else:
            duration = time.perf_counter() - start
            PipelineMetrics.record_job("completed")
            PipelineMetrics.observe_ingestion(duration, len(embedded))
            self._logger.info(
                "pipeline.completed",
                filename=filename,
                document_type=doc_type.value,
                chunk_count=len(embedded),
                duration_seconds=duration,
            )
            metadata: Dict[str, Any] = dict(parsed.metadata)
            metadata["document_type"] = doc_type.value
            metadata["processing_time_ms"] = round(duration * 1000, 3)
            return ProcessingResult(
                document_id=document_id,
                filename=filename,
                chunks=embedded,
                status="completed",
                metadata=metadata,
                chunk_count=len(embedded),
                embedding_count=len(vectors),
            )
        finally:
            clear_document_id()

    # Stages ------------------------------------------------------------------

    def _parse(self, chunker: Chunker, document: SourceDocument) -> ParsedDocument:
        try:
            return chunker.parse(document)
        except PipelineError:
            raise
        except Exception as exc:
            raise validation_error(
                f"Failed to parse {document.filename}: {exc}",
                document_id=document.document_id,
            ) from exc

    def _chunk(self, chunker: Chunker, parsed: ParsedDocument, document_id: str) -> List[Chunk]:
        try:
            chunks = list(chunker.chunk(parsed))
        except PipelineError:
            raise
        except Exception as exc:
            raise validation_error(f"Failed to chunk document: {exc}", document_id=document_id, stage="chunking") from exc
        if not chunks:
            raise validation_error("No chunks generated from document", document_id=document_id, stage="chunking")
        self._logger.info("pipeline.chunked", chunk_count=len(chunks))
        return chunks

    def _embed_all(self, chunks: Sequence[Chunk], document_id: str, cancel: threading.Event) -> List[Tuple[float, ...]]:
        batch_size = max(self._config.batch_size, 1)
        vectors: List[Tuple[float, ...]] = []
        with ThreadPoolExecutor(
            max_workers=max(self._config.embedding_concurrency, 1),
            thread_name_prefix="ragforge-embed",
        ) as executor:
            for batch_index, offset in enumerate(range(0, len(chunks), batch_size)):
                self._check_cancelled(cancel, "embedding", document_id)
                batch = chunks[offset : offset + batch_size]
                with TimedSection(PipelineMetrics.observe_embedding_batch):
                    vectors.extend(self._embed_batch(executor, batch, batch_index, document_id, cancel))
                self._logger.debug("embedding.batch_done", batch_index=batch_index, embedded=len(vectors))
        return vectors

    def _embed_batch(
        self,
        executor: ThreadPoolExecutor,
        batch: Sequence[Chunk],
        batch_index: int,
        document_id: str,
        cancel: threading.Event,
    ) -> List[Tuple[float, ...]]:
        policy = RetryPolicy(self._config.embedding_retry, sleep=cancel.wait)
        attempts = 0

        def attempt() -> List[Tuple[float, ...]]:
            nonlocal attempts
            attempts += 1
            self._check_cancelled(cancel, "embedding", document_id)
            futures: List[Future[Tuple[float, ...]]] = [
                executor.submit(copy_context().run, self._breaker.call, self._embed_one, chunk) for chunk in batch
            ]
            done, _ = wait(futures, return_when=FIRST_EXCEPTION)
            for future in futures:
                if future in done and future.exception() is not None:
                    wait(futures)
                    raise future.exception()
            return [future.result() for future in futures]

        def on_retry(attempt_number: int, exc: BaseException, delay: float) -> None:
            PipelineMetrics.record_retry()
            self._logger.warning(
                "embedding.retry",
                batch_index=batch_index,
                attempt=attempt_number,
                delay_seconds=delay,
                error=str(exc),
            )

        try:
            return policy.execute(attempt, on_retry=on_retry)
        except PipelineError as exc:
            if exc.kind is ErrorKind.EMBEDDING:
                exc.retry_count = attempts - 1
            raise
        except Exception as exc:
            raise embedding_error(
                f"Embedding batch {batch_index} failed after {attempts} attempts: {exc}",
                retry_count=attempts - 1,
                document_id=document_id,
            ) from exc

    def _embed_one(self, chunk: Chunk) -> Tuple[float, ...]:
        vector = self._client.embed(chunk.text)
        if vector is None or len(vector) == 0:
            raise embedding_error(f"Empty embedding returned for chunk {chunk.chunk_id}")
        return tuple(float(value) for value in vector)

    def _persist(
        self,
        chunks: Sequence[Chunk],
        filename: str,
        document_id: str,
        cancel: threading.Event,
    ) -> Sequence[str]:
        records = [
            StoredChunk(
                document_id=document_id,
                filename=filename,
                index=index,
                text=chunk.text,
                vector=chunk.embedding or (),
                metadata={**chunk.metadata, "chunk_id": chunk.chunk_id},
            )
            for index, chunk in enumerate(chunks)
        ]
        return self._retry_store(
            lambda: self._store.store_chunks(records),
            cancel,
            stage="storing",
            document_id=document_id,
        )

    def _retry_store(self, operation: Callable[[], T], cancel: threading.Event, *, stage: str, document_id: str) -> T:
        policy = RetryPolicy(self._config.store_retry, sleep=cancel.wait)

        def attempt() -> T:
            self._check_cancelled(cancel, stage, document_id)
            return operation()

        def on_retry(attempt_number: int, exc: BaseException, delay: float) -> None:
            self._logger.warning(
                "store.retry",
                stage=stage,
                attempt=attempt_number,
                delay_seconds=delay,
                error=str(exc),
            )

        try:
            return policy.execute(attempt, on_retry=on_retry)
        except PipelineError:
            raise
        except Exception as exc:
            raise store_error(f"Store operation failed: {exc}", stage=stage, document_id=document_id) from exc

    # State and reporting -----------------------------------------------------

    @staticmethod
    def _check_cancelled(cancel: threading.Event, stage: str, document_id: str) -> None:
        if cancel.is_set():
            raise cancelled_error(stage, document_id=document_id)

    def _initialize(self, state: ProcessingState) -> None:
        if self._reporter is None:
            return
        try:
            self._reporter.initialize(state.document_id, state.filename)
        except Exception as exc:
            self._logger.warning("progress.initialize_failed", error=str(exc))

    def _advance(self, state: ProcessingState, stage: str, cancel: threading.Event) -> None:
        self._check_cancelled(cancel, stage, state.document_id)
        state.advance(stage)
        self._logger.info("pipeline.stage", stage=stage, progress=state.progress)
        self._report(state)

    def _report(self, state: ProcessingState) -> None:
        if self._reporter is not None:
            try:
                self._reporter.update(state.document_id, state.as_update())
            except Exception as exc:
                self._logger.warning("progress.update_failed", stage=state.stage, error=str(exc))
        try:
            self._store.update_status(state.document_id, state.stage, state.progress, state.status, state.error)
        except Exception as exc:
            self._logger.warning("progress.status_failed", stage=state.stage, error=str(exc))

    def _fail(self, state: ProcessingState, error: PipelineError) -> None:
        if error.stage is None:
            error.stage = state.stage
        state.fail(error.message)
        self._report(state)
        PipelineMetrics.record_job("failed")
        self._logger.error("pipeline.failed", **error_report(error, filename=state.filename))


def build_pipeline(
    settings: Settings | None = None,
    *,
    embedding_client: EmbeddingClient | None = None,
    store: ChunkStore | None = None,
    reporter: ProgressReporter | None = None,
    owner: str | None = None,
) -> DocumentPipeline:
    """Wire a :class:`DocumentPipeline` from configuration."""

    settings = settings or get_settings()
    if embedding_client is None:
        embedding_config = EmbeddingConfig(
            model=settings.embedding_model,
            dim=settings.embedding_dim,
            device=settings.embedding_device,
        )
        if settings.use_model_embeddings:
            embedding_client = LangChainEmbeddingClient(embedding_config)
        else:
            embedding_client = HashEmbeddingClient(embedding_config)
    if store is None:
        chroma_client = None
        if settings.chroma_host:
            chroma_client = chromadb.HttpClient(
                host=settings.chroma_host,
                port=settings.chroma_port or 8000,
                ssl=settings.chroma_ssl,
            )
        store = ChromaChunkStore(
            settings.chroma_collection,
            client=chroma_client,
            persist_directory=None if chroma_client else settings.chroma_persist_dir,
        )
    return DocumentPipeline(
        embedding_client,
        store,
        reporter=reporter,
        config=PipelineConfig.from_settings(settings, owner=owner),
    )


__all__ = ["DocumentPipeline", "PipelineConfig", "build_pipeline"]
