"""Chunk store implementations."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, MutableMapping, Optional, Protocol, Sequence, Tuple

import chromadb
from chromadb.api import ClientAPI
from chromadb.api.types import Documents, Embeddings as ChromaEmbeddings, IDs, Metadatas

from ragforge.errors import PipelineError, store_error


@dataclass(frozen=True)
class StoredChunk:
    """Chunk text plus its vector, as handed to a store."""

    document_id: str
    filename: str
    index: int
    text: str
    vector: Tuple[float, ...]
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def record_id(self) -> str:
        return f"{self.document_id}-{self.index}"


class ChunkStore(Protocol):
    """Persistence contract for ingestion jobs and their chunks."""

    def create_job(
        self,
        document_id: str,
        filename: str,
        owner: str | None,
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        """Register a new ingestion job in ``pending`` state."""

    def store_chunks(self, records: Sequence[StoredChunk]) -> Sequence[str]:
        """Persist the records, replacing earlier chunks of the same documents, and return their ids."""

    def update_status(
        self,
        document_id: str,
        stage: str,
        progress: int,
        status: str,
        error_message: str | None = None,
    ) -> None:
        """Record the latest stage/progress/status of a job."""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


JOB_STATUSES = ("pending", "processing", "completed", "failed")


def _job_stats(statuses: Iterable[object]) -> Dict[str, int]:
    """Count jobs overall and per status."""

    stats = {"total": 0, **{status: 0 for status in JOB_STATUSES}}
    for status in statuses:
        stats["total"] += 1
        if status in JOB_STATUSES:
            stats[str(status)] += 1
    return stats


def _newest_first(jobs: List[Dict[str, Any]], limit: int) -> List[Dict[str, Any]]:
    jobs.sort(key=lambda job: str(job.get("created_at", "")), reverse=True)
    return jobs[: max(limit, 0)]


class InMemoryChunkStore:
    """Thread-safe store kept in process memory."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: Dict[str, Dict[str, Any]] = {}
        self._chunks: Dict[str, List[StoredChunk]] = {}

    def create_job(
        self,
        document_id: str,
        filename: str,
        owner: str | None,
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        with self._lock:
            self._jobs[document_id] = {
                "document_id": document_id,
                "filename": filename,
                "owner": owner,
                "metadata": dict(metadata or {}),
                "stage": "upload",
                "progress": 0,
                "status": "pending",
                "error_message": None,
                "created_at": _now(),
                "updated_at": _now(),
            }

    def store_chunks(self, records: Sequence[StoredChunk]) -> Sequence[str]:
        grouped: Dict[str, List[StoredChunk]] = {}
        for record in records:
            grouped.setdefault(record.document_id, []).append(record)
        # Replaces the document's previous chunk set.
        with self._lock:
            for document_id, items in grouped.items():
                self._chunks[document_id] = sorted(items, key=lambda chunk: chunk.index)
        return [record.record_id for record in records]

    def update_status(
        self,
        document_id: str,
        stage: str,
        progress: int,
        status: str,
        error_message: str | None = None,
    ) -> None:
        with self._lock:
            job = self._jobs.get(document_id)
            if job is None:
                return
            job.update(
                stage=stage,
                progress=progress,
                status=status,
                error_message=error_message,
                updated_at=_now(),
            )
            if status == "completed":
                job["chunk_count"] = len(self._chunks.get(document_id, []))

    def get_job(self, document_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            job = self._jobs.get(document_id)
            return dict(job) if job is not None else None

    def get_document_chunks(self, document_id: str) -> List[StoredChunk]:
        with self._lock:
            return list(self._chunks.get(document_id, []))

    def delete_document(self, document_id: str) -> bool:
        with self._lock:
            removed_chunks = self._chunks.pop(document_id, None)
            removed_job = self._jobs.pop(document_id, None)
        return removed_chunks is not None or removed_job is not None

    def count(self) -> int:
        with self._lock:
            return sum(len(chunks) for chunks in self._chunks.values())

    def processing_stats(self) -> Dict[str, int]:
        with self._lock:
            return _job_stats(job.get("status") for job in self._jobs.values())

    def recent_jobs(self, owner: str, limit: int = 10) -> List[Dict[str, Any]]:
        with self._lock:
            jobs = [dict(job) for job in self._jobs.values() if job.get("owner") == owner]
        return _newest_first(jobs, limit)


class ChromaChunkStore:
    """Chroma-backed chunk store.

    Chunks live in ``collection_name`` with their vectors; job records live in
    a companion ``<collection_name>-jobs`` collection keyed by document id.
    Driver failures surface as recoverable ``store`` pipeline errors.
    """

    _JOB_VECTOR: List[float] = [1.0]

    def __init__(
        self,
        collection_name: str = "ragforge-chunks",
        *,
        client: ClientAPI | None = None,
        persist_directory: str | Path | None = None,
    ) -> None:
        if client is not None:
            self._client = client
        elif persist_directory is not None:
            self._client = chromadb.PersistentClient(path=str(persist_directory))
        else:
            self._client = chromadb.EphemeralClient()
        self._collection = self._client.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": "cosine"},
        )
        self._jobs = self._client.get_or_create_collection(name=f"{collection_name}-jobs")

    def create_job(
        self,
        document_id: str,
        filename: str,
        owner: str | None,
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        record = {
            "document_id": document_id,
            "filename": filename,
            "owner": owner or "",
            "job_metadata": self._dumps(dict(metadata or {})),
            "stage": "upload",
            "progress": 0,
            "status": "pending",
            "error_message": "",
            "created_at": _now(),
            "updated_at": _now(),
        }
        self._guard(
            lambda: self._jobs.upsert(
                ids=[document_id],
                documents=[filename],
                embeddings=[self._JOB_VECTOR],
                metadatas=[record],
            ),
            "create job",
            document_id,
            stage="upload",
        )

    def store_chunks(self, records: Sequence[StoredChunk]) -> Sequence[str]:
        if not records:
            return []
        ids: IDs = [record.record_id for record in records]
        documents: Documents = [record.text for record in records]
        vectors: ChromaEmbeddings = [list(record.vector) for record in records]
        metadatas: Metadatas = [self._serialize(record) for record in records]
        self._guard(
            lambda: self._collection.upsert(ids=ids, documents=documents, embeddings=vectors, metadatas=metadatas),
            "store chunks",
            records[0].document_id,
        )
        # Prune chunks left over from an earlier, longer ingestion of the same document.
        written = set(ids)
        for document_id in dict.fromkeys(record.document_id for record in records):
            existing = self._guard(
                lambda: self._collection.get(where={"document_id": document_id}, include=["metadatas"]),
                "read chunks",
                document_id,
            )
            stale = [chunk_id for chunk_id in existing.get("ids") or [] if chunk_id not in written]
            if stale:
                self._guard(lambda: self._collection.delete(ids=stale), "prune chunks", document_id)
        return list(ids)

    def update_status(
        self,
        document_id: str,
        stage: str,
        progress: int,
        status: str,
        error_message: str | None = None,
    ) -> None:
        job = self.get_job(document_id)
        if job is None:
            return
        job.update(
            stage=stage,
            progress=int(progress),
            status=status,
            error_message=error_message or "",
            updated_at=_now(),
        )
        job["job_metadata"] = self._dumps(job.pop("metadata", {}))
        self._guard(
            lambda: self._jobs.upsert(
                ids=[document_id],
                documents=[str(job.get("filename", ""))],
                embeddings=[self._JOB_VECTOR],
                metadatas=[job],
            ),
            "update status",
            document_id,
            stage=stage,
        )

    def get_job(self, document_id: str) -> Optional[Dict[str, Any]]:
        result = self._guard(
            lambda: self._jobs.get(ids=[document_id], include=["metadatas"]),
            "read job",
            document_id,
        )
        metadatas = result.get("metadatas") or []
        if not metadatas or not isinstance(metadatas[0], Mapping):
            return None
        return self._job(metadatas[0])

    def _job(self, metadata: Mapping[str, Any]) -> Dict[str, Any]:
        job = dict(metadata)
        job["metadata"] = self._loads_dict(job.pop("job_metadata", None))
        return job

    def get_document_chunks(self, document_id: str) -> List[StoredChunk]:
        result = self._guard(
            lambda: self._collection.get(
                where={"document_id": document_id},
                include=["documents", "metadatas", "embeddings"],
            ),
            "read chunks",
            document_id,
        )
        ids = result.get("ids") or []
        documents = result.get("documents") or []
        metadatas = result.get("metadatas") or []
        embeddings = result.get("embeddings")
        if embeddings is None:
            embeddings = [()] * len(ids)
        chunks = [
            self._deserialize(document, metadata, vector)
            for document, metadata, vector in zip(documents, metadatas, embeddings, strict=False)
        ]
        return sorted(chunks, key=lambda chunk: chunk.index)

    def delete_document(self, document_id: str) -> bool:
        existed = bool(self.get_document_chunks(document_id)) or self.get_job(document_id) is not None
        self._guard(lambda: self._collection.delete(where={"document_id": document_id}), "delete chunks", document_id)
        self._guard(lambda: self._jobs.delete(ids=[document_id]), "delete job", document_id)
        return existed

    def count(self) -> int:
        return int(self._guard(self._collection.count, "count chunks", None))

    def processing_stats(self) -> Dict[str, int]:
        result = self._guard(lambda: self._jobs.get(include=["metadatas"]), "read jobs", None)
        metadatas = result.get("metadatas") or []
        return _job_stats(metadata.get("status") for metadata in metadatas if isinstance(metadata, Mapping))

    def recent_jobs(self, owner: str, limit: int = 10) -> List[Dict[str, Any]]:
        result = self._guard(
            lambda: self._jobs.get(where={"owner": owner}, include=["metadatas"]),
            "read jobs",
            None,
        )
        jobs = [self._job(metadata) for metadata in result.get("metadatas") or [] if isinstance(metadata, Mapping)]
        return _newest_first(jobs, limit)

    @staticmethod
    def _guard(operation, action: str, document_id: str | None, *, stage: str = "storing"):
        try:
            return operation()
        except PipelineError:
            raise
        except Exception as exc:
            raise store_error(f"Chroma failed to {action}: {exc}", stage=stage, document_id=document_id) from exc

    def _serialize(self, record: StoredChunk) -> MutableMapping[str, object]:
        return {
            "document_id": record.document_id,
            "filename": record.filename,
            "index": record.index,
            "chunk_metadata": self._dumps(record.metadata),
        }

    def _deserialize(self, document: str, metadata: Mapping[str, object], vector: Sequence[float]) -> StoredChunk:
        return StoredChunk(
            document_id=str(metadata.get("document_id", "")),
            filename=str(metadata.get("filename", "")),
            index=int(metadata.get("index", 0)),
            text=document,
            vector=tuple(float(value) for value in vector),
            metadata=self._loads_dict(metadata.get("chunk_metadata")),
        )

    @staticmethod
    def _dumps(value: object) -> str:
        try:
            return json.dumps(value, default=str)
        except TypeError:
            return json.dumps({}, default=str)

    @staticmethod
    def _loads_dict(value: object) -> Dict[str, object]:
        if isinstance(value, str) and value:
            try:
                loaded = json.loads(value)
                if isinstance(loaded, dict):
                    return loaded
            except json.JSONDecodeError:
                return {}
        if isinstance(value, Mapping):
            return dict(value)
        return {}
