from __future__ import annotations

from uuid import uuid4

import chromadb
import pytest

from ragforge.embeddings import ChromaChunkStore, InMemoryChunkStore, StoredChunk, check_store_health
from ragforge.errors import ErrorKind, PipelineError


def _record(doc_id: str, index: int, text: str) -> StoredChunk:
    return StoredChunk(
        document_id=doc_id,
        filename=f"{doc_id}.md",
        index=index,
        text=text,
        vector=(float(index + 1), 0.5, 0.25),
        metadata={"chunk_id": f"header-{index}", "technical_terms": ["pmac"]},
    )


def _chroma_store() -> ChromaChunkStore:
    return ChromaChunkStore(f"test-{uuid4().hex[:8]}", client=chromadb.EphemeralClient())


def test_in_memory_store_tracks_jobs_and_chunks():
    store = InMemoryChunkStore()
    store.create_job("d1", "d1.md", "alice", {"document_type": "markdown"})

    ids = store.store_chunks([_record("d1", 1, "beta"), _record("d1", 0, "alpha")])
    store.update_status("d1", "completed", 100, "completed")

    assert list(ids) == ["d1-1", "d1-0"]
    assert [chunk.text for chunk in store.get_document_chunks("d1")] == ["alpha", "beta"]
    job = store.get_job("d1")
    assert job["owner"] == "alice"
    assert job["status"] == "completed"
    assert job["progress"] == 100
    assert job["chunk_count"] == 2
    assert store.count() == 2


def test_in_memory_store_delete_document():
    store = InMemoryChunkStore()
    store.create_job("d1", "d1.md", None)
    store.store_chunks([_record("d1", 0, "alpha")])

    assert store.delete_document("d1") is True
    assert store.get_job("d1") is None
    assert store.delete_document("d1") is False


def test_chroma_store_round_trips_chunks_and_jobs():
    store = _chroma_store()
    store.create_job("d1", "d1.md", None, {"document_type": "markdown"})

    ids = store.store_chunks([_record("d1", 0, "alpha"), _record("d1", 1, "beta"), _record("d2", 0, "other")])
    store.update_status("d1", "storing", 90, "processing")

    assert list(ids) == ["d1-0", "d1-1", "d2-0"]
    assert store.count() == 3
    chunks = store.get_document_chunks("d1")
    assert [chunk.text for chunk in chunks] == ["alpha", "beta"]
    assert chunks[1].metadata == {"chunk_id": "header-1", "technical_terms": ["pmac"]}
    assert chunks[0].vector == pytest.approx((1.0, 0.5, 0.25))
    job = store.get_job("d1")
    assert job["stage"] == "storing"
    assert job["progress"] == 90
    assert job["status"] == "processing"
    assert job["owner"] == ""
    assert job["metadata"] == {"document_type": "markdown"}


def test_chroma_store_delete_document():
    store = _chroma_store()
    store.create_job("d1", "d1.md", "bob")
    store.store_chunks([_record("d1", 0, "alpha")])

    assert store.delete_document("d1") is True
    assert store.get_document_chunks("d1") == []
    assert store.get_job("d1") is None


def test_chroma_store_unknown_job_update_is_ignored():
    store = _chroma_store()
    store.update_status("missing", "parsing", 25, "processing")
    assert store.get_job("missing") is None


def test_chroma_store_wraps_driver_failures():
    store = _chroma_store()
    store.store_chunks([_record("d1", 0, "alpha")])

    with pytest.raises(PipelineError) as excinfo:
        store.store_chunks([StoredChunk("d1", "d1.md", 1, "beta", (1.0, 2.0), {})])

    assert excinfo.value.kind is ErrorKind.STORE
    assert excinfo.value.recoverable is True
    assert excinfo.value.stage == "storing"


def test_in_memory_store_replaces_chunks_on_reingest():
    store = InMemoryChunkStore()
    store.store_chunks([_record("d1", index, f"part {index}") for index in range(3)])
    store.store_chunks([_record("d1", 0, "rewritten")])

    assert [chunk.text for chunk in store.get_document_chunks("d1")] == ["rewritten"]
    assert store.count() == 1


def test_chroma_store_replaces_chunks_on_reingest():
    store = _chroma_store()
    store.store_chunks([_record("d1", index, f"part {index}") for index in range(3)] + [_record("d2", 0, "other")])
    store.store_chunks([_record("d1", 0, "rewritten")])

    assert [chunk.text for chunk in store.get_document_chunks("d1")] == ["rewritten"]
    assert [chunk.text for chunk in store.get_document_chunks("d2")] == ["other"]
    assert store.count() == 2


def test_chroma_store_keeps_previous_chunks_when_write_fails():
    store = _chroma_store()
    store.store_chunks([_record("d1", 0, "alpha"), _record("d1", 1, "beta")])

    with pytest.raises(PipelineError):
        store.store_chunks([StoredChunk("d1", "d1.md", 0, "gamma", (1.0, 2.0), {})])

    assert [chunk.text for chunk in store.get_document_chunks("d1")] == ["alpha", "beta"]


@pytest.mark.parametrize("factory", [InMemoryChunkStore, _chroma_store])
def test_store_processing_stats_count_jobs_by_status(factory):
    store = factory()
    assert store.processing_stats() == {"total": 0, "pending": 0, "processing": 0, "completed": 0, "failed": 0}

    for document_id in ("d1", "d2", "d3", "d4"):
        store.create_job(document_id, f"{document_id}.md", "alice")
    store.update_status("d2", "embedding", 60, "processing")
    store.update_status("d3", "completed", 100, "completed")
    store.update_status("d4", "error", 30, "failed", "boom")

    assert store.processing_stats() == {"total": 4, "pending": 1, "processing": 1, "completed": 1, "failed": 1}


@pytest.mark.parametrize("factory", [InMemoryChunkStore, _chroma_store])
def test_store_recent_jobs_filters_by_owner_newest_first(factory):
    store = factory()
    for index in range(4):
        store.create_job(f"a{index}", f"a{index}.md", "alice", {"order": index})
    store.create_job("b0", "b0.md", "bob")

    jobs = store.recent_jobs("alice", limit=3)

    assert len(jobs) == 3
    assert {job["owner"] for job in jobs} == {"alice"}
    created = [job["created_at"] for job in jobs]
    assert created == sorted(created, reverse=True)
    assert all(isinstance(job["metadata"], dict) for job in jobs)
    assert [job["document_id"] for job in store.recent_jobs("bob")] == ["b0"]
    assert store.recent_jobs("carol") == []


def test_store_health_check_reports_status():
    healthy = check_store_health(InMemoryChunkStore())
    assert healthy.status == "healthy"
    assert healthy.service == "store"
    assert healthy.error is None

    class _DownStore(InMemoryChunkStore):
        def processing_stats(self):
            raise ConnectionError("database unreachable")

    unhealthy = check_store_health(_DownStore(), service="chroma")
    assert unhealthy.status == "unhealthy"
    assert unhealthy.service == "chroma"
    assert "database unreachable" in unhealthy.error
    assert unhealthy.response_time_ms >= 0


def test_chroma_store_health_check_is_healthy():
    assert check_store_health(_chroma_store()).status == "healthy"
