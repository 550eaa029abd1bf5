from __future__ import annotations

import pytest

from ragforge.errors import ErrorKind, PipelineError
from ragforge.models import Chunk, ProcessingState


def test_state_advances_through_stages():
    state = ProcessingState(document_id="d1", filename="a.md")

    state.advance("parsing").advance("chunking")

    assert (state.stage, state.progress, state.status) == ("chunking", 50, "processing")
    state.advance("completed")
    assert (state.progress, state.status) == (100, "completed")


def test_state_never_moves_backwards():
    state = ProcessingState(document_id="d1").advance("embedding")

    with pytest.raises(PipelineError) as excinfo:
        state.advance("parsing")

    assert excinfo.value.kind is ErrorKind.PROCESSING
    assert state.stage == "embedding"


def test_failed_state_is_terminal():
    state = ProcessingState(document_id="d1").advance("storing")

    state.fail("disk full")

    assert state.as_update() == {"stage": "error", "progress": 0, "status": "failed", "error": "disk full"}
    with pytest.raises(PipelineError):
        state.advance("completed")


def test_chunk_requires_text():
    with pytest.raises(PipelineError):
        Chunk(chunk_id="c0", text="")


def test_chunk_with_embedding_is_a_copy():
    chunk = Chunk(chunk_id="c0", text="hello", metadata={"position": 0})

    embedded = chunk.with_embedding([1, 2])

    assert chunk.embedding is None
    assert embedded.embedding == (1.0, 2.0)
    assert embedded.to_dict()["id"] == "c0"
