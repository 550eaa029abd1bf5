"""Document chunking strategies."""

from .base import Chunker, ChunkingConfig, split_by_size
from .markdown import MarkdownChunker, MarkdownConfig
from .records import RecordChunker, RecordConfig

__all__ = [
    "Chunker",
    "ChunkingConfig",
    "MarkdownChunker",
    "MarkdownConfig",
    "RecordChunker",
    "RecordConfig",
    "split_by_size",
]
