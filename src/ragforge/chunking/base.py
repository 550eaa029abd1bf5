"""Shared chunking configuration and the size-window splitter."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import List, Protocol, Sequence, Tuple

from ragforge.models import Chunk, ParsedDocument, SourceDocument

_SENTENCE_TERMINATORS = ".!?"

# Hard ceiling on any chunk relative to the configured size.
OVERSIZE_FACTOR = 1.5


@dataclass(frozen=True)
class ChunkingConfig:
    """Size and overlap shared by every chunker."""

    chunk_size: int = 512
    chunk_overlap: int = 50

    def clamp(self) -> "ChunkingConfig":
        """Return a sanitized copy with a positive size and non-negative overlap."""

        return replace(self, chunk_size=max(self.chunk_size, 1), chunk_overlap=max(self.chunk_overlap, 0))

    @property
    def max_chunk_length(self) -> int:
        return int(self.chunk_size * OVERSIZE_FACTOR)


class Chunker(Protocol):
    """Two-step parse/chunk contract implemented by every strategy."""

    def parse(self, document: SourceDocument) -> ParsedDocument:
        """Decode *document* into a parsed representation."""

    def chunk(self, parsed: ParsedDocument) -> Sequence[Chunk]:
        """Split a parsed document into ordered chunks."""


def split_by_size(
    text: str,
    chunk_size: int,
    chunk_overlap: int,
    *,
    break_on_newline: bool = False,
) -> List[Tuple[str, int, int]]:
    """Split *text* into overlapping windows of at most *chunk_size* characters.

    Returns ``(window_text, start, end)`` triples where ``text[start:end]``
    is the source range of the window before whitespace stripping. A window
    that does not reach the end of the text is shortened to end just after
    the last sentence terminator (or newline, when *break_on_newline*) if
    that boundary lies past the window's midpoint. Consecutive windows
    overlap by *chunk_overlap* characters but always move forward by at
    least one character.
    """

    chunk_size = max(chunk_size, 1)
    chunk_overlap = max(chunk_overlap, 0)
    length = len(text)
    if length <= chunk_size:
        stripped = text.strip()
        return [(stripped, 0, length)] if stripped else []

    windows: List[Tuple[str, int, int]] = []
    start = 0
    while start < length:
        end = min(start + chunk_size, length)
        actual_end = end
        if end < length:
            window = text[start:end]
            boundary = max(window.rfind(mark) for mark in _SENTENCE_TERMINATORS)
            if break_on_newline:
                boundary = max(boundary, window.rfind("\n"))
            if boundary > len(window) * 0.5:
                actual_end = start + boundary + 1
        piece = text[start:actual_end].strip()
        if piece:
            windows.append((piece, start, actual_end))
        if actual_end >= length:
            break
        start = max(actual_end - chunk_overlap, start + 1)
    return windows


def word_count(text: str) -> int:
    return len(text.split())


__all__ = ["Chunker", "ChunkingConfig", "OVERSIZE_FACTOR", "split_by_size", "word_count"]
