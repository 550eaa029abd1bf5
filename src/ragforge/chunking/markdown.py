"""Markdown chunking with front matter extraction and header-aware splitting."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import yaml

from ragforge.chunking.base import ChunkingConfig, split_by_size, word_count
from ragforge.metrics.observability import get_logger
from ragforge.models import Chunk, HeaderInfo, ParsedDocument, SourceDocument

_FRONT_MATTER_RE = re.compile(r"\A---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)
_KEY_VALUE_RE = re.compile(r"^([A-Za-z][\w .-]{0,40}?)\s*:\s*(.*)$")
_HEADER_RE = re.compile(r"^(#{1,6})\s+(.+)$")
_FENCE_RE = re.compile(r"^\s*(```|~~~)")
_VERSION_RE = re.compile(r"version\s+([\d.]+)", re.IGNORECASE)
_DATE_RE = re.compile(r"(\d{1,2}-\d{1,2}-\d{4})")
_TITLE_RE = re.compile(r"^(\*\*)?FAQ|manual", re.IGNORECASE)

HEURISTIC_SCAN_LINES = 20
LONG_LINE_LENGTH = 100

DEFAULT_TECHNICAL_TERMS: Tuple[str, ...] = (
    "roborail",
    "pmac",
    "calibration",
    "measurement",
    "chuck",
    "alignment",
    "sensor",
    "profiling",
)

# First match wins.
_CATEGORY_KEYWORDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("calibration", ("calibration",)),
    ("faq", ("faq",)),
    ("manual", ("manual", "operator")),
    ("measurement", ("measurement",)),
)


@dataclass(frozen=True)
class MarkdownConfig(ChunkingConfig):
    """Options for :class:`MarkdownChunker`.

    ``chunk_overlap`` is counted in words when a large header section is
    split by lines, and in characters for the size-based fallback.
    """

    chunk_by_headers: bool = True
    preserve_headers: bool = True
    technical_terms: Tuple[str, ...] = DEFAULT_TECHNICAL_TERMS


def parse_front_matter(text: str) -> Tuple[Dict[str, Any], str]:
    """Split a ``---`` delimited YAML block off the top of *text*.

    Blocks that do not load as a YAML mapping are left in the body.
    """

    match = _FRONT_MATTER_RE.match(text)
    if not match:
        return {}, text
    try:
        loaded = yaml.safe_load(match.group(1))
    except yaml.YAMLError as exc:
        get_logger("chunking.markdown").warning("markdown.front_matter_invalid", error=str(exc))
        return {}, text
    if not isinstance(loaded, dict) or not loaded:
        return {}, text
    return {str(key): value for key, value in loaded.items()}, text[match.end():]


def scan_leading_metadata(text: str) -> Tuple[Dict[str, Any], str]:
    """Collect loose metadata lines that precede the real content.

    Documents exported from manuals often open with ``logo: ...`` or
    ``version 1.2 | 2-5-2024`` lines instead of front matter. The scan
    covers the first :data:`HEURISTIC_SCAN_LINES` lines and stops at the
    first header, long line, or line that is not recognisable metadata.
    """

    lines = text.split("\n")
    found: Dict[str, Any] = {}
    content_start: Optional[int] = None

    for index, raw_line in enumerate(lines[:HEURISTIC_SCAN_LINES]):
        line = raw_line.strip()
        if not line or line.startswith("<!--"):
            continue
        if line.startswith("#") or len(line) > LONG_LINE_LENGTH:
            content_start = index
            break

        kv = _KEY_VALUE_RE.match(line)
        version = _VERSION_RE.search(line)
        if kv:
            key = kv.group(1).strip().lower()
            value = kv.group(2).strip()
            if "logo" in key:
                found["company"] = value
            elif "summary" in key:
                found["description"] = value
            else:
                found[key] = value
        elif version:
            found["version"] = version.group(1)
            date = _DATE_RE.search(line)
            if date:
                found["date"] = date.group(1)
        elif _TITLE_RE.search(line):
            found.setdefault("title", line.strip("*").strip())
        else:
            content_start = index
            break

    if content_start is None:
        # No boundary inside the scan window; keep the body intact.
        return found, text
    return found, "\n".join(lines[content_start:])


def extract_headers(body: str) -> Tuple[HeaderInfo, ...]:
    """Locate ATX headers outside fenced code blocks."""

    located: List[Tuple[int, str, int]] = []
    offset = 0
    in_fence = False
    for line in body.split("\n"):
        if _FENCE_RE.match(line):
            in_fence = not in_fence
        elif not in_fence:
            match = _HEADER_RE.match(line)
            if match:
                located.append((len(match.group(1)), match.group(2).strip(), offset))
        offset += len(line) + 1

    headers: List[HeaderInfo] = []
    for index, (level, text, start) in enumerate(located):
        end = located[index + 1][2] if index + 1 < len(located) else len(body)
        headers.append(HeaderInfo(level=level, text=text, start=start, end=end))
    return tuple(headers)


def _wrap_line(line: str, width: int) -> List[str]:
    """Break *line* into pieces of at most *width* characters on word boundaries."""

    width = max(width, 1)
    if len(line) <= width:
        return [line]
    pieces: List[str] = []
    current = ""
    for word in line.split():
        while len(word) > width:
            if current:
                pieces.append(current)
                current = ""
            pieces.append(word[:width])
            word = word[width:]
        if not word:
            continue
        candidate = f"{current} {word}" if current else word
        if len(candidate) > width:
            pieces.append(current)
            current = word
        else:
            current = candidate
    if current:
        pieces.append(current)
    return pieces


class MarkdownChunker:
    """Header-aware chunking strategy for Markdown documents."""

    _logger = get_logger("chunking.markdown")

    def __init__(self, config: MarkdownConfig | None = None) -> None:
        self._config = (config or MarkdownConfig()).clamp()

    @property
    def config(self) -> MarkdownConfig:
        return self._config

    def parse(self, document: SourceDocument) -> ParsedDocument:
        front_matter, remainder = parse_front_matter(document.text)
        if not front_matter:
            front_matter, remainder = scan_leading_metadata(document.text)
        body = remainder.strip()
        headers = extract_headers(body)

        metadata: Dict[str, Any] = {"type": "markdown", **front_matter}
        metadata.update(self._content_metadata(body))
        metadata.update(
            {
                "has_headers": bool(headers),
                "header_count": len(headers),
                "max_header_level": max((header.level for header in headers), default=0),
            }
        )
        return ParsedDocument(body=body, metadata=metadata, headers=headers, front_matter=front_matter)

    def _content_metadata(self, body: str) -> Dict[str, Any]:
        lowered = body.lower()
        line_count = len(body.split("\n"))
        words = word_count(body)
        category = next(
            (name for name, keywords in _CATEGORY_KEYWORDS if any(keyword in lowered for keyword in keywords)),
            "general",
        )
        terms = [term for term in dict.fromkeys(self._config.technical_terms) if term.lower() in lowered]
        words_per_line = words / line_count if line_count else 0.0
        if words_per_line > 15:
            complexity = "high"
        elif words_per_line > 8:
            complexity = "medium"
        else:
            complexity = "low"
        return {
            "word_count": words,
            "line_count": line_count,
            "category": category,
            "technical_terms": terms,
            "complexity": complexity,
        }

    def chunk(self, parsed: ParsedDocument) -> Sequence[Chunk]:
        if self._config.chunk_by_headers and parsed.headers:
            drafts = self._chunk_by_headers(parsed)
        else:
            drafts = self._chunk_by_size(parsed)
        chunks: List[Chunk] = []
        for position, (chunk_id, text, extra) in enumerate(drafts):
            metadata: Dict[str, Any] = dict(parsed.metadata)
            metadata.update(extra)
            metadata["position"] = position
            metadata["chunk_length"] = len(text)
            chunks.append(Chunk(chunk_id=chunk_id, text=text, metadata=metadata))
        self._logger.debug("markdown.chunked", chunk_count=len(chunks), headers=len(parsed.headers))
        return chunks

    def _chunk_by_headers(self, parsed: ParsedDocument) -> List[Tuple[str, str, Mapping[str, Any]]]:
        body = parsed.body
        drafts: List[Tuple[str, str, Mapping[str, Any]]] = []

        preamble = body[: parsed.headers[0].start].strip()
        if preamble:
            pieces = self._section_pieces(preamble, header=None)
            for sub_index, text in enumerate(pieces):
                chunk_id = "preamble" if len(pieces) == 1 else f"preamble-{sub_index}"
                extra: Dict[str, Any] = {
                    "chunk_type": "header-based",
                    "header_text": None,
                    "header_level": 0,
                    "section_index": -1,
                }
                if len(pieces) > 1:
                    extra["sub_chunk_index"] = sub_index
                drafts.append((chunk_id, text, extra))

        for index, header in enumerate(parsed.headers):
            section = body[header.start : header.end].strip()
            if not section:
                continue
            pieces = self._section_pieces(section, header=header)
            for sub_index, text in enumerate(pieces):
                extra = {
                    "chunk_type": "header-based",
                    "header_text": header.text,
                    "header_level": header.level,
                    "section_index": index,
                }
                if len(pieces) > 1:
                    extra["sub_chunk_index"] = sub_index
                    chunk_id = f"header-{index}-{sub_index}"
                else:
                    chunk_id = f"header-{index}"
                drafts.append((chunk_id, text, extra))
        return drafts

    def _section_pieces(self, section: str, header: HeaderInfo | None) -> List[str]:
        if len(section) <= self._config.max_chunk_length:
            return [section]
        return self._split_large_section(section, repeat_header=header is not None)

    def _split_large_section(self, section: str, *, repeat_header: bool) -> List[str]:
        """Split a section by lines, repeating its header on every piece."""

        size = self._config.chunk_size
        lines = section.split("\n")
        prefix: Optional[str] = None
        if repeat_header and self._config.preserve_headers and len(lines[0]) <= size // 2:
            prefix = lines[0]
            content = lines[1:]
        else:
            content = lines

        room = size - (len(prefix) + 1 if prefix is not None else 0)
        pieces = [piece for line in content for piece in _wrap_line(line, room)]

        def render(selected: Sequence[str]) -> str:
            head = [prefix] if prefix is not None else []
            return "\n".join(head + list(selected)).strip()

        chunks: List[str] = []
        current: List[str] = []
        for index, piece in enumerate(pieces):
            if current and len(render(current + [piece])) > size:
                self._flush(chunks, current, render)
                current = self._overlap_lines(pieces, index) + [piece]
                while len(current) > 1 and len(render(current)) > size:
                    current.pop(0)
            else:
                current.append(piece)
        self._flush(chunks, current, render)

        if not chunks:
            return [text for text, _, _ in split_by_size(section, size, 0)]
        return chunks

    @staticmethod
    def _flush(chunks: List[str], current: Sequence[str], render: Callable[[Sequence[str]], str]) -> None:
        if any(line.strip() for line in current):
            chunks.append(render(current))

    def _overlap_lines(self, lines: Sequence[str], split_index: int) -> List[str]:
        """Return whole lines before *split_index* totalling at most ``chunk_overlap`` words."""

        budget = self._config.chunk_overlap
        selected: List[str] = []
        words = 0
        for index in range(split_index - 1, -1, -1):
            line_words = word_count(lines[index])
            if words + line_words > budget:
                break
            selected.insert(0, lines[index])
            words += line_words
        return selected

    def _chunk_by_size(self, parsed: ParsedDocument) -> List[Tuple[str, str, Mapping[str, Any]]]:
        windows = split_by_size(parsed.body, self._config.chunk_size, self._config.chunk_overlap)
        return [
            (
                f"chunk-{index}",
                text,
                {
                    "chunk_type": "size-based",
                    "chunk_index": index,
                    "start_offset": start,
                    "end_offset": end,
                },
            )
            for index, (text, start, end) in enumerate(windows)
        ]


__all__ = [
    "DEFAULT_TECHNICAL_TERMS",
    "MarkdownChunker",
    "MarkdownConfig",
    "extract_headers",
    "parse_front_matter",
    "scan_leading_metadata",
]
