"""Shared domain models used across the ragforge pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Literal, Mapping, Sequence, Tuple

from ragforge.errors import processing_error, validation_error


class DocumentType(str, Enum):
    """Declared type of an incoming document."""

    MARKDOWN = "markdown"
    RECORD_COLLECTION = "record-collection"

    @classmethod
    def coerce(cls, value: "DocumentType | str") -> "DocumentType":
        if isinstance(value, DocumentType):
            return value
        normalized = str(value).strip().lower()
        if normalized in {"json", "records", "record_collection"}:
            return cls.RECORD_COLLECTION
        if normalized in {"md", "markdown"}:
            return cls.MARKDOWN
        try:
            return cls(normalized)
        except ValueError:
            raise validation_error(f"Unsupported document type: {value!r}") from None


SchemaType = Literal["faq", "documentation", "configuration", "generic"]
ProcessingStatus = Literal["pending", "processing", "completed", "failed"]

STAGE_ORDER: Tuple[str, ...] = ("upload", "parsing", "chunking", "embedding", "storing", "completed")
STAGE_PROGRESS: Mapping[str, int] = {
    "upload": 0,
    "parsing": 25,
    "chunking": 50,
    "embedding": 75,
    "storing": 90,
    "completed": 100,
}


@dataclass(frozen=True)
class SourceDocument:
    """Raw document handed to the pipeline."""

    text: str
    document_type: DocumentType
    document_id: str
    filename: str


@dataclass(frozen=True)
class HeaderInfo:
    """Markdown header located in a document body."""

    level: int
    text: str
    start: int
    end: int

    @property
    def line(self) -> str:
        return f"{'#' * self.level} {self.text}"


@dataclass(frozen=True)
class SchemaProfile:
    """Shape classification of a record collection."""

    schema_type: SchemaType
    properties: Tuple[str, ...] = ()
    depth: int = 0
    item_count: int = 0
    relationships: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ParsedDocument:
    """Intermediate representation produced by a chunker's parse step."""

    body: str
    metadata: Mapping[str, Any] = field(default_factory=dict)
    headers: Tuple[HeaderInfo, ...] = ()
    front_matter: Mapping[str, Any] = field(default_factory=dict)
    schema: SchemaProfile | None = None
    structure: Any = None


@dataclass(frozen=True)
class Chunk:
    """Bounded unit of document text, the unit of embedding and storage."""

    chunk_id: str
    text: str
    metadata: Mapping[str, Any] = field(default_factory=dict)
    embedding: Tuple[float, ...] | None = None

    def __post_init__(self) -> None:
        if not self.text:
            raise validation_error(f"Chunk {self.chunk_id} has empty text", stage="chunking")

    def with_embedding(self, vector: Sequence[float]) -> "Chunk":
        return replace(self, embedding=tuple(float(value) for value in vector))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.chunk_id,
            "text": self.text,
            "metadata": dict(self.metadata),
            "embedding": list(self.embedding) if self.embedding is not None else None,
        }


@dataclass
class ProcessingState:
    """Stage/progress state machine for a single ingestion job."""

    document_id: str
    filename: str = ""
    stage: str = "upload"
    progress: int = 0
    status: ProcessingStatus = "pending"
    error: str | None = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def advance(self, stage: str, progress: int | None = None) -> "ProcessingState":
        if self.stage == "error":
            raise processing_error("Cannot advance a failed job", stage, document_id=self.document_id)
        if stage not in STAGE_ORDER:
            raise processing_error(f"Unknown stage {stage!r}", self.stage, document_id=self.document_id)
        if STAGE_ORDER.index(stage) < STAGE_ORDER.index(self.stage):
            raise processing_error(
                f"Stage cannot move back from {self.stage} to {stage}",
                self.stage,
                document_id=self.document_id,
            )
        target = STAGE_PROGRESS[stage] if progress is None else progress
        if not 0 <= target <= 100:
            raise processing_error(f"Progress out of range: {target}", stage, document_id=self.document_id)
        self.stage = stage
        self.progress = max(self.progress, target)
        self.status = "completed" if stage == "completed" else "processing"
        self.updated_at = datetime.now(timezone.utc)
        return self

    def fail(self, message: str) -> "ProcessingState":
        self.stage = "error"
        self.progress = 0
        self.status = "failed"
        self.error = message
        self.updated_at = datetime.now(timezone.utc)
        return self

    def as_update(self) -> Dict[str, Any]:
        update: Dict[str, Any] = {"stage": self.stage, "progress": self.progress, "status": self.status}
        if self.error is not None:
            update["error"] = self.error
        return update


@dataclass(frozen=True)
class ProcessingResult:
    """Outcome of :meth:`DocumentPipeline.process`."""

    document_id: str
    filename: str
    chunks: Sequence[Chunk]
    status: ProcessingStatus
    metadata: Mapping[str, Any]
    chunk_count: int
    embedding_count: int
    processed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_id": self.document_id,
            "filename": self.filename,
            "status": self.status,
            "chunk_count": self.chunk_count,
            "embedding_count": self.embedding_count,
            "processed_at": self.processed_at.isoformat(),
            "metadata": dict(self.metadata),
            "chunks": [chunk.to_dict() for chunk in self.chunks],
        }
