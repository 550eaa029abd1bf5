"""Upload validation and document type detection."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, model_validator

from ragforge.errors import validation_error
from ragforge.models import DocumentType

MARKDOWN_EXTENSIONS = frozenset({".md", ".markdown"})
RECORD_EXTENSIONS = frozenset({".json"})
ALLOWED_MEDIA_TYPES = frozenset({"text/markdown", "text/plain", "application/json"})


class UploadCandidate(BaseModel):
    filename: str = Field(..., min_length=1, description="Name of the uploaded file")
    size_bytes: int = Field(..., ge=0, description="Size of the upload in bytes")
    media_type: str | None = Field(default=None, description="Declared media type, if any")
    max_size_mb: int = Field(default=50, ge=1)

    @model_validator(mode="after")
    def _check_limits(self) -> "UploadCandidate":
        if self.size_bytes == 0:
            raise ValueError(f"File is empty: {self.filename}")
        if self.size_bytes > self.max_size_mb * 1024 * 1024:
            raise ValueError(f"File too large (>{self.max_size_mb}MB): {self.filename}")
        suffix = Path(self.filename).suffix.lower()
        media_type = (self.media_type or "").split(";")[0].strip().lower()
        if suffix not in MARKDOWN_EXTENSIONS | RECORD_EXTENSIONS and media_type not in ALLOWED_MEDIA_TYPES:
            raise ValueError("File must be a markdown (.md) or JSON (.json) file")
        return self


def detect_document_type(filename: str, media_type: str | None = None) -> DocumentType:
    """JSON files become record collections; everything else is treated as Markdown."""

    if Path(filename).suffix.lower() in RECORD_EXTENSIONS:
        return DocumentType.RECORD_COLLECTION
    if media_type and media_type.split(";")[0].strip().lower() == "application/json":
        return DocumentType.RECORD_COLLECTION
    return DocumentType.MARKDOWN


def validate_upload(
    filename: str,
    size_bytes: int,
    media_type: str | None = None,
    max_size_mb: int = 50,
) -> DocumentType:
    """Reject empty, oversized or unsupported uploads and return the detected type."""

    try:
        UploadCandidate(filename=filename, size_bytes=size_bytes, media_type=media_type, max_size_mb=max_size_mb)
    except ValidationError as exc:
        messages = [str(error.get("msg", "")).removeprefix("Value error, ") for error in exc.errors()]
        raise validation_error(", ".join(messages), stage="upload") from exc
    return detect_document_type(filename, media_type)


__all__ = [
    "ALLOWED_MEDIA_TYPES",
    "UploadCandidate",
    "detect_document_type",
    "validate_upload",
]
