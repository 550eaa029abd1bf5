"""Error type shared by every pipeline stage.

Failures are a single exception class tagged with an :class:`ErrorKind`
instead of a subclass per failure. Callers branch on ``error.kind`` and on
``error.recoverable``; :class:`~ragforge.resilience.retry.RetryPolicy`
only looks at the latter.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping


class ErrorKind(str, Enum):
    """Discriminator for :class:`PipelineError`."""

    VALIDATION = "validation"
    PROCESSING = "processing"
    EMBEDDING = "embedding"
    STORE = "store"
    CIRCUIT_OPEN = "circuit_open"
    CANCELLED = "cancelled"


# kind -> (code, default recoverability)
_KIND_DEFAULTS: Mapping[ErrorKind, tuple[str, bool]] = {
    ErrorKind.VALIDATION: ("VALIDATION_ERROR", False),
    ErrorKind.PROCESSING: ("PROCESSING_ERROR", False),
    ErrorKind.EMBEDDING: ("EMBEDDING_ERROR", True),
    ErrorKind.STORE: ("STORE_ERROR", True),
    ErrorKind.CIRCUIT_OPEN: ("CIRCUIT_OPEN", False),
    ErrorKind.CANCELLED: ("CANCELLED", False),
}


class PipelineError(RuntimeError):
    """Raised for any failure inside the ingestion pipeline."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        stage: str | None = None,
        document_id: str | None = None,
        recoverable: bool | None = None,
        code: str | None = None,
        retry_count: int = 0,
    ) -> None:
        super().__init__(message)
        default_code, default_recoverable = _KIND_DEFAULTS[kind]
        self.kind = kind
        self.message = message
        self.code = code or default_code
        self.stage = stage
        self.document_id = document_id
        self.recoverable = default_recoverable if recoverable is None else recoverable
        self.retry_count = retry_count

    def __repr__(self) -> str:
        return (
            f"PipelineError(kind={self.kind.value!r}, code={self.code!r}, stage={self.stage!r}, "
            f"document_id={self.document_id!r}, recoverable={self.recoverable!r}, message={self.message!r})"
        )

    def for_document(self, document_id: str) -> "PipelineError":
        """Attach a document id if the raiser did not know it."""

        if self.document_id is None:
            self.document_id = document_id
        return self


def validation_error(message: str, *, document_id: str | None = None, stage: str = "parsing") -> PipelineError:
    return PipelineError(ErrorKind.VALIDATION, message, stage=stage, document_id=document_id)


def processing_error(
    message: str,
    stage: str,
    *,
    document_id: str | None = None,
    recoverable: bool = False,
) -> PipelineError:
    return PipelineError(
        ErrorKind.PROCESSING,
        message,
        stage=stage,
        document_id=document_id,
        recoverable=recoverable,
    )


def embedding_error(message: str, *, retry_count: int = 0, document_id: str | None = None) -> PipelineError:
    return PipelineError(
        ErrorKind.EMBEDDING,
        message,
        stage="embedding",
        document_id=document_id,
        retry_count=retry_count,
    )


def store_error(message: str, *, stage: str = "storing", document_id: str | None = None) -> PipelineError:
    return PipelineError(ErrorKind.STORE, message, stage=stage, document_id=document_id)


def circuit_open_error(breaker: str, *, document_id: str | None = None) -> PipelineError:
    return PipelineError(
        ErrorKind.CIRCUIT_OPEN,
        f"Circuit breaker '{breaker}' is open - upstream unavailable",
        stage="embedding",
        document_id=document_id,
    )


def cancelled_error(stage: str, *, document_id: str | None = None) -> PipelineError:
    return PipelineError(
        ErrorKind.CANCELLED,
        f"Processing cancelled during {stage}",
        stage=stage,
        document_id=document_id,
    )


def error_report(error: BaseException, **context: Any) -> Dict[str, Any]:
    """Build a structured, log-friendly description of *error*."""

    report: Dict[str, Any] = {
        "error": {
            "name": type(error).__name__,
            "message": str(error),
        },
        "context": {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **{key: value for key, value in context.items() if value is not None},
        },
        "recoverable": False,
    }
    if isinstance(error, PipelineError):
        report["error"]["code"] = error.code
        report["error"]["kind"] = error.kind.value
        report["stage"] = error.stage
        report["document_id"] = error.document_id
        report["recoverable"] = error.recoverable
        if error.kind is ErrorKind.EMBEDDING:
            report["retry_count"] = error.retry_count
    return report


__all__ = [
    "ErrorKind",
    "PipelineError",
    "cancelled_error",
    "circuit_open_error",
    "embedding_error",
    "error_report",
    "processing_error",
    "store_error",
    "validation_error",
]
