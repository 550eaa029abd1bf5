"""In-memory progress tracking for ingestion jobs."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

from ragforge.errors import processing_error
from ragforge.metrics.observability import get_logger

ProgressCallback = Callable[["ProgressSnapshot"], None]

_FINISHED = frozenset({"completed", "failed"})


class ProgressReporter(Protocol):
    """Receives stage/progress updates for a job."""

    def initialize(self, document_id: str, filename: str) -> None:
        """Start tracking *document_id*."""

    def update(self, document_id: str, update: Mapping[str, Any]) -> None:
        """Merge *update* (stage, progress, status, error) into the job state."""


@dataclass(frozen=True)
class ProgressSnapshot:
    document_id: str
    filename: str
    stage: str = "upload"
    progress: int = 0
    status: str = "pending"
    error: str | None = None
    updated_at: float = field(default=0.0)

    @property
    def finished(self) -> bool:
        return self.status in _FINISHED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_id": self.document_id,
            "filename": self.filename,
            "stage": self.stage,
            "progress": self.progress,
            "status": self.status,
            "error": self.error,
        }


class ProgressTracker:
    """Thread-safe :class:`ProgressReporter` with per-document subscribers.

    Finished jobs are kept for ``ttl_seconds`` and then dropped on the next
    read or write. Subscriber failures are logged and never reach the caller.
    """

    def __init__(self, *, ttl_seconds: float = 3600.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._states: Dict[str, ProgressSnapshot] = {}
        self._subscribers: Dict[str, List[ProgressCallback]] = {}
        self._logger = get_logger("progress")

    def initialize(self, document_id: str, filename: str) -> None:
        snapshot = ProgressSnapshot(document_id=document_id, filename=filename, updated_at=self._clock())
        with self._lock:
            self._expire()
            self._states[document_id] = snapshot
        self._notify(snapshot)

    def update(self, document_id: str, update: Mapping[str, Any]) -> None:
        with self._lock:
            self._expire()
            current = self._states.get(document_id)
            if current is None:
                raise processing_error(
                    f"No progress tracked for document {document_id}",
                    str(update.get("stage", "upload")),
                    document_id=document_id,
                )
            snapshot = ProgressSnapshot(
                document_id=document_id,
                filename=current.filename,
                stage=str(update.get("stage", current.stage)),
                progress=int(update.get("progress", current.progress)),
                status=str(update.get("status", current.status)),
                error=update.get("error", current.error),
                updated_at=self._clock(),
            )
            self._states[document_id] = snapshot
        self._notify(snapshot)

    def get_state(self, document_id: str) -> Optional[ProgressSnapshot]:
        with self._lock:
            self._expire()
            return self._states.get(document_id)

    def subscribe(self, document_id: str, callback: ProgressCallback) -> Callable[[], None]:
        """Register *callback* for updates; returns a function that unsubscribes it."""

        with self._lock:
            self._subscribers.setdefault(document_id, []).append(callback)

        def unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(document_id, [])
                if callback in callbacks:
                    callbacks.remove(callback)
                if not callbacks:
                    self._subscribers.pop(document_id, None)

        return unsubscribe

    def remove(self, document_id: str) -> bool:
        with self._lock:
            self._subscribers.pop(document_id, None)
            return self._states.pop(document_id, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._states.clear()
            self._subscribers.clear()

    def _expire(self) -> None:
        # Caller holds the lock.
        now = self._clock()
        expired = [
            document_id
            for document_id, snapshot in self._states.items()
            if snapshot.finished and now - snapshot.updated_at >= self._ttl
        ]
        for document_id in expired:
            del self._states[document_id]
            self._subscribers.pop(document_id, None)

    def _notify(self, snapshot: ProgressSnapshot) -> None:
        with self._lock:
            callbacks = list(self._subscribers.get(snapshot.document_id, []))
        for callback in callbacks:
            try:
                callback(snapshot)
            except Exception as exc:
                self._logger.warning(
                    "progress.subscriber_failed",
                    document_id=snapshot.document_id,
                    error=str(exc),
                )


__all__ = ["ProgressCallback", "ProgressReporter", "ProgressSnapshot", "ProgressTracker"]
