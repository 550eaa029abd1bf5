"""Progress reporting for ingestion jobs."""

from .tracker import ProgressCallback, ProgressReporter, ProgressSnapshot, ProgressTracker

__all__ = ["ProgressCallback", "ProgressReporter", "ProgressSnapshot", "ProgressTracker"]
