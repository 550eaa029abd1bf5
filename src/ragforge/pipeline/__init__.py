"""Document ingestion pipeline."""

from .orchestrator import DocumentPipeline, PipelineConfig, build_pipeline

__all__ = ["DocumentPipeline", "PipelineConfig", "build_pipeline"]
