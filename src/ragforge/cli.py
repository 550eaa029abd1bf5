"""CLI for ingesting Markdown and JSON documents into a chunk store."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import List, Sequence

from ragforge.config import Settings, get_settings
from ragforge.embeddings import ChromaChunkStore
from ragforge.errors import PipelineError
from ragforge.metrics.observability import configure_logging, get_logger
from ragforge.models import DocumentType
from ragforge.pipeline import DocumentPipeline, build_pipeline
from ragforge.validation import validate_upload


def ingest_files(
    paths: Sequence[Path],
    pipeline: DocumentPipeline,
    *,
    settings: Settings,
    document_type: str | None = None,
) -> List[dict]:
    """Run every path through *pipeline*; failures are reported, not raised."""

    logger = get_logger("cli")
    reports: List[dict] = []
    for path in paths:
        try:
            detected = validate_upload(path.name, path.stat().st_size, max_size_mb=settings.max_upload_size_mb)
            doc_type = DocumentType.coerce(document_type) if document_type else detected
            result = pipeline.process(path.read_text(encoding="utf-8"), path.name, doc_type)
        except PipelineError as exc:
            logger.warning("cli.document_failed", path=str(path), code=exc.code, error=exc.message)
            reports.append({"path": str(path), "status": "failed", "code": exc.code, "error": exc.message})
            continue
        except OSError as exc:
            logger.warning("cli.document_unreadable", path=str(path), error=str(exc))
            reports.append({"path": str(path), "status": "failed", "code": "IO_ERROR", "error": str(exc)})
            continue
        reports.append(
            {
                "path": str(path),
                "status": result.status,
                "document_id": result.document_id,
                "chunk_count": result.chunk_count,
                "embedding_count": result.embedding_count,
            },
        )
    return reports


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Chunk, embed and store Markdown or JSON documents.")
    parser.add_argument("paths", nargs="+", type=Path, help="Documents to ingest")
    parser.add_argument(
        "--type",
        dest="document_type",
        choices=["markdown", "json", "record-collection"],
        default=None,
        help="Override document type detection",
    )
    parser.add_argument("--owner", type=str, default=None, help="Owner recorded on each ingestion job")
    parser.add_argument("--json-out", type=Path, default=None, help="Optional path to write a JSON report")
    parser.add_argument("--collection", type=str, default=None, help="Chroma collection to write to")
    parser.add_argument("--persist-dir", type=Path, default=None, help="Chroma persistence directory")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    settings = get_settings()
    configure_logging(settings.log_level)

    store = None
    if args.collection or args.persist_dir:
        store = ChromaChunkStore(
            args.collection or settings.chroma_collection,
            persist_directory=args.persist_dir or settings.chroma_persist_dir,
        )
    pipeline = build_pipeline(settings, store=store, owner=args.owner)
    reports = ingest_files(args.paths, pipeline, settings=settings, document_type=args.document_type)

    payload = json.dumps({"documents": reports}, indent=2)
    print(payload)
    if args.json_out:
        args.json_out.write_text(payload, encoding="utf-8")

    failed = [report for report in reports if report["status"] != "completed"]
    if failed:
        print(f"{len(failed)} of {len(reports)} documents failed", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    sys.exit(main())
