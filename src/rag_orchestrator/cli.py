"""Command line interface: submit ingestion work and report on it as JSON."""

from __future__ import annotations

import argparse
import asyncio
import json
import mimetypes
import sys
import uuid
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from rag_orchestrator.config import settings, setup_logging
from rag_orchestrator.errors import OrchestrationError
from rag_orchestrator.orchestration.models import UploadFile


def _upload_files(paths: Sequence[str]) -> list[UploadFile]:
    files = []
    for index, raw in enumerate(paths, start=1):
        path = Path(raw)
        size = path.stat().st_size if path.is_file() else 0
        files.append(
            UploadFile(
                id=f"file-{index}",
                name=path.name,
                size=size,
                mime_type=mimetypes.guess_type(path.name)[0] or "",
                path=str(path.resolve()),
            )
        )
    return files


def _print(payload: BaseModel) -> int:
    print(json.dumps(payload.model_dump(mode="json"), indent=2))
    return 0


async def _upload(args: argparse.Namespace, orchestrator: Any) -> int:
    batch_id = args.batch_id or f"batch-{uuid.uuid4().hex[:12]}"
    await orchestrator.engine.store.initialize()
    try:
        await orchestrator.create_batch_upload_task(batch_id, _upload_files(args.files), args.collection)
        progress = await orchestrator.execute_batch_upload_task(batch_id)
    finally:
        await orchestrator.engine.store.close()
    _print(progress)
    return 0 if progress.successful else 1


async def _crawl(args: argparse.Namespace, orchestrator: Any) -> int:
    await orchestrator.engine.store.initialize()
    try:
        task = await orchestrator.crawl(args.url, args.collection)
        progress = await orchestrator.get_batch_progress(task.id)
    finally:
        await orchestrator.engine.store.close()
    _print(progress)
    return 0 if progress.successful else 1


async def _health(args: argparse.Namespace, orchestrator: Any) -> int:
    report = await orchestrator.health()
    _print(report)
    return 0 if report.vector_index else 1


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rag_orchestrator", description="RAG ingestion orchestrator")
    parser.add_argument("--log-level", default=None, help=f"Logging level (default: {settings.log_level}).")
    subparsers = parser.add_subparsers(dest="command", required=True)

    upload = subparsers.add_parser("upload", help="Upload files into a collection as one batch")
    upload.add_argument("--collection", default=settings.chroma_collection, help="Target collection id.")
    upload.add_argument("--batch-id", default=None, help="Batch id (generated when omitted).")
    upload.add_argument("files", nargs="+", help="Files to upload.")
    upload.set_defaults(func=_upload)

    crawl = subparsers.add_parser("crawl", help="Fetch a web page into a collection")
    crawl.add_argument("--collection", default=settings.chroma_collection, help="Target collection id.")
    crawl.add_argument("url", help="Page to fetch.")
    crawl.set_defaults(func=_crawl)

    health = subparsers.add_parser("health", help="Check the vector index and report on the job queue")
    health.set_defaults(func=_health)
    return parser


def main(argv: Sequence[str] | None = None, *, orchestrator: Any = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)
    if orchestrator is None:
        from rag_orchestrator.orchestration.service import build_orchestrator

        orchestrator = build_orchestrator(settings)
    try:
        return asyncio.run(args.func(args, orchestrator))
    except OrchestrationError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    sys.exit(main())
