"""Batch upload: validate → upload → index a set of files as one task.

Files are tracked individually inside the task context. A file that
fails permanently is recorded with its verbatim error and skipped by
later stages; the rest of the batch carries on. A temporary failure
fails the whole stage so the engine can retry it; files already past
the stage are not redone.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from enum import Enum
from pathlib import PurePath

from rag_orchestrator.errors import (
    BatchFailedError,
    DocumentTooLargeError,
    EmbeddingMismatchError,
    EmptyDocumentError,
    UnsupportedDocumentError,
)
from rag_orchestrator.ingestion.base import (
    DocumentRecord,
    DocumentRepository,
    EmbeddingService,
    FileLoader,
    SplitOptions,
    Splitter,
    VectorIndex,
    VectorPoint,
)
from rag_orchestrator.orchestration.classifier import ErrorClassifier
from rag_orchestrator.orchestration.models import (
    BatchUploadContext,
    FileError,
    FileStage,
    Task,
    TaskType,
    UploadFile,
)
from rag_orchestrator.orchestration.strategies.base import (
    StageOutcome,
    StageReporter,
    TaskEvent,
    TaskStrategy,
    Transition,
)

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = frozenset({".txt", ".md", ".markdown", ".mdx", ".html", ".htm", ".pdf", ".json", ".csv"})


class UploadState(str, Enum):
    NEW = "NEW"
    VALIDATING = "VALIDATING"
    UPLOADING = "UPLOADING"
    INDEXING = "INDEXING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    PAUSED = "PAUSED"


class UploadEvent(str, Enum):
    START = "start"
    UPLOAD = "upload"
    INDEX = "index"
    COMPLETE = "complete"


_WORKING = (UploadState.VALIDATING, UploadState.UPLOADING, UploadState.INDEXING)

# (start, end) progress band of each stage.
_BANDS = {
    UploadState.VALIDATING: (5.0, 25.0),
    UploadState.UPLOADING: (25.0, 60.0),
    UploadState.INDEXING: (60.0, 95.0),
}


def batch_doc_id(batch_id: str, file_id: str) -> str:
    return hashlib.sha256(f"{batch_id}/{file_id}".encode()).hexdigest()[:24]


class BatchUploadStrategy(TaskStrategy):
    """Ingest every file of a batch into one collection.

    Parameters
    ----------
    repository:
        Receives one document per uploaded file.
    loader:
        Reads file content.
    splitter, embedding, vector_index:
        Same collaborators as document sync.
    classifier:
        Decides whether a per-file error is skipped or fails the stage.
    max_retries:
        Hard cap on retries, combined with the per-category budget.
    """

    task_type = TaskType.BATCH_UPLOAD
    context_model = BatchUploadContext
    initial_state = UploadState.NEW.value
    final_states = frozenset({UploadState.COMPLETED.value, UploadState.FAILED.value, UploadState.CANCELLED.value})
    success_state = UploadState.COMPLETED.value
    failed_state = UploadState.FAILED.value
    stage_states = frozenset({UploadState.NEW.value, *(s.value for s in _WORKING)})
    interruptible_states = frozenset(s.value for s in _WORKING)
    progress_by_state = {
        UploadState.NEW.value: 0.0,
        UploadState.VALIDATING.value: 5.0,
        UploadState.UPLOADING.value: 25.0,
        UploadState.INDEXING.value: 60.0,
        UploadState.COMPLETED.value: 100.0,
    }
    transitions = (
        Transition(UploadState.NEW, UploadEvent.START, UploadState.VALIDATING),
        Transition(UploadState.VALIDATING, UploadEvent.UPLOAD, UploadState.UPLOADING),
        Transition(UploadState.UPLOADING, UploadEvent.INDEX, UploadState.INDEXING),
        Transition(UploadState.INDEXING, UploadEvent.COMPLETE, UploadState.COMPLETED),
        *(Transition(s, TaskEvent.FAIL, UploadState.FAILED) for s in (UploadState.NEW, *_WORKING)),
        Transition(UploadState.FAILED, TaskEvent.RETRY, UploadState.VALIDATING),
        *(Transition(s, TaskEvent.PAUSE, UploadState.PAUSED) for s in _WORKING),
        Transition(UploadState.PAUSED, TaskEvent.RESUME, UploadState.VALIDATING),
        *(
            Transition(s, TaskEvent.CANCEL, UploadState.CANCELLED)
            for s in (UploadState.NEW, *_WORKING, UploadState.PAUSED, UploadState.FAILED)
        ),
    )

    def __init__(
        self,
        repository: DocumentRepository,
        loader: FileLoader,
        splitter: Splitter,
        embedding: EmbeddingService,
        vector_index: VectorIndex,
        *,
        classifier: ErrorClassifier | None = None,
        max_retries: int = 3,
    ) -> None:
        super().__init__()
        self.repository = repository
        self.loader = loader
        self.splitter = splitter
        self.embedding = embedding
        self.vector_index = vector_index
        self.classifier = classifier or ErrorClassifier()
        self.max_retries = max_retries

    async def execute_stage(self, state: str, task: Task, reporter: StageReporter) -> StageOutcome:
        stage = UploadState(state)
        if stage is UploadState.NEW:
            return StageOutcome.of(UploadEvent.START)

        ctx: BatchUploadContext = task.context
        if stage is UploadState.VALIDATING:
            ctx = await self._run_files(task, ctx, stage, FileStage.PENDING, FileStage.VALIDATED, reporter)
            return StageOutcome.of(UploadEvent.UPLOAD, context=ctx)
        if stage is UploadState.UPLOADING:
            ctx = await self._run_files(task, ctx, stage, FileStage.VALIDATED, FileStage.UPLOADED, reporter)
            return StageOutcome.of(UploadEvent.INDEX, context=ctx)
        if stage is UploadState.INDEXING:
            ctx = await self._run_files(task, ctx, stage, FileStage.UPLOADED, FileStage.INDEXED, reporter)
            results = ctx.results
            if results.total and results.failed == results.total:
                raise BatchFailedError(f"All {results.total} files of batch {ctx.batch_id!r} failed")
            return StageOutcome.of(UploadEvent.COMPLETE, context=ctx)
        raise ValueError(f"No stage for state {state!r}")

    async def _run_files(
        self,
        task: Task,
        ctx: BatchUploadContext,
        stage: UploadState,
        ready: FileStage,
        done: FileStage,
        reporter: StageReporter,
    ) -> BatchUploadContext:
        """Run *stage* for every file currently at *ready*, moving it to *done*."""
        start, end = _BANDS[stage]
        files = [f for f in ctx.files if ctx.stage_of(f.id) is ready]
        for position, file in enumerate(files, start=1):
            doc_ids = dict(ctx.doc_ids)
            try:
                if stage is UploadState.VALIDATING:
                    self._validate(file, ctx)
                elif stage is UploadState.UPLOADING:
                    doc_ids[file.id] = await self._upload(file, ctx)
                else:
                    await self._index(file, ctx)
            except Exception as exc:
                if self.classifier.is_temporary(exc):
                    raise
                logger.warning("File %s of batch %s failed %s: %s", file.name, ctx.batch_id, stage.value, exc)
                ctx = ctx.model_copy(
                    update={
                        "file_states": {**ctx.file_states, file.id: FileStage.FAILED},
                        "errors": [
                            *ctx.errors,
                            FileError(file_id=file.id, file_name=file.name, error=str(exc), stage=stage.value),
                        ],
                    }
                )
            else:
                ctx = ctx.model_copy(
                    update={"file_states": {**ctx.file_states, file.id: done}, "doc_ids": doc_ids}
                )
            await reporter.checkpoint(ctx, start + (end - start) * position / len(files))
        return ctx

    # -- per-file work --------------------------------------------------------

    @staticmethod
    def _validate(file: UploadFile, ctx: BatchUploadContext) -> None:
        suffix = PurePath(file.name).suffix.lower()
        if suffix not in SUPPORTED_EXTENSIONS:
            raise UnsupportedDocumentError(f"Unsupported file type {suffix or '(none)'!r} for {file.name}")
        if file.size == 0:
            raise EmptyDocumentError(f"File {file.name} is empty")
        if file.size > ctx.options.max_file_size:
            raise DocumentTooLargeError(
                f"File {file.name} is {file.size} bytes, over the {ctx.options.max_file_size} byte limit"
            )

    async def _upload(self, file: UploadFile, ctx: BatchUploadContext) -> str:
        text = await self.loader.load_text(file)
        if not text.strip():
            raise EmptyDocumentError(f"File {file.name} has no content")
        doc_id = batch_doc_id(ctx.batch_id, file.id)
        await self.repository.save_document(
            DocumentRecord(
                id=doc_id,
                collection_id=ctx.collection_id,
                name=file.name,
                content=text,
                source=file.path or file.name,
                content_type=file.mime_type or "text/plain",
            )
        )
        options = SplitOptions(chunk_size=ctx.options.chunk_size, chunk_overlap=ctx.options.chunk_overlap)
        chunks = await asyncio.to_thread(self.splitter.split, doc_id, text, options)
        for chunk in chunks:
            chunk.metadata.update({"source": file.name, "batch_id": ctx.batch_id})
        await self.repository.replace_chunks(doc_id, chunks)
        return doc_id

    async def _index(self, file: UploadFile, ctx: BatchUploadContext) -> None:
        doc_id = ctx.doc_ids[file.id]
        chunks = await self.repository.get_chunks(doc_id)
        vectors = await self.embedding.generate_batch([c.content for c in chunks]) if chunks else []
        if len(vectors) != len(chunks):
            raise EmbeddingMismatchError(
                f"Embedding service returned {len(vectors)} vectors for {len(chunks)} chunks of {file.name}"
            )
        points = [
            VectorPoint(
                id=VectorPoint.point_id(doc_id, chunk.index),
                vector=vector,
                content=chunk.content,
                metadata={**chunk.metadata, "doc_id": doc_id, "chunk_index": chunk.index},
            )
            for chunk, vector in zip(chunks, vectors)
        ]
        if points:
            await self.vector_index.upsert(ctx.collection_id, points)
        await self.repository.mark_synced(doc_id)
