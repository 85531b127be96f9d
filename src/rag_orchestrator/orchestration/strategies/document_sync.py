"""Document sync: split → embed → mark synced for one document."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum

from rag_orchestrator.errors import DocumentNotFoundError, EmbeddingMismatchError
from rag_orchestrator.ingestion.base import (
    DocumentRepository,
    EmbeddingService,
    SplitOptions,
    Splitter,
    VectorIndex,
    VectorPoint,
)
from rag_orchestrator.orchestration.models import DocumentSyncContext, Task, TaskType
from rag_orchestrator.orchestration.strategies.base import (
    StageOutcome,
    StageReporter,
    TaskEvent,
    TaskStrategy,
    Transition,
)

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    NEW = "NEW"
    SPLIT_OK = "SPLIT_OK"
    EMBED_OK = "EMBED_OK"
    SYNCED = "SYNCED"
    FAILED = "FAILED"
    RETRYING = "RETRYING"
    DEAD = "DEAD"
    CANCELLED = "CANCELLED"


class SyncEvent(str, Enum):
    CHUNKS_SAVED = "chunks_saved"
    VECTORS_INSERTED = "vectors_inserted"
    META_UPDATED = "meta_updated"
    RETRIES_EXCEEDED = "retries_exceeded"


_WORKING = (SyncState.NEW, SyncState.SPLIT_OK, SyncState.EMBED_OK, SyncState.RETRYING)

# Stage to run next, keyed by the last state reached successfully.
_RESUME_STAGE = {
    None: SyncState.NEW,
    SyncState.NEW.value: SyncState.NEW,
    SyncState.SPLIT_OK.value: SyncState.SPLIT_OK,
    SyncState.EMBED_OK.value: SyncState.EMBED_OK,
}


class DocumentSyncStrategy(TaskStrategy):
    """Bring one document's chunks and vectors in line with its content.

    Parameters
    ----------
    repository:
        Source of documents and store of chunks.
    splitter:
        Chunking collaborator; runs in a worker thread.
    embedding:
        Embedding collaborator.
    vector_index:
        Destination of the embedded chunks.
    split_options:
        Chunk size and overlap.
    max_retries:
        Hard cap on retries, combined with the per-category budget.
    """

    task_type = TaskType.DOCUMENT_SYNC
    context_model = DocumentSyncContext
    initial_state = SyncState.NEW.value
    final_states = frozenset({SyncState.SYNCED.value, SyncState.DEAD.value, SyncState.CANCELLED.value})
    success_state = SyncState.SYNCED.value
    failed_state = SyncState.FAILED.value
    stage_states = frozenset(s.value for s in _WORKING)
    give_up_event = SyncEvent.RETRIES_EXCEEDED.value
    checkpoint_states = frozenset({SyncState.SPLIT_OK.value, SyncState.EMBED_OK.value})
    progress_by_state = {
        SyncState.NEW.value: 0.0,
        SyncState.SPLIT_OK.value: 33.0,
        SyncState.EMBED_OK.value: 66.0,
        SyncState.SYNCED.value: 100.0,
    }
    transitions = (
        Transition(SyncState.NEW, SyncEvent.CHUNKS_SAVED, SyncState.SPLIT_OK),
        Transition(SyncState.SPLIT_OK, SyncEvent.VECTORS_INSERTED, SyncState.EMBED_OK),
        Transition(SyncState.EMBED_OK, SyncEvent.META_UPDATED, SyncState.SYNCED),
        Transition(SyncState.RETRYING, SyncEvent.CHUNKS_SAVED, SyncState.SPLIT_OK),
        Transition(SyncState.RETRYING, SyncEvent.VECTORS_INSERTED, SyncState.EMBED_OK),
        Transition(SyncState.RETRYING, SyncEvent.META_UPDATED, SyncState.SYNCED),
        *(Transition(s, TaskEvent.FAIL, SyncState.FAILED) for s in _WORKING),
        Transition(SyncState.FAILED, TaskEvent.RETRY, SyncState.RETRYING),
        Transition(SyncState.FAILED, SyncEvent.RETRIES_EXCEEDED, SyncState.DEAD),
        *(Transition(s, TaskEvent.CANCEL, SyncState.CANCELLED) for s in (*_WORKING, SyncState.FAILED)),
    )

    def __init__(
        self,
        repository: DocumentRepository,
        splitter: Splitter,
        embedding: EmbeddingService,
        vector_index: VectorIndex,
        *,
        split_options: SplitOptions | None = None,
        max_retries: int = 5,
    ) -> None:
        super().__init__()
        self.repository = repository
        self.splitter = splitter
        self.embedding = embedding
        self.vector_index = vector_index
        self.split_options = split_options or SplitOptions()
        self.max_retries = max_retries

    async def execute_stage(self, state: str, task: Task, reporter: StageReporter) -> StageOutcome:
        stage = SyncState(state)
        if stage is SyncState.RETRYING:
            # Resume after the last stage that completed.
            stage = _RESUME_STAGE.get(task.checkpoint, SyncState.NEW)
            logger.info("Resuming sync task %s at stage %s", task.id, stage.value)
        if stage is SyncState.NEW:
            return await self._split(task)
        if stage is SyncState.SPLIT_OK:
            return await self._embed(task)
        if stage is SyncState.EMBED_OK:
            return await self._mark_synced(task)
        raise ValueError(f"No stage for state {state!r}")

    # -- stages ---------------------------------------------------------------

    async def _split(self, task: Task) -> StageOutcome:
        ctx: DocumentSyncContext = task.context
        document = await self.repository.get_document(ctx.doc_id)
        if document is None:
            raise DocumentNotFoundError(f"Document {ctx.doc_id!r} not found")

        if not document.content.strip():
            logger.info("Document %s is empty; marking synced without indexing", ctx.doc_id)
            await self.repository.replace_chunks(ctx.doc_id, [])
            await self.vector_index.delete_by_doc(ctx.doc_id, document.collection_id)
            await self.repository.mark_synced(ctx.doc_id)
            updated = ctx.model_copy(update={"collection_id": document.collection_id, "chunk_count": 0})
            return StageOutcome.of(
                SyncEvent.CHUNKS_SAVED,
                SyncEvent.VECTORS_INSERTED,
                SyncEvent.META_UPDATED,
                context=updated,
            )

        chunks = await asyncio.to_thread(self.splitter.split, ctx.doc_id, document.content, self.split_options)
        for chunk in chunks:
            chunk.metadata.setdefault("source", document.source or document.name)
        await self.repository.replace_chunks(ctx.doc_id, chunks)
        logger.info("Split document %s into %d chunks", ctx.doc_id, len(chunks))
        updated = ctx.model_copy(update={"collection_id": document.collection_id, "chunk_count": len(chunks)})
        return StageOutcome.of(SyncEvent.CHUNKS_SAVED, context=updated)

    async def _embed(self, task: Task) -> StageOutcome:
        ctx: DocumentSyncContext = task.context
        collection_id = ctx.collection_id
        if collection_id is None:
            document = await self.repository.get_document(ctx.doc_id)
            if document is None:
                raise DocumentNotFoundError(f"Document {ctx.doc_id!r} not found")
            collection_id = document.collection_id

        chunks = await self.repository.get_chunks(ctx.doc_id)
        vectors = await self.embedding.generate_batch([c.content for c in chunks]) if chunks else []
        if len(vectors) != len(chunks):
            raise EmbeddingMismatchError(
                f"Embedding service returned {len(vectors)} vectors for {len(chunks)} chunks"
            )

        points = [
            VectorPoint(
                id=VectorPoint.point_id(ctx.doc_id, chunk.index),
                vector=vector,
                content=chunk.content,
                metadata={**chunk.metadata, "doc_id": ctx.doc_id, "chunk_index": chunk.index},
            )
            for chunk, vector in zip(chunks, vectors)
        ]
        # Chunks removed since the last sync must not linger in the index.
        await self.vector_index.delete_by_doc(ctx.doc_id, collection_id)
        if points:
            await self.vector_index.upsert(collection_id, points)
        logger.info("Indexed %d vectors for document %s into %s", len(points), ctx.doc_id, collection_id)
        return StageOutcome.of(
            SyncEvent.VECTORS_INSERTED,
            context=ctx.model_copy(update={"collection_id": collection_id}),
        )

    async def _mark_synced(self, task: Task) -> StageOutcome:
        ctx: DocumentSyncContext = task.context
        await self.repository.mark_synced(ctx.doc_id)
        return StageOutcome.of(SyncEvent.META_UPDATED)
