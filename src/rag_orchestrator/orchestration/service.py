"""Caller-facing facade over the engine, strategies, and progress tracker."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections.abc import Iterable, Mapping
from datetime import timedelta
from typing import Any

from rag_orchestrator.config import Settings, settings as default_settings
from rag_orchestrator.ingestion.base import (
    Crawler,
    DocumentRepository,
    EmbeddingService,
    FileLoader,
    SplitOptions,
    Splitter,
    VectorIndex,
)
from rag_orchestrator.orchestration.classifier import ErrorClassifier
from rag_orchestrator.orchestration.engine import StateMachineEngine
from rag_orchestrator.orchestration.locks import KeyedLocks
from rag_orchestrator.orchestration.models import (
    BatchOperationProgress,
    BatchOperationType,
    DocumentSyncContext,
    HealthReport,
    Task,
    TaskStats,
    TaskType,
    UploadFile,
    UploadOptions,
    WebCrawlContext,
)
from rag_orchestrator.orchestration.progress import BatchProgressTracker
from rag_orchestrator.orchestration.retry import RetryScheduler, RetryStats
from rag_orchestrator.orchestration.scheduling import Clock, DelayQueue, SystemClock
from rag_orchestrator.orchestration.store import TaskStore, create_task_store
from rag_orchestrator.orchestration.strategies import (
    BatchUploadStrategy,
    DocumentSyncStrategy,
    WebCrawlStrategy,
)

logger = logging.getLogger(__name__)

MAINTENANCE_JOB = "maintenance"


class IngestionOrchestrator:
    """Entry point for submitting and managing ingestion work.

    Parameters
    ----------
    engine:
        Engine with the built-in strategies registered.
    tracker:
        Progress tracker bound to *engine*.
    repository, vector_index:
        Collaborators used directly by bulk delete operations.
    config:
        Retention, concurrency, and scheduler settings.
    """

    def __init__(
        self,
        engine: StateMachineEngine,
        tracker: BatchProgressTracker,
        *,
        repository: DocumentRepository,
        vector_index: VectorIndex,
        config: Settings = default_settings,
    ) -> None:
        self.engine = engine
        self.tracker = tracker
        self.repository = repository
        self.vector_index = vector_index
        self.config = config
        self._loop_task: asyncio.Task | None = None
        self._sync_locks = KeyedLocks()

    @property
    def queue(self) -> DelayQueue:
        return self.engine.retry_scheduler.queue

    # ── Lifecycle ───────────────────────────────────────────────────────

    async def start(self) -> None:
        """Initialize the task store and start the scheduler loop."""
        await self.engine.store.initialize()
        self._schedule_maintenance()
        if self._loop_task is None:
            self._loop_task = asyncio.create_task(self.queue.run_forever(self.config.scheduler_poll_seconds))
        logger.info("Orchestrator started")

    async def stop(self) -> None:
        if self._loop_task is not None:
            self._loop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None
        await self.queue.cancel_running()
        self.queue.clear()
        await self.tracker.close()
        await self.engine.store.close()
        logger.info("Orchestrator stopped")

    async def __aenter__(self) -> IngestionOrchestrator:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    def _schedule_maintenance(self) -> None:
        async def _run() -> None:
            try:
                await self.run_maintenance()
            finally:
                self._schedule_maintenance()

        self.queue.schedule(MAINTENANCE_JOB, self.config.maintenance_interval_seconds, _run)

    async def run_maintenance(self) -> tuple[int, int]:
        """Expire old tasks and batch progress records. Returns both counts."""
        tasks = await self.cleanup_expired_tasks()
        records = await self.tracker.sweep(timedelta(minutes=self.config.progress_retention_minutes))
        return tasks, records

    # ── Batch upload ────────────────────────────────────────────────────

    async def create_batch_upload_task(
        self,
        batch_id: str,
        files: Iterable[UploadFile | Mapping[str, Any]],
        collection_id: str,
        options: UploadOptions | Mapping[str, Any] | None = None,
    ) -> Task:
        """Create a batch upload task whose id is *batch_id*."""
        if options is None:
            options = UploadOptions(
                chunk_size=self.config.chunk_size,
                chunk_overlap=self.config.chunk_overlap,
                max_file_size=self.config.max_upload_bytes,
            )
        context = {
            "batch_id": batch_id,
            "collection_id": collection_id,
            "files": [f if isinstance(f, UploadFile) else UploadFile.model_validate(dict(f)) for f in files],
            "options": options,
        }
        return await self.engine.create_task(TaskType.BATCH_UPLOAD, batch_id, context)

    async def execute_batch_upload_task(self, batch_id: str) -> BatchOperationProgress:
        return await self.tracker.execute_upload(batch_id)

    async def get_batch_progress(self, operation_id: str) -> BatchOperationProgress | None:
        return await self.tracker.get_progress(operation_id)

    # ── Document sync ───────────────────────────────────────────────────

    async def get_sync_task(self, doc_id: str) -> Task | None:
        """Return the most recent sync task of *doc_id*."""
        tasks = [
            t for t in await self.engine.get_tasks_by_type(TaskType.DOCUMENT_SYNC) if t.context.doc_id == doc_id
        ]
        return max(tasks, key=lambda t: t.created_at) if tasks else None

    async def _claim_sync_task(self, doc_id: str) -> tuple[Task, bool]:
        """Return the unfinished sync task of *doc_id*, or a new one.

        The flag is ``True`` when the task was created by this call.
        """
        async with self._sync_locks.hold(doc_id):
            existing = await self.get_sync_task(doc_id)
            if existing is not None and existing.completed_at is None:
                return existing, False
            task = await self.engine.create_task(
                TaskType.DOCUMENT_SYNC,
                f"sync_{doc_id}_{uuid.uuid4().hex[:12]}",
                DocumentSyncContext(doc_id=doc_id),
            )
            return task, True

    async def trigger_sync(self, doc_id: str, *, execute: bool = True) -> Task:
        """Sync *doc_id*, reusing its sync task if one is still unfinished."""
        task, created = await self._claim_sync_task(doc_id)
        if not created:
            logger.info("Sync of %s already in progress as %s", doc_id, task.id)
            return task
        if execute:
            await self.engine.execute_task(task.id)
            task = await self.engine.get_task(task.id) or task
        return task

    async def sync_documents(
        self,
        doc_ids: Iterable[str],
        *,
        concurrency: int | None = None,
    ) -> BatchOperationProgress:
        """Sync several documents as one bulk operation.

        Documents that already have an unfinished sync task join the
        operation through that task instead of starting another one.
        """
        items: dict[str, DocumentSyncContext] = {}
        for doc_id in dict.fromkeys(doc_ids):
            task, _ = await self._claim_sync_task(doc_id)
            items[task.id] = task.context
        return await self.tracker.run_tasks(
            TaskType.DOCUMENT_SYNC,
            items,
            operation_type=BatchOperationType.SYNC,
            concurrency=concurrency or self.config.batch_concurrency,
        )

    # ── Deletion ────────────────────────────────────────────────────────

    async def delete_documents(
        self,
        doc_ids: Iterable[str],
        *,
        concurrency: int | None = None,
    ) -> BatchOperationProgress:
        async def _delete(doc_id: str) -> None:
            document = await self.repository.get_document(doc_id)
            if document is None:
                raise LookupError(f"Document {doc_id} not found")
            await self.vector_index.delete_by_doc(doc_id, document.collection_id)
            await self.repository.delete_document(doc_id)

        return await self.tracker.run(
            BatchOperationType.DELETE,
            list(doc_ids),
            _delete,
            concurrency=concurrency or self.config.batch_concurrency,
        )

    async def delete_collection(self, collection_id: str) -> int:
        """Drop a collection from the index and forget its documents."""
        await self.vector_index.delete_by_collection(collection_id)
        documents = await self.repository.list_documents(collection_id)
        for document in documents:
            await self.repository.delete_document(document.id)
        logger.info("Deleted collection %s (%d documents)", collection_id, len(documents))
        return len(documents)

    # ── Web crawl ───────────────────────────────────────────────────────

    async def crawl(
        self,
        url: str,
        collection_id: str,
        *,
        task_id: str | None = None,
        sync: bool = True,
    ) -> Task:
        """Fetch *url* into *collection_id*, then sync the resulting document."""
        stamp = int(self.engine.clock.now().timestamp() * 1000)
        task = await self.engine.create_task(
            TaskType.WEB_CRAWL,
            task_id or f"crawl_{stamp}",
            WebCrawlContext(url=url, collection_id=collection_id),
        )
        await self.engine.execute_task(task.id)
        task = await self.engine.get_task(task.id) or task
        if sync and task.context.doc_id and task.status == self.engine.get_strategy(TaskType.WEB_CRAWL).success_state:
            await self.trigger_sync(task.context.doc_id)
        return task

    # ── Task management ─────────────────────────────────────────────────

    async def get_task_status(self, task_id: str) -> Task | None:
        return await self.engine.get_task(task_id)

    async def get_tasks_by_status(self, status: str) -> list[Task]:
        return await self.engine.get_tasks_by_status(status)

    async def get_tasks_by_type(self, task_type: TaskType | str) -> list[Task]:
        return await self.engine.get_tasks_by_type(task_type)

    async def cancel_task(self, task_id: str) -> bool:
        return await self.engine.cancel_task(task_id)

    async def retry_task(self, task_id: str) -> bool:
        return await self.engine.retry_task(task_id)

    async def pause_task(self, task_id: str) -> bool:
        return await self.engine.pause_task(task_id)

    async def resume_task(self, task_id: str) -> bool:
        return await self.engine.resume_task(task_id)

    async def cleanup_expired_tasks(self, older_than_ms: int | None = None) -> int:
        if older_than_ms is None:
            older_than_ms = self.config.task_retention_minutes * 60 * 1000
        return await self.engine.cleanup_expired_tasks(older_than_ms)

    async def get_task_stats(self) -> TaskStats:
        return await self.engine.get_task_stats()

    def get_retry_stats(self) -> RetryStats:
        return self.engine.retry_scheduler.stats

    async def health(self) -> HealthReport:
        """Check the vector index and report on the job queue."""
        reachable = await asyncio.to_thread(self.vector_index.health_check)
        if not reachable:
            logger.warning("Vector index is not reachable")
        return HealthReport(
            vector_index=reachable,
            scheduler_running=self._loop_task is not None and not self._loop_task.done(),
            scheduled_jobs=len(self.queue),
            running_jobs=self.queue.running,
            pending_retries=len(self.engine.retry_scheduler.pending()),
        )


def build_orchestrator(
    config: Settings = default_settings,
    *,
    store: TaskStore | None = None,
    repository: DocumentRepository | None = None,
    splitter: Splitter | None = None,
    embedding: EmbeddingService | None = None,
    vector_index: VectorIndex | None = None,
    loader: FileLoader | None = None,
    crawler: Crawler | None = None,
    classifier: ErrorClassifier | None = None,
    clock: Clock | None = None,
) -> IngestionOrchestrator:
    """Wire an orchestrator, defaulting every collaborator from *config*.

    Defaults are imported lazily so that callers supplying their own
    collaborators never load Chroma, sentence-transformers, or requests.
    """
    if repository is None:
        from rag_orchestrator.ingestion.repository import InMemoryDocumentRepository

        repository = InMemoryDocumentRepository()
    if splitter is None:
        from rag_orchestrator.ingestion.chunker import RecursiveTextSplitter

        splitter = RecursiveTextSplitter(SplitOptions(chunk_size=config.chunk_size, chunk_overlap=config.chunk_overlap))
    if embedding is None:
        from rag_orchestrator.ingestion.embedder import HuggingFaceEmbeddingService

        embedding = HuggingFaceEmbeddingService(config.embedding_model, batch_size=config.embed_batch_size)
    if vector_index is None:
        from rag_orchestrator.ingestion.vector_index import ChromaVectorIndex

        vector_index = ChromaVectorIndex(host=config.chroma_host, port=config.chroma_port)
    if loader is None:
        from rag_orchestrator.ingestion.loader import LocalFileLoader

        loader = LocalFileLoader()
    if crawler is None:
        from rag_orchestrator.ingestion.crawler import HttpCrawler

        crawler = HttpCrawler(timeout=config.crawl_timeout_seconds)

    classifier = classifier or ErrorClassifier()
    clock = clock or SystemClock()
    engine = StateMachineEngine(
        store or create_task_store(config.task_store_url),
        classifier=classifier,
        retry_scheduler=RetryScheduler(DelayQueue(clock)),
    )
    engine.register_strategy(
        DocumentSyncStrategy(
            repository,
            splitter,
            embedding,
            vector_index,
            split_options=SplitOptions(chunk_size=config.chunk_size, chunk_overlap=config.chunk_overlap),
        )
    )
    engine.register_strategy(
        BatchUploadStrategy(repository, loader, splitter, embedding, vector_index, classifier=classifier)
    )
    engine.register_strategy(WebCrawlStrategy(repository, crawler))
    tracker = BatchProgressTracker(engine, concurrency=config.batch_concurrency)
    return IngestionOrchestrator(engine, tracker, repository=repository, vector_index=vector_index, config=config)
