"""Aggregate progress of bulk operations.

The tracker keeps one :class:`BatchOperationProgress` record per bulk
submission. Items are either independent engine tasks (bulk sync) or
plain async workers (bulk delete); a batch upload is a single task whose
per-file results are converted on demand.
"""

from __future__ import annotations

import asyncio
import logging
import math
import uuid
from collections.abc import Awaitable, Callable, Mapping, Sequence
from datetime import timedelta
from typing import Any

from rag_orchestrator.errors import TaskNotFoundError
from rag_orchestrator.orchestration.engine import StateMachineEngine
from rag_orchestrator.orchestration.models import (
    BatchOperationProgress,
    BatchOperationType,
    BatchStatus,
    BatchUploadContext,
    FileStage,
    ItemError,
    Task,
    TaskContextBase,
    TaskType,
    TransitionLogEntry,
)
from rag_orchestrator.orchestration.scheduling import Clock

logger = logging.getLogger(__name__)

ItemWorker = Callable[[str], Awaitable[Any]]


class BatchProgressTracker:
    """Create, update, and expire batch progress records.

    Parameters
    ----------
    engine:
        Engine used for task-backed items and task conversion.
    clock:
        Time source; defaults to the engine's clock.
    concurrency:
        Default number of items processed at once.
    """

    def __init__(
        self,
        engine: StateMachineEngine,
        *,
        clock: Clock | None = None,
        concurrency: int = 3,
    ) -> None:
        self.engine = engine
        self.clock = clock or engine.clock
        self.concurrency = concurrency
        self._records: dict[str, BatchOperationProgress] = {}
        self._watched: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def close(self) -> None:
        async with self._lock:
            self._records.clear()
        for task_id in list(self._watched):
            self._unwatch(task_id)

    # ── Records ─────────────────────────────────────────────────────────

    def _rebuild(self, progress: BatchOperationProgress, **changes: Any) -> BatchOperationProgress:
        """Return a validated copy of *progress* with *changes* and a fresh ETA."""
        data = {**progress.model_dump(), **changes}
        data["estimated_time_remaining"] = None
        if data["status"] == BatchStatus.PROCESSING and data["processed"] > 0:
            elapsed = (self.clock.now() - data["start_time"]).total_seconds()
            remaining = data["total"] - data["processed"]
            data["estimated_time_remaining"] = math.ceil(elapsed / data["processed"] * remaining)
        return BatchOperationProgress.model_validate(data)

    async def create(
        self,
        operation_type: BatchOperationType | str,
        total: int,
        operation_id: str | None = None,
    ) -> BatchOperationProgress:
        progress = BatchOperationProgress(
            operation_id=operation_id or str(uuid.uuid4()),
            type=BatchOperationType(operation_type),
            total=total,
            start_time=self.clock.now(),
        )
        async with self._lock:
            if progress.operation_id in self._records:
                raise ValueError(f"Batch operation {progress.operation_id!r} already exists")
            self._records[progress.operation_id] = progress
        logger.info("Started %s batch %s with %d items", progress.type.value, progress.operation_id, total)
        return progress

    async def get_progress(self, operation_id: str) -> BatchOperationProgress | None:
        """Return the record of *operation_id*, or the progress of a task with that id."""
        progress = self._records.get(operation_id)
        if progress is not None:
            return self._rebuild(progress)
        task = await self.engine.get_task(operation_id)
        return self.progress_from_task(task) if task else None

    def list_operations(self, status: BatchStatus | str | None = None) -> list[BatchOperationProgress]:
        records = list(self._records.values())
        if status is not None:
            records = [r for r in records if r.status == BatchStatus(status)]
        return sorted(records, key=lambda r: r.start_time)

    async def record_item(
        self,
        operation_id: str,
        *,
        item_id: str,
        success: bool,
        error: str | None = None,
    ) -> BatchOperationProgress:
        async with self._lock:
            progress = self._records[operation_id]
            if progress.status.is_terminal:
                raise ValueError(f"Batch operation {operation_id!r} is already finished")
            errors = list(progress.errors)
            if not success:
                errors.append(ItemError(item_id=item_id, error=error or "unknown error"))
            progress = self._rebuild(
                progress,
                status=BatchStatus.PROCESSING,
                processed=progress.processed + 1,
                successful=progress.successful + (1 if success else 0),
                failed=progress.failed + (0 if success else 1),
                errors=errors,
            )
            self._records[operation_id] = progress
            return progress

    async def complete(self, operation_id: str) -> BatchOperationProgress:
        """Finish the operation; items never processed count as failed."""
        async with self._lock:
            return self._finish(operation_id)

    def _finish(self, operation_id: str) -> BatchOperationProgress:
        progress = self._records[operation_id]
        unprocessed = progress.total - progress.processed
        failed = progress.failed + unprocessed
        status = BatchStatus.FAILED if progress.total and progress.successful == 0 else BatchStatus.COMPLETED
        errors = list(progress.errors)
        if unprocessed:
            errors.append(ItemError(item_id="*", error=f"{unprocessed} items were not processed"))
        progress = self._rebuild(
            progress,
            status=status,
            processed=progress.total,
            failed=failed,
            errors=errors,
            end_time=self.clock.now(),
        )
        self._records[operation_id] = progress
        logger.info(
            "Batch %s %s: %d/%d succeeded",
            operation_id,
            progress.status.value,
            progress.successful,
            progress.total,
        )
        return progress

    async def sweep(self, retention: timedelta = timedelta(minutes=30)) -> int:
        """Drop finished records whose end time is older than *retention*."""
        cutoff = self.clock.now() - retention
        async with self._lock:
            expired = [
                op_id
                for op_id, p in self._records.items()
                if p.status.is_terminal and p.end_time is not None and p.end_time < cutoff
            ]
            for op_id in expired:
                del self._records[op_id]
        if expired:
            logger.info("Expired %d batch progress records", len(expired))
        return len(expired)

    # ── Running batches ─────────────────────────────────────────────────

    async def run(
        self,
        operation_type: BatchOperationType | str,
        items: Sequence[str],
        worker: ItemWorker,
        *,
        concurrency: int | None = None,
        operation_id: str | None = None,
    ) -> BatchOperationProgress:
        """Run *worker* on every item, at most *concurrency* at a time.

        A worker signals failure by raising; the exception message is
        recorded verbatim for that item and the other items continue.
        """
        progress = await self.create(operation_type, len(items), operation_id)
        semaphore = asyncio.Semaphore(concurrency or self.concurrency)

        async def _one(item: str) -> None:
            async with semaphore:
                try:
                    await worker(item)
                except Exception as exc:
                    logger.warning("Item %s of batch %s failed: %s", item, progress.operation_id, exc)
                    await self.record_item(progress.operation_id, item_id=item, success=False, error=str(exc))
                else:
                    await self.record_item(progress.operation_id, item_id=item, success=True)

        await asyncio.gather(*(_one(item) for item in items))
        return await self.complete(progress.operation_id)

    async def run_tasks(
        self,
        task_type: TaskType | str,
        items: Mapping[str, TaskContextBase | Mapping[str, Any]],
        *,
        operation_type: BatchOperationType | str = BatchOperationType.SYNC,
        concurrency: int | None = None,
        operation_id: str | None = None,
    ) -> BatchOperationProgress:
        """Create and execute one engine task per ``task_id -> context`` item.

        An item is counted once its task is finalized: it succeeds when the
        task ends in the strategy's success state. Tasks still waiting on a
        scheduled retry when this returns keep the operation PROCESSING and
        are counted when the retry finishes them.
        """
        strategy = self.engine.get_strategy(task_type)
        progress = await self.create(operation_type, len(items), operation_id)
        op_id = progress.operation_id
        async with self._lock:
            self._records[op_id] = self._rebuild(progress, status=BatchStatus.PROCESSING)
        semaphore = asyncio.Semaphore(concurrency or self.concurrency)

        async def _one(task_id: str) -> None:
            async with semaphore:
                watching = False
                try:
                    await self.engine.create_task(strategy.task_type, task_id, items[task_id])
                    self._watch(task_id, op_id)
                    watching = True
                    await self.engine.execute_task(task_id)
                    task = await self.engine.get_task(task_id)
                    if task is None:
                        raise TaskNotFoundError(task_id)
                except Exception as exc:
                    logger.warning("Item %s of batch %s failed: %s", task_id, op_id, exc)
                    if not watching or self._unwatch(task_id) is not None:
                        await self.record_item(op_id, item_id=task_id, success=False, error=str(exc))
                    return
                if task.completed_at is not None:
                    await self._record_task(task)

        await asyncio.gather(*(_one(task_id) for task_id in items))
        return await self._finish_if_done(op_id)

    async def execute_upload(self, task_id: str) -> BatchOperationProgress:
        await self.engine.execute_task(task_id)
        task = await self.engine.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return self.progress_from_task(task)

    # ── Task-backed items ───────────────────────────────────────────────

    def _watch(self, task_id: str, operation_id: str) -> None:
        if not self._watched:
            self.engine.add_listener(self._on_transition)
        self._watched[task_id] = operation_id

    def _unwatch(self, task_id: str) -> str | None:
        operation_id = self._watched.pop(task_id, None)
        if operation_id is not None and not self._watched:
            self.engine.remove_listener(self._on_transition)
        return operation_id

    async def _on_transition(self, entry: TransitionLogEntry, task: Task) -> None:
        if task.completed_at is not None and task.id in self._watched:
            await self._record_task(task)

    async def _record_task(self, task: Task) -> None:
        """Count a finalized task once, for the operation watching it."""
        operation_id = self._unwatch(task.id)
        if operation_id is None or operation_id not in self._records:
            return
        strategy = self.engine.get_strategy(task.type)
        if task.status == strategy.success_state:
            await self.record_item(operation_id, item_id=task.id, success=True)
        else:
            reason = task.last_error or f"task ended in {task.status}"
            await self.record_item(operation_id, item_id=task.id, success=False, error=reason)
        await self._finish_if_done(operation_id)

    async def _finish_if_done(self, operation_id: str) -> BatchOperationProgress:
        """Complete the operation once every item is counted; return its record."""
        async with self._lock:
            progress = self._records[operation_id]
            if progress.status.is_terminal or progress.processed < progress.total:
                return self._rebuild(progress)
            return self._finish(operation_id)

    # ── Task conversion ─────────────────────────────────────────────────

    def progress_from_task(self, task: Task) -> BatchOperationProgress:
        """Express a task as batch progress.

        Batch uploads count files; every other task is a single item.
        """
        strategy = self.engine.get_strategy(task.type)
        if task.completed_at is not None:
            status = BatchStatus.COMPLETED if task.status == strategy.success_state else BatchStatus.FAILED
        elif task.status == strategy.initial_state:
            status = BatchStatus.PENDING
        else:
            status = BatchStatus.PROCESSING

        ctx = task.context
        if isinstance(ctx, BatchUploadContext):
            results = ctx.results
            total, successful, failed = results.total, results.successful, results.failed
            errors = [ItemError(item_id=e.file_id, error=e.error) for e in results.errors]
            unfinished = [f.id for f in ctx.files if ctx.stage_of(f.id) not in (FileStage.INDEXED, FileStage.FAILED)]
        else:
            total, successful, failed = 1, 0, 0
            errors = []
            unfinished = [task.id]
            if status is BatchStatus.COMPLETED:
                successful, unfinished = 1, []

        if status.is_terminal:
            reason = task.last_error or f"task ended in {task.status}"
            errors.extend(ItemError(item_id=item_id, error=reason) for item_id in unfinished)
            failed += len(unfinished)

        return self._rebuild(
            BatchOperationProgress(
                operation_id=task.id,
                type=BatchOperationType.UPLOAD if task.type is TaskType.BATCH_UPLOAD else BatchOperationType.SYNC,
                total=total,
                start_time=task.started_at or task.created_at,
            ),
            status=status,
            processed=successful + failed,
            successful=successful,
            failed=failed,
            errors=errors,
            end_time=task.completed_at,
        )
