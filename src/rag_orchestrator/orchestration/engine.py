"""Generic state-machine engine driving tasks through their strategies.

The engine owns every mutation of a task record. Each task id has a
short-lived mutation lock serializing read-modify-write cycles, and a
running marker so that only one execution drives a task at a time. Stage
work itself runs outside the lock; its result is committed only if the
task is still in the state the stage started from, so a cancel or pause
issued mid-stage wins and the stale result is dropped.
"""

from __future__ import annotations

import inspect
import logging
from collections import Counter
from collections.abc import Callable, Mapping
from datetime import timedelta
from enum import Enum
from typing import Any

from rag_orchestrator.errors import (
    DuplicateTaskError,
    ErrorCategory,
    ErrorType,
    InvalidTransitionError,
    StageInterrupted,
    StrategyNotFoundError,
    StrategyRegistrationError,
    TaskNotFoundError,
    TaskValidationError,
)
from rag_orchestrator.orchestration.classifier import ErrorClassifier, RetryStrategy
from rag_orchestrator.orchestration.locks import KeyedLocks
from rag_orchestrator.orchestration.models import (
    Task,
    TaskContextBase,
    TaskStats,
    TaskType,
    TransitionLogEntry,
)
from rag_orchestrator.orchestration.retry import RetryScheduler
from rag_orchestrator.orchestration.scheduling import Clock, DelayQueue, SystemClock
from rag_orchestrator.orchestration.store.base import TaskStore
from rag_orchestrator.orchestration.strategies.base import StageOutcome, TaskEvent, TaskStrategy, state_name

logger = logging.getLogger(__name__)

TransitionListener = Callable[[TransitionLogEntry, Task], Any]


class _Reporter:
    """Stage reporter bound to one task and the state its stage started in."""

    def __init__(self, engine: StateMachineEngine, task_id: str, state: str) -> None:
        self._engine = engine
        self._task_id = task_id
        self._state = state

    async def checkpoint(self, context: TaskContextBase, progress: float | None = None) -> None:
        await self._engine._checkpoint(self._task_id, self._state, context, progress)


class StateMachineEngine:
    """Create, drive, and query tasks of every registered type.

    Parameters
    ----------
    store:
        Persistence for task records and transition logs.
    classifier:
        Maps stage failures to categories and retry strategies.
    retry_scheduler:
        Arms deferred retries. Built on a fresh :class:`DelayQueue` when
        omitted.
    clock:
        Time source for timestamps; defaults to the retry queue's clock.
    """

    def __init__(
        self,
        store: TaskStore,
        *,
        classifier: ErrorClassifier | None = None,
        retry_scheduler: RetryScheduler | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.classifier = classifier or ErrorClassifier()
        if retry_scheduler is None:
            retry_scheduler = RetryScheduler(DelayQueue(clock or SystemClock()))
        self.retry_scheduler = retry_scheduler
        self.clock = clock or retry_scheduler.queue.clock
        self._strategies: dict[TaskType, TaskStrategy] = {}
        self._locks = KeyedLocks()
        self._running: set[str] = set()
        self._listeners: list[TransitionListener] = []
        self.counters: Counter[str] = Counter()

    # ── Strategies ──────────────────────────────────────────────────────

    def register_strategy(self, strategy: TaskStrategy) -> None:
        if strategy.task_type in self._strategies:
            raise StrategyRegistrationError(f"A strategy for {strategy.task_type.value!r} is already registered")
        self._strategies[strategy.task_type] = strategy
        logger.info("Registered %s for %s tasks", type(strategy).__name__, strategy.task_type.value)

    def get_strategy(self, task_type: TaskType | str) -> TaskStrategy:
        try:
            return self._strategies[TaskType(task_type)]
        except (KeyError, ValueError):
            raise StrategyNotFoundError(state_name(task_type)) from None

    def registered_strategies(self) -> list[TaskType]:
        return list(self._strategies)

    # ── Listeners ───────────────────────────────────────────────────────

    def add_listener(self, listener: TransitionListener) -> None:
        """Call *listener(entry, task)* after every committed transition.

        Listeners run while the task's lock is held and must not call back
        into the engine for the same task.
        """
        self._listeners.append(listener)

    def remove_listener(self, listener: TransitionListener) -> None:
        self._listeners.remove(listener)

    async def _notify(self, entry: TransitionLogEntry, task: Task) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(entry, task)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Transition listener %r failed", listener)

    # ── Creation & queries ──────────────────────────────────────────────

    async def create_task(
        self,
        task_type: TaskType | str,
        task_id: str,
        context: TaskContextBase | Mapping[str, Any],
    ) -> Task:
        """Persist a new task in its strategy's initial state.

        Re-submitting the same id with the same submission returns the
        existing task; a different submission raises
        :class:`DuplicateTaskError`.
        """
        strategy = self.get_strategy(task_type)
        if not task_id:
            raise TaskValidationError("Task id must not be empty")
        ctx = strategy.parse_context(context)
        now = self.clock.now()
        task = Task(
            id=task_id,
            type=strategy.task_type,
            status=strategy.initial_state,
            context=ctx,
            progress=strategy.progress_for(strategy.initial_state) or 0.0,
            created_at=now,
            updated_at=now,
        )
        if await self.store.create_if_absent(task):
            self.counters["tasks_created"] += 1
            logger.info("Created %s task %s", strategy.task_type.value, task_id)
            return task

        existing = await self._require(task_id)
        if existing.type is strategy.task_type and existing.context.submission() == ctx.submission():
            logger.info("Task %s already exists with the same submission", task_id)
            return existing
        raise DuplicateTaskError(task_id)

    async def get_task(self, task_id: str) -> Task | None:
        return await self.store.get(task_id)

    async def _require(self, task_id: str) -> Task:
        task = await self.store.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def get_tasks_by_status(self, status: str | Enum) -> list[Task]:
        return await self.store.list_by_status(state_name(status))

    async def get_tasks_by_type(self, task_type: TaskType | str) -> list[Task]:
        return await self.store.list_by_type(TaskType(task_type))

    async def get_transition_history(self, task_id: str, limit: int | None = None) -> list[TransitionLogEntry]:
        return await self.store.get_transitions(task_id, limit)

    async def get_task_stats(self) -> TaskStats:
        """Counts by type and status plus outcome rates over finished tasks."""
        tasks = await self.store.list_all()
        by_type: Counter[str] = Counter()
        by_status: dict[str, Counter[str]] = {}
        finished = succeeded = retried = 0
        durations: list[float] = []
        for task in tasks:
            by_type[task.type.value] += 1
            by_status.setdefault(task.type.value, Counter())[task.status] += 1
            if task.retry_count:
                retried += 1
            if task.completed_at is None:
                continue
            finished += 1
            strategy = self._strategies.get(task.type)
            if strategy is not None and task.status == strategy.success_state:
                succeeded += 1
            if task.started_at is not None:
                durations.append((task.completed_at - task.started_at).total_seconds())

        total = len(tasks)
        return TaskStats(
            total=total,
            by_type=dict(by_type),
            by_status={k: dict(v) for k, v in by_status.items()},
            success_rate=succeeded / finished if finished else 0.0,
            failure_rate=(finished - succeeded) / finished if finished else 0.0,
            retry_rate=retried / total if total else 0.0,
            average_execution_seconds=sum(durations) / len(durations) if durations else None,
        )

    # ── Transitions ─────────────────────────────────────────────────────

    async def _log(
        self,
        task_id: str,
        source: str,
        target: str,
        event: str,
        *,
        success: bool,
        error: str | None = None,
    ) -> TransitionLogEntry:
        entry = TransitionLogEntry(
            task_id=task_id,
            from_state=source,
            to_state=target,
            event=event,
            timestamp=self.clock.now(),
            success=success,
            error=error,
        )
        await self.store.append_transition(entry)
        return entry

    async def _reject(self, task: Task, event: str, reason: str) -> None:
        self.counters["transitions_rejected"] += 1
        await self._log(task.id, task.status, task.status, event, success=False, error=reason)
        logger.warning("Rejected %r for task %s in %s: %s", event, task.id, task.status, reason)

    async def _commit(
        self,
        task: Task,
        event: str | Enum,
        *,
        context: TaskContextBase | None = None,
        context_updates: Mapping[str, Any] | None = None,
        progress: float | None = None,
        error: str | None = None,
        max_retries: int | None = None,
        finalize: bool | None = None,
    ) -> Task:
        """Apply *event* to *task*, persist, log, and notify. Caller holds the lock."""
        strategy = self.get_strategy(task.type)
        event = state_name(event)
        source = task.status
        target = strategy.next_state(source, event)

        reason = ""
        if target is None:
            reason = "no such transition"
        elif event == TaskEvent.RETRY.value:
            limit = task.max_retries if task.max_retries is not None else strategy.max_retries
            if task.retry_count >= limit:
                reason = f"retry budget exhausted ({task.retry_count}/{limit})"
        if reason:
            await self._reject(task, event, reason)
            raise InvalidTransitionError(task.id, source, event, reason)

        new_context = context or task.context
        if context_updates:
            try:
                new_context = type(new_context).model_validate({**new_context.model_dump(), **context_updates})
            except ValueError as exc:
                raise TaskValidationError(f"Invalid context update for task {task.id}: {exc}") from exc

        new_progress = task.progress
        for candidate in (strategy.progress_for(target), progress):
            if candidate is not None:
                new_progress = max(new_progress, min(candidate, 100.0))

        now = self.clock.now()
        if finalize is None:
            finalize = strategy.is_final(target)
        updates: dict[str, Any] = {
            "status": target,
            "context": new_context,
            "progress": new_progress,
            "updated_at": now,
            "completed_at": now if finalize else None,
        }
        if task.started_at is None:
            updates["started_at"] = now
        if event == TaskEvent.RETRY.value:
            updates["retry_count"] = task.retry_count + 1
        if error is not None:
            updates["last_error"] = error
        if max_retries is not None:
            updates["max_retries"] = max_retries
        if target in strategy.checkpoint_states:
            updates["checkpoint"] = target

        updated = task.model_copy(update=updates)
        await self.store.save(updated)
        entry = await self._log(task.id, source, target, event, success=True, error=error)
        self.counters["transitions"] += 1
        logger.info("Task %s: %s --%s--> %s", task.id, source, event, target)
        await self._notify(entry, updated)
        return updated

    async def transition_state(
        self,
        task_id: str,
        event: str | Enum,
        context: Mapping[str, Any] | None = None,
    ) -> bool:
        """Apply *event* if legal. Illegal events are logged and return ``False``."""
        async with self._locks.hold(task_id):
            task = await self._require(task_id)
            try:
                await self._commit(task, event, context_updates=context)
            except InvalidTransitionError:
                return False
        return True

    # ── Execution ───────────────────────────────────────────────────────

    async def execute_task(self, task_id: str) -> bool:
        """Drive *task_id* until it is terminal or waits on something external.

        Returns ``False`` without doing anything if the task is already
        being executed.
        """
        if task_id in self._running:
            logger.warning("Task %s is already executing; ignoring duplicate request", task_id)
            return False
        self._running.add(task_id)
        try:
            task = await self._require(task_id)
            await self._drive(task)
        finally:
            self._running.discard(task_id)
        return True

    def is_running(self, task_id: str) -> bool:
        return task_id in self._running

    async def _drive(self, task: Task) -> None:
        strategy = self.get_strategy(task.type)
        while True:
            task = await self._require(task.id)
            state = task.status
            if not strategy.has_stage(state):
                return
            try:
                outcome = await strategy.execute_stage(state, task, _Reporter(self, task.id, state))
            except StageInterrupted as exc:
                logger.info("Stopped stage %s of task %s: %s", state, task.id, exc)
                return
            except Exception as exc:
                await self._handle_stage_failure(task.id, state, exc)
                return
            if not await self._commit_outcome(task.id, state, outcome):
                return

    async def _commit_outcome(self, task_id: str, state: str, outcome: StageOutcome) -> bool:
        failure: InvalidTransitionError | None = None
        async with self._locks.hold(task_id):
            current = await self._require(task_id)
            if current.status != state:
                logger.warning(
                    "Discarding result of stage %s for task %s; task is now %s", state, task_id, current.status
                )
                return False
            try:
                for index, event in enumerate(outcome.events):
                    current = await self._commit(current, event, context=outcome.context if index == 0 else None)
            except InvalidTransitionError as exc:
                failure = exc
        if failure is not None:
            logger.error("Stage %s of task %s produced an illegal event", state, task_id)
            await self._handle_stage_failure(task_id, current.status, failure)
            return False
        return True

    async def _checkpoint(
        self,
        task_id: str,
        state: str,
        context: TaskContextBase,
        progress: float | None,
    ) -> None:
        async with self._locks.hold(task_id):
            current = await self._require(task_id)
            if current.status != state:
                raise StageInterrupted(task_id, state, current.status)
            updates: dict[str, Any] = {"context": context, "updated_at": self.clock.now()}
            if progress is not None:
                updates["progress"] = max(current.progress, min(progress, 100.0))
            await self.store.save(current.model_copy(update=updates))

    # ── Failure handling ────────────────────────────────────────────────

    async def _handle_stage_failure(self, task_id: str, state: str, error: Exception) -> None:
        """Move the task to its failed state, then retry or finalize it."""
        category = self.classifier.classify(error)
        error_type = self.classifier.error_type(category)
        retry_strategy = self.classifier.strategy_for(category)
        self.counters["stage_failures"] += 1
        message = str(error) or type(error).__name__

        async with self._locks.hold(task_id):
            current = await self._require(task_id)
            strategy = self.get_strategy(current.type)
            if current.status != state:
                logger.warning("Ignoring failure of stage %s for task %s; task is now %s", state, task_id, current.status)
                return
            budget = min(retry_strategy.max_retries, strategy.max_retries)
            retryable = error_type is not ErrorType.PERMANENT and current.retry_count < budget
            logger.log(
                logging.WARNING if retryable else logging.ERROR,
                "Task %s failed in %s [%s/%s, retry %d/%d]: %s",
                task_id,
                state,
                category.value,
                error_type.value,
                current.retry_count,
                budget,
                message,
            )
            try:
                current = await self._commit(
                    current,
                    TaskEvent.FAIL,
                    error=message,
                    max_retries=budget,
                    finalize=False if retryable else None,
                )
                if not retryable and strategy.give_up_event:
                    current = await self._commit(current, strategy.give_up_event, error=message)
            except InvalidTransitionError:
                logger.error("Task %s cannot leave %s after a failure", task_id, state)
                return

        if retryable:
            self._schedule_retry(current, message, category, retry_strategy)

    def _schedule_retry(
        self, task: Task, message: str, category: ErrorCategory, retry_strategy: RetryStrategy
    ) -> None:
        self.counters["retries_scheduled"] += 1
        self.retry_scheduler.schedule_retry(
            task.id,
            message,
            category,
            task.retry_count + 1,
            retry_strategy,
            lambda: self._run_scheduled_retry(task.id),
        )

    async def _run_scheduled_retry(self, task_id: str) -> bool:
        task = await self.store.get(task_id)
        if task is None:
            return False
        if not await self.transition_state(task_id, TaskEvent.RETRY):
            return False
        await self.execute_task(task_id)
        task = await self.store.get(task_id)
        return task is not None and task.status == self.get_strategy(task.type).success_state

    # ── Control operations ──────────────────────────────────────────────

    async def cancel_task(self, task_id: str) -> bool:
        """Cancel a task that has not been finalized. Disarms any pending retry."""
        async with self._locks.hold(task_id):
            task = await self._require(task_id)
            if task.completed_at is not None:
                await self._reject(task, TaskEvent.CANCEL.value, "task already finalized")
                return False
            try:
                await self._commit(task, TaskEvent.CANCEL)
            except InvalidTransitionError:
                return False
            self.retry_scheduler.cancel_retry(task_id)
        return True

    async def retry_task(self, task_id: str, *, execute: bool = True) -> bool:
        """Retry a failed task now, replacing any scheduled retry."""
        if not await self.transition_state(task_id, TaskEvent.RETRY):
            return False
        self.retry_scheduler.cancel_retry(task_id)
        if execute:
            await self.execute_task(task_id)
        return True

    async def pause_task(self, task_id: str) -> bool:
        async with self._locks.hold(task_id):
            task = await self._require(task_id)
            strategy = self.get_strategy(task.type)
            if task.status not in strategy.interruptible_states:
                await self._reject(task, TaskEvent.PAUSE.value, "state is not interruptible")
                return False
            try:
                await self._commit(task, TaskEvent.PAUSE)
            except InvalidTransitionError:
                return False
        return True

    async def resume_task(self, task_id: str, *, execute: bool = True) -> bool:
        if not await self.transition_state(task_id, TaskEvent.RESUME):
            return False
        if execute:
            await self.execute_task(task_id)
        return True

    # ── Housekeeping ────────────────────────────────────────────────────

    async def cleanup_expired_tasks(self, older_than_ms: int) -> int:
        """Delete finalized tasks whose ``completed_at`` is older than *older_than_ms*."""
        cutoff = self.clock.now() - timedelta(milliseconds=older_than_ms)
        removed = 0
        for task in await self.store.list_all():
            strategy = self._strategies.get(task.type)
            if strategy is None or not strategy.is_final(task.status):
                continue
            if task.completed_at is None or task.completed_at >= cutoff:
                continue
            if task.id in self._running or self.retry_scheduler.has_pending(task.id):
                continue
            async with self._locks.hold(task.id):
                await self.store.delete(task.id)
                await self.store.delete_transitions(task.id)
            removed += 1
        if removed:
            logger.info("Removed %d expired tasks", removed)
        return removed
