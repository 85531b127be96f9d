"""Unit tests for the state-machine engine.

Scenarios run against the document sync and web crawl strategies wired to
in-memory fakes (see ``conftest.py``); time only moves when a test
advances the virtual clock.
"""

import asyncio

import pytest

from rag_orchestrator.errors import (
    DuplicateTaskError,
    StrategyNotFoundError,
    StrategyRegistrationError,
    TaskNotFoundError,
    TaskValidationError,
)
from rag_orchestrator.ingestion.base import CrawledPage
from rag_orchestrator.orchestration.models import DocumentSyncContext, TaskType, WebCrawlContext
from rag_orchestrator.orchestration.strategies import CrawlEvent, DocumentSyncStrategy, SyncState, TaskEvent


def _assert_legal_history(engine, history) -> None:
    for entry in history:
        if entry.success:
            strategy = engine.get_strategy(TaskType.DOCUMENT_SYNC)
            assert strategy.next_state(entry.from_state, entry.event) == entry.to_state


# ──────────────────────────────────────────────────────────────────────
# Registration and creation
# ──────────────────────────────────────────────────────────────────────


class TestRegistration:
    def test_duplicate_strategy_rejected(self, harness) -> None:
        strategy = harness.engine.get_strategy(TaskType.DOCUMENT_SYNC)
        with pytest.raises(StrategyRegistrationError):
            harness.engine.register_strategy(
                DocumentSyncStrategy(
                    strategy.repository, strategy.splitter, strategy.embedding, strategy.vector_index
                )
            )

    def test_unknown_type(self, harness) -> None:
        with pytest.raises(StrategyNotFoundError):
            harness.engine.get_strategy("image_ocr")

    def test_registered_strategies(self, harness) -> None:
        assert set(harness.engine.registered_strategies()) == set(TaskType)


class TestCreateTask:
    def test_initial_record(self, harness) -> None:
        task = asyncio.run(harness.engine.create_task(TaskType.DOCUMENT_SYNC, "t1", {"doc_id": "d1"}))
        assert task.status == SyncState.NEW
        assert task.progress == 0.0
        assert task.retry_count == 0
        assert task.started_at is None
        assert task.created_at == harness.clock.now()

    def test_same_submission_is_idempotent(self, harness) -> None:
        async def scenario():
            first = await harness.engine.create_task(TaskType.DOCUMENT_SYNC, "t1", DocumentSyncContext(doc_id="d1"))
            second = await harness.engine.create_task(TaskType.DOCUMENT_SYNC, "t1", {"doc_id": "d1"})
            return first, second, await harness.engine.get_tasks_by_type(TaskType.DOCUMENT_SYNC)

        first, second, tasks = asyncio.run(scenario())
        assert first == second
        assert len(tasks) == 1

    def test_different_submission_conflicts(self, harness) -> None:
        async def scenario() -> None:
            await harness.engine.create_task(TaskType.DOCUMENT_SYNC, "t1", {"doc_id": "d1"})
            with pytest.raises(DuplicateTaskError):
                await harness.engine.create_task(TaskType.DOCUMENT_SYNC, "t1", {"doc_id": "d2"})

        asyncio.run(scenario())

    def test_invalid_context(self, harness) -> None:
        async def scenario() -> None:
            with pytest.raises(TaskValidationError):
                await harness.engine.create_task(TaskType.DOCUMENT_SYNC, "t1", {"doc_id": ""})
            with pytest.raises(TaskValidationError):
                await harness.engine.create_task(
                    TaskType.DOCUMENT_SYNC, "t2", WebCrawlContext(url="https://x", collection_id="kb")
                )
            with pytest.raises(TaskValidationError):
                await harness.engine.create_task(TaskType.DOCUMENT_SYNC, "", {"doc_id": "d1"})

        asyncio.run(scenario())


# ──────────────────────────────────────────────────────────────────────
# Transitions
# ──────────────────────────────────────────────────────────────────────


class TestTransitions:
    def test_illegal_event_is_logged_and_refused(self, harness) -> None:
        async def scenario():
            await harness.engine.create_task(TaskType.DOCUMENT_SYNC, "t1", {"doc_id": "d1"})
            ok = await harness.engine.transition_state("t1", "meta_updated")
            return ok, await harness.engine.get_task("t1"), await harness.engine.get_transition_history("t1")

        ok, task, history = asyncio.run(scenario())
        assert ok is False
        assert task.status == "NEW"
        assert len(history) == 1
        assert history[0].success is False
        assert history[0].from_state == history[0].to_state == "NEW"
        assert harness.engine.counters["transitions_rejected"] == 1

    def test_legal_event_updates_record(self, harness) -> None:
        async def scenario():
            await harness.engine.create_task(TaskType.DOCUMENT_SYNC, "t1", {"doc_id": "d1"})
            ok = await harness.engine.transition_state("t1", "chunks_saved", {"chunk_count": 4})
            return ok, await harness.engine.get_task("t1")

        ok, task = asyncio.run(scenario())
        assert ok
        assert task.status == SyncState.SPLIT_OK
        assert task.checkpoint == "SPLIT_OK"
        assert task.context.chunk_count == 4
        assert task.progress == 33.0
        assert task.started_at == harness.clock.now()

    def test_unknown_task(self, harness) -> None:
        with pytest.raises(TaskNotFoundError):
            asyncio.run(harness.engine.transition_state("ghost", TaskEvent.CANCEL))

    def test_listeners_see_committed_transitions(self, harness) -> None:
        seen: list[str] = []
        async_seen: list[str] = []

        def listener(entry, task) -> None:
            seen.append(f"{entry.from_state}->{entry.to_state}")

        async def async_listener(entry, task) -> None:
            async_seen.append(task.status)

        def broken(entry, task) -> None:
            raise RuntimeError("listener bug")

        harness.engine.add_listener(broken)
        harness.engine.add_listener(listener)
        harness.engine.add_listener(async_listener)

        async def scenario() -> None:
            await harness.add_document("d1", "alpha\n\nbeta")
            await harness.engine.create_task(TaskType.DOCUMENT_SYNC, "t1", {"doc_id": "d1"})
            await harness.engine.execute_task("t1")

        asyncio.run(scenario())
        assert seen == ["NEW->SPLIT_OK", "SPLIT_OK->EMBED_OK", "EMBED_OK->SYNCED"]
        assert async_seen == ["SPLIT_OK", "EMBED_OK", "SYNCED"]

    def test_removed_listener_is_not_called(self, harness) -> None:
        seen: list[str] = []

        def listener(entry, task) -> None:
            seen.append(task.status)

        harness.engine.add_listener(listener)

        async def scenario() -> None:
            context = {"url": "https://example.com", "collection_id": "kb"}
            await harness.engine.create_task(TaskType.WEB_CRAWL, "c1", context)
            await harness.engine.transition_state("c1", CrawlEvent.START)
            harness.engine.remove_listener(listener)
            await harness.engine.transition_state("c1", TaskEvent.CANCEL)

        asyncio.run(scenario())
        assert seen == ["PROCESSING"]


# ──────────────────────────────────────────────────────────────────────
# Execution
# ──────────────────────────────────────────────────────────────────────


class TestExecution:
    def test_document_sync_to_completion(self, harness) -> None:
        async def scenario():
            await harness.add_document("d1", "alpha\n\nbeta\n\ngamma")
            await harness.engine.create_task(TaskType.DOCUMENT_SYNC, "t1", {"doc_id": "d1"})
            assert await harness.engine.execute_task("t1")
            return (
                await harness.engine.get_task("t1"),
                await harness.engine.get_transition_history("t1"),
                await harness.repository.get_document("d1"),
            )

        task, history, doc = asyncio.run(scenario())
        assert task.status == SyncState.SYNCED
        assert task.progress == 100.0
        assert task.completed_at is not None
        assert task.context.chunk_count == 3
        assert task.context.collection_id == "kb"
        assert [e.to_state for e in history] == ["SPLIT_OK", "EMBED_OK", "SYNCED"]
        _assert_legal_history(harness.engine, history)
        assert len(harness.vector_index.points("kb")) == 3
        assert doc.synced

    def test_no_duplicate_concurrent_execution(self, harness) -> None:
        async def scenario():
            harness.embedding.gate = asyncio.Event()
            harness.embedding.entered = asyncio.Event()
            await harness.add_document("d1", "alpha")
            await harness.engine.create_task(TaskType.DOCUMENT_SYNC, "t1", {"doc_id": "d1"})
            runner = asyncio.create_task(harness.engine.execute_task("t1"))
            await harness.embedding.entered.wait()
            assert harness.engine.is_running("t1")
            duplicate = await harness.engine.execute_task("t1")
            harness.embedding.gate.set()
            first = await runner
            return first, duplicate, await harness.engine.get_task("t1")

        first, duplicate, task = asyncio.run(scenario())
        assert first is True
        assert duplicate is False
        assert task.status == SyncState.SYNCED
        assert len(harness.embedding.calls) == 1

    def test_cancel_mid_stage_discards_result(self, harness) -> None:
        async def scenario():
            harness.embedding.gate = asyncio.Event()
            harness.embedding.entered = asyncio.Event()
            await harness.add_document("d1", "alpha")
            await harness.engine.create_task(TaskType.DOCUMENT_SYNC, "t1", {"doc_id": "d1"})
            runner = asyncio.create_task(harness.engine.execute_task("t1"))
            await harness.embedding.entered.wait()
            cancelled = await harness.engine.cancel_task("t1")
            harness.embedding.gate.set()
            await runner
            return cancelled, await harness.engine.get_task("t1"), await harness.engine.get_transition_history("t1")

        cancelled, task, history = asyncio.run(scenario())
        assert cancelled
        assert task.status == SyncState.CANCELLED
        assert task.completed_at is not None
        assert "EMBED_OK" not in [e.to_state for e in history]
        assert not harness.engine.is_running("t1")


# ──────────────────────────────────────────────────────────────────────
# Failures and retries
# ──────────────────────────────────────────────────────────────────────


class TestFailureHandling:
    def test_temporary_failure_retries_from_checkpoint(self, harness) -> None:
        async def scenario():
            await harness.add_document("d1", "alpha\n\nbeta")
            harness.embedding.failures = [ConnectionError("connection refused")]
            await harness.engine.create_task(TaskType.DOCUMENT_SYNC, "t1", {"doc_id": "d1"})
            await harness.engine.execute_task("t1")
            failed = await harness.engine.get_task("t1")
            pending = harness.engine.retry_scheduler.pending()
            fired = await harness.fire_retries()
            return failed, pending, fired, await harness.engine.get_task("t1")

        failed, pending, fired, task = asyncio.run(scenario())
        assert failed.status == SyncState.FAILED
        assert failed.completed_at is None
        assert failed.last_error == "connection refused"
        assert failed.checkpoint == "SPLIT_OK"
        assert [p.delay_ms for p in pending] == [2000]
        assert fired == 1
        assert task.status == SyncState.SYNCED
        assert task.retry_count == 1
        # Split ran once; the retry resumed at embedding.
        assert harness.splitter.calls == ["d1"]
        stats = harness.engine.retry_scheduler.stats
        assert stats.total_retries == 1
        assert stats.successful_retries == 1

    def test_retry_exhaustion_finalizes(self, harness) -> None:
        async def scenario():
            await harness.add_document("d1", "alpha")
            harness.embedding.failures = [RuntimeError("boom")] * 10
            await harness.engine.create_task(TaskType.DOCUMENT_SYNC, "t1", {"doc_id": "d1"})
            await harness.engine.execute_task("t1")
            fired = 0
            for _ in range(5):
                fired += await harness.fire_retries()
            retried = await harness.engine.retry_task("t1")
            return fired, retried, await harness.engine.get_task("t1")

        fired, retried, task = asyncio.run(scenario())
        assert fired == 3
        assert retried is False
        assert task.status == SyncState.DEAD
        assert task.retry_count == 3
        assert task.max_retries == 3
        assert task.completed_at is not None
        assert not harness.engine.retry_scheduler.has_pending("t1")
        assert harness.engine.retry_scheduler.stats.failed_retries == 3

    def test_permanent_failure_is_not_retried(self, harness) -> None:
        async def scenario():
            await harness.engine.create_task(TaskType.DOCUMENT_SYNC, "t1", {"doc_id": "missing"})
            await harness.engine.execute_task("t1")
            return await harness.engine.get_task("t1"), await harness.engine.get_transition_history("t1")

        task, history = asyncio.run(scenario())
        assert task.status == SyncState.DEAD
        assert "not found" in task.last_error
        assert [e.event for e in history] == ["fail", "retries_exceeded"]
        assert harness.engine.retry_scheduler.pending() == []

    def test_manual_retry_of_failed_crawl(self, harness) -> None:
        url = "https://example.com/page"

        async def scenario():
            harness.crawler.pages[url] = CrawledPage(url=url, title="Page", text="   ")
            await harness.engine.create_task(TaskType.WEB_CRAWL, "c1", {"url": url, "collection_id": "kb"})
            await harness.engine.execute_task("c1")
            failed = await harness.engine.get_task("c1")
            harness.crawler.pages[url] = CrawledPage(url=url, title="Page", text="Now with content")
            retried = await harness.engine.retry_task("c1")
            return failed, retried, await harness.engine.get_task("c1")

        failed, retried, task = asyncio.run(scenario())
        assert failed.status == "FAILED"
        assert failed.completed_at is not None
        assert retried
        assert task.status == "COMPLETED"
        assert task.retry_count == 1
        assert task.completed_at is not None

    def test_cancel_disarms_pending_retry(self, harness) -> None:
        async def scenario():
            await harness.add_document("d1", "alpha")
            harness.embedding.failures = [ConnectionError("connection reset")]
            await harness.engine.create_task(TaskType.DOCUMENT_SYNC, "t1", {"doc_id": "d1"})
            await harness.engine.execute_task("t1")
            assert harness.engine.retry_scheduler.has_pending("t1")
            cancelled = await harness.engine.cancel_task("t1")
            fired = await harness.fire_retries()
            return cancelled, fired, await harness.engine.get_task("t1")

        cancelled, fired, task = asyncio.run(scenario())
        assert cancelled
        assert fired == 0
        assert task.status == SyncState.CANCELLED

    def test_cancel_finalized_task_is_refused(self, harness) -> None:
        async def scenario():
            await harness.add_document("d1", "alpha")
            await harness.engine.create_task(TaskType.DOCUMENT_SYNC, "t1", {"doc_id": "d1"})
            await harness.engine.execute_task("t1")
            return await harness.engine.cancel_task("t1"), await harness.engine.get_task("t1")

        cancelled, task = asyncio.run(scenario())
        assert cancelled is False
        assert task.status == SyncState.SYNCED


# ──────────────────────────────────────────────────────────────────────
# Queries and housekeeping
# ──────────────────────────────────────────────────────────────────────


class TestQueries:
    def test_status_queries_accept_enums(self, harness) -> None:
        async def scenario():
            await harness.add_document("d1", "alpha")
            await harness.engine.create_task(TaskType.DOCUMENT_SYNC, "t1", {"doc_id": "d1"})
            await harness.engine.create_task(TaskType.DOCUMENT_SYNC, "t2", {"doc_id": "d2"})
            await harness.engine.execute_task("t1")
            return (
                await harness.engine.get_tasks_by_status(SyncState.SYNCED),
                await harness.engine.get_tasks_by_status("NEW"),
            )

        synced, new = asyncio.run(scenario())
        assert [t.id for t in synced] == ["t1"]
        assert [t.id for t in new] == ["t2"]

    def test_task_stats(self, harness) -> None:
        async def scenario():
            await harness.add_document("d1", "alpha")
            await harness.engine.create_task(TaskType.DOCUMENT_SYNC, "ok", {"doc_id": "d1"})
            await harness.engine.create_task(TaskType.DOCUMENT_SYNC, "bad", {"doc_id": "missing"})
            await harness.engine.create_task(TaskType.WEB_CRAWL, "idle", {"url": "https://x", "collection_id": "kb"})
            await harness.engine.execute_task("ok")
            await harness.engine.execute_task("bad")
            return await harness.engine.get_task_stats()

        stats = asyncio.run(scenario())
        assert stats.total == 3
        assert stats.by_type == {"document_sync": 2, "web_crawl": 1}
        assert stats.by_status["document_sync"] == {"SYNCED": 1, "DEAD": 1}
        assert stats.success_rate == 0.5
        assert stats.failure_rate == 0.5
        assert stats.retry_rate == 0.0

    def test_cleanup_removes_only_expired_final_tasks(self, harness) -> None:
        async def scenario():
            await harness.add_document("d1", "alpha")
            for task_id in ("old1", "old2"):
                await harness.engine.create_task(TaskType.DOCUMENT_SYNC, task_id, {"doc_id": "d1"})
                await harness.engine.execute_task(task_id)
            await harness.engine.create_task(TaskType.DOCUMENT_SYNC, "pending", {"doc_id": "d1"})
            harness.clock.advance(31 * 60)
            await harness.engine.create_task(TaskType.DOCUMENT_SYNC, "fresh", {"doc_id": "d1"})
            await harness.engine.execute_task("fresh")
            removed = await harness.engine.cleanup_expired_tasks(30 * 60 * 1000)
            remaining = sorted(t.id for t in await harness.store.list_all())
            return removed, remaining, await harness.engine.get_transition_history("old1")

        removed, remaining, history = asyncio.run(scenario())
        assert removed == 2
        assert remaining == ["fresh", "pending"]
        assert history == []

    def test_cleanup_keeps_task_with_pending_retry(self, harness) -> None:
        async def scenario():
            await harness.add_document("d1", "alpha")
            harness.embedding.failures = [ConnectionError("connection reset")]
            await harness.engine.create_task(TaskType.DOCUMENT_SYNC, "t1", {"doc_id": "d1"})
            await harness.engine.execute_task("t1")
            harness.clock.advance(3600)
            return await harness.engine.cleanup_expired_tasks(0)

        assert asyncio.run(scenario()) == 0

    def test_no_lock_outlives_its_operation(self, harness) -> None:
        async def scenario():
            await harness.add_document("d1", "alpha")
            harness.embedding.failures = [ConnectionError("connection reset")]
            await harness.engine.create_task(TaskType.DOCUMENT_SYNC, "t1", {"doc_id": "d1"})
            await harness.engine.execute_task("t1")
            return await harness.engine.get_task("t1")

        task = asyncio.run(scenario())
        assert task.completed_at is None
        assert len(harness.engine._locks) == 0
