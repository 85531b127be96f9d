"""Unit tests for the document sync strategy."""

import asyncio

import pytest

from rag_orchestrator.errors import StrategyRegistrationError
from rag_orchestrator.orchestration.models import TaskType
from rag_orchestrator.orchestration.strategies import DocumentSyncStrategy, SyncState, Transition
from rag_orchestrator.orchestration.strategies.base import TaskEvent


class TestTransitionTable:
    def test_happy_path_edges(self, harness) -> None:
        strategy = harness.engine.get_strategy(TaskType.DOCUMENT_SYNC)
        assert strategy.next_state("NEW", "chunks_saved") == "SPLIT_OK"
        assert strategy.next_state("SPLIT_OK", "vectors_inserted") == "EMBED_OK"
        assert strategy.next_state("EMBED_OK", "meta_updated") == "SYNCED"
        assert strategy.next_state("NEW", "meta_updated") is None
        assert strategy.next_state("SYNCED", TaskEvent.CANCEL) is None

    def test_failed_state_edges(self, harness) -> None:
        strategy = harness.engine.get_strategy(TaskType.DOCUMENT_SYNC)
        assert sorted(strategy.events_from("FAILED")) == ["cancel", "retries_exceeded", "retry"]
        assert strategy.is_final("DEAD")
        assert not strategy.is_final("FAILED")

    def test_table_without_fail_edge_is_rejected(self, harness) -> None:
        class Broken(DocumentSyncStrategy):
            transitions = tuple(
                t for t in DocumentSyncStrategy.transitions if not (t.source == "EMBED_OK" and t.event == "fail")
            )

        strategy = harness.engine.get_strategy(TaskType.DOCUMENT_SYNC)
        with pytest.raises(StrategyRegistrationError, match="EMBED_OK"):
            Broken(strategy.repository, strategy.splitter, strategy.embedding, strategy.vector_index)

    def test_transition_normalizes_enums(self) -> None:
        t = Transition(SyncState.NEW, TaskEvent.FAIL, SyncState.FAILED)
        assert (t.source, t.event, t.target) == ("NEW", "fail", "FAILED")


class TestDocumentSync:
    def test_empty_document_is_marked_synced_without_indexing(self, harness) -> None:
        async def scenario():
            await harness.add_document("d1", "   \n\n  ")
            await harness.engine.create_task(TaskType.DOCUMENT_SYNC, "t1", {"doc_id": "d1"})
            await harness.engine.execute_task("t1")
            return (
                await harness.engine.get_task("t1"),
                await harness.engine.get_transition_history("t1"),
                await harness.repository.get_document("d1"),
            )

        task, history, doc = asyncio.run(scenario())
        assert task.status == SyncState.SYNCED
        assert task.context.chunk_count == 0
        assert [(e.from_state, e.to_state) for e in history] == [
            ("NEW", "SPLIT_OK"),
            ("SPLIT_OK", "EMBED_OK"),
            ("EMBED_OK", "SYNCED"),
        ]
        assert doc.synced
        assert harness.splitter.calls == []
        assert harness.embedding.calls == []
        assert harness.vector_index.deleted_docs == ["d1"]

    def test_resync_drops_stale_vectors(self, harness) -> None:
        async def scenario():
            await harness.add_document("d1", "one\n\ntwo\n\nthree")
            await harness.engine.create_task(TaskType.DOCUMENT_SYNC, "t1", {"doc_id": "d1"})
            await harness.engine.execute_task("t1")
            await harness.add_document("d1", "one")
            await harness.engine.create_task(TaskType.DOCUMENT_SYNC, "t2", {"doc_id": "d1"})
            await harness.engine.execute_task("t2")

        asyncio.run(scenario())
        points = harness.vector_index.points("kb")
        assert [p.content for p in points] == ["one"]
        assert points[0].metadata["doc_id"] == "d1"
        assert points[0].metadata["chunk_index"] == 0

    def test_embedding_count_mismatch_is_permanent(self, harness) -> None:
        async def short_batch(texts):
            return [[1.0]]

        harness.embedding.generate_batch = short_batch

        async def scenario():
            await harness.add_document("d1", "one\n\ntwo")
            await harness.engine.create_task(TaskType.DOCUMENT_SYNC, "t1", {"doc_id": "d1"})
            await harness.engine.execute_task("t1")
            return await harness.engine.get_task("t1")

        task = asyncio.run(scenario())
        assert task.status == SyncState.DEAD
        assert "1 vectors for 2 chunks" in task.last_error

    def test_vector_index_outage_resumes_at_embedding(self, harness) -> None:
        async def scenario():
            await harness.add_document("d1", "one\n\ntwo")
            harness.vector_index.failures = [ConnectionError("chroma unreachable")]
            await harness.engine.create_task(TaskType.DOCUMENT_SYNC, "t1", {"doc_id": "d1"})
            await harness.engine.execute_task("t1")
            await harness.fire_retries()
            return await harness.engine.get_task("t1"), await harness.engine.get_transition_history("t1")

        task, history = asyncio.run(scenario())
        assert task.status == SyncState.SYNCED
        assert [e.to_state for e in history] == ["SPLIT_OK", "FAILED", "RETRYING", "EMBED_OK", "SYNCED"]
        assert harness.splitter.calls == ["d1"]
        assert len(harness.embedding.calls) == 2
