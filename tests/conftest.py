"""Shared pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
import random
from collections.abc import Callable
from dataclasses import dataclass

import pytest

from rag_orchestrator.config import Settings
from rag_orchestrator.errors import DocumentNotFoundError
from rag_orchestrator.ingestion.base import (
    Chunk,
    CrawledPage,
    Crawler,
    DocumentRecord,
    EmbeddingService,
    FileLoader,
    SplitOptions,
    Splitter,
    VectorIndex,
    VectorPoint,
)
from rag_orchestrator.ingestion.repository import InMemoryDocumentRepository
from rag_orchestrator.orchestration.classifier import ErrorClassifier, RetryStrategy
from rag_orchestrator.orchestration.engine import StateMachineEngine
from rag_orchestrator.orchestration.models import UploadFile
from rag_orchestrator.orchestration.progress import BatchProgressTracker
from rag_orchestrator.orchestration.retry import RetryScheduler
from rag_orchestrator.orchestration.scheduling import DelayQueue, VirtualClock
from rag_orchestrator.orchestration.service import IngestionOrchestrator
from rag_orchestrator.orchestration.store import InMemoryTaskStore
from rag_orchestrator.orchestration.strategies import (
    BatchUploadStrategy,
    DocumentSyncStrategy,
    WebCrawlStrategy,
)


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: marks tests requiring external services")


# ──────────────────────────────────────────────────────────────────────
# Fakes
# ──────────────────────────────────────────────────────────────────────


def _pop_failure(failures: list[BaseException]) -> None:
    if failures:
        raise failures.pop(0)


class FakeSplitter(Splitter):
    """Splits on blank lines."""

    def __init__(self) -> None:
        self.calls: list[str] = []

    def split(self, doc_id: str, content: str, options: SplitOptions | None = None) -> list[Chunk]:
        self.calls.append(doc_id)
        parts = [p.strip() for p in content.split("\n\n") if p.strip()]
        return [Chunk(doc_id=doc_id, index=i, content=p) for i, p in enumerate(parts)]


class FakeEmbedding(EmbeddingService):
    """Two-dimensional vectors; raises queued failures first.

    Set ``gate`` to an :class:`asyncio.Event` to hold calls until it is set;
    ``entered`` is set as soon as a call is waiting on the gate.
    """

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.failures: list[BaseException] = []
        self.gate: asyncio.Event | None = None
        self.entered: asyncio.Event | None = None

    async def generate_batch(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.gate is not None:
            if self.entered is not None:
                self.entered.set()
            await self.gate.wait()
        _pop_failure(self.failures)
        return [[float(len(t)), 1.0] for t in texts]


class FakeVectorIndex(VectorIndex):
    def __init__(self) -> None:
        self.collections: dict[str, dict[str, VectorPoint]] = {}
        self.deleted_docs: list[str] = []
        self.deleted_collections: list[str] = []
        self.failures: list[BaseException] = []
        self.healthy = True

    async def upsert(self, collection_id: str, points: list[VectorPoint]) -> None:
        _pop_failure(self.failures)
        bucket = self.collections.setdefault(collection_id, {})
        for point in points:
            bucket[point.id] = point

    async def delete_by_doc(self, doc_id: str, collection_id: str | None = None) -> None:
        self.deleted_docs.append(doc_id)
        for cid, bucket in self.collections.items():
            if collection_id in (None, cid):
                for pid in [pid for pid, p in bucket.items() if p.metadata.get("doc_id") == doc_id]:
                    del bucket[pid]

    async def delete_by_collection(self, collection_id: str) -> None:
        self.deleted_collections.append(collection_id)
        self.collections.pop(collection_id, None)

    def health_check(self) -> bool:
        return self.healthy

    def points(self, collection_id: str) -> list[VectorPoint]:
        return list(self.collections.get(collection_id, {}).values())


class FakeLoader(FileLoader):
    """Serves file text by file name; per-name failures are raised once each."""

    def __init__(self, texts: dict[str, str] | None = None) -> None:
        self.texts = dict(texts or {})
        self.failures: dict[str, list[BaseException]] = {}
        self.calls: list[str] = []

    async def load(self, file: UploadFile) -> bytes:
        return (await self.load_text(file)).encode()

    async def load_text(self, file: UploadFile) -> str:
        self.calls.append(file.name)
        _pop_failure(self.failures.get(file.name, []))
        if file.name not in self.texts:
            raise DocumentNotFoundError(f"File {file.name} not found")
        return self.texts[file.name]


class FakeCrawler(Crawler):
    def __init__(self, pages: dict[str, CrawledPage] | None = None) -> None:
        self.pages = dict(pages or {})
        self.failures: list[BaseException] = []
        self.calls: list[str] = []

    async def fetch(self, url: str) -> CrawledPage:
        self.calls.append(url)
        _pop_failure(self.failures)
        return self.pages[url]


# ──────────────────────────────────────────────────────────────────────
# Wiring
# ──────────────────────────────────────────────────────────────────────


@dataclass
class Harness:
    """Engine wired to fakes and a virtual clock."""

    clock: VirtualClock
    store: InMemoryTaskStore
    repository: InMemoryDocumentRepository
    splitter: FakeSplitter
    embedding: FakeEmbedding
    vector_index: FakeVectorIndex
    loader: FakeLoader
    crawler: FakeCrawler
    engine: StateMachineEngine
    tracker: BatchProgressTracker
    orchestrator: IngestionOrchestrator

    async def add_document(self, doc_id: str, content: str, collection_id: str = "kb") -> DocumentRecord:
        doc = DocumentRecord(id=doc_id, collection_id=collection_id, name=f"{doc_id}.md", content=content)
        await self.repository.save_document(doc)
        return doc

    async def fire_retries(self, seconds: float = 600.0) -> int:
        """Advance the clock and run every retry that became due."""
        self.clock.advance(seconds)
        return await self.engine.retry_scheduler.queue.run_due()


def make_harness(**settings_overrides) -> Harness:
    clock = VirtualClock()
    store = InMemoryTaskStore()
    repository = InMemoryDocumentRepository()
    splitter = FakeSplitter()
    embedding = FakeEmbedding()
    vector_index = FakeVectorIndex()
    loader = FakeLoader()
    crawler = FakeCrawler()
    classifier = ErrorClassifier(RetryStrategy(jitter=False))
    engine = StateMachineEngine(
        store,
        classifier=classifier,
        retry_scheduler=RetryScheduler(DelayQueue(clock), rng=random.Random(7)),
    )
    engine.register_strategy(DocumentSyncStrategy(repository, splitter, embedding, vector_index))
    engine.register_strategy(
        BatchUploadStrategy(repository, loader, splitter, embedding, vector_index, classifier=classifier)
    )
    engine.register_strategy(WebCrawlStrategy(repository, crawler))
    tracker = BatchProgressTracker(engine, concurrency=2)
    config = Settings(**settings_overrides)
    orchestrator = IngestionOrchestrator(
        engine, tracker, repository=repository, vector_index=vector_index, config=config
    )
    return Harness(
        clock=clock,
        store=store,
        repository=repository,
        splitter=splitter,
        embedding=embedding,
        vector_index=vector_index,
        loader=loader,
        crawler=crawler,
        engine=engine,
        tracker=tracker,
        orchestrator=orchestrator,
    )


@pytest.fixture()
def harness() -> Harness:
    return make_harness()


@pytest.fixture()
def harness_factory() -> Callable[..., Harness]:
    return make_harness
