"""Unit tests for the web crawl strategy."""

import asyncio

import requests

from rag_orchestrator.ingestion.base import CrawledPage
from rag_orchestrator.orchestration.models import TaskType
from rag_orchestrator.orchestration.strategies import CrawlState
from rag_orchestrator.orchestration.strategies.web_crawl import crawl_doc_id

URL = "https://docs.example.com/guide"


class TestWebCrawl:
    def test_page_is_saved_as_document(self, harness) -> None:
        harness.crawler.pages[URL] = CrawledPage(url=URL, title="Guide", text="How to do things.")

        async def scenario():
            await harness.engine.create_task(TaskType.WEB_CRAWL, "c1", {"url": URL, "collection_id": "kb"})
            await harness.engine.execute_task("c1")
            task = await harness.engine.get_task("c1")
            return task, await harness.repository.get_document(task.context.doc_id)

        task, doc = asyncio.run(scenario())
        assert task.status == CrawlState.COMPLETED
        assert task.context.doc_id == crawl_doc_id("kb", URL)
        assert task.context.title == "Guide"
        assert task.context.char_count == len("How to do things.")
        assert doc.name == "Guide"
        assert doc.source == URL
        assert doc.collection_id == "kb"
        assert not doc.synced

    def test_network_failure_is_retried(self, harness) -> None:
        harness.crawler.pages[URL] = CrawledPage(url=URL, title="Guide", text="Body")
        harness.crawler.failures = [requests.ConnectionError("Failed to establish a new connection")]

        async def scenario():
            await harness.engine.create_task(TaskType.WEB_CRAWL, "c1", {"url": URL, "collection_id": "kb"})
            await harness.engine.execute_task("c1")
            failed = await harness.engine.get_task("c1")
            await harness.fire_retries()
            return failed, await harness.engine.get_task("c1"), await harness.engine.get_transition_history("c1")

        failed, task, history = asyncio.run(scenario())
        assert failed.status == CrawlState.FAILED
        assert failed.completed_at is None
        assert task.status == CrawlState.COMPLETED
        assert [e.to_state for e in history] == ["PROCESSING", "FAILED", "PROCESSING", "COMPLETED"]
        assert harness.crawler.calls == [URL, URL]

    def test_same_url_maps_to_same_document(self) -> None:
        assert crawl_doc_id("kb", URL) == crawl_doc_id("kb", URL)
        assert crawl_doc_id("kb", URL) != crawl_doc_id("other", URL)
