"""Web crawl: fetch one URL and store it as a document."""

from __future__ import annotations

import hashlib
import logging
from enum import Enum

from rag_orchestrator.errors import EmptyDocumentError
from rag_orchestrator.ingestion.base import Crawler, DocumentRecord, DocumentRepository
from rag_orchestrator.orchestration.models import Task, TaskType, WebCrawlContext
from rag_orchestrator.orchestration.strategies.base import (
    StageOutcome,
    StageReporter,
    TaskEvent,
    TaskStrategy,
    Transition,
)

logger = logging.getLogger(__name__)


class CrawlState(str, Enum):
    NEW = "NEW"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class CrawlEvent(str, Enum):
    START = "start"
    COMPLETE = "complete"


def crawl_doc_id(collection_id: str, url: str) -> str:
    return hashlib.sha256(f"{collection_id}|{url}".encode()).hexdigest()[:24]


class WebCrawlStrategy(TaskStrategy):
    """Fetch a page through a :class:`Crawler` and save it for syncing."""

    task_type = TaskType.WEB_CRAWL
    context_model = WebCrawlContext
    initial_state = CrawlState.NEW.value
    final_states = frozenset({CrawlState.COMPLETED.value, CrawlState.FAILED.value, CrawlState.CANCELLED.value})
    success_state = CrawlState.COMPLETED.value
    failed_state = CrawlState.FAILED.value
    stage_states = frozenset({CrawlState.NEW.value, CrawlState.PROCESSING.value})
    progress_by_state = {
        CrawlState.NEW.value: 0.0,
        CrawlState.PROCESSING.value: 10.0,
        CrawlState.COMPLETED.value: 100.0,
    }
    transitions = (
        Transition(CrawlState.NEW, CrawlEvent.START, CrawlState.PROCESSING),
        Transition(CrawlState.PROCESSING, CrawlEvent.COMPLETE, CrawlState.COMPLETED),
        Transition(CrawlState.NEW, TaskEvent.FAIL, CrawlState.FAILED),
        Transition(CrawlState.PROCESSING, TaskEvent.FAIL, CrawlState.FAILED),
        Transition(CrawlState.FAILED, TaskEvent.RETRY, CrawlState.PROCESSING),
        Transition(CrawlState.NEW, TaskEvent.CANCEL, CrawlState.CANCELLED),
        Transition(CrawlState.PROCESSING, TaskEvent.CANCEL, CrawlState.CANCELLED),
        Transition(CrawlState.FAILED, TaskEvent.CANCEL, CrawlState.CANCELLED),
    )

    def __init__(self, repository: DocumentRepository, crawler: Crawler, *, max_retries: int = 3) -> None:
        super().__init__()
        self.repository = repository
        self.crawler = crawler
        self.max_retries = max_retries

    async def execute_stage(self, state: str, task: Task, reporter: StageReporter) -> StageOutcome:
        if state == CrawlState.NEW:
            return StageOutcome.of(CrawlEvent.START)
        if state != CrawlState.PROCESSING:
            raise ValueError(f"No stage for state {state!r}")

        ctx: WebCrawlContext = task.context
        page = await self.crawler.fetch(ctx.url)
        if not page.text.strip():
            raise EmptyDocumentError(f"Page {ctx.url} has no content")

        doc_id = crawl_doc_id(ctx.collection_id, ctx.url)
        await self.repository.save_document(
            DocumentRecord(
                id=doc_id,
                collection_id=ctx.collection_id,
                name=page.title or ctx.url,
                content=page.text,
                source=ctx.url,
                content_type=page.content_type,
            )
        )
        logger.info("Crawled %s (%d chars) into document %s", ctx.url, len(page.text), doc_id)
        updated = ctx.model_copy(update={"doc_id": doc_id, "title": page.title, "char_count": len(page.text)})
        return StageOutcome.of(CrawlEvent.COMPLETE, context=updated)
