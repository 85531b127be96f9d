"""
Strategies — per-task-type state machines and stage work.

Public surface
--------------
- :class:`TaskStrategy` — abstract strategy (subclass for new task types).
- :class:`DocumentSyncStrategy`, :class:`BatchUploadStrategy`,
  :class:`WebCrawlStrategy` — built-in task types.
"""

from rag_orchestrator.orchestration.strategies.base import (
    StageOutcome,
    StageReporter,
    TaskEvent,
    TaskStrategy,
    Transition,
)
from rag_orchestrator.orchestration.strategies.batch_upload import BatchUploadStrategy, UploadEvent, UploadState
from rag_orchestrator.orchestration.strategies.document_sync import DocumentSyncStrategy, SyncEvent, SyncState
from rag_orchestrator.orchestration.strategies.web_crawl import CrawlEvent, CrawlState, WebCrawlStrategy

__all__ = [
    "BatchUploadStrategy",
    "CrawlEvent",
    "CrawlState",
    "DocumentSyncStrategy",
    "StageOutcome",
    "StageReporter",
    "SyncEvent",
    "SyncState",
    "TaskEvent",
    "TaskStrategy",
    "Transition",
    "UploadEvent",
    "UploadState",
    "WebCrawlStrategy",
]
