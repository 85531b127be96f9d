"""
Orchestration — tasks, their state machines, retries, and progress.

Public surface
--------------
- :class:`StateMachineEngine` — creates, drives, and controls tasks.
- :class:`ErrorClassifier`, :class:`RetryStrategy` — failure classification.
- :class:`RetryScheduler`, :class:`DelayQueue` — deferred retries.
- :class:`BatchProgressTracker` — aggregate progress of bulk operations.
- :class:`IngestionOrchestrator`, :func:`build_orchestrator` — caller facade.
- :class:`Task`, :class:`TaskType` and the context models — data models.

Only the data models are imported eagerly; everything else is resolved on
first access so that the ingestion interfaces can import the models
without pulling in the engine.
"""

import importlib

from rag_orchestrator.orchestration.models import (
    BatchOperationProgress,
    BatchUploadContext,
    DocumentSyncContext,
    Task,
    TaskType,
    UploadFile,
    UploadOptions,
    WebCrawlContext,
)

__all__ = [
    "BatchOperationProgress",
    "BatchProgressTracker",
    "BatchUploadContext",
    "DelayQueue",
    "DocumentSyncContext",
    "ErrorClassifier",
    "IngestionOrchestrator",
    "RetryScheduler",
    "RetryStrategy",
    "StateMachineEngine",
    "Task",
    "TaskType",
    "UploadFile",
    "UploadOptions",
    "WebCrawlContext",
    "build_orchestrator",
]

_LAZY = {
    "BatchProgressTracker": "rag_orchestrator.orchestration.progress",
    "DelayQueue": "rag_orchestrator.orchestration.scheduling",
    "ErrorClassifier": "rag_orchestrator.orchestration.classifier",
    "IngestionOrchestrator": "rag_orchestrator.orchestration.service",
    "RetryScheduler": "rag_orchestrator.orchestration.retry",
    "RetryStrategy": "rag_orchestrator.orchestration.classifier",
    "StateMachineEngine": "rag_orchestrator.orchestration.engine",
    "build_orchestrator": "rag_orchestrator.orchestration.service",
}


def __getattr__(name: str):  # noqa: ANN001
    """Lazy-import the engine layer to keep the models importable on their own."""
    module = _LAZY.get(name)
    if module is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    return getattr(importlib.import_module(module), name)
