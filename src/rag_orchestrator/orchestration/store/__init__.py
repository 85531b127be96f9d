"""
Task stores — where task records and transition logs live.

Public surface
--------------
- :class:`TaskStore` — abstract backend.
- :class:`InMemoryTaskStore` — in-process default.
- :class:`SqlTaskStore` — SQLAlchemy async backend (lazy import).
- :func:`create_task_store` — build a store from a URL.
"""

from rag_orchestrator.orchestration.store.base import TaskStore
from rag_orchestrator.orchestration.store.memory import InMemoryTaskStore

__all__ = [
    "InMemoryTaskStore",
    "SqlTaskStore",
    "TaskStore",
    "create_task_store",
]


def create_task_store(url: str = "memory") -> TaskStore:
    """Return an in-memory store for ``"memory"``, else a SQL store for *url*."""
    if url in ("", "memory"):
        return InMemoryTaskStore()
    from rag_orchestrator.orchestration.store.sql import SqlTaskStore

    return SqlTaskStore(url)


def __getattr__(name: str):  # noqa: ANN001
    """Lazy-import SqlTaskStore to avoid pulling in SQLAlchemy at import time."""
    if name == "SqlTaskStore":
        from rag_orchestrator.orchestration.store.sql import SqlTaskStore

        return SqlTaskStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
