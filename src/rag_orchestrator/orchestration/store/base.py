"""Abstract base class for task persistence backends.

A backend stores task records and their append-only transition logs.
Adding one (Redis, Postgres, …) only requires subclassing
:class:`TaskStore`; the engine never touches storage directly.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from rag_orchestrator.orchestration.models import Task, TaskType, TransitionLogEntry


class TaskStore(ABC):
    """Backend-agnostic task store.

    Implementations must hand out copies: mutating a returned
    :class:`Task` never changes the stored record until :meth:`save`.
    """

    async def initialize(self) -> None:
        """Prepare the backend (create tables, open pools)."""

    async def close(self) -> None:
        """Release backend resources."""

    # -- required overrides ---------------------------------------------------

    @abstractmethod
    async def create_if_absent(self, task: Task) -> bool:
        """Atomically insert *task* unless its id exists. Return ``True`` if inserted."""
        ...

    @abstractmethod
    async def get(self, task_id: str) -> Task | None:
        ...

    @abstractmethod
    async def save(self, task: Task) -> None:
        """Replace the stored record of an existing task."""
        ...

    @abstractmethod
    async def delete(self, task_id: str) -> bool:
        ...

    @abstractmethod
    async def list_all(self) -> list[Task]:
        ...

    @abstractmethod
    async def list_by_status(self, status: str) -> list[Task]:
        ...

    @abstractmethod
    async def list_by_type(self, task_type: TaskType) -> list[Task]:
        ...

    @abstractmethod
    async def append_transition(self, entry: TransitionLogEntry) -> None:
        ...

    @abstractmethod
    async def get_transitions(self, task_id: str, limit: int | None = None) -> list[TransitionLogEntry]:
        """Return the log of *task_id* oldest first, or its last *limit* entries."""
        ...

    @abstractmethod
    async def delete_transitions(self, task_id: str) -> int:
        ...
