"""In-process task store."""

from __future__ import annotations

import asyncio
from collections import defaultdict

from rag_orchestrator.orchestration.models import Task, TaskType, TransitionLogEntry
from rag_orchestrator.orchestration.store.base import TaskStore


class InMemoryTaskStore(TaskStore):
    """Dictionary-backed store with status and type indexes.

    Records live only as long as the instance; :meth:`close` drops them.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}
        self._by_status: dict[str, set[str]] = defaultdict(set)
        self._by_type: dict[TaskType, set[str]] = defaultdict(set)
        self._transitions: dict[str, list[TransitionLogEntry]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def close(self) -> None:
        async with self._lock:
            self._tasks.clear()
            self._by_status.clear()
            self._by_type.clear()
            self._transitions.clear()

    def _index(self, task: Task) -> None:
        self._by_status[task.status].add(task.id)
        self._by_type[task.type].add(task.id)

    def _unindex(self, task: Task) -> None:
        self._by_status[task.status].discard(task.id)
        self._by_type[task.type].discard(task.id)

    def _copies(self, ids: set[str]) -> list[Task]:
        tasks = [self._tasks[i].model_copy(deep=True) for i in ids if i in self._tasks]
        return sorted(tasks, key=lambda t: t.created_at)

    async def create_if_absent(self, task: Task) -> bool:
        async with self._lock:
            if task.id in self._tasks:
                return False
            stored = task.model_copy(deep=True)
            self._tasks[task.id] = stored
            self._index(stored)
            return True

    async def get(self, task_id: str) -> Task | None:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    async def save(self, task: Task) -> None:
        async with self._lock:
            previous = self._tasks.get(task.id)
            if previous is None:
                raise KeyError(task.id)
            self._unindex(previous)
            stored = task.model_copy(deep=True)
            self._tasks[task.id] = stored
            self._index(stored)

    async def delete(self, task_id: str) -> bool:
        async with self._lock:
            task = self._tasks.pop(task_id, None)
            if task is None:
                return False
            self._unindex(task)
            return True

    async def list_all(self) -> list[Task]:
        return self._copies(set(self._tasks))

    async def list_by_status(self, status: str) -> list[Task]:
        return self._copies(set(self._by_status.get(status, ())))

    async def list_by_type(self, task_type: TaskType) -> list[Task]:
        return self._copies(set(self._by_type.get(TaskType(task_type), ())))

    async def append_transition(self, entry: TransitionLogEntry) -> None:
        self._transitions[entry.task_id].append(entry.model_copy())

    async def get_transitions(self, task_id: str, limit: int | None = None) -> list[TransitionLogEntry]:
        entries = self._transitions.get(task_id, [])
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return [e.model_copy() for e in entries]

    async def delete_transitions(self, task_id: str) -> int:
        return len(self._transitions.pop(task_id, []))
