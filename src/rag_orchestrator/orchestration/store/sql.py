"""SQLAlchemy-backed task store (async engine, SQLite by default)."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, String, Text, delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool

from rag_orchestrator.orchestration.models import Task, TaskType, TransitionLogEntry
from rag_orchestrator.orchestration.store.base import TaskStore

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class TaskRow(Base):
    __tablename__ = "tasks"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    context: Mapped[dict] = mapped_column(JSON, nullable=False)
    progress: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int | None] = mapped_column(Integer, nullable=True)
    checkpoint: Mapped[str | None] = mapped_column(String(32), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class TransitionRow(Base):
    __tablename__ = "task_transitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    task_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    from_state: Mapped[str] = mapped_column(String(32), nullable=False)
    to_state: Mapped[str] = mapped_column(String(32), nullable=False)
    event: Mapped[str] = mapped_column(String(32), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)


def _aware(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _row_values(task: Task) -> dict:
    return {
        "id": task.id,
        "type": task.type.value,
        "status": task.status,
        "context": task.context.model_dump(mode="json"),
        "progress": task.progress,
        "retry_count": task.retry_count,
        "max_retries": task.max_retries,
        "checkpoint": task.checkpoint,
        "last_error": task.last_error,
        "created_at": task.created_at,
        "updated_at": task.updated_at,
        "started_at": task.started_at,
        "completed_at": task.completed_at,
    }


def _to_task(row: TaskRow) -> Task:
    return Task.model_validate(
        {
            "id": row.id,
            "type": row.type,
            "status": row.status,
            "context": row.context,
            "progress": row.progress,
            "retry_count": row.retry_count,
            "max_retries": row.max_retries,
            "checkpoint": row.checkpoint,
            "last_error": row.last_error,
            "created_at": _aware(row.created_at),
            "updated_at": _aware(row.updated_at),
            "started_at": _aware(row.started_at),
            "completed_at": _aware(row.completed_at),
        }
    )


def _to_entry(row: TransitionRow) -> TransitionLogEntry:
    return TransitionLogEntry(
        task_id=row.task_id,
        from_state=row.from_state,
        to_state=row.to_state,
        event=row.event,
        timestamp=_aware(row.timestamp),
        success=row.success,
        error=row.error,
    )


class SqlTaskStore(TaskStore):
    """Task store persisted through an async SQLAlchemy engine.

    Parameters
    ----------
    database_url:
        Async SQLAlchemy URL, e.g. ``sqlite+aiosqlite:///./tasks.db``.
    engine:
        Pre-built engine; overrides *database_url* when given.
    """

    def __init__(
        self,
        database_url: str = "sqlite+aiosqlite:///:memory:",
        *,
        engine: AsyncEngine | None = None,
    ) -> None:
        self.database_url = database_url
        if engine is None:
            kwargs = {"poolclass": StaticPool} if ":memory:" in database_url else {}
            engine = create_async_engine(database_url, echo=False, **kwargs)
        self._engine = engine
        self._sessions = async_sessionmaker(self._engine, expire_on_commit=False)

    async def initialize(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Task store ready at %s", self._engine.url.render_as_string(hide_password=True))

    async def close(self) -> None:
        await self._engine.dispose()

    async def create_if_absent(self, task: Task) -> bool:
        async with self._sessions() as session:
            session.add(TaskRow(**_row_values(task)))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
        return True

    async def get(self, task_id: str) -> Task | None:
        async with self._sessions() as session:
            row = await session.get(TaskRow, task_id)
            return _to_task(row) if row else None

    async def save(self, task: Task) -> None:
        async with self._sessions() as session:
            row = await session.get(TaskRow, task.id)
            if row is None:
                raise KeyError(task.id)
            for key, value in _row_values(task).items():
                setattr(row, key, value)
            await session.commit()

    async def delete(self, task_id: str) -> bool:
        async with self._sessions() as session:
            result = await session.execute(delete(TaskRow).where(TaskRow.id == task_id))
            await session.commit()
            return result.rowcount > 0

    async def _select(self, *criteria) -> list[Task]:
        stmt = select(TaskRow).where(*criteria).order_by(TaskRow.created_at)
        async with self._sessions() as session:
            rows = (await session.scalars(stmt)).all()
        return [_to_task(row) for row in rows]

    async def list_all(self) -> list[Task]:
        return await self._select()

    async def list_by_status(self, status: str) -> list[Task]:
        return await self._select(TaskRow.status == status)

    async def list_by_type(self, task_type: TaskType) -> list[Task]:
        return await self._select(TaskRow.type == TaskType(task_type).value)

    async def append_transition(self, entry: TransitionLogEntry) -> None:
        async with self._sessions() as session:
            session.add(TransitionRow(**entry.model_dump()))
            await session.commit()

    async def get_transitions(self, task_id: str, limit: int | None = None) -> list[TransitionLogEntry]:
        stmt = select(TransitionRow).where(TransitionRow.task_id == task_id).order_by(TransitionRow.id.desc())
        if limit is not None:
            stmt = stmt.limit(max(limit, 0))
        async with self._sessions() as session:
            rows = (await session.scalars(stmt)).all()
        return [_to_entry(row) for row in reversed(rows)]

    async def delete_transitions(self, task_id: str) -> int:
        async with self._sessions() as session:
            result = await session.execute(delete(TransitionRow).where(TransitionRow.task_id == task_id))
            await session.commit()
            return result.rowcount

