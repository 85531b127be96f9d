"""Domain models for tasks, transitions, and batch progress."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, ClassVar, Literal, Union

from pydantic import BaseModel, Field, model_validator


class TaskType(str, Enum):
    DOCUMENT_SYNC = "document_sync"
    BATCH_UPLOAD = "batch_upload"
    WEB_CRAWL = "web_crawl"


# ── Task contexts ───────────────────────────────────────────────────────


class TaskContextBase(BaseModel):
    """Common base for the typed payload attached to a task.

    ``submission_fields`` names the caller-supplied part of the context.
    Two submissions for the same task id are the same request when these
    fields match; everything else is state written by the strategy.
    """

    submission_fields: ClassVar[frozenset[str]] = frozenset()

    def submission(self) -> dict[str, Any]:
        return self.model_dump(mode="json", include=set(self.submission_fields))


class DocumentSyncContext(TaskContextBase):
    submission_fields: ClassVar[frozenset[str]] = frozenset({"doc_id"})

    task_type: Literal["document_sync"] = "document_sync"
    doc_id: str = Field(min_length=1)
    collection_id: str | None = None
    chunk_count: int | None = None


class UploadFile(BaseModel):
    """One file of a batch upload.

    Attributes
    ----------
    id:
        Caller-assigned identifier, unique within the batch.
    name:
        Original file name; its extension decides how content is decoded.
    size:
        Size in bytes as reported by the caller.
    mime_type:
        Optional MIME type hint.
    path:
        Local path the loader reads the file from.
    """

    id: str = Field(min_length=1)
    name: str
    size: int = Field(ge=0)
    mime_type: str = ""
    path: str | None = None


class UploadOptions(BaseModel):
    chunk_size: int = Field(default=512, ge=1)
    chunk_overlap: int = Field(default=64, ge=0)
    max_file_size: int = Field(default=50 * 1024 * 1024, ge=1)


class FileStage(str, Enum):
    PENDING = "pending"
    VALIDATED = "validated"
    UPLOADED = "uploaded"
    INDEXED = "indexed"
    FAILED = "failed"


class FileError(BaseModel):
    file_id: str
    file_name: str
    error: str
    stage: str = ""


class BatchResults(BaseModel):
    total: int = 0
    successful: int = 0
    failed: int = 0
    errors: list[FileError] = Field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.successful + self.failed


class BatchUploadContext(TaskContextBase):
    submission_fields: ClassVar[frozenset[str]] = frozenset({"batch_id", "collection_id", "files", "options"})

    task_type: Literal["batch_upload"] = "batch_upload"
    batch_id: str = Field(min_length=1)
    collection_id: str = Field(min_length=1)
    files: list[UploadFile] = Field(min_length=1)
    options: UploadOptions = Field(default_factory=UploadOptions)
    file_states: dict[str, FileStage] = Field(default_factory=dict)
    doc_ids: dict[str, str] = Field(default_factory=dict)
    errors: list[FileError] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_file_ids(self) -> BatchUploadContext:
        ids = [f.id for f in self.files]
        if len(ids) != len(set(ids)):
            raise ValueError("file ids must be unique within a batch")
        return self

    def stage_of(self, file_id: str) -> FileStage:
        return self.file_states.get(file_id, FileStage.PENDING)

    @property
    def results(self) -> BatchResults:
        stages = [self.stage_of(f.id) for f in self.files]
        return BatchResults(
            total=len(self.files),
            successful=sum(1 for s in stages if s is FileStage.INDEXED),
            failed=sum(1 for s in stages if s is FileStage.FAILED),
            errors=list(self.errors),
        )


class WebCrawlContext(TaskContextBase):
    submission_fields: ClassVar[frozenset[str]] = frozenset({"url", "collection_id"})

    task_type: Literal["web_crawl"] = "web_crawl"
    url: str = Field(min_length=1)
    collection_id: str = Field(min_length=1)
    doc_id: str | None = None
    title: str | None = None
    char_count: int | None = None


TaskContext = Annotated[
    Union[DocumentSyncContext, BatchUploadContext, WebCrawlContext],
    Field(discriminator="task_type"),
]


# ── Task & transitions ──────────────────────────────────────────────────


class Task(BaseModel):
    """A durable unit of work driven through its strategy's state machine.

    Attributes
    ----------
    id:
        Caller-supplied unique identifier.
    type:
        Selects the strategy and the context variant.
    status:
        Current state; only ever changed through a legal transition.
    context:
        Typed payload, discriminated on ``task_type``.
    progress:
        Completion percentage, never decreasing.
    retry_count:
        Retries committed so far.
    max_retries:
        Retry budget that applied to the latest failure.
    checkpoint:
        Last working state the task reached successfully.
    last_error:
        Message of the latest failure.
    completed_at:
        Set once the task is finalized in a terminal state.
    """

    id: str = Field(min_length=1)
    type: TaskType
    status: str
    context: TaskContext
    progress: float = Field(default=0.0, ge=0, le=100)
    retry_count: int = Field(default=0, ge=0)
    max_retries: int | None = None
    checkpoint: str | None = None
    last_error: str | None = None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @model_validator(mode="after")
    def _context_matches_type(self) -> Task:
        if self.context.task_type != self.type.value:
            raise ValueError(
                f"context of type {self.context.task_type!r} does not match task type {self.type.value!r}"
            )
        return self


class TransitionLogEntry(BaseModel):
    task_id: str
    from_state: str
    to_state: str
    event: str
    timestamp: datetime
    success: bool = True
    error: str | None = None


class TaskStats(BaseModel):
    """Snapshot of the task population.

    ``by_status`` is keyed by task type, then state. Rates are computed
    over finalized tasks, except ``retry_rate`` which covers all tasks.
    """

    total: int = 0
    by_type: dict[str, int] = Field(default_factory=dict)
    by_status: dict[str, dict[str, int]] = Field(default_factory=dict)
    success_rate: float = 0.0
    failure_rate: float = 0.0
    retry_rate: float = 0.0
    average_execution_seconds: float | None = None


class HealthReport(BaseModel):
    """Reachability of the vector index and the state of the job queue."""

    vector_index: bool
    scheduler_running: bool
    scheduled_jobs: int = 0
    running_jobs: int = 0
    pending_retries: int = 0


# ── Batch progress ──────────────────────────────────────────────────────


class BatchOperationType(str, Enum):
    UPLOAD = "upload"
    DELETE = "delete"
    SYNC = "sync"


class BatchStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (BatchStatus.COMPLETED, BatchStatus.FAILED)


class ItemError(BaseModel):
    item_id: str
    error: str


class BatchOperationProgress(BaseModel):
    """Aggregate view of a bulk operation.

    Counters always satisfy ``successful + failed <= processed <= total``;
    once the status is terminal every item is accounted for.
    """

    operation_id: str
    type: BatchOperationType
    status: BatchStatus = BatchStatus.PENDING
    total: int = Field(ge=0)
    processed: int = Field(default=0, ge=0)
    successful: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    start_time: datetime
    end_time: datetime | None = None
    estimated_time_remaining: float | None = None
    errors: list[ItemError] = Field(default_factory=list)

    @model_validator(mode="after")
    def _counters_consistent(self) -> BatchOperationProgress:
        if not self.successful + self.failed <= self.processed <= self.total:
            raise ValueError(
                f"inconsistent counters: successful={self.successful} failed={self.failed} "
                f"processed={self.processed} total={self.total}"
            )
        if self.status.is_terminal and self.successful + self.failed != self.total:
            raise ValueError("terminal progress must account for every item")
        return self

    @property
    def has_failures(self) -> bool:
        return self.failed > 0

    @property
    def percentage(self) -> float:
        if self.total == 0:
            return 100.0 if self.status.is_terminal else 0.0
        return round(self.processed / self.total * 100, 2)
