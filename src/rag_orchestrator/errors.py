"""Error taxonomy and exception hierarchy for task orchestration.

Every failure a stage can raise is eventually mapped to an
:class:`ErrorCategory`, and every category to an :class:`ErrorType`
that decides whether the engine reschedules the task or finalizes it.
Project exceptions that already know their category carry it in a
``category`` attribute so the classifier does not need to guess.
"""

from __future__ import annotations

from enum import Enum


class ErrorType(str, Enum):
    """Retry disposition of a failure."""

    TEMPORARY = "temporary"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


class ErrorCategory(str, Enum):
    """Fine-grained failure category used to pick a retry strategy."""

    NETWORK_TIMEOUT = "network_timeout"
    NETWORK_CONNECTION = "network_connection"
    NETWORK_DNS = "network_dns"

    DATABASE_CONNECTION = "database_connection"
    DATABASE_CONSTRAINT = "database_constraint"
    DATABASE_TIMEOUT = "database_timeout"

    VECTOR_INDEX_CONNECTION = "vector_index_connection"
    VECTOR_INDEX_CAPACITY = "vector_index_capacity"
    VECTOR_INDEX_INVALID_VECTOR = "vector_index_invalid_vector"

    EMBEDDING_RATE_LIMIT = "embedding_rate_limit"
    EMBEDDING_QUOTA_EXCEEDED = "embedding_quota_exceeded"
    EMBEDDING_INVALID_INPUT = "embedding_invalid_input"
    EMBEDDING_SERVICE_UNAVAILABLE = "embedding_service_unavailable"

    DOCUMENT_NOT_FOUND = "document_not_found"
    DOCUMENT_CORRUPTED = "document_corrupted"
    DOCUMENT_TOO_LARGE = "document_too_large"
    DOCUMENT_EMPTY = "document_empty"

    VALIDATION = "validation"

    MEMORY_INSUFFICIENT = "memory_insufficient"
    DISK_SPACE_INSUFFICIENT = "disk_space_insufficient"

    UNKNOWN = "unknown"


# ── Orchestration errors ────────────────────────────────────────────────


class OrchestrationError(Exception):
    """Base class for every error raised by this package."""


class TaskNotFoundError(OrchestrationError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id!r} not found")
        self.task_id = task_id


class DuplicateTaskError(OrchestrationError):
    """A task id is already taken by a different submission."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id!r} already exists with a different context")
        self.task_id = task_id


class InvalidTransitionError(OrchestrationError):
    def __init__(self, task_id: str, state: str, event: str, reason: str = "") -> None:
        message = f"Event {event!r} is not allowed in state {state!r} for task {task_id!r}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.task_id = task_id
        self.state = state
        self.event = event


class StrategyNotFoundError(OrchestrationError):
    def __init__(self, task_type: str) -> None:
        super().__init__(f"No strategy registered for task type {task_type!r}")
        self.task_type = task_type


class StrategyRegistrationError(OrchestrationError):
    """Raised on duplicate registration or a malformed transition table."""


class StageInterrupted(OrchestrationError):
    """The task left the state a running stage started from."""

    def __init__(self, task_id: str, expected: str, actual: str) -> None:
        super().__init__(
            f"Task {task_id!r} moved from {expected!r} to {actual!r} while a stage was running"
        )
        self.task_id = task_id
        self.expected = expected
        self.actual = actual


class TaskValidationError(OrchestrationError):
    """Caller-supplied task input is invalid. Never retried."""

    category = ErrorCategory.VALIDATION


# ── Stage errors (carry their own category) ─────────────────────────────


class StageError(OrchestrationError):
    """A stage failure whose category is known at raise time."""

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(self, message: str, *, category: ErrorCategory | None = None) -> None:
        super().__init__(message)
        if category is not None:
            self.category = category


class DocumentNotFoundError(StageError):
    category = ErrorCategory.DOCUMENT_NOT_FOUND


class EmptyDocumentError(StageError):
    category = ErrorCategory.DOCUMENT_EMPTY


class DocumentTooLargeError(StageError):
    category = ErrorCategory.DOCUMENT_TOO_LARGE


class UnsupportedDocumentError(StageError):
    category = ErrorCategory.DOCUMENT_CORRUPTED


class EmbeddingMismatchError(StageError):
    category = ErrorCategory.EMBEDDING_INVALID_INPUT


class BatchFailedError(StageError):
    """Every item of a batch failed."""

    category = ErrorCategory.VALIDATION
