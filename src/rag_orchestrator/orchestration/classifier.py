"""Failure classification and per-category retry strategies."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, Field

from rag_orchestrator.errors import ErrorCategory, ErrorType

logger = logging.getLogger(__name__)


class RetryStrategy(BaseModel):
    """Backoff parameters for one error category.

    Attributes
    ----------
    max_retries:
        Number of retries allowed before the task is finalized as failed.
    initial_delay_ms:
        Delay before the first retry.
    max_delay_ms:
        Upper bound on any computed delay, jitter included.
    backoff_multiplier:
        Growth factor applied per retry.
    jitter:
        Whether to spread delays by a uniform random offset.
    jitter_range:
        Fraction of the delay used as the jitter half-width.
    """

    model_config = {"frozen": True}

    max_retries: int = Field(default=5, ge=0)
    initial_delay_ms: int = Field(default=1000, ge=0)
    max_delay_ms: int = Field(default=60000, ge=0)
    backoff_multiplier: float = Field(default=2.0, gt=0)
    jitter: bool = True
    jitter_range: float = Field(default=0.1, ge=0, le=1)


DEFAULT_RETRY_STRATEGY = RetryStrategy()

CATEGORY_RETRY_OVERRIDES: dict[ErrorCategory, dict[str, Any]] = {
    ErrorCategory.NETWORK_TIMEOUT: {"max_retries": 8, "initial_delay_ms": 500, "max_delay_ms": 30000},
    ErrorCategory.NETWORK_CONNECTION: {"max_retries": 6, "initial_delay_ms": 2000, "max_delay_ms": 60000},
    ErrorCategory.DATABASE_CONNECTION: {"max_retries": 5, "initial_delay_ms": 1000, "max_delay_ms": 30000},
    ErrorCategory.DATABASE_TIMEOUT: {"max_retries": 4, "initial_delay_ms": 2000, "max_delay_ms": 20000},
    ErrorCategory.VECTOR_INDEX_CONNECTION: {"max_retries": 5, "initial_delay_ms": 1000, "max_delay_ms": 30000},
    ErrorCategory.VECTOR_INDEX_CAPACITY: {"max_retries": 10, "initial_delay_ms": 5000, "max_delay_ms": 120000},
    ErrorCategory.EMBEDDING_RATE_LIMIT: {
        "max_retries": 10,
        "initial_delay_ms": 10000,
        "max_delay_ms": 300000,
        "backoff_multiplier": 1.5,
    },
    ErrorCategory.EMBEDDING_SERVICE_UNAVAILABLE: {
        "max_retries": 8,
        "initial_delay_ms": 5000,
        "max_delay_ms": 120000,
    },
    ErrorCategory.MEMORY_INSUFFICIENT: {"max_retries": 3, "initial_delay_ms": 10000, "max_delay_ms": 60000},
    # Unclassified failures get retried, but not for long.
    ErrorCategory.UNKNOWN: {"max_retries": 3},
}

ERROR_TYPES: dict[ErrorCategory, ErrorType] = {
    ErrorCategory.NETWORK_TIMEOUT: ErrorType.TEMPORARY,
    ErrorCategory.NETWORK_CONNECTION: ErrorType.TEMPORARY,
    ErrorCategory.NETWORK_DNS: ErrorType.TEMPORARY,
    ErrorCategory.DATABASE_CONNECTION: ErrorType.TEMPORARY,
    ErrorCategory.DATABASE_CONSTRAINT: ErrorType.PERMANENT,
    ErrorCategory.DATABASE_TIMEOUT: ErrorType.TEMPORARY,
    ErrorCategory.VECTOR_INDEX_CONNECTION: ErrorType.TEMPORARY,
    ErrorCategory.VECTOR_INDEX_CAPACITY: ErrorType.TEMPORARY,
    ErrorCategory.VECTOR_INDEX_INVALID_VECTOR: ErrorType.PERMANENT,
    ErrorCategory.EMBEDDING_RATE_LIMIT: ErrorType.TEMPORARY,
    ErrorCategory.EMBEDDING_QUOTA_EXCEEDED: ErrorType.PERMANENT,
    ErrorCategory.EMBEDDING_INVALID_INPUT: ErrorType.PERMANENT,
    ErrorCategory.EMBEDDING_SERVICE_UNAVAILABLE: ErrorType.TEMPORARY,
    ErrorCategory.DOCUMENT_NOT_FOUND: ErrorType.PERMANENT,
    ErrorCategory.DOCUMENT_CORRUPTED: ErrorType.PERMANENT,
    ErrorCategory.DOCUMENT_TOO_LARGE: ErrorType.PERMANENT,
    ErrorCategory.DOCUMENT_EMPTY: ErrorType.PERMANENT,
    ErrorCategory.VALIDATION: ErrorType.PERMANENT,
    ErrorCategory.MEMORY_INSUFFICIENT: ErrorType.TEMPORARY,
    ErrorCategory.DISK_SPACE_INSUFFICIENT: ErrorType.PERMANENT,
    ErrorCategory.UNKNOWN: ErrorType.UNKNOWN,
}

# Checked in order; first match wins.
_BUILTIN_CATEGORIES: tuple[tuple[type[BaseException], ErrorCategory], ...] = (
    (TimeoutError, ErrorCategory.NETWORK_TIMEOUT),
    (ConnectionError, ErrorCategory.NETWORK_CONNECTION),
    (FileNotFoundError, ErrorCategory.DOCUMENT_NOT_FOUND),
    (MemoryError, ErrorCategory.MEMORY_INSUFFICIENT),
    (UnicodeDecodeError, ErrorCategory.DOCUMENT_CORRUPTED),
)

_NETWORK_KEYWORDS = (
    "network", "connection", "connect", "timeout", "etimedout",
    "enotfound", "econnrefused", "econnreset", "socket", "dns",
)
_DATABASE_KEYWORDS = (
    "database", "sqlite", "sql", "db", "constraint", "unique",
    "foreign key", "timeout", "locked", "busy",
)
_VECTOR_INDEX_KEYWORDS = (
    "qdrant", "chroma", "vector", "collection", "point", "embedding",
    "dimension", "capacity", "overloaded",
)
_EMBEDDING_KEYWORDS = (
    "openai", "embedding", "api", "rate limit", "quota", "billing",
    "service unavailable", "maintenance", "invalid input", "validation",
)
_DOCUMENT_KEYWORDS = (
    "document", "file", "content", "not found", "corrupted",
    "invalid format", "parse error", "too large", "empty", "blank",
)
_RESOURCE_KEYWORDS = ("memory", "out of memory", "heap", "disk", "space", "storage")


def _has_any(text: str, keywords: tuple[str, ...]) -> bool:
    return any(keyword in text for keyword in keywords)


class ErrorClassifier:
    """Map an exception to an :class:`ErrorCategory` and a retry strategy.

    Parameters
    ----------
    default_strategy:
        Baseline strategy every category starts from.
    overrides:
        Per-category field overrides merged onto *default_strategy*.
        Defaults to :data:`CATEGORY_RETRY_OVERRIDES`.
    """

    def __init__(
        self,
        default_strategy: RetryStrategy = DEFAULT_RETRY_STRATEGY,
        overrides: Mapping[ErrorCategory, Mapping[str, Any]] | None = None,
    ) -> None:
        self._default = default_strategy
        self._overrides = dict(CATEGORY_RETRY_OVERRIDES if overrides is None else overrides)

    # -- classification -------------------------------------------------------

    def classify(self, error: BaseException) -> ErrorCategory:
        """Return the category of *error*.

        Resolution order: an explicit ``category`` attribute, then known
        built-in exception types, then keyword matching over the lower-cased
        message and exception class name.
        """
        explicit = getattr(error, "category", None)
        if isinstance(explicit, ErrorCategory):
            return explicit

        for exc_type, category in _BUILTIN_CATEGORIES:
            if isinstance(error, exc_type):
                return category

        message = str(error).lower()
        name = type(error).__name__.lower()
        text = f"{message} {name}"

        if _has_any(text, _NETWORK_KEYWORDS):
            if "timeout" in text or "etimedout" in text:
                return ErrorCategory.NETWORK_TIMEOUT
            if "enotfound" in text or "dns" in text:
                return ErrorCategory.NETWORK_DNS
            return ErrorCategory.NETWORK_CONNECTION

        if _has_any(text, _DATABASE_KEYWORDS):
            if "timeout" in text or "database is locked" in text:
                return ErrorCategory.DATABASE_TIMEOUT
            if "constraint" in text or "unique" in text or "foreign key" in text:
                return ErrorCategory.DATABASE_CONSTRAINT
            return ErrorCategory.DATABASE_CONNECTION

        if _has_any(text, _VECTOR_INDEX_KEYWORDS):
            if "connection" in text or "connect" in text or "network" in text:
                return ErrorCategory.VECTOR_INDEX_CONNECTION
            if "capacity" in text or "overloaded" in text or "rate limit" in text:
                return ErrorCategory.VECTOR_INDEX_CAPACITY
            if "invalid vector" in text or "vector size" in text or "dimension" in text:
                return ErrorCategory.VECTOR_INDEX_INVALID_VECTOR

        if _has_any(text, _EMBEDDING_KEYWORDS):
            if "rate limit" in text or "too many requests" in text:
                return ErrorCategory.EMBEDDING_RATE_LIMIT
            if "quota" in text or "billing" in text or "limit exceeded" in text:
                return ErrorCategory.EMBEDDING_QUOTA_EXCEEDED
            if "invalid input" in text or "bad request" in text or "validation" in text:
                return ErrorCategory.EMBEDDING_INVALID_INPUT
            if "service unavailable" in text or "maintenance" in text or "503" in text:
                return ErrorCategory.EMBEDDING_SERVICE_UNAVAILABLE

        if _has_any(text, _DOCUMENT_KEYWORDS):
            if "not found" in text or "does not exist" in text:
                return ErrorCategory.DOCUMENT_NOT_FOUND
            if "corrupted" in text or "invalid format" in text or "parse error" in text:
                return ErrorCategory.DOCUMENT_CORRUPTED
            if "too large" in text or "size limit" in text:
                return ErrorCategory.DOCUMENT_TOO_LARGE
            if "empty" in text or "no content" in text or "blank" in text:
                return ErrorCategory.DOCUMENT_EMPTY

        if _has_any(text, _RESOURCE_KEYWORDS):
            if "memory" in text or "heap" in text:
                return ErrorCategory.MEMORY_INSUFFICIENT
            return ErrorCategory.DISK_SPACE_INSUFFICIENT

        return ErrorCategory.UNKNOWN

    @staticmethod
    def error_type(category: ErrorCategory) -> ErrorType:
        return ERROR_TYPES.get(category, ErrorType.UNKNOWN)

    def is_temporary(self, error: BaseException) -> bool:
        """Temporary and unknown failures are worth retrying."""
        return self.error_type(self.classify(error)) is not ErrorType.PERMANENT

    def is_permanent(self, error: BaseException) -> bool:
        return not self.is_temporary(error)

    # -- retry strategies -----------------------------------------------------

    def strategy_for(self, category: ErrorCategory) -> RetryStrategy:
        override = self._overrides.get(category)
        if not override:
            return self._default
        return self._default.model_copy(update=dict(override))

    def get_retry_strategy(self, error: BaseException) -> RetryStrategy:
        return self.strategy_for(self.classify(error))
