"""Shared configuration loaded from environment / .env file."""

from __future__ import annotations

import logging.config

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application-wide settings, populated from env vars or .env file."""

    # Vector store
    chroma_host: str = "localhost"
    chroma_port: int = 8000
    chroma_collection: str = "rag_documents"

    # Embedding
    embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    embed_batch_size: int = Field(default=64, ge=1)

    # Splitting
    chunk_size: int = Field(default=512, ge=1)
    chunk_overlap: int = Field(default=64, ge=0)

    # Uploads and crawling
    max_upload_bytes: int = Field(default=50 * 1024 * 1024, description="Per-file upload limit")
    crawl_timeout_seconds: int = 60

    # Task orchestration
    task_store_url: str = Field(
        default="memory",
        description=(
            "Where task records live. 'memory' keeps them in-process; any "
            "SQLAlchemy async URL persists them, e.g. "
            "'sqlite+aiosqlite:///./tasks.db'"
        ),
    )
    batch_concurrency: int = Field(default=3, ge=1)
    task_retention_minutes: int = 30
    progress_retention_minutes: int = 30
    maintenance_interval_seconds: float = 300.0
    scheduler_poll_seconds: float = 1.0

    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


def setup_logging(level: str | None = None) -> None:
    """Configure a single console handler for the ``rag_orchestrator`` tree."""
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                },
            },
            "loggers": {
                "rag_orchestrator": {
                    "handlers": ["console"],
                    "level": (level or settings.log_level).upper(),
                    "propagate": False,
                },
            },
        }
    )


# Singleton — import `settings` wherever needed.
settings = Settings()
