"""Collaborator interfaces the ingestion strategies depend on.

Each collaborator is an abstract base class with one default
implementation in this package. Swapping a backend (Qdrant instead of
Chroma, OpenAI instead of sentence-transformers, a SQL document
repository, …) only requires subclassing the matching interface.
"""

from __future__ import annotations

import hashlib
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from rag_orchestrator.orchestration.models import UploadFile


# ── Data carried between collaborators ──────────────────────────────────


class SplitOptions(BaseModel):
    chunk_size: int = Field(default=512, ge=1)
    chunk_overlap: int = Field(default=64, ge=0)


class Chunk(BaseModel):
    doc_id: str
    index: int = Field(ge=0)
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class VectorPoint(BaseModel):
    """One embedded chunk ready for the vector index.

    Attributes
    ----------
    id:
        Deterministic point id, so re-indexing a chunk overwrites it.
    vector:
        Dense embedding.
    content:
        Chunk text stored alongside the vector.
    metadata:
        Flat payload (``doc_id``, ``chunk_index``, source info).
    """

    id: str
    vector: list[float]
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)

    @staticmethod
    def point_id(doc_id: str, chunk_index: int) -> str:
        return hashlib.sha256(f"{doc_id}:{chunk_index}".encode()).hexdigest()[:32]


class DocumentRecord(BaseModel):
    id: str
    collection_id: str
    name: str
    content: str = ""
    source: str | None = None
    content_type: str = "text/plain"
    synced: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    synced_at: datetime | None = None


class CrawledPage(BaseModel):
    url: str
    title: str = ""
    text: str
    content_type: str = "text/html"
    fetched_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ── Interfaces ──────────────────────────────────────────────────────────


class Splitter(ABC):
    """Turns document text into ordered chunks. CPU-bound and synchronous."""

    @abstractmethod
    def split(self, doc_id: str, content: str, options: SplitOptions | None = None) -> list[Chunk]:
        ...


class EmbeddingService(ABC):
    @abstractmethod
    async def generate_batch(self, texts: list[str]) -> list[list[float]]:
        """Return one vector per input text, in order."""
        ...


class VectorIndex(ABC):
    """Backend-agnostic vector index used at ingestion time."""

    # -- required overrides ---------------------------------------------------

    @abstractmethod
    async def upsert(self, collection_id: str, points: list[VectorPoint]) -> None:
        ...

    @abstractmethod
    async def delete_by_doc(self, doc_id: str, collection_id: str | None = None) -> None:
        ...

    @abstractmethod
    async def delete_by_collection(self, collection_id: str) -> None:
        ...

    # -- optional overrides ---------------------------------------------------

    def health_check(self) -> bool:
        """Return ``True`` when the backend is reachable and ready."""
        return True


class DocumentRepository(ABC):
    """Storage for documents and their chunks."""

    @abstractmethod
    async def get_document(self, doc_id: str) -> DocumentRecord | None:
        ...

    @abstractmethod
    async def save_document(self, document: DocumentRecord) -> None:
        """Insert or replace *document*."""
        ...

    @abstractmethod
    async def delete_document(self, doc_id: str) -> bool:
        ...

    @abstractmethod
    async def list_documents(self, collection_id: str | None = None) -> list[DocumentRecord]:
        ...

    @abstractmethod
    async def replace_chunks(self, doc_id: str, chunks: list[Chunk]) -> None:
        """Drop every chunk of *doc_id* and store *chunks* instead."""
        ...

    @abstractmethod
    async def get_chunks(self, doc_id: str) -> list[Chunk]:
        ...

    @abstractmethod
    async def mark_synced(self, doc_id: str) -> None:
        ...


class FileLoader(ABC):
    @abstractmethod
    async def load(self, file: UploadFile) -> bytes:
        """Return the raw bytes of *file*."""
        ...

    @abstractmethod
    async def load_text(self, file: UploadFile) -> str:
        """Return the decoded text of *file*."""
        ...


class Crawler(ABC):
    @abstractmethod
    async def fetch(self, url: str) -> CrawledPage:
        ...
