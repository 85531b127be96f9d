"""
Ingestion — the collaborators that split, embed, and index documents.

The orchestration layer only sees the abstract interfaces in
:mod:`rag_orchestrator.ingestion.base`; the classes below are the
default implementations.

Public surface
--------------
- :class:`Splitter`, :class:`EmbeddingService`, :class:`VectorIndex`,
  :class:`DocumentRepository`, :class:`FileLoader`, :class:`Crawler` — interfaces.
- :class:`RecursiveTextSplitter` — LangChain recursive character splitter.
- :class:`HuggingFaceEmbeddingService` — sentence-transformer embeddings.
- :class:`ChromaVectorIndex` — default Chroma backend (lazy import).
- :class:`InMemoryDocumentRepository` — in-process document store.
- :class:`LocalFileLoader` — filesystem loader.
- :class:`HttpCrawler` — single-page web fetcher.
"""

from rag_orchestrator.ingestion.base import (
    Chunk,
    CrawledPage,
    Crawler,
    DocumentRecord,
    DocumentRepository,
    EmbeddingService,
    FileLoader,
    SplitOptions,
    Splitter,
    VectorIndex,
    VectorPoint,
)
from rag_orchestrator.ingestion.chunker import RecursiveTextSplitter
from rag_orchestrator.ingestion.embedder import HuggingFaceEmbeddingService
from rag_orchestrator.ingestion.loader import LocalFileLoader
from rag_orchestrator.ingestion.repository import InMemoryDocumentRepository

__all__ = [
    "ChromaVectorIndex",
    "Chunk",
    "CrawledPage",
    "Crawler",
    "DocumentRecord",
    "DocumentRepository",
    "EmbeddingService",
    "FileLoader",
    "HttpCrawler",
    "HuggingFaceEmbeddingService",
    "InMemoryDocumentRepository",
    "LocalFileLoader",
    "RecursiveTextSplitter",
    "SplitOptions",
    "Splitter",
    "VectorIndex",
    "VectorPoint",
]


def __getattr__(name: str):  # noqa: ANN001
    """Lazy-import network-bound backends to avoid pulling in their clients at import time."""
    if name == "ChromaVectorIndex":
        from rag_orchestrator.ingestion.vector_index import ChromaVectorIndex

        return ChromaVectorIndex
    if name == "HttpCrawler":
        from rag_orchestrator.ingestion.crawler import HttpCrawler

        return HttpCrawler
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
