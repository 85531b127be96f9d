"""In-process document repository."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from rag_orchestrator.ingestion.base import Chunk, DocumentRecord, DocumentRepository


class InMemoryDocumentRepository(DocumentRepository):
    """Documents and chunks held in dictionaries for the lifetime of the instance."""

    def __init__(self, documents: list[DocumentRecord] | None = None) -> None:
        self._documents: dict[str, DocumentRecord] = {d.id: d for d in documents or []}
        self._chunks: dict[str, list[Chunk]] = {}
        self._lock = asyncio.Lock()

    async def get_document(self, doc_id: str) -> DocumentRecord | None:
        doc = self._documents.get(doc_id)
        return doc.model_copy() if doc else None

    async def save_document(self, document: DocumentRecord) -> None:
        async with self._lock:
            self._documents[document.id] = document.model_copy()

    async def delete_document(self, doc_id: str) -> bool:
        async with self._lock:
            self._chunks.pop(doc_id, None)
            return self._documents.pop(doc_id, None) is not None

    async def list_documents(self, collection_id: str | None = None) -> list[DocumentRecord]:
        docs = [d for d in self._documents.values() if collection_id is None or d.collection_id == collection_id]
        return [d.model_copy() for d in sorted(docs, key=lambda d: d.created_at)]

    async def replace_chunks(self, doc_id: str, chunks: list[Chunk]) -> None:
        async with self._lock:
            self._chunks[doc_id] = [c.model_copy(deep=True) for c in chunks]
            doc = self._documents.get(doc_id)
            if doc is not None and doc.synced:
                self._documents[doc_id] = doc.model_copy(update={"synced": False, "synced_at": None})

    async def get_chunks(self, doc_id: str) -> list[Chunk]:
        return [c.model_copy(deep=True) for c in self._chunks.get(doc_id, [])]

    async def mark_synced(self, doc_id: str) -> None:
        async with self._lock:
            doc = self._documents.get(doc_id)
            if doc is not None:
                self._documents[doc_id] = doc.model_copy(
                    update={"synced": True, "synced_at": datetime.now(timezone.utc)}
                )
