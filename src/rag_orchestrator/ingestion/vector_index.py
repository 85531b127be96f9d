"""Chroma implementation of the vector-index abstraction."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import chromadb

from rag_orchestrator.config import settings
from rag_orchestrator.ingestion.base import VectorIndex, VectorPoint

logger = logging.getLogger(__name__)


def _flat_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    # Chroma metadata values must be flat str/int/float/bool
    return {k: v for k, v in metadata.items() if isinstance(v, (str, int, float, bool))}


class ChromaVectorIndex(VectorIndex):
    """Chroma-backed vector index; one Chroma collection per collection id.

    Parameters
    ----------
    host:
        Chroma server hostname.
    port:
        Chroma server port.
    distance_metric:
        HNSW space used when a collection is first created.
    upsert_batch_size:
        Max records per upsert call (Chroma caps batch size).
    client:
        Pre-built Chroma client; overrides *host* and *port*.
    """

    def __init__(
        self,
        *,
        host: str = settings.chroma_host,
        port: int = settings.chroma_port,
        distance_metric: str = "cosine",
        upsert_batch_size: int = 5000,
        client: Any | None = None,
    ) -> None:
        self._client = client if client is not None else chromadb.HttpClient(host=host, port=port)
        self.distance_metric = distance_metric
        self.upsert_batch_size = upsert_batch_size

    def _collection(self, collection_id: str):  # noqa: ANN202
        return self._client.get_or_create_collection(
            name=collection_id,
            metadata={"hnsw:space": self.distance_metric},
        )

    def _collection_names(self) -> list[str]:
        # Older clients return Collection objects, newer ones plain names.
        return [getattr(c, "name", c) for c in self._client.list_collections()]

    # -- VectorIndex overrides ------------------------------------------------

    def _upsert(self, collection_id: str, points: list[VectorPoint]) -> None:
        collection = self._collection(collection_id)
        for start in range(0, len(points), self.upsert_batch_size):
            batch = points[start : start + self.upsert_batch_size]
            collection.upsert(
                ids=[p.id for p in batch],
                embeddings=[p.vector for p in batch],
                documents=[p.content for p in batch],
                metadatas=[_flat_metadata(p.metadata) for p in batch],
            )
        logger.info("Upserted %d vectors into %s", len(points), collection_id)

    async def upsert(self, collection_id: str, points: list[VectorPoint]) -> None:
        if points:
            await asyncio.to_thread(self._upsert, collection_id, points)

    def _delete_by_doc(self, doc_id: str, collection_id: str | None) -> None:
        names = [collection_id] if collection_id else self._collection_names()
        for name in names:
            self._collection(name).delete(where={"doc_id": doc_id})

    async def delete_by_doc(self, doc_id: str, collection_id: str | None = None) -> None:
        await asyncio.to_thread(self._delete_by_doc, doc_id, collection_id)

    def _delete_by_collection(self, collection_id: str) -> None:
        if collection_id in self._collection_names():
            self._client.delete_collection(name=collection_id)
            logger.info("Deleted collection %s", collection_id)

    async def delete_by_collection(self, collection_id: str) -> None:
        await asyncio.to_thread(self._delete_by_collection, collection_id)

    def health_check(self) -> bool:
        try:
            self._client.heartbeat()
            return True
        except Exception:
            logger.warning("Chroma health-check failed", exc_info=True)
            return False
