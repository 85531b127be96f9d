"""Embedding generation."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING

from rag_orchestrator.config import settings
from rag_orchestrator.ingestion.base import EmbeddingService

if TYPE_CHECKING:
    from langchain_core.embeddings import Embeddings

logger = logging.getLogger(__name__)


def get_embedding_function(model_name: str = settings.embedding_model) -> Embeddings:
    """Return the configured sentence-transformer embedding function."""
    from langchain_huggingface import HuggingFaceEmbeddings

    return HuggingFaceEmbeddings(model_name=model_name)


class HuggingFaceEmbeddingService(EmbeddingService):
    """Local sentence-transformer embeddings, computed in a worker thread.

    Parameters
    ----------
    model_name:
        HuggingFace model id.
    batch_size:
        Number of texts handed to the model per call.
    embeddings:
        Pre-built LangChain embeddings object; the model is loaded lazily
        on first use when omitted.
    """

    def __init__(
        self,
        model_name: str = settings.embedding_model,
        *,
        batch_size: int = settings.embed_batch_size,
        embeddings: Embeddings | None = None,
    ) -> None:
        self.model_name = model_name
        self.batch_size = batch_size
        self._embeddings = embeddings

    def _get_embeddings(self) -> Embeddings:
        if self._embeddings is None:
            self._embeddings = get_embedding_function(self.model_name)
        return self._embeddings

    def _embed(self, texts: list[str]) -> list[list[float]]:
        embedder = self._get_embeddings()
        vectors: list[list[float]] = []
        t0 = time.monotonic()
        for start in range(0, len(texts), self.batch_size):
            vectors.extend(embedder.embed_documents(texts[start : start + self.batch_size]))
        logger.debug("Embedded %d texts with %s in %.2fs", len(texts), self.model_name, time.monotonic() - t0)
        return vectors

    async def generate_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        return await asyncio.to_thread(self._embed, texts)
