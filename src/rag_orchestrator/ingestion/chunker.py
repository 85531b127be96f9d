"""Text chunking strategies."""

from __future__ import annotations

from langchain_text_splitters import RecursiveCharacterTextSplitter

from rag_orchestrator.ingestion.base import Chunk, SplitOptions, Splitter


class RecursiveTextSplitter(Splitter):
    """Split text on paragraph, line, sentence, then word boundaries.

    Splitter instances are cached per (chunk_size, chunk_overlap) pair.
    """

    separators = ["\n\n", "\n", ". ", " ", ""]

    def __init__(self, default_options: SplitOptions | None = None) -> None:
        self.default_options = default_options or SplitOptions()
        self._splitters: dict[tuple[int, int], RecursiveCharacterTextSplitter] = {}

    def _splitter(self, options: SplitOptions) -> RecursiveCharacterTextSplitter:
        key = (options.chunk_size, min(options.chunk_overlap, options.chunk_size - 1))
        splitter = self._splitters.get(key)
        if splitter is None:
            splitter = self._splitters[key] = RecursiveCharacterTextSplitter(
                chunk_size=key[0],
                chunk_overlap=key[1],
                length_function=len,
                separators=self.separators,
            )
        return splitter

    def split(self, doc_id: str, content: str, options: SplitOptions | None = None) -> list[Chunk]:
        """Split *content* into ordered chunks for embedding.

        Parameters
        ----------
        doc_id:
            Owning document; recorded on every chunk.
        content:
            Full document text.
        options:
            Chunk size and overlap in characters. Falls back to the
            splitter's defaults.

        Returns
        -------
        list[Chunk]
            Chunks numbered from zero. Empty for blank content.
        """
        if not content.strip():
            return []
        texts = self._splitter(options or self.default_options).split_text(content)
        return [
            Chunk(doc_id=doc_id, index=i, content=text, metadata={"chunk_count": len(texts)})
            for i, text in enumerate(texts)
        ]
