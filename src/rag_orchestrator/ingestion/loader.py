"""Read uploaded files and decode them to text."""

from __future__ import annotations

import asyncio
import io
from pathlib import Path, PurePath

from bs4 import BeautifulSoup

from rag_orchestrator.errors import DocumentNotFoundError, UnsupportedDocumentError
from rag_orchestrator.ingestion.base import FileLoader
from rag_orchestrator.ingestion.text import normalise
from rag_orchestrator.orchestration.models import UploadFile


def _pdf_text(raw: bytes) -> str:
    from pypdf import PdfReader
    from pypdf.errors import PdfReadError

    try:
        reader = PdfReader(io.BytesIO(raw))
        return "\n\n".join(page.extract_text() or "" for page in reader.pages)
    except PdfReadError as exc:
        raise UnsupportedDocumentError(f"Corrupted PDF: {exc}") from exc


def decode_text(raw: bytes, file_name: str) -> str:
    """Decode *raw* according to the extension of *file_name*.

    PDF pages are extracted with pypdf, HTML is stripped to its visible
    text, everything else is read as UTF-8.
    """
    suffix = PurePath(file_name).suffix.lower()
    if suffix == ".pdf":
        text = _pdf_text(raw)
    elif suffix in (".html", ".htm"):
        soup = BeautifulSoup(raw, "html.parser")
        for tag in soup(["script", "style", "noscript"]):
            tag.decompose()
        text = soup.get_text(separator="\n", strip=True)
    else:
        text = raw.decode("utf-8", errors="replace")
    return normalise(text)


class LocalFileLoader(FileLoader):
    """Load files from the local filesystem.

    Parameters
    ----------
    root:
        Relative file paths are resolved against this directory.
    """

    def __init__(self, root: str | Path | None = None) -> None:
        self.root = Path(root) if root else None

    def _path(self, file: UploadFile) -> Path:
        if not file.path:
            raise DocumentNotFoundError(f"File {file.name} has no path")
        path = Path(file.path)
        if self.root is not None and not path.is_absolute():
            path = self.root / path
        return path

    def _read(self, file: UploadFile) -> bytes:
        path = self._path(file)
        if not path.is_file():
            raise DocumentNotFoundError(f"File {file.name} not found at {path}")
        return path.read_bytes()

    async def load(self, file: UploadFile) -> bytes:
        return await asyncio.to_thread(self._read, file)

    async def load_text(self, file: UploadFile) -> str:
        raw = await self.load(file)
        return await asyncio.to_thread(decode_text, raw, file.name)
