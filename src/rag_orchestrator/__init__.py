"""Task orchestration for RAG ingestion: document sync, batch upload, and web crawl."""

__version__ = "0.1.0"
