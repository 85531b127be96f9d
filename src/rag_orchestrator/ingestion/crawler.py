"""Fetch a web page and reduce it to clean text."""

from __future__ import annotations

import asyncio
import logging

import requests
from bs4 import BeautifulSoup

from rag_orchestrator.config import settings
from rag_orchestrator.ingestion.base import CrawledPage, Crawler
from rag_orchestrator.ingestion.text import extract_title_html, extract_title_md, normalise

logger = logging.getLogger(__name__)

_BOILERPLATE_TAGS = ["script", "style", "nav", "footer", "header", "aside", "noscript", "iframe"]


class HttpCrawler(Crawler):
    """Single-page HTTP fetcher.

    Failures surface as ``requests`` exceptions; retrying them is the
    engine's job, so the crawler makes exactly one attempt.

    Parameters
    ----------
    timeout:
        Per-request timeout in seconds.
    headers:
        Extra HTTP headers sent with every request.
    """

    def __init__(self, *, timeout: int = settings.crawl_timeout_seconds, headers: dict[str, str] | None = None) -> None:
        self.timeout = timeout
        self.headers = headers or {}

    def _fetch(self, url: str) -> CrawledPage:
        resp = requests.get(url, headers=self.headers, timeout=self.timeout)
        resp.raise_for_status()

        ctype = resp.headers.get("content-type", "")
        soup = BeautifulSoup(resp.text, "html.parser")
        for tag in soup(_BOILERPLATE_TAGS):
            tag.decompose()

        text = normalise(soup.get_text(separator="\n", strip=True))
        if "markdown" in ctype or url.endswith((".md", ".mdx")):
            return CrawledPage(url=url, title=extract_title_md(text), text=text, content_type="text/markdown")
        return CrawledPage(url=url, title=extract_title_html(soup), text=text, content_type="text/html")

    async def fetch(self, url: str) -> CrawledPage:
        page = await asyncio.to_thread(self._fetch, url)
        logger.info("Fetched %s (%d chars)", url, len(page.text))
        return page
