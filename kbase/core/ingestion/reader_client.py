# ============================================================================
# kbase/core/ingestion/reader_client.py
# ============================================================================
# HTTP client for the external reader service that turns a URL into
# normalized markdown. Centralizes retries, timeouts, and error handling.
#
# Environment-driven configuration (see settings in config.py):
#   - settings.reader_base_url (e.g., https://r.jina.ai)
#   - settings.reader_timeout (float seconds)
#   - settings.reader_max_retries (int)
#   - settings.reader_api_key (optional; sent as Bearer token)
# ============================================================================

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from kbase.config import settings
from kbase.core.utils.text_utils import html_to_text

logger = logging.getLogger("kbase.ingestion.reader")


class ReaderError(RuntimeError):
    """Raised when the reader service fails or returns an invalid response."""


@dataclass
class CrawlResult:
    """Normalized page content returned by the reader."""

    content: str
    title: str = ""


class ReaderClient:
    """Async client for the reader service."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or settings.reader_base_url).rstrip("/")
        self.timeout = timeout or settings.reader_timeout
        self.max_retries = max_retries if max_retries is not None else settings.reader_max_retries
        self.api_key = api_key or settings.reader_api_key
        self._transport = transport

        if not self.base_url:
            raise ValueError("ReaderClient requires a base URL. Set READER_BASE_URL")

    def _headers(self) -> dict:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _parse_response(self, response: httpx.Response) -> CrawlResult:
        if response.status_code >= 400:
            raise ReaderError(f"Reader HTTP {response.status_code}: {response.text[:1000]}")

        ctype = response.headers.get("content-type", "")
        if "application/json" in ctype:
            body = response.json()
            data = body.get("data") if isinstance(body, dict) else None
            if not isinstance(data, dict) or not isinstance(data.get("content"), str):
                raise ReaderError("Reader JSON missing 'data.content' field")
            return CrawlResult(content=data["content"], title=data.get("title") or "")

        # Fallback: raw page body
        if "text/html" in ctype:
            return CrawlResult(content=html_to_text(response.text))
        return CrawlResult(content=response.text)

    async def crawl(self, url: str) -> CrawlResult:
        """
        Fetch a URL through the reader and return its content and title.

        Expected success responses:
          - JSON: {"data": {"content": "...", "title": "..."}}  (preferred)
          - text/plain or text/html body
        """
        retries = max(0, int(self.max_retries))
        attempt = 0
        last_error: Optional[BaseException] = None

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            while attempt <= retries:
                try:
                    response = await client.get(f"{self.base_url}/{url}", headers=self._headers())
                    result = self._parse_response(response)
                    logger.info(f"Crawled {url} ({len(result.content)} chars)")
                    return result

                except (httpx.RequestError, ReaderError) as e:
                    last_error = e
                    if attempt >= retries:
                        break
                    sleep_for = min(2 ** attempt * 0.5, 6.0)
                    logger.warning(f"Crawl attempt {attempt + 1} for {url} failed: {e}; retrying in {sleep_for}s")
                    await asyncio.sleep(sleep_for)
                    attempt += 1

        raise ReaderError(f"Crawl of {url} failed after {retries + 1} attempt(s): {last_error!s}")


# Reusable singleton
reader_client = ReaderClient()
