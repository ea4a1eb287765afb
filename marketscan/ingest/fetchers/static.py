"""Static HTML page source for server-rendered marketplace pages."""

import logging
import random
import time
from typing import Optional

import httpx

from marketscan.errors import BlockedError, ExtractionTimeout, NetworkError
from marketscan.ingest.base import FetchedPage, PageSource

logger = logging.getLogger(__name__)

# User agents for rotation
USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
]

BLOCKED_STATUS_CODES = {403, 429, 503}


class StaticPageSource(PageSource):
    """Fetches pages over a shared httpx client."""

    name = "static"

    def __init__(self, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Initialize static page source.

        Args:
            timeout: Request timeout in seconds
            transport: Optional httpx transport (mock transports in tests)
        """
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def open(self) -> None:
        if self._client is not None:
            return
        headers = {
            "User-Agent": random.choice(USER_AGENTS),
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.5",
            "Connection": "keep-alive",
            "Upgrade-Insecure-Requests": "1",
        }
        self._client = httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            headers=headers,
            transport=self._transport,
        )

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def fetch(self, url: str) -> FetchedPage:
        if self._client is None:
            await self.open()

        started = time.monotonic()
        try:
            response = await self._client.get(url)
        except httpx.TimeoutException as e:
            raise ExtractionTimeout(f"Timed out loading {url}") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Request to {url} failed: {e}") from e

        elapsed = time.monotonic() - started
        if response.status_code in BLOCKED_STATUS_CODES:
            logger.warning(f"Blocked by {response.url.host} (HTTP {response.status_code}) on {url}")
            raise BlockedError(f"HTTP {response.status_code} for {url}", status_code=response.status_code)
        if response.status_code >= 400:
            raise NetworkError(f"HTTP {response.status_code} for {url}")

        logger.debug(f"Fetched {url} in {elapsed:.2f}s ({len(response.text)} bytes)")
        return FetchedPage(url=str(response.url), html=response.text, status_code=response.status_code, elapsed=elapsed)
