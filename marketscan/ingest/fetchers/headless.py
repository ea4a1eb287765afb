"""Headless browser page source for JavaScript-rendered pages."""

import asyncio
import logging
import random
import time
from typing import Optional

from playwright.async_api import Browser, BrowserContext, Playwright, async_playwright
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import Error as PlaywrightError

from marketscan.errors import BlockedError, ExtractionTimeout, NetworkError
from marketscan.ingest.base import FetchedPage, PageSource
from marketscan.ingest.fetchers.static import BLOCKED_STATUS_CODES, USER_AGENTS

logger = logging.getLogger(__name__)

# Bot wall indicators
CAPTCHA_INDICATORS = [
    "verify you are a human",
    "captcha",
    "checking your browser",
    "access denied",
]


class HeadlessPageSource(PageSource):
    """Renders pages in a single Chromium context."""

    name = "headless"

    def __init__(self, timeout_seconds: int = 30, headless: bool = True, render_delay: tuple[float, float] = (0.5, 1.5)):
        self.timeout_seconds = timeout_seconds
        self.headless = headless
        self.render_delay = render_delay
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None

    async def open(self) -> None:
        if self._context is not None:
            return
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self.headless,
            args=["--disable-blink-features=AutomationControlled", "--no-sandbox"],
        )
        self._context = await self._browser.new_context(
            user_agent=random.choice(USER_AGENTS),
            viewport={"width": 1920, "height": 1080},
            locale="en-US",
        )
        logger.info("Headless browser started")

    async def close(self) -> None:
        """Close browser context, browser and playwright."""
        if self._context is not None:
            await self._context.close()
            self._context = None
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
        logger.info("Headless browser closed")

    async def fetch(self, url: str) -> FetchedPage:
        if self._context is None:
            await self.open()

        started = time.monotonic()
        try:
            page = await self._context.new_page()
        except PlaywrightError as e:
            raise NetworkError(f"Could not open a page for {url}: {e}") from e
        try:
            try:
                response = await page.goto(
                    url,
                    wait_until="domcontentloaded",
                    timeout=self.timeout_seconds * 1000,
                )
                status = response.status if response is not None else 200
                if status in BLOCKED_STATUS_CODES:
                    raise BlockedError(f"HTTP {status} for {url}", status_code=status)
                if status >= 400:
                    raise NetworkError(f"HTTP {status} for {url}")

                # Let lazy-loaded listing cards render
                await asyncio.sleep(random.uniform(*self.render_delay))
                await page.evaluate("window.scrollTo(0, document.body.scrollHeight / 2)")
                html = await page.content()
            except PlaywrightTimeoutError as e:
                raise ExtractionTimeout(f"Page load timeout for {url}") from e
            except PlaywrightError as e:
                raise NetworkError(f"Loading {url} failed: {e}") from e

            lowered = html[:5000].lower()
            if any(indicator in lowered for indicator in CAPTCHA_INDICATORS):
                raise BlockedError(f"Bot wall detected on {url}", status_code=status)

            return FetchedPage(url=page.url, html=html, status_code=status, elapsed=time.monotonic() - started)
        finally:
            await page.close()
