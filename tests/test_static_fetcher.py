"""Tests for the httpx page source using a mock transport."""

import httpx
import pytest

from marketscan.errors import BlockedError, ExtractionTimeout, NetworkError
from marketscan.ingest.fetchers.static import StaticPageSource


def _handler(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path == "/search":
        return httpx.Response(200, text="<html><body><div id='results'></div></body></html>")
    if path == "/blocked":
        return httpx.Response(429, text="slow down")
    if path == "/slow":
        raise httpx.ReadTimeout("timed out", request=request)
    return httpx.Response(404, text="not found")


@pytest.fixture
async def source():
    page_source = StaticPageSource(transport=httpx.MockTransport(_handler))
    await page_source.open()
    yield page_source
    await page_source.close()


async def test_fetch_returns_page(source):
    page = await source.fetch("https://flippa.test/search")

    assert page.status_code == 200
    assert page.url == "https://flippa.test/search"
    assert "results" in page.html
    assert page.elapsed >= 0


async def test_blocked_status_raises(source):
    with pytest.raises(BlockedError) as exc_info:
        await source.fetch("https://flippa.test/blocked")
    assert exc_info.value.status_code == 429


async def test_timeout_raises_extraction_timeout(source):
    with pytest.raises(ExtractionTimeout):
        await source.fetch("https://flippa.test/slow")


async def test_client_error_raises_network_error(source):
    with pytest.raises(NetworkError):
        await source.fetch("https://flippa.test/missing")


async def test_close_is_idempotent():
    page_source = StaticPageSource(transport=httpx.MockTransport(_handler))
    await page_source.close()
    await page_source.fetch("https://flippa.test/search")
    await page_source.close()
    await page_source.close()
