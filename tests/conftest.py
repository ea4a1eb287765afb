"""Shared fixtures: SQLite database, fake page source and sample pages."""

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from marketscan.config import RateLimitConfig
from marketscan.db.session import init_models
from marketscan.errors import NetworkError
from marketscan.extract.dom import parse_html
from marketscan.ingest.base import FetchedPage, PageSource
from marketscan.ingest.rate_limiter import ExtractionRateLimiter


SEARCH_PAGE = """
<html><body>
<div id="results" class="results">
  <div class="listing-card featured" data-listing-id="1001">
    <a class="listing-card__link" href="/1001-profitable-saas">
      <h3 class="listing-card__title">Profitable SaaS Business</h3>
    </a>
    <span class="listing-card__price" data-metric="price">$125,000</span>
    <span class="listing-card__category">SaaS</span>
    <span class="verified-badge">Verified</span>
  </div>
  <div class="listing-card featured" data-listing-id="1002">
    <a class="listing-card__link" href="/1002-content-site">
      <h3 class="listing-card__title">Growing Content Website</h3>
    </a>
    <span class="listing-card__price" data-metric="price">$45,000</span>
    <span class="listing-card__category">SaaS</span>
  </div>
  <div class="listing-card featured" data-listing-id="1003">
    <a class="listing-card__link" href="/1003-ecommerce-store">
      <h3 class="listing-card__title">Ecommerce Store Empire</h3>
    </a>
    <span class="listing-card__price" data-metric="price">$980,000</span>
    <span class="listing-card__category">SaaS</span>
  </div>
</div>
</body></html>
"""


CATALOG_PAGE = """
<html><body>
<div id="results">
  <div class="card featured"><h3 class="title">Profitable SaaS Business</h3><span class="price" data-metric="price">$125,000</span><span class="multiple">3.2x</span></div>
  <div class="card featured"><h3 class="title">Growing Content Website</h3><span class="price" data-metric="price">$45,000</span><span class="multiple">2.5x</span></div>
  <div class="card featured"><h3 class="title">Ecommerce Store Empire</h3><span class="price" data-metric="price">$980,000</span><span class="multiple">4.1x</span></div>
</div>
</body></html>
"""


class FakePageSource(PageSource):
    """Serves canned HTML by URL; unknown URLs raise NetworkError."""

    name = "fake"

    def __init__(self, pages: dict[str, str]):
        self.pages = pages
        self.requested: list[str] = []
        self.opened = False
        self.closed = False

    async def open(self) -> None:
        self.opened = True

    async def close(self) -> None:
        self.closed = True

    async def fetch(self, url: str) -> FetchedPage:
        self.requested.append(url)
        if url not in self.pages:
            raise NetworkError(f"No page for {url}")
        return FetchedPage(url=url, html=self.pages[url])


async def _no_sleep(seconds):
    return None


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    await init_models(engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def catalog_document():
    return parse_html(CATALOG_PAGE, url="https://flippa.test/search")


@pytest.fixture
def search_document():
    return parse_html(SEARCH_PAGE, url="https://flippa.test/search")


@pytest.fixture
def fast_rate_limiter():
    """Rate limiter with no interval and a no-op sleep."""
    config = RateLimitConfig(min_interval_seconds=0, max_interval_seconds=0)
    return ExtractionRateLimiter(config, sleep=_no_sleep)


BASE_URL = "https://flippa.test"

CATEGORY_PAGE = """
<html><body>
<nav data-testid="category-filter">
  <a data-category="saas" href="/search?filter[property_type]=saas">SaaS <span class="count">(45)</span></a>
  <a data-category="ecommerce" href="/search?filter[property_type]=ecommerce">E-commerce <span class="count">1,200</span></a>
  <a data-category="pets" href="/search?filter[property_type]=pets">Pet Sites <span class="count">3</span></a>
</nav>
</body></html>
"""

EMPTY_RESULTS_PAGE = '<html><body><div id="results"></div></body></html>'


def detail_page(title: str, price: str) -> str:
    return f"""
<html><body>
<h1 class="listing-title">{title}</h1>
<div data-testid="asking-price">{price}</div>
<div data-testid="monthly-revenue">$8,000 / month</div>
<div data-testid="description">Recurring revenue from 400 customers.</div>
<div data-testid="site-age">3 years</div>
</body></html>
"""


def site_pages() -> dict[str, str]:
    """A small marketplace: category filters, one listing page per category and two detail pages."""
    return {
        f"{BASE_URL}/search": CATEGORY_PAGE,
        f"{BASE_URL}/search?filter[property_type]=saas&page=1": SEARCH_PAGE,
        f"{BASE_URL}/search?filter[property_type]=ecommerce&page=1": EMPTY_RESULTS_PAGE,
        f"{BASE_URL}/1001-profitable-saas": detail_page("Profitable SaaS Business", "$130,000"),
        f"{BASE_URL}/1003-ecommerce-store": detail_page("Ecommerce Store Empire", "$980,000"),
    }
