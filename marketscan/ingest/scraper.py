"""Marketplace scraper driven by the selector registry.

Every data type is read with the registry's candidates in confidence
order. Each tried candidate is re-scored; when a required field yields
nothing the registry is asked to repair that data type on the same page
and extraction is retried once.
"""

import logging
from typing import Any, Callable, Optional, Sequence
from urllib.parse import urljoin

from marketscan import metrics
from marketscan.config import ScraperConfig
from marketscan.errors import ExtractionError, ExtractionTimeout, NetworkError
from marketscan.extract.dom import PageDocument, PageNode, collapse, parse_html
from marketscan.extract.generator import SelectorCandidate
from marketscan.extract.registry import SelectorRegistry
from marketscan.extract.selectors import select
from marketscan.extract.values import listing_id_from_url, parse_int, parse_value
from marketscan.ingest.base import CategoryCount, RawListing
from marketscan.ingest.rate_limiter import ExtractionRateLimiter
from marketscan.ingest.session_manager import ExtractionSessionManager
from marketscan.monitoring.health_monitor import ExtractionResult, HealthMonitor

logger = logging.getLogger(__name__)

CARD_FIELDS = ("title", "price", "revenue", "profit", "multiple", "category", "listing_status", "views", "bids")
DETAIL_FIELDS = CARD_FIELDS + ("description", "site_age")
REQUIRED_FIELDS = ("title", "price")

# (value, node it came from) per scope
Found = tuple[Any, Optional[PageNode]]


class ListingScraper:
    """Extracts categories, listing cards and detail pages."""

    def __init__(
        self,
        sessions: ExtractionSessionManager,
        registry: SelectorRegistry,
        rate_limiter: ExtractionRateLimiter,
        health_monitor: HealthMonitor,
        config: Optional[ScraperConfig] = None,
        listings_per_page: int = 30,
    ):
        self.sessions = sessions
        self.registry = registry
        self.rate_limiter = rate_limiter
        self.health = health_monitor
        self.config = config or ScraperConfig()
        self.listings_per_page = listings_per_page

    @property
    def base_url(self) -> str:
        return self.config.base_url.rstrip("/")

    def search_url(self, category: Optional[str] = None, page: int = 1) -> str:
        if category is None:
            return f"{self.base_url}/search"
        return f"{self.base_url}/search?filter[property_type]={category}&page={page}"

    def detail_url(self, listing_id: str) -> str:
        return f"{self.base_url}/{listing_id}"

    async def fetch_document(self, url: str) -> PageDocument:
        """
        Load and parse one page through the active session.

        Raises:
            ExtractionUnavailableError: If no session is active
            NetworkError: On timeouts, blocks and transport failures
        """
        source = self.sessions.current()
        async with self.rate_limiter.slot():
            try:
                page = await source.fetch(url)
            except ExtractionTimeout as e:
                self.health.record_performance(0.0, timed_out=True)
                self.health.record_error(e, {"url": url})
                raise
            except NetworkError as e:
                self.health.record_error(e, {"url": url})
                raise

        self.health.record_performance(page.elapsed)
        metrics.record_page_fetch(source.name, page.elapsed)
        return parse_html(page.html, url=page.url)

    # Categories

    async def scrape_categories(self) -> list[CategoryCount]:
        """Read category filters and their listing counts from the search page."""
        document = await self.fetch_document(self.search_url())

        links: list[PageNode] = []
        for candidate in self.registry.candidates("category_link"):
            links = select(document, candidate.selector)
            self.registry.record_test(candidate, len(links), bool(links))
            if links:
                break

        count_candidates = self.registry.candidates("category_count")
        categories = []
        for link in links:
            slug = link.attrs.get("data-category")
            if not slug:
                continue
            count_text = None
            for candidate in count_candidates:
                counts = select(document, candidate.selector, scope=link)
                if counts:
                    count_text = counts[0].text
                    break
            name = collapse(link.own_text) or collapse(link.text.replace(count_text or "", "")) or slug
            categories.append(
                CategoryCount(
                    slug=slug,
                    name=name,
                    listing_count=parse_int(count_text) or 0,
                    url=self.search_url(slug),
                )
            )

        self.health.record_extraction_result(
            ExtractionResult(success=bool(categories), data_type="category_link", strategy="attribute")
        )
        logger.info(f"Found {len(categories)} categories")
        return categories

    # Listing pages

    async def scrape_listings(
        self,
        category: str,
        max_pages: int,
        checkpoint: Optional[Callable[[], None]] = None,
    ) -> list[RawListing]:
        """
        Scrape listing cards of one category, in page order.

        Stops early on a short page. checkpoint is called before every page
        after the first and may raise to abort.
        """
        listings: list[RawListing] = []
        for page in range(1, max_pages + 1):
            if page > 1 and checkpoint is not None:
                checkpoint()
            document = await self.fetch_document(self.search_url(category, page))
            found = self.extract_listings(document, category)
            listings.extend(found)
            logger.debug(f"{category} page {page}: {len(found)} listings")
            if len(found) < self.listings_per_page:
                break
        logger.info(f"Scraped {len(listings)} listings from {category}")
        return listings

    def extract_listings(self, document: PageDocument, category: Optional[str] = None) -> list[RawListing]:
        """Extract every listing card on a parsed search page."""
        card_candidate, cards = self._find_cards(document)
        if not cards:
            self.health.record_extraction_result(
                ExtractionResult(success=False, data_type="listing_card")
            )
            return []

        rows = self._extract_fields(document, cards, CARD_FIELDS)
        listings = []
        complete = 0
        for card, row in zip(cards, rows):
            listing = self._build_listing(row, card, verified=self._is_verified(document, card))
            if listing.category is None:
                listing.category = category
            if all(row[f][0] is not None for f in REQUIRED_FIELDS):
                complete += 1
            listings.append(listing)

        optional = [f for f in CARD_FIELDS if f not in REQUIRED_FIELDS]
        self.health.record_extraction_result(
            ExtractionResult(
                success=complete == len(cards),
                partial=0 < complete < len(cards),
                data_type="listing_card",
                strategy=card_candidate.strategy,
                extracted=[f for f in optional if any(row[f][0] is not None for row in rows)],
                missing=[f for f in optional if all(row[f][0] is None for row in rows)],
            )
        )
        return listings

    # Detail pages

    async def scrape_listing_details(self, listing_id: str, url: Optional[str] = None) -> Optional[RawListing]:
        """
        Scrape a listing's detail page.

        Returns:
            RawListing, or None if neither title nor price could be read
        """
        url = url or self.detail_url(listing_id)
        document = await self.fetch_document(url)
        row = self._extract_fields(document, [None], DETAIL_FIELDS)[0]
        if all(row[f][0] is None for f in REQUIRED_FIELDS):
            logger.warning(f"No listing data found on {url}")
            return None

        listing = self._build_listing(row, None, verified=self._is_verified(document, None))
        listing.listing_id = listing_id
        listing.url = url
        listing.description = row["description"][0]
        listing.site_age_months = row["site_age"][0]
        return listing

    # Internals

    def _find_cards(self, document: PageDocument) -> tuple[Optional[SelectorCandidate], list[PageNode]]:
        for attempt in range(2):
            for candidate in self.registry.candidates("listing_card"):
                cards = select(document, candidate.selector)
                self.registry.record_test(candidate, len(cards), bool(cards))
                if cards:
                    return candidate, cards
            if attempt == 0:
                self._report_missing(document, "listing_card")
        return None, []

    def _resolve(
        self, document: PageDocument, scopes: Sequence[Optional[PageNode]], data_type: str
    ) -> tuple[Optional[SelectorCandidate], list[Found]]:
        """First candidate that yields a value in at least one scope."""
        for candidate in self.registry.candidates(data_type):
            found = []
            first_count = None
            for scope in scopes:
                nodes = select(document, candidate.selector, scope=scope)
                if first_count is None:
                    first_count = len(nodes)
                found.append(_first_value(data_type, nodes))
            hit = any(value is not None for value, _ in found)
            self.registry.record_test(candidate, first_count or 0, hit)
            if hit:
                candidate.sample_value = next(value for value, _ in found if value is not None)
                return candidate, found
        return None, [(None, None)] * len(scopes)

    def _extract_fields(
        self, document: PageDocument, scopes: Sequence[Optional[PageNode]], data_types: Sequence[str]
    ) -> list[dict[str, Found]]:
        rows: list[dict[str, Found]] = [{} for _ in scopes]
        for data_type in data_types:
            candidate, found = self._resolve(document, scopes, data_type)
            if candidate is None and data_type in REQUIRED_FIELDS:
                self._report_missing(document, data_type)
                candidate, found = self._resolve(document, scopes, data_type)

            if data_type in REQUIRED_FIELDS:
                hits = sum(1 for value, _ in found if value is not None)
                self.health.record_extraction_result(
                    ExtractionResult(
                        success=hits == len(scopes),
                        partial=0 < hits < len(scopes),
                        data_type=data_type,
                        strategy=candidate.strategy if candidate else None,
                    )
                )
            for row, item in zip(rows, found):
                row[data_type] = item
        return rows

    def _report_missing(self, document: PageDocument, data_type: str):
        error = ExtractionError(data_type, f"No selector yielded {data_type} on {document.url}")
        logger.warning(str(error))
        self.health.record_error(error, {"url": document.url, "data_type": data_type})
        self.registry.repair(data_type, document)

    def _is_verified(self, document: PageDocument, scope: Optional[PageNode]) -> bool:
        return any(
            select(document, candidate.selector, scope=scope)
            for candidate in self.registry.candidates("verified")
        )

    def _build_listing(self, row: dict[str, Found], card: Optional[PageNode], verified: bool) -> RawListing:
        title, title_node = row["title"]
        url = _link_from(title_node) or (_link_from(card) if card is not None else None)
        if url:
            url = urljoin(self.base_url + "/", url)
        listing_id = listing_id_from_url(url)
        if listing_id is None and card is not None:
            listing_id = card.attrs.get("data-listing-id") or card.attrs.get("data-id")

        return RawListing(
            listing_id=listing_id,
            title=title,
            url=url,
            asking_price=row["price"][0],
            monthly_revenue=row["revenue"][0],
            monthly_profit=row["profit"][0],
            profit_multiple=row["multiple"][0],
            category=row["category"][0],
            listing_status=row["listing_status"][0],
            is_verified=verified,
            view_count=row["views"][0],
            bid_count=row["bids"][0],
        )


def _first_value(data_type: str, nodes: Sequence[PageNode]) -> Found:
    for node in nodes:
        value = parse_value(data_type, collapse(node.text))
        if value is not None:
            return value, node
    return None, None


def _link_from(node: Optional[PageNode]) -> Optional[str]:
    """href of the node, its first descendant link, or its nearest ancestor link."""
    if node is None:
        return None
    if node.tag == "a" and node.attrs.get("href"):
        return node.attrs["href"]
    for child in node.descendants():
        if child.tag == "a" and child.attrs.get("href"):
            return child.attrs["href"]
    for ancestor in node.ancestors():
        if ancestor.tag == "a" and ancestor.attrs.get("href"):
            return ancestor.attrs["href"]
    return None
