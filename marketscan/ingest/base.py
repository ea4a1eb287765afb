"""Page source interface and raw extraction records."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass
class RawListing:
    """Listing fields as extracted from a page, before validation."""

    listing_id: Optional[str]
    title: Optional[str] = None
    url: Optional[str] = None
    asking_price: Optional[float] = None
    monthly_revenue: Optional[float] = None
    monthly_profit: Optional[float] = None
    annual_revenue: Optional[float] = None
    annual_profit: Optional[float] = None
    profit_multiple: Optional[float] = None
    revenue_multiple: Optional[float] = None
    category: Optional[str] = None
    industry: Optional[str] = None
    listing_status: Optional[str] = None
    is_verified: bool = False
    view_count: Optional[int] = None
    bid_count: Optional[int] = None
    site_age_months: Optional[int] = None
    description: Optional[str] = None
    extra: dict = field(default_factory=dict)
    scraped_at: datetime = None

    def __post_init__(self):
        if self.scraped_at is None:
            self.scraped_at = datetime.utcnow()


@dataclass
class CategoryCount:
    """A marketplace category and how many listings it advertises."""

    slug: str
    name: str
    listing_count: int
    url: Optional[str] = None


@dataclass
class FetchedPage:
    """HTML returned by a page source."""

    url: str
    html: str
    status_code: int = 200
    elapsed: float = 0.0


class PageSource(ABC):
    """Abstract extraction backend owning one browser or HTTP session."""

    name: str = "base"

    @abstractmethod
    async def open(self) -> None:
        """Acquire the underlying session (browser, HTTP client)."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release the underlying session."""
        pass

    @abstractmethod
    async def fetch(self, url: str) -> FetchedPage:
        """
        Load a page.

        Args:
            url: Absolute page URL

        Returns:
            FetchedPage with the rendered HTML

        Raises:
            ExtractionTimeout: If the page did not load in time
            BlockedError: If the site refused the request
            NetworkError: For any other transport failure
        """
        pass
