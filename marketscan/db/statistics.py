"""Category registry and daily industry statistics."""

import logging
import statistics
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketscan.db.models import Category, IndustryStatistics, Listing
from marketscan.ingest.base import CategoryCount
from marketscan.normalize.categories import TARGET_CATEGORIES, industry_for

logger = logging.getLogger(__name__)

_CENTS = Decimal("0.01")


def _money(value) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(value).quantize(_CENTS)


class CategoryService:
    """Keeps the categories table in step with the marketplace's filters."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def seed_defaults(self) -> int:
        """Insert the tracked target categories that are missing. Returns the number added."""
        async with self._session_factory() as session:
            result = await session.execute(select(Category.slug))
            existing = set(result.scalars().all())
            added = 0
            for slug, (name, industry) in TARGET_CATEGORIES.items():
                if slug in existing:
                    continue
                session.add(Category(slug=slug, name=name, industry=industry, is_active=True))
                added += 1
            await session.commit()
        if added:
            logger.info(f"Seeded {added} categories")
        return added

    async def update_counts(self, found: Sequence[CategoryCount]) -> list[Category]:
        """
        Record listing counts seen on the marketplace.

        Unknown categories are added inactive so they can be reviewed before
        being scanned.

        Returns:
            The updated or created Category rows
        """
        now = datetime.utcnow()
        async with self._session_factory() as session:
            result = await session.execute(
                select(Category).where(Category.slug.in_([c.slug for c in found]))
            )
            by_slug = {c.slug: c for c in result.scalars().all()}

            rows = []
            for item in found:
                category = by_slug.get(item.slug)
                if category is None:
                    category = Category(
                        slug=item.slug,
                        name=item.name,
                        industry=industry_for(item.slug) or item.name,
                        is_active=item.slug in TARGET_CATEGORIES,
                    )
                    session.add(category)
                    by_slug[item.slug] = category
                category.listing_count = item.listing_count
                category.url = item.url
                category.last_scanned_at = now
                rows.append(category)
            await session.commit()
        logger.info(f"Updated listing counts for {len(rows)} categories")
        return rows

    async def get_active_categories(self) -> list[Category]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Category).where(Category.is_active.is_(True)).order_by(Category.slug)
            )
            return list(result.scalars().all())


class StatisticsService:
    """Aggregates listing prices and multiples per industry and day."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def calculate_daily_stats(self, industry: str, stat_date: Optional[date] = None) -> dict:
        """
        Compute and store one industry's statistics for a day.

        Uses the newest row of every listing in the industry scraped up to
        the end of that day.

        Args:
            industry: Industry name
            stat_date: Day to compute, today by default

        Returns:
            Dict of the stored figures
        """
        stat_date = stat_date or datetime.utcnow().date()
        day_end = datetime.combine(stat_date + timedelta(days=1), time.min)

        async with self._session_factory() as session:
            result = await session.execute(
                select(Listing)
                .where(Listing.industry == industry, Listing.scraped_at < day_end)
                .order_by(Listing.listing_id, Listing.scraped_at.desc(), Listing.id.desc())
            )
            latest: dict[str, Listing] = {}
            for row in result.scalars().all():
                latest.setdefault(row.listing_id, row)
            listings = list(latest.values())

            prices = [l.asking_price for l in listings if l.asking_price is not None]
            profit_multiples = [l.profit_multiple for l in listings if l.profit_multiple is not None]
            revenue_multiples = [l.revenue_multiple for l in listings if l.revenue_multiple is not None]

            figures = {
                "industry": industry,
                "stat_date": stat_date,
                "listing_count": len(listings),
                "avg_asking_price": _money(statistics.mean(prices)) if prices else None,
                "median_asking_price": _money(statistics.median(prices)) if prices else None,
                "min_asking_price": min(prices) if prices else None,
                "max_asking_price": max(prices) if prices else None,
                "avg_profit_multiple": _money(statistics.mean(profit_multiples)) if profit_multiples else None,
                "median_profit_multiple": _money(statistics.median(profit_multiples)) if profit_multiples else None,
                "avg_revenue_multiple": _money(statistics.mean(revenue_multiples)) if revenue_multiples else None,
                "median_revenue_multiple": _money(statistics.median(revenue_multiples)) if revenue_multiples else None,
                "verified_count": sum(1 for l in listings if l.is_verified),
            }

            existing = await session.execute(
                select(IndustryStatistics).where(
                    IndustryStatistics.industry == industry,
                    IndustryStatistics.stat_date == stat_date,
                )
            )
            row = existing.scalar_one_or_none()
            if row is None:
                row = IndustryStatistics(**figures)
                session.add(row)
            else:
                for key, value in figures.items():
                    setattr(row, key, value)
            await session.commit()

        logger.info(f"Calculated {industry} statistics for {stat_date}: {len(listings)} listings")
        return {
            key: (float(value) if isinstance(value, Decimal) else value.isoformat() if isinstance(value, date) else value)
            for key, value in figures.items()
        }

    async def get_industry_stats(self, industry: str, days: int = 30) -> list[IndustryStatistics]:
        since = datetime.utcnow().date() - timedelta(days=days)
        async with self._session_factory() as session:
            result = await session.execute(
                select(IndustryStatistics)
                .where(IndustryStatistics.industry == industry, IndustryStatistics.stat_date >= since)
                .order_by(IndustryStatistics.stat_date.desc())
            )
            return list(result.scalars().all())
