"""Tests for the category registry and daily industry statistics."""

from datetime import date, datetime
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from marketscan.db.models import IndustryStatistics, Listing
from marketscan.db.statistics import CategoryService, StatisticsService
from marketscan.ingest.base import CategoryCount
from marketscan.normalize.categories import TARGET_CATEGORIES


@pytest.fixture
def categories(session_factory):
    return CategoryService(session_factory)


@pytest.fixture
def stats_service(session_factory):
    return StatisticsService(session_factory)


async def test_seed_defaults_is_idempotent(categories):
    assert await categories.seed_defaults() == len(TARGET_CATEGORIES)
    assert await categories.seed_defaults() == 0

    active = await categories.get_active_categories()
    assert [c.slug for c in active] == sorted(TARGET_CATEGORIES)


async def test_update_counts_adds_unknown_categories_inactive(categories):
    await categories.seed_defaults()

    rows = await categories.update_counts(
        [
            CategoryCount(slug="saas", name="SaaS", listing_count=45),
            CategoryCount(slug="pets", name="Pet Sites", listing_count=3),
        ]
    )

    assert {r.slug: r.listing_count for r in rows} == {"saas": 45, "pets": 3}
    active = {c.slug: c for c in await categories.get_active_categories()}
    assert active["saas"].listing_count == 45
    assert active["saas"].last_scanned_at is not None
    assert "pets" not in active


async def _add_listing(session_factory, listing_id, price, scraped_at, industry="SaaS", verified=False, multiple=None):
    async with session_factory() as session:
        session.add(
            Listing(
                listing_id=listing_id,
                asking_price=Decimal(price),
                profit_multiple=Decimal(multiple) if multiple else None,
                industry=industry,
                is_verified=verified,
                scraped_at=scraped_at,
                last_updated=scraped_at,
            )
        )
        await session.commit()


async def test_daily_stats_use_latest_row_per_listing(session_factory, stats_service):
    day = date(2024, 3, 1)
    morning = datetime(2024, 3, 1, 9, 0)
    await _add_listing(session_factory, "1", "1000", morning, multiple="2.5")
    await _add_listing(session_factory, "1", "2000", datetime(2024, 3, 1, 18, 0), multiple="3.5")
    await _add_listing(session_factory, "2", "4000", morning, verified=True)
    # outside the day or industry
    await _add_listing(session_factory, "3", "9000", datetime(2024, 3, 2, 0, 0))
    await _add_listing(session_factory, "4", "7000", morning, industry="Content")

    result = await stats_service.calculate_daily_stats("SaaS", day)

    assert result["stat_date"] == "2024-03-01"
    assert result["listing_count"] == 2
    assert result["avg_asking_price"] == pytest.approx(3000.0)
    assert result["median_asking_price"] == pytest.approx(3000.0)
    assert result["min_asking_price"] == pytest.approx(2000.0)
    assert result["max_asking_price"] == pytest.approx(4000.0)
    assert result["avg_profit_multiple"] == pytest.approx(3.5)
    assert result["avg_revenue_multiple"] is None
    assert result["verified_count"] == 1


async def test_daily_stats_upsert_one_row_per_day(session_factory, stats_service):
    day = date(2024, 3, 1)
    await _add_listing(session_factory, "1", "1000", datetime(2024, 3, 1, 9, 0))
    await stats_service.calculate_daily_stats("SaaS", day)

    await _add_listing(session_factory, "2", "3000", datetime(2024, 3, 1, 10, 0))
    result = await stats_service.calculate_daily_stats("SaaS", day)

    assert result["listing_count"] == 2
    async with session_factory() as session:
        count = (await session.execute(select(func.count(IndustryStatistics.id)))).scalar()
    assert count == 1


async def test_daily_stats_for_empty_industry(stats_service):
    result = await stats_service.calculate_daily_stats("Newsletter", date(2024, 3, 1))

    assert result["listing_count"] == 0
    assert result["avg_asking_price"] is None


async def test_get_industry_stats_lists_recent_days(session_factory, stats_service):
    today = datetime.utcnow()
    await _add_listing(session_factory, "1", "1000", today)
    await stats_service.calculate_daily_stats("SaaS")

    rows = await stats_service.get_industry_stats("SaaS", days=7)

    assert [r.stat_date for r in rows] == [today.date()]
    assert await stats_service.get_industry_stats("Content") == []
