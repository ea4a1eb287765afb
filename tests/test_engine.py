"""End-to-end run of the engine against a fake marketplace."""

import pytest
from sqlalchemy import func, select

from conftest import BASE_URL, FakePageSource, site_pages
from marketscan.config import EngineConfig, QueueConfig, ScraperConfig
from marketscan.db.job_store import JobRepository
from marketscan.db.models import ScrapeJob
from marketscan.engine import ScrapingEngine
from marketscan.worker.jobs import JobStatus


@pytest.fixture
def source():
    return FakePageSource(site_pages())


@pytest.fixture
def engine(session_factory, source, fast_rate_limiter):
    config = EngineConfig(
        queue=QueueConfig(concurrency=1, backoff_base_seconds=0, backoff_max_seconds=0),
        scraper=ScraperConfig(base_url=BASE_URL),
    )
    return ScrapingEngine(
        config,
        session_factory=session_factory,
        page_source_factory=lambda: source,
        rate_limiter=fast_rate_limiter,
    )


async def test_category_scan_fans_out_to_details(engine, source, session_factory):
    await engine.start()
    try:
        job_id = await engine.submit_job("category_scan")
        assert await engine.queue.wait_until_drained(timeout=10)
    finally:
        await engine.stop(timeout=1)

    assert source.opened and source.closed
    assert engine.get_job(job_id)["status"] == JobStatus.COMPLETED.value

    stats = engine.get_queue_stats()
    # 1 category scan, 2 listing scans, 2 detail fetches
    assert stats["completed"] == 5
    assert stats["failed"] == 0

    listing = await engine.store.get_listing("1001")
    assert listing is not None
    assert [h.field_type for h in await engine.store.get_price_history("1001")].count("askingPrice") == 1

    async with session_factory() as session:
        mirrored = (await session.execute(select(func.count(ScrapeJob.id)))).scalar()
    assert mirrored == 5
    stored = await JobRepository(session_factory).get(job_id)
    assert stored.status == "completed"
    assert stored.result["jobs_queued"] == 2


async def test_health_report_includes_queue(engine):
    report = engine.get_health_report()
    assert report["queue"]["total"] == 0
    assert report["status"]["overall"] == "healthy"


async def test_cancel_queued_job(engine):
    job_id = await engine.submit_job("detail_fetch", {"listing_id": "1001"})

    cancelled = await engine.cancel_job(job_id)

    assert cancelled["id"] == job_id
    assert engine.get_job(job_id) is None
    assert engine.get_queue_stats()["total"] == 0
