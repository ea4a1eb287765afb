"""Scraping engine facade: wires the queue, processors, scraper and monitor together."""

import logging
from typing import Any, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketscan.config import EngineConfig, settings
from marketscan.db.dedup_store import DeduplicationStore
from marketscan.db.job_store import JobRepository
from marketscan.db.statistics import CategoryService, StatisticsService
from marketscan.extract.generator import SelectorGenerator
from marketscan.extract.registry import SelectorRegistry
from marketscan.ingest.base import PageSource
from marketscan.ingest.rate_limiter import ExtractionRateLimiter
from marketscan.ingest.scraper import ListingScraper
from marketscan.ingest.session_manager import ExtractionSessionManager
from marketscan.monitoring.health_monitor import HealthMonitor
from marketscan.normalize.validator import ListingValidator
from marketscan.worker.jobs import JobOptions
from marketscan.worker.processors import JobProcessors
from marketscan.worker.queue_manager import QueueManager

logger = logging.getLogger(__name__)


def default_page_source_factory(config: EngineConfig) -> Callable[[], PageSource]:
    """Factory for the page source kind named in the config."""
    if config.page_source == "headless":
        from marketscan.ingest.fetchers.headless import HeadlessPageSource

        return lambda: HeadlessPageSource(timeout_seconds=settings.headless_browser_timeout)

    from marketscan.ingest.fetchers.static import StaticPageSource

    return lambda: StaticPageSource(timeout=config.scraper.request_timeout_seconds)


class ScrapingEngine:
    """The one object the web layer talks to."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        page_source_factory: Optional[Callable[[], PageSource]] = None,
        rate_limiter: Optional[ExtractionRateLimiter] = None,
        mirror_jobs: bool = True,
    ):
        """
        Build the engine from a validated config.

        Args:
            config: Engine configuration, resolved from settings by default
            session_factory: Async session factory, the application database by default
            page_source_factory: Builds the page source for each extraction session
            rate_limiter: Request limiter, built from config.rate_limit by default
            mirror_jobs: Mirror queue jobs to the scrape_jobs table
        """
        self.config = config or EngineConfig.from_settings()
        if session_factory is None:
            from marketscan.db.session import AsyncSessionLocal

            session_factory = AsyncSessionLocal
        self.session_factory = session_factory

        self.health = HealthMonitor(self.config.alerts, session_factory)
        self.generator = SelectorGenerator()
        self.registry = SelectorRegistry(
            self.generator,
            seed_selectors=self.config.scraper.seed_selectors,
            min_confidence=self.config.scraper.min_candidate_confidence,
            max_failures=self.config.scraper.max_candidate_failures,
            max_candidates=self.config.scraper.max_candidates_per_type,
        )
        self.sessions = ExtractionSessionManager(
            page_source_factory or default_page_source_factory(self.config)
        )
        self.rate_limiter = rate_limiter or ExtractionRateLimiter.from_config(self.config.rate_limit)
        self.scraper = ListingScraper(
            self.sessions,
            self.registry,
            self.rate_limiter,
            self.health,
            config=self.config.scraper,
            listings_per_page=self.config.processors.listings_per_page,
        )
        self.store = DeduplicationStore(
            session_factory,
            chunk_size=self.config.persistence.chunk_size,
            health_monitor=self.health,
        )
        self.categories = CategoryService(session_factory)
        self.statistics = StatisticsService(session_factory)
        self.processors = JobProcessors(
            self.scraper,
            self.store,
            self.categories,
            self.statistics,
            validator=ListingValidator(self.config.data_quality),
            health_monitor=self.health,
            config=self.config.processors,
        )
        self.queue = QueueManager(
            self.processors.as_mapping(),
            config=self.config.queue,
            repository=JobRepository(session_factory) if mirror_jobs else None,
            health_monitor=self.health,
        )

    async def start(self):
        """Restore health state, seed categories, open the extraction session and start workers."""
        await self.health.load()
        await self.categories.seed_defaults()
        await self.sessions.start()
        await self.queue.start()
        logger.info("Scraping engine started")

    async def stop(self, timeout: float = 30.0):
        await self.queue.stop(timeout=timeout)
        await self.sessions.stop()
        await self.health.drain()
        try:
            await self.health.flush()
        except Exception as e:
            logger.error(f"Final health snapshot failed: {e}")
        logger.info("Scraping engine stopped")

    async def submit_job(
        self,
        job_type: Any,
        config: Optional[dict] = None,
        options: Optional[dict | JobOptions] = None,
    ) -> str:
        """Queue a job and return its id."""
        job = await self.queue.add_job(job_type, config, options)
        return job.id

    def get_job(self, job_id: str) -> Optional[dict]:
        job = self.queue.get_job(job_id)
        return job.to_dict() if job else None

    def get_queue_stats(self) -> dict[str, int]:
        return self.queue.get_queue_stats()

    def get_health_report(self) -> dict:
        report = self.health.get_health_report()
        report["queue"] = self.queue.get_queue_stats()
        return report

    async def cancel_job(self, job_id: str) -> dict:
        job = await self.queue.cancel_job(job_id)
        return job.to_dict()
