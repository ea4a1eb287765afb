"""Job processors: category scans, listing scans, detail fetches and statistics."""

import logging
import math
from datetime import date, datetime
from typing import Optional

from marketscan import metrics
from marketscan.config import ProcessorConfig
from marketscan.db.dedup_store import DeduplicationStore, SaveStats
from marketscan.db.statistics import CategoryService, StatisticsService
from marketscan.errors import ListingValidationError
from marketscan.ingest.scraper import ListingScraper
from marketscan.monitoring.health_monitor import HealthMonitor
from marketscan.normalize.validator import ListingValidator
from marketscan.worker.jobs import JobContext, JobType

logger = logging.getLogger(__name__)


class JobProcessors:
    """One coroutine per job type, each taking (config, context) and returning a result dict.

    Record-level problems (invalid listings, single failed writes) are
    counted in the result. Infrastructure failures propagate so the queue
    can retry the job.
    """

    def __init__(
        self,
        scraper: ListingScraper,
        store: DeduplicationStore,
        categories: CategoryService,
        statistics: StatisticsService,
        validator: Optional[ListingValidator] = None,
        health_monitor: Optional[HealthMonitor] = None,
        config: Optional[ProcessorConfig] = None,
    ):
        self.scraper = scraper
        self.store = store
        self.categories = categories
        self.statistics = statistics
        self.validator = validator or ListingValidator()
        self.health = health_monitor
        self.config = config or ProcessorConfig()

    def as_mapping(self) -> dict:
        return {
            JobType.CATEGORY_SCAN: self.category_scan,
            JobType.LISTING_SCAN: self.listing_scan,
            JobType.DETAIL_FETCH: self.detail_fetch,
            JobType.STATISTICS_CALC: self.statistics_calc,
        }

    def pages_for(self, listing_count: int) -> int:
        """Pages to scan for a category: ceil(count / page size), capped."""
        return min(self.config.max_listing_pages, math.ceil(listing_count / self.config.listings_per_page))

    def _record_invalid(self, error: ListingValidationError, ctx: JobContext, context: dict) -> None:
        metrics.invalid_listings_total.inc()
        ctx.log.warning(f"Data quality issue: {error}")
        if self.health is not None:
            self.health.record_error(error, context)

    async def category_scan(self, config: dict, ctx: JobContext) -> dict:
        """Refresh category counts and queue a listing scan per active, non-empty category."""
        ctx.report_progress(10, "Scraping categories")
        found = await self.scraper.scrape_categories()
        ctx.report_progress(50, f"Found {len(found)} categories")

        await self.categories.update_counts(found)
        active = await self.categories.get_active_categories()
        ctx.report_progress(80, "Queueing listing scans")

        jobs_queued = 0
        for category in active:
            ctx.checkpoint()
            if category.listing_count <= 0:
                continue
            await ctx.enqueue(
                JobType.LISTING_SCAN,
                {"category": category.slug, "max_pages": self.pages_for(category.listing_count)},
                {"priority": "normal"},
            )
            jobs_queued += 1

        ctx.report_progress(100, "Category scan completed")
        ctx.log.info(f"Category scan found {len(found)} categories, queued {jobs_queued} listing scans")
        return {
            "categories_found": len(found),
            "jobs_queued": jobs_queued,
            "categories": [
                {"slug": c.slug, "name": c.name, "listing_count": c.listing_count} for c in found
            ],
        }

    async def listing_scan(self, config: dict, ctx: JobContext) -> dict:
        """Scrape, validate and persist one category, then queue detail fetches for valuable listings."""
        category = config["category"]
        max_pages = config.get("max_pages", 1)

        ctx.report_progress(10, f"Scraping {category}")
        raw = await self.scraper.scrape_listings(category, max_pages, checkpoint=ctx.checkpoint)
        ctx.report_progress(50, f"Scraped {len(raw)} listings")

        valid, invalid = self.validator.validate_batch(raw)
        for item in invalid:
            self._record_invalid(
                ListingValidationError(item.listing.listing_id, item.validation.errors),
                ctx,
                {"category": category, "job_type": JobType.LISTING_SCAN.value},
            )

        ctx.checkpoint()
        stats = await self.store.save_listings(valid) if valid else SaveStats()
        ctx.report_progress(80, f"Saved {stats.new_listings} new, {stats.updated_listings} updated")

        detail_jobs = 0
        for record in valid:
            ctx.checkpoint()
            price = float(record.asking_price or 0)
            if price > self.config.high_value_price or record.is_verified:
                priority = "high" if price > self.config.high_priority_price else "normal"
                await ctx.enqueue(
                    JobType.DETAIL_FETCH,
                    {"listing_id": record.listing_id, "url": record.url},
                    {"priority": priority},
                )
                detail_jobs += 1

        prices = [float(r.asking_price) for r in valid if r.asking_price is not None]
        ctx.report_progress(100, "Listing scan completed")
        ctx.log.info(
            f"Listing scan of {category}: {len(raw)} scraped, {len(valid)} valid, "
            f"{stats.new_listings} new, {detail_jobs} detail jobs"
        )
        return {
            "category": category,
            "listings_scraped": len(raw),
            "listings_saved": stats.new_listings + stats.updated_listings,
            "listings_invalid": len(invalid),
            "detail_jobs_queued": detail_jobs,
            "new_listings": stats.new_listings,
            "updated_listings": stats.updated_listings,
            "persistence_errors": stats.errors,
            "metrics": {
                "avg_asking_price": round(sum(prices) / len(prices), 2) if prices else 0,
                "verified_count": sum(1 for r in valid if r.is_verified),
            },
        }

    async def detail_fetch(self, config: dict, ctx: JobContext) -> dict:
        """Scrape one detail page and upsert the listing. Bad data is reported, not raised."""
        listing_id = config["listing_id"]
        ctx.report_progress(10, f"Fetching listing {listing_id}")

        raw = await self.scraper.scrape_listing_details(listing_id, config.get("url"))
        if raw is None:
            return {"success": False, "listing_id": listing_id, "error": "No data retrieved"}
        ctx.report_progress(50, "Validating listing")

        if raw.category is None:
            existing = await self.store.get_listing(listing_id)
            if existing is not None:
                raw.category = existing.category
                raw.industry = existing.industry

        validation = self.validator.validate(raw)
        if not validation.is_valid:
            self._record_invalid(
                ListingValidationError(listing_id, validation.errors),
                ctx,
                {"listing_id": listing_id, "job_type": JobType.DETAIL_FETCH.value},
            )
            return {"success": False, "listing_id": listing_id, "errors": validation.errors}

        record = self.validator.normalize(raw, validation)
        change = await self.store.upsert_listing(record)
        ctx.report_progress(100, "Detail fetch completed")
        return {
            "success": True,
            "listing_id": listing_id,
            "change": change.value,
            "data_quality_score": validation.data_quality_score,
            "warnings": validation.warnings,
        }

    async def statistics_calc(self, config: dict, ctx: JobContext) -> dict:
        """Daily statistics for one industry, or for every active category's industry."""
        stat_date = date.fromisoformat(config["date"]) if config.get("date") else datetime.utcnow().date()
        industry = config.get("industry")

        if industry:
            figures = await self.statistics.calculate_daily_stats(industry, stat_date)
            return {"industry": industry, "date": stat_date.isoformat(), "success": True, "statistics": figures}

        active = await self.categories.get_active_categories()
        industries = sorted({c.industry for c in active})
        results = []
        for position, name in enumerate(industries, start=1):
            ctx.checkpoint()
            try:
                await self.statistics.calculate_daily_stats(name, stat_date)
                results.append({"industry": name, "success": True})
            except Exception as e:
                ctx.log.error(f"Failed to calculate statistics for {name}: {e}")
                if self.health is not None:
                    self.health.record_error(e, {"industry": name, "job_type": JobType.STATISTICS_CALC.value})
                results.append({"industry": name, "success": False, "error": str(e)})
            ctx.report_progress(int(position / len(industries) * 100))

        success_count = sum(1 for r in results if r["success"])
        return {
            "date": stat_date.isoformat(),
            "total_industries": len(results),
            "success_count": success_count,
            "failed_count": len(results) - success_count,
            "results": results,
        }
