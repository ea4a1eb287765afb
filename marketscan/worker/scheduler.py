"""APScheduler job definitions for recurring scans and maintenance."""

import logging
from typing import TYPE_CHECKING, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from marketscan import metrics
from marketscan.worker.jobs import JobType

if TYPE_CHECKING:
    from marketscan.engine import ScrapingEngine

logger = logging.getLogger(__name__)


async def submit_recurring(engine: "ScrapingEngine", job_type: JobType, options: Optional[dict] = None):
    """Submit one scheduled job; failures are logged and counted, never raised to APScheduler."""
    try:
        job_id = await engine.submit_job(job_type, options=options)
        metrics.record_scheduler_run(job_type.value, True)
        logger.info(f"Scheduled {job_type.value} submitted as {job_id}")
    except Exception as e:
        metrics.record_scheduler_run(job_type.value, False)
        logger.error(f"Scheduled {job_type.value} submission failed: {e}")


async def clean_finished_jobs(engine: "ScrapingEngine"):
    try:
        purged = await engine.queue.clean_jobs()
        metrics.record_scheduler_run("clean_jobs", True)
        logger.debug(f"Job cleanup purged {purged} jobs")
    except Exception as e:
        metrics.record_scheduler_run("clean_jobs", False)
        logger.error(f"Job cleanup failed: {e}")


async def flush_health(engine: "ScrapingEngine"):
    try:
        await engine.health.flush()
        metrics.record_scheduler_run("health_flush", True)
    except Exception as e:
        metrics.record_scheduler_run("health_flush", False)
        logger.error(f"Health snapshot flush failed: {e}")


def setup_scheduler(engine: "ScrapingEngine") -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Scheduling overview:
    - Category scan daily at 2 AM with high priority; it fans out listing scans
    - Industry statistics every hour
    - Finished job cleanup every hour
    - Health snapshot every 5 minutes

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        submit_recurring,
        CronTrigger(hour=2, minute=0),
        args=[engine, JobType.CATEGORY_SCAN, {"priority": "high"}],
        id="category_scan",
        name="Scan marketplace categories",
        max_instances=1,
        coalesce=True,
        misfire_grace_time=600,
        replace_existing=True,
    )

    scheduler.add_job(
        submit_recurring,
        CronTrigger(minute=0),
        args=[engine, JobType.STATISTICS_CALC, {"priority": "low"}],
        id="statistics_calc",
        name="Calculate industry statistics",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        clean_finished_jobs,
        IntervalTrigger(hours=1),
        args=[engine],
        id="clean_jobs",
        name="Purge finished jobs",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        flush_health,
        IntervalTrigger(minutes=5),
        args=[engine],
        id="health_flush",
        name="Persist health snapshot",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    logger.info(
        "Scheduler configured: category scan at 2 AM, statistics hourly, "
        "job cleanup hourly, health snapshot every 5 minutes"
    )
    return scheduler
