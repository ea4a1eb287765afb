"""Prometheus metrics for the scraping engine."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("marketscan", "Marketplace scraping engine info")
app_info.info({"version": "0.1.0", "name": "marketscan"})

# Job metrics
jobs_submitted_total = Counter(
    "marketscan_jobs_submitted_total",
    "Total number of jobs submitted",
    ["job_type", "priority"],
)

jobs_finished_total = Counter(
    "marketscan_jobs_finished_total",
    "Total number of job attempts that finished",
    ["job_type", "status"],
)

job_retries_total = Counter(
    "marketscan_job_retries_total",
    "Total number of job retries scheduled",
    ["job_type"],
)

job_duration_seconds = Histogram(
    "marketscan_job_duration_seconds",
    "Time spent running a job attempt",
    ["job_type"],
    buckets=[0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0, 3600.0],
)

queue_depth = Gauge(
    "marketscan_queue_depth",
    "Jobs per queue state",
    ["state"],
)

job_store_errors_total = Counter(
    "marketscan_job_store_errors_total",
    "Failures mirroring job state to the database",
)

# Extraction metrics
extractions_total = Counter(
    "marketscan_extractions_total",
    "Extraction outcomes",
    ["data_type", "strategy", "outcome"],
)

page_fetch_duration_seconds = Histogram(
    "marketscan_page_fetch_duration_seconds",
    "Time spent loading a page",
    ["source"],
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
)

selector_evolutions_total = Counter(
    "marketscan_selector_evolutions_total",
    "Selector repairs applied",
    ["data_type", "action"],
)

rate_limit_wait_seconds = Histogram(
    "marketscan_rate_limit_wait_seconds",
    "Time spent waiting on the request rate limiter",
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 60.0],
)

# Persistence metrics
listings_persisted_total = Counter(
    "marketscan_listings_persisted_total",
    "Listings handled by the deduplication store",
    ["outcome"],
)

persistence_errors_total = Counter(
    "marketscan_persistence_errors_total",
    "Listings that failed to persist",
    ["operation"],
)

invalid_listings_total = Counter(
    "marketscan_invalid_listings_total",
    "Listings rejected by validation",
)

# Health metrics
health_alerts_total = Counter(
    "marketscan_health_alerts_total",
    "Health alerts raised",
    ["alert_type", "severity"],
)

health_errors_total = Counter(
    "marketscan_health_errors_total",
    "Errors recorded by the health monitor",
    ["error_type"],
)

health_status = Gauge(
    "marketscan_health_status",
    "Overall health (0 healthy, 1 degraded, 2 critical)",
)

scheduler_runs_total = Counter(
    "marketscan_scheduler_runs_total",
    "Total number of scheduler runs",
    ["job_type", "status"],
)

scheduler_last_run_timestamp = Gauge(
    "marketscan_scheduler_last_run_timestamp",
    "Timestamp of last scheduler run",
    ["job_type"],
)

_HEALTH_LEVELS = {"healthy": 0, "degraded": 1, "critical": 2}


def record_job_submitted(job_type: str, priority: int):
    """Record a job entering the queue."""
    jobs_submitted_total.labels(job_type=job_type, priority=str(priority)).inc()


def record_job_finished(job_type: str, status: str, duration: float):
    """Record the end of one job attempt."""
    jobs_finished_total.labels(job_type=job_type, status=status).inc()
    job_duration_seconds.labels(job_type=job_type).observe(duration)


def record_job_retry(job_type: str):
    job_retries_total.labels(job_type=job_type).inc()


def update_queue_depth(stats: dict[str, int]):
    """Update the queue_depth gauge from a queue stats snapshot."""
    for state, count in stats.items():
        if state != "total":
            queue_depth.labels(state=state).set(count)


def record_extraction(data_type: str, strategy: str, outcome: str):
    extractions_total.labels(data_type=data_type, strategy=strategy, outcome=outcome).inc()


def record_page_fetch(source: str, duration: float):
    page_fetch_duration_seconds.labels(source=source).observe(duration)


def record_selector_evolution(data_type: str, action: str):
    selector_evolutions_total.labels(data_type=data_type, action=action).inc()


def record_persistence(new: int, updated: int, unchanged: int, errors: int):
    """Record the outcome counts of one save_listings batch."""
    listings_persisted_total.labels(outcome="new").inc(new)
    listings_persisted_total.labels(outcome="updated").inc(updated)
    listings_persisted_total.labels(outcome="unchanged").inc(unchanged)
    if errors:
        persistence_errors_total.labels(operation="save_listings").inc(errors)


def record_alert_raised(alert_type: str, severity: str):
    health_alerts_total.labels(alert_type=alert_type, severity=severity).inc()


def record_health_status(status: str):
    health_status.set(_HEALTH_LEVELS.get(status, 2))


def record_scheduler_run(job_type: str, success: bool):
    """Record a scheduler job run."""
    status = "success" if success else "error"
    scheduler_runs_total.labels(job_type=job_type, status=status).inc()
    scheduler_last_run_timestamp.labels(job_type=job_type).set(time.time())
