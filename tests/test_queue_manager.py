"""Tests for the priority job queue."""

import asyncio
from datetime import datetime, timedelta

import pytest
from pydantic import ValidationError

from marketscan.config import QueueConfig
from marketscan.db.job_store import JobRepository
from marketscan.errors import (
    InvalidJobStateError,
    InvalidJobTypeError,
    JobNotFoundError,
    ListingValidationError,
    NetworkError,
)
from marketscan.monitoring.health_monitor import HealthMonitor
from marketscan.worker.jobs import Job, JobStatus, JobType
from marketscan.worker.queue_manager import QueueManager


NO_BACKOFF = {"backoff_seconds": 0}


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 3, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


async def _ok(config, ctx):
    return {"ok": True}


async def _boom(config, ctx):
    raise NetworkError("site unreachable")


def _queue(processors=None, concurrency=2, **kwargs):
    processors = processors or {job_type: _ok for job_type in JobType}
    return QueueManager(processors, config=QueueConfig(concurrency=concurrency), **kwargs)


async def _run_until_drained(queue, timeout=5):
    await queue.start()
    try:
        assert await queue.wait_until_drained(timeout=timeout)
    finally:
        await queue.stop(timeout=1)


async def test_add_job_returns_queued_job():
    queue = _queue()
    job = await queue.add_job("listing_scan", {"category": "saas", "max_pages": 2}, {"priority": "high"})

    assert job.status == JobStatus.QUEUED
    assert job.type == JobType.LISTING_SCAN
    assert job.priority == 1
    assert job.config == {"category": "saas", "max_pages": 2}
    assert queue.get_job(job.id) is job
    assert queue.get_job("missing") is None


@pytest.mark.parametrize("priority,value", [("high", 1), ("normal", 5), ("low", 10)])
async def test_priority_values(priority, value):
    job = await _queue().add_job(JobType.CATEGORY_SCAN, options={"priority": priority})
    assert job.priority == value


async def test_unknown_job_type_rejected():
    with pytest.raises(InvalidJobTypeError):
        await _queue().add_job("price_scan")


@pytest.mark.parametrize(
    "job_type,config,options",
    [
        ("listing_scan", {}, None),
        ("listing_scan", {"category": "saas", "max_pages": 0}, None),
        ("category_scan", {"unexpected": True}, None),
        ("detail_fetch", {"listing_id": ""}, None),
        ("category_scan", None, {"priority": "urgent"}),
        ("category_scan", None, {"retries": 2}),
    ],
)
async def test_invalid_config_or_options_rejected(job_type, config, options):
    queue = _queue()
    with pytest.raises(ValidationError):
        await queue.add_job(job_type, config, options)
    assert queue.get_queue_stats()["total"] == 0


def test_completed_requires_active():
    job = Job(id="j1", type=JobType.CATEGORY_SCAN, config={})
    with pytest.raises(InvalidJobStateError):
        job.transition(JobStatus.COMPLETED)

    job.transition(JobStatus.ACTIVE)
    job.transition(JobStatus.COMPLETED)
    with pytest.raises(InvalidJobStateError):
        job.transition(JobStatus.QUEUED)


async def test_jobs_served_by_priority_then_submission_order():
    order = []

    async def record(config, ctx):
        order.append(config["category"])
        return {}

    queue = _queue({JobType.LISTING_SCAN: record}, concurrency=1)
    for category, priority in [("a", "low"), ("b", "normal"), ("c", "high"), ("d", "normal"), ("e", "high")]:
        await queue.add_job("listing_scan", {"category": category}, {"priority": priority})

    await _run_until_drained(queue)

    assert order == ["c", "e", "b", "d", "a"]


async def test_every_job_ends_completed_or_failed():
    async def flaky(config, ctx):
        if config["listing_id"].endswith("3"):
            raise NetworkError("timeout")
        return {"success": True}

    queue = _queue({**{t: _ok for t in JobType}, JobType.DETAIL_FETCH: flaky}, concurrency=3)
    submitted = []
    for i in range(20):
        submitted.append(await queue.add_job("detail_fetch", {"listing_id": str(i)}, NO_BACKOFF))
    for job_type in ("category_scan", "statistics_calc"):
        submitted.append(await queue.add_job(job_type, options=NO_BACKOFF))

    await _run_until_drained(queue)

    stats = queue.get_queue_stats()
    assert stats["completed"] + stats["failed"] == len(submitted)
    assert stats["failed"] == 2
    assert stats["waiting"] == stats["active"] == stats["delayed"] == 0


async def test_failing_job_retried_twice_then_final():
    calls = []

    async def always_fails(config, ctx):
        calls.append(ctx.job.attempts_made)
        raise NetworkError("connection reset")

    health = HealthMonitor()
    queue = _queue({JobType.CATEGORY_SCAN: always_fails}, health_monitor=health)
    job = await queue.add_job("category_scan", options={"attempts": 3, "backoff_seconds": 0.01})

    await _run_until_drained(queue)

    assert calls == [0, 1, 2]
    assert job.status == JobStatus.FAILED
    assert job.attempts_made == 3
    assert job.last_error == "connection reset"
    assert len(health.errors) == 3


def test_backoff_doubles_and_caps():
    job = Job(id="j1", type=JobType.CATEGORY_SCAN, config={}, backoff_seconds=5)
    delays = []
    for attempts in (1, 2, 3, 4):
        job.attempts_made = attempts
        delays.append(job.retry_delay(max_seconds=30).total_seconds())
    assert delays == [5, 10, 20, 30]


async def test_retry_waits_for_backoff():
    clock = FakeClock()
    queue = QueueManager({JobType.CATEGORY_SCAN: _boom}, QueueConfig(concurrency=1), clock=clock)
    job = await queue.add_job("category_scan", options={"attempts": 2, "backoff_seconds": 60})

    await queue.start()
    try:
        for _ in range(50):
            if job.attempts_made:
                break
            await asyncio.sleep(0.01)

        assert job.status == JobStatus.QUEUED
        assert job.available_at == clock.now + timedelta(seconds=60)
        assert queue.get_queue_stats()["delayed"] == 1
    finally:
        await queue.stop(timeout=1)


async def test_validation_failure_is_not_retried():
    async def invalid(config, ctx):
        raise ListingValidationError("42", ["price missing"])

    queue = _queue({JobType.DETAIL_FETCH: invalid})
    job = await queue.add_job("detail_fetch", {"listing_id": "42"}, {"attempts": 3})

    await _run_until_drained(queue)

    assert job.status == JobStatus.FAILED
    assert job.attempts_made == 1


async def test_retry_failed_jobs_requeues_those_with_attempts_left():
    calls = []

    async def fails_once(config, ctx):
        calls.append(1)
        if len(calls) == 1:
            raise ListingValidationError("42", ["price missing"])
        return {"success": True}

    queue = _queue({JobType.DETAIL_FETCH: fails_once, JobType.CATEGORY_SCAN: _boom})
    retryable = await queue.add_job("detail_fetch", {"listing_id": "42"}, {"attempts": 2})
    exhausted = await queue.add_job("category_scan", options={"attempts": 1})

    await queue.start()
    try:
        assert await queue.wait_until_drained(timeout=5)
        assert retryable.status == exhausted.status == JobStatus.FAILED

        assert await queue.retry_failed_jobs() == 1
        assert await queue.wait_until_drained(timeout=5)
    finally:
        await queue.stop(timeout=1)

    assert retryable.status == JobStatus.COMPLETED
    assert retryable.result == {"success": True}
    assert exhausted.status == JobStatus.FAILED


async def test_stats_while_paused():
    queue = _queue()
    await queue.start()
    try:
        await queue.pause()
        assert queue.is_paused and queue.is_running
        await queue.add_job("category_scan")
        await queue.add_job("statistics_calc")
        await queue.add_job("statistics_calc", options={"delay_seconds": 3600})

        stats = queue.get_queue_stats()
        assert stats == {
            "waiting": 0,
            "active": 0,
            "completed": 0,
            "failed": 0,
            "delayed": 1,
            "paused": 2,
            "total": 3,
        }

        await queue.resume()
        for _ in range(100):
            if queue.get_queue_stats()["completed"] == 2:
                break
            await asyncio.sleep(0.01)
        assert queue.get_queue_stats()["completed"] == 2
        assert queue.get_queue_stats()["delayed"] == 1
    finally:
        await queue.stop(timeout=1)


async def test_delayed_job_runs_when_due():
    queue = _queue()
    job = await queue.add_job("category_scan", options={"delay_seconds": 0.05})
    assert queue.get_queue_stats()["delayed"] == 1

    await _run_until_drained(queue)
    assert job.status == JobStatus.COMPLETED


async def test_cancel_queued_job_removes_it():
    queue = _queue()
    job = await queue.add_job("category_scan")

    cancelled = await queue.cancel_job(job.id)

    assert cancelled is job
    assert queue.get_job(job.id) is None
    assert queue.get_queue_stats()["total"] == 0
    await _run_until_drained(queue)


async def test_cancel_active_job_stops_at_checkpoint():
    started = asyncio.Event()
    release = asyncio.Event()

    async def long_scan(config, ctx):
        started.set()
        await release.wait()
        ctx.checkpoint()
        return {"pages": 2}

    health = HealthMonitor()
    queue = _queue({JobType.LISTING_SCAN: long_scan}, health_monitor=health)
    job = await queue.add_job("listing_scan", {"category": "saas", "max_pages": 2}, {"attempts": 3})

    await queue.start()
    try:
        await asyncio.wait_for(started.wait(), 2)
        assert (await queue.cancel_job(job.id)).cancel_requested
        release.set()
        assert await queue.wait_until_drained(timeout=5)
    finally:
        await queue.stop(timeout=1)

    assert job.status == JobStatus.FAILED
    assert job.attempts_made == 1
    assert "cancelled" in job.last_error
    assert await queue.retry_failed_jobs() == 0
    assert len(health.errors) == 0


async def test_cancel_finished_or_unknown_job_rejected():
    queue = _queue()
    job = await queue.add_job("category_scan")
    await _run_until_drained(queue)

    with pytest.raises(InvalidJobStateError):
        await queue.cancel_job(job.id)
    with pytest.raises(JobNotFoundError):
        await queue.cancel_job("no-such-job")


async def test_clean_jobs_keeps_failed_longer():
    clock = FakeClock()
    queue = QueueManager(
        {JobType.CATEGORY_SCAN: _ok, JobType.STATISTICS_CALC: _boom},
        QueueConfig(concurrency=1),
        clock=clock,
    )
    done = await queue.add_job("category_scan")
    failed = await queue.add_job("statistics_calc", options={"attempts": 1})
    await _run_until_drained(queue)

    clock.advance(minutes=30)
    assert await queue.clean_jobs(grace_seconds=3600) == 0

    clock.advance(hours=1)
    assert await queue.clean_jobs(grace_seconds=3600) == 1
    assert queue.get_job(done.id) is None
    assert queue.get_job(failed.id) is failed

    clock.advance(hours=24)
    assert await queue.clean_jobs(grace_seconds=3600) == 1
    assert queue.get_queue_stats()["total"] == 0


async def test_progress_and_follow_on_jobs():
    reported = asyncio.Event()
    release = asyncio.Event()

    async def scan(config, ctx):
        ctx.report_progress(50, "halfway")
        reported.set()
        await release.wait()
        await ctx.enqueue("detail_fetch", {"listing_id": "7"}, {"priority": "high"})
        return {"detail_jobs_queued": 1}

    queue = _queue({**{t: _ok for t in JobType}, JobType.LISTING_SCAN: scan}, concurrency=1)
    job = await queue.add_job("listing_scan", {"category": "saas"})

    await queue.start()
    try:
        await asyncio.wait_for(reported.wait(), 2)
        for _ in range(50):
            if job.progress == 50:
                break
            await asyncio.sleep(0.01)
        assert job.progress == 50
        release.set()
        assert await queue.wait_until_drained(timeout=5)
    finally:
        await queue.stop(timeout=1)

    assert job.progress == 100
    follow_on = [j for j in queue.jobs() if j.type == JobType.DETAIL_FETCH]
    assert len(follow_on) == 1
    assert follow_on[0].priority == 1
    assert follow_on[0].status == JobStatus.COMPLETED


async def test_stop_requeues_interrupted_job_without_charging_attempt():
    started = asyncio.Event()

    async def hangs(config, ctx):
        started.set()
        await asyncio.Event().wait()

    queue = _queue({JobType.CATEGORY_SCAN: hangs}, concurrency=1)
    job = await queue.add_job("category_scan")

    await queue.start()
    await asyncio.wait_for(started.wait(), 2)
    await queue.stop(timeout=0.05)

    assert job.status == JobStatus.QUEUED
    assert job.attempts_made == 0
    assert job.last_error == "Interrupted by shutdown"


async def test_missing_processor_fails_job():
    queue = _queue({JobType.CATEGORY_SCAN: _ok})
    job = await queue.add_job("statistics_calc", options={"attempts": 1})
    await _run_until_drained(queue)

    assert job.status == JobStatus.FAILED
    assert "No processor registered" in job.last_error


async def test_registered_processor_is_used():
    queue = _queue({JobType.CATEGORY_SCAN: _ok})

    async def stats(config, ctx):
        return {"industry": config.get("industry")}

    queue.register_processor(JobType.STATISTICS_CALC, stats)
    job = await queue.add_job("statistics_calc", {"industry": "SaaS"})
    await _run_until_drained(queue)

    assert job.status == JobStatus.COMPLETED
    assert job.result == {"industry": "SaaS"}


async def test_jobs_mirrored_to_database(session_factory):
    repository = JobRepository(session_factory)
    queue = _queue(repository=repository)
    job = await queue.add_job("listing_scan", {"category": "saas"})

    row = await repository.get(job.id)
    assert row.status == "queued"

    await _run_until_drained(queue)

    row = await repository.get(job.id)
    assert row.status == "completed"
    assert row.result == {"ok": True}
    assert row.config == {"category": "saas", "max_pages": 1}
    assert queue.store_failures == 0


async def test_job_is_mirrored_before_workers_can_claim_it():
    class RecordingRepository:
        def __init__(self):
            self.saves = []

        async def save(self, job):
            await asyncio.sleep(0)
            self.saves.append((job.id, job.status))

        async def delete(self, job_ids):
            pass

    repository = RecordingRepository()
    queue = _queue(repository=repository, concurrency=4)
    await queue.start()
    try:
        jobs = [await queue.add_job("listing_scan", {"category": f"c{i}"}) for i in range(10)]
        assert await queue.wait_until_drained(timeout=5)
    finally:
        await queue.stop(timeout=1)

    for job in jobs:
        statuses = [status for job_id, status in repository.saves if job_id == job.id]
        assert statuses[0] == JobStatus.QUEUED
        assert statuses[-1] == JobStatus.COMPLETED
    assert queue.store_failures == 0


async def test_mirror_failures_do_not_fail_jobs():
    class BrokenRepository:
        async def save(self, job):
            raise RuntimeError("database down")

        async def delete(self, job_ids):
            raise RuntimeError("database down")

    queue = _queue(repository=BrokenRepository())
    job = await queue.add_job("category_scan")
    await _run_until_drained(queue)

    assert job.status == JobStatus.COMPLETED
    assert queue.store_failures >= 3
