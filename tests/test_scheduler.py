"""Tests for recurring job registration and submission."""

from marketscan.worker.jobs import JobType
from marketscan.worker.scheduler import clean_finished_jobs, setup_scheduler, submit_recurring


class StubQueue:
    def __init__(self):
        self.cleaned = 0

    async def clean_jobs(self):
        self.cleaned += 1
        return 2


class StubEngine:
    def __init__(self, fail=False):
        self.fail = fail
        self.submitted = []
        self.queue = StubQueue()

    async def submit_job(self, job_type, config=None, options=None):
        if self.fail:
            raise RuntimeError("queue unavailable")
        self.submitted.append((job_type, options))
        return "job-1"


def test_scheduler_registers_recurring_jobs():
    scheduler = setup_scheduler(StubEngine())

    assert {job.id for job in scheduler.get_jobs()} == {
        "category_scan",
        "statistics_calc",
        "clean_jobs",
        "health_flush",
    }


async def test_submit_recurring_passes_priority():
    engine = StubEngine()

    await submit_recurring(engine, JobType.CATEGORY_SCAN, {"priority": "high"})

    assert engine.submitted == [(JobType.CATEGORY_SCAN, {"priority": "high"})]


async def test_submit_failure_is_logged_not_raised():
    await submit_recurring(StubEngine(fail=True), JobType.STATISTICS_CALC)


async def test_clean_finished_jobs():
    engine = StubEngine()
    await clean_finished_jobs(engine)
    assert engine.queue.cleaned == 1
