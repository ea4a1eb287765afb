"""In-process priority job queue with retries, delays and cancellation.

Ready jobs sit in a heap keyed by (priority, submission order); delayed
and backed-off jobs sit in a second heap keyed by their available_at.
A fixed pool of workers waits on one condition variable and is woken by
submissions, resumes and the earliest delayed job becoming due.
"""

import asyncio
import heapq
import itertools
import logging
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from pydantic import ValidationError

from marketscan import metrics
from marketscan.config import QueueConfig
from marketscan.errors import (
    InvalidJobStateError,
    InvalidJobTypeError,
    JobCancelledError,
    JobNotFoundError,
    ListingValidationError,
    MarketScanError,
)
from marketscan.worker.jobs import (
    Job,
    JobContext,
    JobOptions,
    JobStatus,
    JobType,
    ProgressRecord,
    resolve_job_type,
    validate_job_config,
)

logger = logging.getLogger(__name__)

Processor = Callable[[dict, JobContext], Awaitable[dict]]

# Failures that another attempt cannot fix
NON_RETRYABLE_ERRORS = (JobCancelledError, ListingValidationError, InvalidJobTypeError, ValidationError)


class QueueManager:
    """Schedules jobs onto a bounded pool of asyncio workers."""

    def __init__(
        self,
        processors: Optional[Mapping[JobType, Processor]] = None,
        config: Optional[QueueConfig] = None,
        repository=None,
        health_monitor=None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        """
        Initialize queue manager.

        Args:
            processors: Processor per job type
            config: Queue configuration (concurrency, attempts, backoff)
            repository: Optional JobRepository that mirrors job state
            health_monitor: Optional HealthMonitor that receives job failures
            clock: Source of the current time
        """
        self.config = config or QueueConfig()
        self.processors: dict[JobType, Processor] = dict(processors or {})
        self.repository = repository
        self.health = health_monitor
        self._clock = clock

        self._jobs: dict[str, Job] = {}
        self._ready: list[tuple[int, int, str]] = []
        self._delayed: list[tuple[datetime, int, str]] = []
        self._seq = itertools.count()
        self._cond = asyncio.Condition()
        self._progress: "asyncio.Queue[ProgressRecord]" = asyncio.Queue()

        self._paused = False
        self._running = False
        self._workers: list[asyncio.Task] = []
        self._progress_task: Optional[asyncio.Task] = None
        self.store_failures = 0

    def register_processor(self, job_type: JobType, processor: Processor):
        self.processors[job_type] = processor

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_paused(self) -> bool:
        return self._paused

    # Submission

    async def add_job(
        self,
        job_type: Union[JobType, str],
        config: Optional[dict] = None,
        options: Union[JobOptions, dict, None] = None,
    ) -> Job:
        """
        Validate and enqueue a job.

        Args:
            job_type: One of the JobType values
            config: Job parameters, validated against the type's config model
            options: JobOptions or a dict of them (priority, attempts, backoff, delay)

        Returns:
            The queued Job

        Raises:
            InvalidJobTypeError: For unknown job types
            pydantic.ValidationError: For invalid config or options
        """
        job_type = resolve_job_type(job_type)
        job_config = validate_job_config(job_type, config)
        if not isinstance(options, JobOptions):
            options = JobOptions.model_validate(options or {})

        now = self._clock()
        job = Job(
            id=uuid.uuid4().hex,
            type=job_type,
            config=job_config,
            priority=options.priority_value,
            max_attempts=options.attempts or self.config.default_attempts,
            backoff_seconds=(
                options.backoff_seconds
                if options.backoff_seconds is not None
                else self.config.backoff_base_seconds
            ),
            created_at=now,
            available_at=now + timedelta(seconds=options.delay_seconds),
        )
        self._jobs[job.id] = job
        # mirrored before any worker can claim it
        await self._store(job)
        await self._push(job)

        metrics.record_job_submitted(job_type.value, job.priority)
        logger.info(f"Queued {job_type.value} job {job.id} (priority {job.priority})")
        return job

    async def _push(self, job: Job):
        if job.available_at > self._clock():
            heapq.heappush(self._delayed, (job.available_at, next(self._seq), job.id))
        else:
            heapq.heappush(self._ready, (job.priority, next(self._seq), job.id))
        await self._notify_all()

    # Queries

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def jobs(self, status: Optional[JobStatus] = None) -> list[Job]:
        return [j for j in self._jobs.values() if status is None or j.status == status]

    def get_queue_stats(self) -> dict[str, int]:
        """
        Job counts per state.

        Queued jobs that are due count as waiting, or as paused while the
        queue is paused; queued jobs not yet due count as delayed.
        """
        now = self._clock()
        stats = {"waiting": 0, "active": 0, "completed": 0, "failed": 0, "delayed": 0, "paused": 0}
        for job in self._jobs.values():
            if job.status == JobStatus.QUEUED:
                if job.available_at > now:
                    stats["delayed"] += 1
                elif self._paused:
                    stats["paused"] += 1
                else:
                    stats["waiting"] += 1
            else:
                stats[job.status.value] += 1
        stats["total"] = len(self._jobs)
        metrics.update_queue_depth(stats)
        return stats

    # Control

    async def pause(self):
        """Stop dispatching new jobs. Active jobs run to completion."""
        self._paused = True
        logger.info("Queue paused")

    async def resume(self):
        self._paused = False
        async with self._cond:
            self._cond.notify_all()
        logger.info("Queue resumed")

    async def retry_failed_jobs(self) -> int:
        """
        Re-queue failed jobs that still have attempts left.

        Returns:
            Number of jobs re-queued
        """
        retried = 0
        for job in self.jobs(JobStatus.FAILED):
            if not job.can_retry:
                continue
            job.transition(JobStatus.QUEUED)
            job.available_at = self._clock()
            job.completed_at = None
            await self._store(job)
            await self._push(job)
            retried += 1
        if retried:
            logger.info(f"Re-queued {retried} failed jobs")
        return retried

    async def clean_jobs(self, grace_seconds: Optional[float] = None) -> int:
        """
        Purge finished jobs.

        Completed jobs older than the grace period and failed jobs older than
        24 times the grace period are removed.

        Returns:
            Number of jobs purged
        """
        grace = timedelta(
            seconds=self.config.clean_grace_seconds if grace_seconds is None else grace_seconds
        )
        now = self._clock()
        purged = []
        for job in list(self._jobs.values()):
            finished = job.completed_at or job.created_at
            if job.status == JobStatus.COMPLETED and finished < now - grace:
                purged.append(job.id)
            elif job.status == JobStatus.FAILED and finished < now - grace * 24:
                purged.append(job.id)

        for job_id in purged:
            del self._jobs[job_id]
        if purged:
            logger.info(f"Cleaned {len(purged)} finished jobs")
            await self._delete_stored(purged)
        return len(purged)

    async def cancel_job(self, job_id: str) -> Job:
        """
        Cancel a job.

        Queued jobs are removed outright. Active jobs are flagged and stop at
        their next checkpoint, ending failed without retry.

        Raises:
            JobNotFoundError: For unknown ids
            InvalidJobStateError: If the job already completed or failed
        """
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)

        if job.status == JobStatus.QUEUED:
            # Heap entries for missing ids are skipped when popped
            del self._jobs[job_id]
            job.cancel_requested = True
            logger.info(f"Removed queued job {job_id}")
            await self._delete_stored([job_id])
            await self._notify_all()
        elif job.status == JobStatus.ACTIVE:
            job.cancel_requested = True
            logger.info(f"Cancellation requested for active job {job_id}")
        else:
            raise InvalidJobStateError(f"Job {job_id} is already {job.status.value}")
        return job

    # Lifecycle

    async def start(self):
        """Start the worker pool and the progress consumer."""
        if self._running:
            return
        self._running = True
        self._progress_task = asyncio.create_task(self._consume_progress())
        self._workers = [
            asyncio.create_task(self._worker(n)) for n in range(self.config.concurrency)
        ]
        logger.info(f"Queue started with {self.config.concurrency} workers")

    async def stop(self, timeout: float = 30.0):
        """
        Stop the workers, letting active jobs finish within the timeout.

        Jobs still running after the timeout are interrupted and re-queued
        without using up an attempt.
        """
        if not self._running:
            return
        self._running = False
        async with self._cond:
            self._cond.notify_all()

        if self._workers:
            done, pending = await asyncio.wait(self._workers, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        self._workers = []

        if self._progress_task is not None:
            self._drain_progress()
            self._progress_task.cancel()
            await asyncio.gather(self._progress_task, return_exceptions=True)
            self._progress_task = None
        logger.info("Queue stopped")

    def _is_drained(self) -> bool:
        return not any(
            j.status in (JobStatus.QUEUED, JobStatus.ACTIVE) for j in self._jobs.values()
        )

    async def wait_until_drained(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until no job is queued, delayed or active.

        Returns:
            False if the timeout expired first
        """
        try:
            async with self._cond:
                await asyncio.wait_for(self._cond.wait_for(self._is_drained), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    # Dispatch

    def _promote_due(self):
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, job_id = heapq.heappop(self._delayed)
            job = self._jobs.get(job_id)
            if job is not None and job.status == JobStatus.QUEUED:
                heapq.heappush(self._ready, (job.priority, next(self._seq), job_id))

    def _pop_ready(self) -> Optional[Job]:
        while self._ready:
            _, _, job_id = heapq.heappop(self._ready)
            job = self._jobs.get(job_id)
            if job is not None and job.status == JobStatus.QUEUED:
                return job
        return None

    def _seconds_until_due(self) -> Optional[float]:
        if not self._delayed:
            return None
        return max(0.0, (self._delayed[0][0] - self._clock()).total_seconds())

    async def _next_job(self) -> Optional[Job]:
        async with self._cond:
            while self._running:
                self._promote_due()
                if not self._paused:
                    job = self._pop_ready()
                    if job is not None:
                        job.transition(JobStatus.ACTIVE)
                        return job
                try:
                    await asyncio.wait_for(self._cond.wait(), self._seconds_until_due())
                except asyncio.TimeoutError:
                    pass
        return None

    async def _worker(self, number: int):
        logger.debug(f"Queue worker {number} started")
        while self._running:
            job = await self._next_job()
            if job is None:
                break
            await self._run(job)
        logger.debug(f"Queue worker {number} stopped")

    async def _run(self, job: Job):
        job.started_at = self._clock()
        job.progress = 0
        job.last_error = None
        await self._store(job)

        context = JobContext(job, self._progress, self.add_job)
        processor = self.processors.get(job.type)
        started = time.monotonic()
        context.log.info(f"Starting {job.type.value} job (attempt {job.attempts_made + 1}/{job.max_attempts})")

        try:
            if processor is None:
                raise MarketScanError(f"No processor registered for {job.type.value}")
            context.checkpoint()
            result = await processor(job.config, context)
        except asyncio.CancelledError:
            self._interrupt(job)
            await self._store(job)
            await self._notify_all()
            raise
        except NON_RETRYABLE_ERRORS as e:
            await self._fail(job, e, retry=False)
            metrics.record_job_finished(job.type.value, "failed", time.monotonic() - started)
        except Exception as e:
            await self._fail(job, e, retry=True)
            metrics.record_job_finished(job.type.value, "failed", time.monotonic() - started)
        else:
            self._drain_progress()
            job.transition(JobStatus.COMPLETED)
            job.result = result
            job.progress = 100
            job.completed_at = self._clock()
            metrics.record_job_finished(job.type.value, "completed", time.monotonic() - started)
            context.log.info(f"Completed {job.type.value} job in {time.monotonic() - started:.1f}s")

        await self._store(job)
        await self._notify_all()

    async def _fail(self, job: Job, error: Exception, retry: bool):
        self._drain_progress()
        job.attempts_made += 1
        job.last_error = str(error) or type(error).__name__
        job.transition(JobStatus.FAILED)
        job.completed_at = self._clock()

        if self.health is not None and not isinstance(error, JobCancelledError):
            self.health.record_error(error, {"job_id": job.id, "job_type": job.type.value})

        if retry and job.can_retry:
            delay = job.retry_delay(self.config.backoff_max_seconds)
            job.transition(JobStatus.QUEUED)
            job.available_at = self._clock() + delay
            job.completed_at = None
            metrics.record_job_retry(job.type.value)
            logger.warning(
                f"{job.type.value} job {job.id} failed (attempt {job.attempts_made}/{job.max_attempts}), "
                f"retrying in {delay.total_seconds():.1f}s: {job.last_error}"
            )
            await self._push(job)
        elif isinstance(error, JobCancelledError):
            logger.info(f"{job.type.value} job {job.id} cancelled")
        else:
            logger.error(
                f"{job.type.value} job {job.id} failed permanently after "
                f"{job.attempts_made} attempts: {job.last_error}"
            )

    def _interrupt(self, job: Job):
        """Put a job interrupted by shutdown back in the queue without charging an attempt."""
        if job.status != JobStatus.ACTIVE:
            return
        job.transition(JobStatus.FAILED)
        job.transition(JobStatus.QUEUED)
        job.available_at = self._clock()
        job.last_error = "Interrupted by shutdown"
        heapq.heappush(self._ready, (job.priority, next(self._seq), job.id))
        logger.warning(f"{job.type.value} job {job.id} interrupted by shutdown, re-queued")

    async def _notify_all(self):
        async with self._cond:
            self._cond.notify_all()

    # Progress

    def _apply_progress(self, record: ProgressRecord):
        job = self._jobs.get(record.job_id)
        if job is None or job.status != JobStatus.ACTIVE:
            return
        job.progress = record.progress
        if record.message:
            logger.debug(f"Job {job.id} progress {record.progress}%: {record.message}")

    def _drain_progress(self):
        while not self._progress.empty():
            self._apply_progress(self._progress.get_nowait())

    async def _consume_progress(self):
        while True:
            record = await self._progress.get()
            self._apply_progress(record)

    # Mirroring

    async def _store(self, job: Job):
        if self.repository is None:
            return
        try:
            await self.repository.save(job)
        except Exception as e:
            self.store_failures += 1
            metrics.job_store_errors_total.inc()
            logger.error(f"Failed to mirror job {job.id}: {e}")

    async def _delete_stored(self, job_ids: list[str]):
        if self.repository is None:
            return
        try:
            await self.repository.delete(job_ids)
        except Exception as e:
            self.store_failures += 1
            metrics.job_store_errors_total.inc()
            logger.error(f"Failed to delete mirrored jobs: {e}")

    def snapshot(self) -> dict[str, Any]:
        return {"stats": self.get_queue_stats(), "jobs": [j.to_dict() for j in self._jobs.values()]}
