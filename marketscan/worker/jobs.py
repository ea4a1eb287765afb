"""Job model, job options and per-type job configuration."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date as calendar_date
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from marketscan.config import MAX_SCAN_PAGES
from marketscan.errors import InvalidJobStateError, InvalidJobTypeError, JobCancelledError
from marketscan.logging_config import get_logger

logger = logging.getLogger(__name__)


class JobType(str, Enum):
    CATEGORY_SCAN = "category_scan"
    LISTING_SCAN = "listing_scan"
    DETAIL_FETCH = "detail_fetch"
    STATISTICS_CALC = "statistics_calc"


class JobStatus(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


# Lower value is served first
PRIORITY_LEVELS = {"high": 1, "normal": 5, "low": 10}

_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.QUEUED: {JobStatus.ACTIVE},
    JobStatus.ACTIVE: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.FAILED: {JobStatus.QUEUED},
    JobStatus.COMPLETED: set(),
}


class JobOptions(BaseModel):
    """Per-submission overrides of queue defaults."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    priority: Literal["high", "normal", "low"] = "normal"
    attempts: Optional[int] = Field(None, ge=1)
    backoff_seconds: Optional[float] = Field(None, ge=0)
    delay_seconds: float = Field(0, ge=0)

    @property
    def priority_value(self) -> int:
        return PRIORITY_LEVELS[self.priority]


class _JobConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")


class CategoryScanConfig(_JobConfig):
    pass


class ListingScanConfig(_JobConfig):
    category: str = Field(..., min_length=1)
    max_pages: int = Field(1, ge=1, le=MAX_SCAN_PAGES)


class DetailFetchConfig(_JobConfig):
    listing_id: str = Field(..., min_length=1)
    url: Optional[str] = None


class StatisticsCalcConfig(_JobConfig):
    industry: Optional[str] = None
    date: Optional[calendar_date] = None


JOB_CONFIG_MODELS: dict[JobType, type[_JobConfig]] = {
    JobType.CATEGORY_SCAN: CategoryScanConfig,
    JobType.LISTING_SCAN: ListingScanConfig,
    JobType.DETAIL_FETCH: DetailFetchConfig,
    JobType.STATISTICS_CALC: StatisticsCalcConfig,
}


def resolve_job_type(value: Any) -> JobType:
    """
    Map a job type name to JobType.

    Raises:
        InvalidJobTypeError: For names outside the known job types
    """
    try:
        return JobType(value)
    except ValueError:
        raise InvalidJobTypeError(
            f"Unknown job type {value!r}, expected one of {', '.join(t.value for t in JobType)}"
        ) from None


def validate_job_config(job_type: JobType, config: Optional[dict]) -> dict:
    """Validate a job config against its type's model. Unknown keys are rejected."""
    model = JOB_CONFIG_MODELS[job_type].model_validate(config or {})
    return model.model_dump(mode="json", exclude_none=True)


@dataclass
class Job:
    """A unit of work tracked by the queue."""

    id: str
    type: JobType
    config: dict
    priority: int = PRIORITY_LEVELS["normal"]
    max_attempts: int = 3
    backoff_seconds: float = 5.0
    status: JobStatus = JobStatus.QUEUED
    attempts_made: int = 0
    progress: int = 0
    result: Optional[dict] = None
    last_error: Optional[str] = None
    created_at: datetime = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    available_at: datetime = None
    cancel_requested: bool = False

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = datetime.utcnow()
        if self.available_at is None:
            self.available_at = self.created_at

    def transition(self, status: JobStatus):
        """
        Move to a new status.

        Raises:
            InvalidJobStateError: If the move is not allowed from the current status
        """
        if status not in _TRANSITIONS[self.status]:
            raise InvalidJobStateError(
                f"Job {self.id} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status

    def retry_delay(self, max_seconds: float) -> timedelta:
        """Exponential backoff for the next attempt: base * 2^(attempts_made - 1), capped."""
        seconds = self.backoff_seconds * (2 ** max(self.attempts_made - 1, 0))
        return timedelta(seconds=min(seconds, max_seconds))

    @property
    def can_retry(self) -> bool:
        return self.attempts_made < self.max_attempts and not self.cancel_requested

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "config": self.config,
            "priority": self.priority,
            "status": self.status.value,
            "attempts_made": self.attempts_made,
            "max_attempts": self.max_attempts,
            "progress": self.progress,
            "result": self.result,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "available_at": self.available_at.isoformat() if self.available_at else None,
            "cancel_requested": self.cancel_requested,
        }


@dataclass
class ProgressRecord:
    job_id: str
    progress: int
    message: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)


EnqueueFn = Callable[..., Awaitable[Job]]


class JobContext:
    """What a running processor may touch: progress, follow-on jobs and cancellation."""

    def __init__(self, job: Job, progress_channel: "asyncio.Queue[ProgressRecord]", enqueue: EnqueueFn):
        self.job = job
        self._progress_channel = progress_channel
        self._enqueue = enqueue
        self.log = get_logger(__name__, job_id=job.id, job_type=job.type.value)

    def report_progress(self, progress: int, message: Optional[str] = None):
        self._progress_channel.put_nowait(
            ProgressRecord(job_id=self.job.id, progress=max(0, min(100, progress)), message=message)
        )

    async def enqueue(self, job_type: Any, config: Optional[dict] = None, options: Any = None) -> Job:
        """Submit a follow-on job to the queue that runs this one."""
        return await self._enqueue(job_type, config, options)

    def checkpoint(self):
        """
        Raise if cancellation of this job was requested.

        Raises:
            JobCancelledError: Once cancel_requested is set
        """
        if self.job.cancel_requested:
            raise JobCancelledError(f"Job {self.job.id} was cancelled")
