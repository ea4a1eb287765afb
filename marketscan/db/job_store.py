"""Mirror of in-memory queue jobs to the scrape_jobs table."""

import logging
from typing import Iterable, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketscan.db.models import ScrapeJob
from marketscan.worker.jobs import Job

logger = logging.getLogger(__name__)


class JobRepository:
    """Writes job state snapshots; the queue stays the source of truth."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def save(self, job: Job) -> None:
        row = ScrapeJob(
            id=job.id,
            job_type=job.type.value,
            status=job.status.value,
            priority=job.priority,
            config=job.config,
            attempts_made=job.attempts_made,
            max_attempts=job.max_attempts,
            progress=job.progress,
            result=job.result,
            last_error=job.last_error,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )
        async with self._session_factory() as session:
            await session.merge(row)
            await session.commit()

    async def delete(self, job_ids: Iterable[str]) -> int:
        ids = list(job_ids)
        if not ids:
            return 0
        async with self._session_factory() as session:
            result = await session.execute(delete(ScrapeJob).where(ScrapeJob.id.in_(ids)))
            await session.commit()
            return result.rowcount or 0

    async def get(self, job_id: str) -> Optional[ScrapeJob]:
        async with self._session_factory() as session:
            result = await session.execute(select(ScrapeJob).where(ScrapeJob.id == job_id))
            return result.scalar_one_or_none()
