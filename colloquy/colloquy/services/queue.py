import logging
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from colloquy.models import Job, JobStatus, JobType

logger = logging.getLogger(__name__)


async def enqueue(
    session: AsyncSession,
    job_type: JobType,
    payload: dict[str, Any],
    dedupe_key: str | None = None,
    run_after: datetime | None = None,
) -> Job:
    """
    Add a job to the queue inside the caller's transaction.

    When a dedupe key is given and a PENDING job with the same key already
    exists, that job is returned instead of creating a second one. Nothing
    is visible to workers until the caller commits.
    """
    if dedupe_key is not None:
        result = await session.execute(
            select(Job)
            .where(
                Job.dedupe_key == dedupe_key,
                Job.status == JobStatus.PENDING,
            )
            .limit(1)
        )
        existing = result.scalar_one_or_none()
        if existing is not None:
            logger.debug(f"Job {dedupe_key} already pending as {existing.id}")
            return existing

    job = Job(
        id=uuid4(),
        job_type=job_type,
        payload=payload,
        dedupe_key=dedupe_key,
        status=JobStatus.PENDING,
        attempts=0,
        run_after=run_after,
    )
    session.add(job)
    await session.flush()

    logger.info(f"Enqueued {job_type.value} job {job.id}")
    return job


def stage_job_type(stage_value: str) -> JobType:
    """Map a Stage value onto the job type that runs it."""
    return JobType(stage_value)


def stage_dedupe_key(stage_value: str, document_id: UUID) -> str:
    return f"{stage_value.lower()}:{document_id}"
