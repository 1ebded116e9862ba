import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from colloquy.config import settings
from colloquy.db import async_session_factory
from colloquy.errors import NotFoundError, PreconditionError
from colloquy.models import Job, JobStatus, JobType
from colloquy.services.ai import AIClient, get_ai_client

logger = logging.getLogger(__name__)


def backoff_seconds(attempts: int) -> float:
    return settings.worker_backoff_base_seconds * 2 ** max(0, attempts - 1)


class BaseWorker(ABC):
    """Base class for job workers."""

    job_type: JobType

    # Errors that will not go away by retrying
    non_retryable: tuple[type[Exception], ...] = (PreconditionError, NotFoundError)

    def __init__(
        self,
        session_factory: async_sessionmaker | None = None,
        ai: AIClient | None = None,
    ):
        self.running = False
        self.session_factory = session_factory or async_session_factory
        self._ai = ai

    @property
    def ai(self) -> AIClient:
        if self._ai is None:
            self._ai = get_ai_client()
        return self._ai

    @abstractmethod
    async def process_job(self, session: AsyncSession, job: Job) -> None:
        """Process a single job. Implement in subclass; raise to signal failure."""

    async def claim_job(self, session: AsyncSession) -> Job | None:
        """
        Claim a pending job using SELECT FOR UPDATE SKIP LOCKED.
        Returns the claimed job or None if no jobs available.
        """
        now = datetime.utcnow()
        result = await session.execute(
            select(Job)
            .where(
                Job.status == JobStatus.PENDING,
                Job.job_type == self.job_type,
                Job.attempts < settings.worker_max_attempts,
                or_(Job.run_after.is_(None), Job.run_after <= now),
            )
            .order_by(Job.created_at)
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        job = result.scalar_one_or_none()
        if job is None:
            await session.rollback()
            return None

        # Only one claimer can move the job out of PENDING
        claimed = await session.execute(
            update(Job)
            .where(Job.id == job.id, Job.status == JobStatus.PENDING)
            .values(status=JobStatus.IN_PROGRESS, attempts=Job.attempts + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        if claimed.rowcount != 1:
            return None

        await session.refresh(job)
        return job

    async def mark_succeeded(self, session: AsyncSession, job: Job) -> None:
        """Mark a job as succeeded."""
        job.status = JobStatus.SUCCEEDED
        job.last_error = None
        job.updated_at = datetime.utcnow()
        await session.commit()
        logger.info(f"Job {job.id} succeeded")

    async def mark_failed(self, session: AsyncSession, job: Job, error: Exception) -> None:
        """Put the job back with a backoff delay, or fail it for good."""
        message = str(error) or error.__class__.__name__
        job.last_error = message
        job.updated_at = datetime.utcnow()

        retryable = not isinstance(error, self.non_retryable)
        if retryable and job.attempts < settings.worker_max_attempts:
            delay = backoff_seconds(job.attempts)
            job.status = JobStatus.PENDING
            job.run_after = datetime.utcnow() + timedelta(seconds=delay)
            await session.commit()
            logger.warning(
                f"Job {job.id} attempt {job.attempts} failed, retrying in {delay:.0f}s: {message}"
            )
            return

        job.status = JobStatus.FAILED
        await session.commit()
        logger.error(f"Job {job.id} failed: {message}")

    async def run_once(self) -> bool:
        """
        Try to claim and process a single job.
        Returns True if a job was processed, False otherwise.
        """
        async with self.session_factory() as session:
            job = await self.claim_job(session)

            if not job:
                return False

            job_id = job.id
            logger.info(f"Processing job {job_id} (type={job.job_type.value}, attempt={job.attempts})")

            try:
                await self.process_job(session, job)
                await self.mark_succeeded(session, job)
                return True
            except Exception as e:
                logger.exception(f"Error processing job {job_id}: {e}")
                # Rollback expires the claimed instance
                await session.rollback()
                job = await session.get(Job, job_id, populate_existing=True)
                await self.mark_failed(session, job, e)
                return True  # We did process (attempt) a job

    async def run(self) -> None:
        """Run the worker loop continuously."""
        self.running = True
        logger.info(f"Starting {self.__class__.__name__} worker")

        while self.running:
            try:
                processed = await self.run_once()

                if not processed:
                    # No jobs available, sleep before checking again
                    await asyncio.sleep(settings.worker_poll_interval_seconds)
            except Exception as e:
                logger.exception(f"Worker error: {e}")
                await asyncio.sleep(settings.worker_poll_interval_seconds)

    def stop(self) -> None:
        """Stop the worker loop."""
        self.running = False
        logger.info(f"Stopping {self.__class__.__name__} worker")
