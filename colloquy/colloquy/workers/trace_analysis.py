import logging
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from colloquy.errors import IllegalTransition
from colloquy.models import Job, JobType
from colloquy.services.trace_analysis import run_analysis
from colloquy.workers.base import BaseWorker

logger = logging.getLogger(__name__)


class TraceAnalysisWorker(BaseWorker):
    """Worker that analyzes published traces and returns them to PUBLISHED."""

    job_type = JobType.ANALYZE_TRACE
    non_retryable = BaseWorker.non_retryable + (IllegalTransition,)

    async def process_job(self, session: AsyncSession, job: Job) -> None:
        trace_id = UUID(job.payload["trace_id"])
        analysis = await run_analysis(session, trace_id, self.ai)
        if analysis is None:
            logger.info(f"Trace {trace_id} analysis discarded after a concurrent edit")
