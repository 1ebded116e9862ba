import logging
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from colloquy.models import Job, JobType
from colloquy.services.consensus import analyze_pair, track_topic
from colloquy.workers.base import BaseWorker

logger = logging.getLogger(__name__)


class ConsensusTrackingWorker(BaseWorker):
    """Worker that appends topic consensus snapshots and fans out pair analysis."""

    job_type = JobType.TRACK_CONSENSUS

    async def process_job(self, session: AsyncSession, job: Job) -> None:
        topic_id = UUID(job.payload["topic_id"])
        snapshot = await track_topic(session, topic_id, self.ai)
        if snapshot is None:
            logger.info(f"Topic {topic_id} snapshot discarded, job re-enqueued")


class UserPairWorker(BaseWorker):
    """Worker that recomputes the consensus record of one user pair."""

    job_type = JobType.ANALYZE_USER_PAIR

    async def process_job(self, session: AsyncSession, job: Job) -> None:
        topic_id = UUID(job.payload["topic_id"])
        user_id1 = UUID(job.payload["user_id1"])
        user_id2 = UUID(job.payload["user_id2"])
        await analyze_pair(session, topic_id, user_id1, user_id2, self.ai)
