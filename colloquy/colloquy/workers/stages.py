import logging
from abc import abstractmethod
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from colloquy.errors import StageError
from colloquy.models import Document, Job, Stage, StageStatus
from colloquy.services.queue import enqueue, stage_dedupe_key, stage_job_type
from colloquy.services.stage_tracker import (
    NEXT_STAGE,
    get_status,
    lock_document,
    mark_completed,
    mark_failed,
    prerequisite_message,
    prerequisite_met,
    record_violation,
)
from colloquy.workers.base import BaseWorker

logger = logging.getLogger(__name__)


class DocumentStageWorker(BaseWorker):
    """
    One pipeline stage for one document.

    Inputs are read under the document lock, the lock is released for the
    slow part (file parsing or a model call), and the output is written
    under a fresh lock together with the slot update and the next stage's job.
    """

    stage: Stage

    @abstractmethod
    async def load_inputs(self, session: AsyncSession, document: Document) -> dict[str, Any]:
        """Read everything the stage needs while the document is locked."""

    @abstractmethod
    async def run_stage(self, inputs: dict[str, Any]) -> Any:
        """Do the work. No database access, no lock held."""

    @abstractmethod
    async def store(self, session: AsyncSession, document: Document, output: Any) -> None:
        """Write the stage output for a locked document."""

    async def after_completed(self, session: AsyncSession, document: Document) -> None:
        """Hook run in the completing transaction."""

    async def process_job(self, session: AsyncSession, job: Job) -> None:
        document_id = UUID(job.payload["document_id"])
        force = bool(job.payload.get("force"))
        stage = self.stage.value

        document = await lock_document(session, document_id)
        if get_status(document, self.stage) == StageStatus.COMPLETED and not force:
            logger.info(f"Document {document_id} {stage} already completed, skipping")
            await session.commit()
            return

        if not prerequisite_met(document, self.stage):
            message = prerequisite_message(self.stage)
            record_violation(document, self.stage, message)
            await session.commit()
            logger.warning(f"Document {document_id} {stage}: {message}")
            raise StageError(message, document_id=document_id, stage=stage)

        inputs = await self.load_inputs(session, document)
        await session.commit()

        try:
            output = await self.run_stage(inputs)

            document = await lock_document(session, document_id)
            if not prerequisite_met(document, self.stage):
                raise StageError(prerequisite_message(self.stage), document_id=document_id, stage=stage)

            await self.store(session, document, output)
            mark_completed(document, self.stage)

            next_stage = NEXT_STAGE[self.stage]
            if next_stage is not None:
                payload: dict[str, Any] = {"document_id": str(document_id)}
                if force:
                    payload["force"] = True
                next_job = await enqueue(
                    session,
                    stage_job_type(next_stage.value),
                    payload,
                    dedupe_key=stage_dedupe_key(next_stage.value, document_id),
                )
                # A pending job picked up by dedupe must still rerun a completed slot
                if force and not next_job.payload.get("force"):
                    next_job.payload = {**next_job.payload, "force": True}

            await self.after_completed(session, document)
            await session.commit()
            logger.info(f"Document {document_id} {stage} completed")
        except StageError as e:
            logger.warning(f"Document {document_id} {stage}: {e}")
            await session.rollback()
            document = await lock_document(session, document_id)
            record_violation(document, self.stage, str(e))
            await session.commit()
            raise
        except Exception as e:
            logger.exception(f"Document {document_id} {stage} failed: {e}")
            await session.rollback()
            document = await lock_document(session, document_id)
            mark_failed(document, self.stage, str(e) or e.__class__.__name__)
            await session.commit()
            raise
