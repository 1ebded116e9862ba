import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from colloquy.config import settings
from colloquy.models import Document, Evaluation, JobType, Stage, StageStatus, Summary, Topic
from colloquy.services.consensus import topic_dedupe_key
from colloquy.services.evaluation import build_prompt, get_rubric, has_citations, parse_evaluation
from colloquy.services.queue import enqueue
from colloquy.workers.stages import DocumentStageWorker

logger = logging.getLogger(__name__)


class EvaluationWorker(DocumentStageWorker):
    """
    Worker that scores a summarized document against its discipline's rubric.

    Once the topic has enough evaluated documents, consensus tracking is
    scheduled for it.
    """

    job_type = JobType.EVALUATE
    stage = Stage.EVALUATE

    async def load_inputs(self, session: AsyncSession, document: Document) -> dict[str, Any]:
        topic = await session.get(Topic, document.topic_id)
        result = await session.execute(
            select(Summary.overview)
            .where(Summary.document_id == document.id)
            .order_by(Summary.id.desc())
            .limit(1)
        )
        return {
            "document_id": document.id,
            "text": document.extracted_text or "",
            "overview": result.scalar_one_or_none(),
            "discipline": topic.discipline if topic else None,
        }

    async def run_stage(self, inputs: dict[str, Any]) -> dict[str, Any]:
        text = inputs["text"]
        if not text.strip():
            raise ValueError(f"Document {inputs['document_id']} has no extracted text")

        rubric = get_rubric(inputs["discipline"])
        cited = has_citations(text)
        limit = settings.evaluate_text_limit
        truncated = text[:limit] + ("\n...(truncated)" if len(text) > limit else "")

        response = await self.ai.complete(build_prompt(truncated, rubric, inputs["overview"], cited))
        scores, verdict = parse_evaluation(response, rubric, cited)
        return {"scores": scores, "verdict": verdict, "rubric": rubric.name}

    async def store(self, session: AsyncSession, document: Document, output: dict[str, Any]) -> None:
        session.add(
            Evaluation(
                document_id=document.id,
                scores=output["scores"],
                verdict=output["verdict"],
                rubric=output["rubric"],
            )
        )
        await session.flush()

    async def after_completed(self, session: AsyncSession, document: Document) -> None:
        await session.flush()
        result = await session.execute(
            select(func.count(Document.id)).where(
                Document.topic_id == document.topic_id,
                Document.evaluate_status == StageStatus.COMPLETED,
            )
        )
        evaluated = result.scalar_one()
        if evaluated >= settings.consensus_min_evaluated_documents:
            await enqueue(
                session,
                JobType.TRACK_CONSENSUS,
                {"topic_id": str(document.topic_id)},
                dedupe_key=topic_dedupe_key(document.topic_id),
            )
            logger.info(f"Topic {document.topic_id} has {evaluated} evaluated documents, tracking consensus")
