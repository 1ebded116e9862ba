import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from colloquy.config import settings
from colloquy.models import Document, JobType, Stage, Summary
from colloquy.services.summarization import build_prompt, parse_summary
from colloquy.workers.stages import DocumentStageWorker

logger = logging.getLogger(__name__)


class SummarizationWorker(DocumentStageWorker):
    """Worker that summarizes extracted text into a title, overview, claims and keywords."""

    job_type = JobType.SUMMARIZE
    stage = Stage.SUMMARIZE

    async def load_inputs(self, session: AsyncSession, document: Document) -> dict[str, Any]:
        return {"document_id": document.id, "text": document.extracted_text or ""}

    async def run_stage(self, inputs: dict[str, Any]) -> dict[str, Any]:
        text = inputs["text"]
        if not text.strip():
            raise ValueError(f"Document {inputs['document_id']} has no extracted text")

        limit = settings.summarize_text_limit
        truncated = text[:limit] + ("\n...(truncated)" if len(text) > limit else "")
        response = await self.ai.complete(build_prompt(truncated), max_tokens=2000)
        return parse_summary(response, text)

    async def store(self, session: AsyncSession, document: Document, output: dict[str, Any]) -> None:
        session.add(
            Summary(
                document_id=document.id,
                title=output["title"],
                overview=output["overview"],
                claims=output["claims"],
                keywords=output["keywords"],
            )
        )
        await session.flush()
        logger.info(f"Summary for document {document.id}: {len(output['claims'])} claims")
