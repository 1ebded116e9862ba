import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from colloquy.config import settings
from colloquy.models import Document, JobType, Stage
from colloquy.services.extraction import (
    ExtractedDocument,
    extract_content,
    normalize_whitespace,
    resolve_path,
)
from colloquy.workers.stages import DocumentStageWorker

logger = logging.getLogger(__name__)


class ExtractionWorker(DocumentStageWorker):
    """Worker that extracts plain text from uploaded files."""

    job_type = JobType.EXTRACT
    stage = Stage.EXTRACT

    async def load_inputs(self, session: AsyncSession, document: Document) -> dict[str, Any]:
        return {"document_id": document.id, "file_key": document.file_key, "mime": document.mime}

    async def run_stage(self, inputs: dict[str, Any]) -> ExtractedDocument:
        full_path = resolve_path(settings.storage_root, inputs["file_key"])
        logger.info(f"Extracting content from: {full_path}")

        # Check if file exists
        if not full_path.exists():
            raise FileNotFoundError(f"File not found: {full_path}")

        extracted = extract_content(full_path, inputs["mime"])
        logger.info(f"Extracted {len(extracted.text)} characters from {full_path.name}")
        return extracted

    async def store(self, session: AsyncSession, document: Document, output: ExtractedDocument) -> None:
        text = normalize_whitespace(output.text)
        if not text:
            raise ValueError(f"No text could be extracted from {document.file_key}")
        document.extracted_text = text
