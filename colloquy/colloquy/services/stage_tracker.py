"""
Per-document stage slots for the extract -> summarize -> evaluate pipeline.

Each slot is PENDING, COMPLETED or FAILED. A slot can only become COMPLETED
once the slot before it is COMPLETED. Callers hold the document row lock
(see lock_document) while mutating slots.
"""

import logging
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from colloquy.errors import NotFoundError, StageError
from colloquy.models import Document, Stage, StageStatus

logger = logging.getLogger(__name__)

PREREQUISITES: dict[Stage, Stage | None] = {
    Stage.EXTRACT: None,
    Stage.SUMMARIZE: Stage.EXTRACT,
    Stage.EVALUATE: Stage.SUMMARIZE,
}

NEXT_STAGE: dict[Stage, Stage | None] = {
    Stage.EXTRACT: Stage.SUMMARIZE,
    Stage.SUMMARIZE: Stage.EVALUATE,
    Stage.EVALUATE: None,
}

_SLOT_COLUMNS = {
    Stage.EXTRACT: "extract_status",
    Stage.SUMMARIZE: "summarize_status",
    Stage.EVALUATE: "evaluate_status",
}


def get_status(document: Document, stage: Stage) -> StageStatus:
    return getattr(document, _SLOT_COLUMNS[stage])


def _set_status(document: Document, stage: Stage, status: StageStatus) -> None:
    setattr(document, _SLOT_COLUMNS[stage], status)


def _set_error(document: Document, stage: Stage, message: str | None) -> None:
    # Reassign so the JSON column is flagged dirty
    errors = dict(document.stage_errors or {})
    if message is None:
        errors.pop(stage.value, None)
    else:
        errors[stage.value] = message
    document.stage_errors = errors


def prerequisite_met(document: Document, stage: Stage) -> bool:
    prerequisite = PREREQUISITES[stage]
    return prerequisite is None or get_status(document, prerequisite) == StageStatus.COMPLETED


def prerequisite_message(stage: Stage) -> str:
    return f"{stage.value} requires {PREREQUISITES[stage].value} to be COMPLETED"


def mark_completed(document: Document, stage: Stage) -> None:
    """Set the slot COMPLETED and clear its error. Refuses if the prerequisite is not met."""
    if not prerequisite_met(document, stage):
        raise StageError(prerequisite_message(stage), document_id=document.id, stage=stage.value)

    _set_status(document, stage, StageStatus.COMPLETED)
    _set_error(document, stage, None)
    document.last_processed_at = datetime.utcnow()


def mark_failed(document: Document, stage: Stage, message: str) -> None:
    _set_status(document, stage, StageStatus.FAILED)
    _set_error(document, stage, message)
    document.last_processed_at = datetime.utcnow()


def record_violation(document: Document, stage: Stage, message: str) -> None:
    """Record an error against the slot without changing its status."""
    _set_error(document, stage, message)


def processing_status(document: Document) -> dict[str, Any]:
    errors = document.stage_errors or {}
    return {
        "document_id": str(document.id),
        "stages": {
            stage.value.lower(): {
                "status": get_status(document, stage).value,
                "error": errors.get(stage.value),
            }
            for stage in Stage
        },
        "last_processed_at": (
            document.last_processed_at.isoformat() if document.last_processed_at else None
        ),
    }


async def lock_document(session: AsyncSession, document_id: UUID) -> Document:
    """Load a document with SELECT ... FOR UPDATE, refreshing any cached state."""
    result = await session.execute(
        select(Document)
        .where(Document.id == document_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    document = result.scalar_one_or_none()
    if document is None:
        raise NotFoundError(f"Document {document_id} not found")
    return document
