"""Content-hash keyed cache of trace analyses."""

import logging
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from colloquy.models import Citation, Trace, TraceAnalysis
from colloquy.services.hashing import content_hash

logger = logging.getLogger(__name__)

ANALYSIS_FIELDS = (
    "credibility_score",
    "completeness_score",
    "accuracy_score",
    "source_quality_score",
    "strengths",
    "weaknesses",
    "missing_aspects",
    "suggestions",
    "can_approve",
)


async def current_content_hash(session: AsyncSession, trace_id: UUID) -> str | None:
    """Hash of the trace's stored body and ordered citation rows."""
    trace = await session.get(Trace, trace_id, populate_existing=True)
    if trace is None:
        return None

    result = await session.execute(
        select(Citation)
        .where(Citation.trace_id == trace_id)
        .order_by(Citation.order)
        .execution_options(populate_existing=True)
    )
    return content_hash(trace.body, result.scalars().all())


async def lookup(session: AsyncSession, trace_id: UUID, expected_hash: str) -> TraceAnalysis | None:
    """
    Return the stored analysis for a trace, but only while it still describes
    the trace's current content.

    The current hash is recomputed from storage and must equal both the
    caller's hash and the hash the analysis was computed from.
    """
    current = await current_content_hash(session, trace_id)
    if current is None or current != expected_hash:
        return None

    analysis = await session.get(TraceAnalysis, trace_id)
    if analysis is None or analysis.content_hash != current:
        return None

    logger.debug(f"Analysis cache hit for trace {trace_id}")
    return analysis


async def store(
    session: AsyncSession, trace_id: UUID, payload: dict[str, Any], hash_value: str
) -> TraceAnalysis:
    """Upsert the analysis row for a trace. The caller commits."""
    analysis = await session.get(TraceAnalysis, trace_id)
    if analysis is None:
        analysis = TraceAnalysis(trace_id=trace_id)
        session.add(analysis)

    for field in ANALYSIS_FIELDS:
        if field in payload:
            setattr(analysis, field, payload[field])
    analysis.content_hash = hash_value
    analysis.analyzed_at = datetime.utcnow()

    await session.flush()
    return analysis
