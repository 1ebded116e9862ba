"""
AI analysis of published traces.

Requests move the trace PUBLISHED -> ANALYZING and enqueue a job; the worker
serves from the analysis cache when it can, otherwise calls the model with
no lock held, stores the result only if the content did not change
meanwhile, and returns the trace to PUBLISHED.
"""

import logging
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from colloquy.auth import Authorization, SystemAuthorization
from colloquy.config import settings
from colloquy.errors import IllegalTransition, NotFoundError
from colloquy.models import Citation, JobType, Trace, TraceAnalysis, TraceStatus
from colloquy.services import analysis_cache
from colloquy.services.ai import AIClient, parse_json_object
from colloquy.services.hashing import content_hash
from colloquy.services.queue import enqueue
from colloquy.services.state_machine import ensure_can_modify, lock_trace, transition
from colloquy.services.trace_operations import load_citations

logger = logging.getLogger(__name__)

SCORE_FIELDS = ("credibility_score", "completeness_score", "accuracy_score", "source_quality_score")
LIST_FIELDS = ("strengths", "weaknesses", "missing_aspects", "suggestions")


def build_prompt(trace: Trace, citations: list[Citation]) -> str:
    limit = settings.trace_analysis_text_limit
    body = trace.body[:limit] + ("\n...(truncated)" if len(trace.body) > limit else "")

    lines = []
    for idx, c in enumerate(citations, 1):
        entry = f"[{idx}] {c.title}"
        if c.author:
            entry += f" - {c.author}"
        if c.year:
            entry += f" ({c.year})"
        if c.url:
            entry += f"\n    URL: {c.url}"
        if c.publisher:
            entry += f"\n    Publisher: {c.publisher}"
        if c.quote:
            entry += f"\n    Quote: {c.quote}"
        lines.append(entry)

    return (
        "You are an academic reviewer assessing a sourced assertion and its citations.\n\n"
        f"Title: {trace.title}\n\n"
        f"Body:\n{body}\n\n"
        f"Citations:\n" + "\n\n".join(lines) + "\n\n"
        "Score each dimension between 0 and 1:\n"
        "- credibility: authority of sources, sufficiency of evidence, soundness of reasoning\n"
        "- completeness: whether the main aspects of the subject are covered\n"
        "- accuracy: factual, citation and wording accuracy\n"
        "- source_quality: authority, diversity, relevance and timeliness of sources\n\n"
        'Respond with a JSON object: {"credibility_score": 0.8, "completeness_score": 0.7, '
        '"accuracy_score": 0.8, "source_quality_score": 0.7, "strengths": ["..."], '
        '"weaknesses": ["..."], "missing_aspects": ["..."], "suggestions": ["..."]}\n\n'
        "JSON:"
    )


def _unit(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return max(0.0, min(1.0, float(value)))


def parse_analysis(response: str) -> dict[str, Any]:
    """Normalize a model response; an unusable one yields a non-approvable placeholder."""
    parsed = parse_json_object(response)
    if parsed is None or _unit(parsed.get("credibility_score")) is None:
        logger.warning("Trace analysis response unusable, storing placeholder result")
        return {
            "credibility_score": 0.5,
            "completeness_score": None,
            "accuracy_score": None,
            "source_quality_score": None,
            "strengths": [],
            "weaknesses": ["Automatic analysis failed"],
            "missing_aspects": [],
            "suggestions": ["Re-run the analysis"],
            "can_approve": False,
        }

    payload: dict[str, Any] = {field: _unit(parsed.get(field)) for field in SCORE_FIELDS}
    for field in LIST_FIELDS:
        value = parsed.get(field)
        payload[field] = [str(v) for v in value] if isinstance(value, list) else []
    payload["can_approve"] = payload["credibility_score"] >= settings.trace_credibility_threshold
    return payload


async def request_analysis(
    session: AsyncSession,
    trace_id: UUID,
    actor_id: UUID,
    authorization: Authorization,
) -> TraceAnalysis | None:
    """
    Return the cached analysis when it matches the current content.
    Otherwise move the trace to ANALYZING, enqueue the job, commit and return None.
    """
    current_hash = await analysis_cache.current_content_hash(session, trace_id)
    if current_hash is None:
        raise NotFoundError(f"Trace {trace_id} not found")

    cached = await analysis_cache.lookup(session, trace_id, current_hash)
    if cached is not None:
        return cached

    trace = await lock_trace(session, trace_id)
    if trace.status == TraceStatus.ANALYZING:
        await ensure_can_modify(session, trace_id, actor_id, authorization)
    else:
        await transition(session, trace_id, TraceStatus.ANALYZING, actor_id, authorization)
    await enqueue(
        session,
        JobType.ANALYZE_TRACE,
        {"trace_id": str(trace_id), "content_hash": current_hash, "actor_id": str(actor_id)},
        dedupe_key=f"analyze_trace:{trace_id}",
    )
    await session.commit()
    return None


async def _return_to_published(session: AsyncSession, trace_id: UUID) -> None:
    trace = await lock_trace(session, trace_id)
    if trace.status == TraceStatus.ANALYZING:
        await transition(session, trace_id, TraceStatus.PUBLISHED, trace.editor_id, SystemAuthorization())


async def run_analysis(session: AsyncSession, trace_id: UUID, ai: AIClient) -> TraceAnalysis | None:
    """Worker side of an analysis request. Returns the stored analysis, or None if discarded."""
    trace = await lock_trace(session, trace_id)
    if trace.status not in (TraceStatus.PUBLISHED, TraceStatus.ANALYZING):
        raise IllegalTransition(trace.status.value, TraceStatus.ANALYZING.value)
    if trace.status == TraceStatus.PUBLISHED:
        await transition(session, trace_id, TraceStatus.ANALYZING, trace.editor_id, SystemAuthorization())

    citations = await load_citations(session, trace_id)
    input_hash = content_hash(trace.body, citations)

    cached = await analysis_cache.lookup(session, trace_id, input_hash)
    if cached is not None:
        logger.info(f"Trace {trace_id} analysis served from cache")
        await _return_to_published(session, trace_id)
        await session.commit()
        return cached

    prompt = build_prompt(trace, citations)
    await session.commit()

    try:
        response = await ai.complete(prompt, max_tokens=2000)
    except Exception:
        logger.exception(f"Trace {trace_id} analysis call failed")
        await session.rollback()
        await _return_to_published(session, trace_id)
        await session.commit()
        raise

    payload = parse_analysis(response)

    await lock_trace(session, trace_id)
    current_hash = await analysis_cache.current_content_hash(session, trace_id)
    stored = None
    if current_hash == input_hash:
        stored = await analysis_cache.store(session, trace_id, payload, input_hash)
        logger.info(f"Trace {trace_id} analyzed: credibility={payload['credibility_score']}")
    else:
        logger.warning(f"Trace {trace_id} changed during analysis, discarding result")

    await _return_to_published(session, trace_id)
    await session.commit()
    return stored


async def get_analysis(session: AsyncSession, trace_id: UUID) -> tuple[str, TraceAnalysis | None]:
    """("ready", analysis) | ("analyzing", None) | ("not_analyzed", None)."""
    trace = await session.get(Trace, trace_id)
    if trace is None:
        raise NotFoundError(f"Trace {trace_id} not found")

    current_hash = await analysis_cache.current_content_hash(session, trace_id)
    analysis = await analysis_cache.lookup(session, trace_id, current_hash)
    if analysis is not None:
        return "ready", analysis
    if trace.status == TraceStatus.ANALYZING:
        return "analyzing", None
    return "not_analyzed", None
