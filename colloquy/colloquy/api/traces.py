from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, Response, status

from colloquy.auth import ActorContext, get_actor_context
from colloquy.models import Citation, TraceStatus
from colloquy.schemas import (
    CitationInsert,
    CitationPatch,
    StoredCitation,
    TraceAnalysisResponse,
    TraceAnalysisResult,
    TraceCreate,
    TracePatch,
    TraceResponse,
    TransitionRequest,
)
from colloquy.services import rate_limit, trace_operations
from colloquy.services.cache import CacheBackend
from colloquy.services.state_machine import publish, transition
from colloquy.services.trace_analysis import get_analysis, request_analysis

router = APIRouter()


def get_cache(request: Request) -> CacheBackend | None:
    """Cache started by the application lifespan, if any."""
    return getattr(request.app.state, "cache", None)


def _citation(citation: Citation) -> StoredCitation:
    return StoredCitation.model_validate(citation, from_attributes=True)


@router.post("/traces", response_model=TraceResponse, status_code=status.HTTP_201_CREATED)
async def create_trace(
    data: TraceCreate,
    ctx: ActorContext = Depends(get_actor_context),
    cache: CacheBackend | None = Depends(get_cache),
) -> dict[str, Any]:
    """Create a DRAFT trace. Editors and admins only; rate limited per actor."""
    await rate_limit.enforce(ctx.session, ctx.actor_id, rate_limit.TRACE_CREATE)
    trace = await trace_operations.create_trace(ctx.session, ctx.actor_id, ctx.authorization, data)
    return await trace_operations.get_trace(ctx.session, trace.id, cache)


@router.get("/traces/{trace_id}", response_model=TraceResponse)
async def get_trace(
    trace_id: UUID,
    ctx: ActorContext = Depends(get_actor_context),
    cache: CacheBackend | None = Depends(get_cache),
) -> dict[str, Any]:
    return await trace_operations.get_trace(ctx.session, trace_id, cache)


@router.patch("/traces/{trace_id}", response_model=TraceResponse)
async def update_trace(
    trace_id: UUID,
    patch: TracePatch,
    ctx: ActorContext = Depends(get_actor_context),
    cache: CacheBackend | None = Depends(get_cache),
) -> dict[str, Any]:
    """Edit a trace. 409 when expected_version is stale."""
    await trace_operations.update_trace(
        ctx.session, trace_id, ctx.actor_id, ctx.authorization, patch, cache
    )
    return await trace_operations.get_trace(ctx.session, trace_id, cache)


@router.delete("/traces/{trace_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_trace(
    trace_id: UUID,
    ctx: ActorContext = Depends(get_actor_context),
    cache: CacheBackend | None = Depends(get_cache),
) -> Response:
    await trace_operations.delete_trace(ctx.session, trace_id, ctx.actor_id, ctx.authorization, cache)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# Citations
# ============================================================================


@router.post(
    "/traces/{trace_id}/citations",
    response_model=StoredCitation,
    status_code=status.HTTP_201_CREATED,
)
async def insert_citation(
    trace_id: UUID,
    data: CitationInsert,
    ctx: ActorContext = Depends(get_actor_context),
    cache: CacheBackend | None = Depends(get_cache),
) -> StoredCitation:
    """Insert a citation at a 1-based position (appended when omitted)."""
    citation = await trace_operations.insert_citation(
        ctx.session, trace_id, ctx.actor_id, ctx.authorization, data, cache
    )
    return _citation(citation)


@router.patch("/traces/{trace_id}/citations/{citation_id}", response_model=StoredCitation)
async def update_citation(
    trace_id: UUID,
    citation_id: UUID,
    patch: CitationPatch,
    ctx: ActorContext = Depends(get_actor_context),
    cache: CacheBackend | None = Depends(get_cache),
) -> StoredCitation:
    citation = await trace_operations.update_citation(
        ctx.session, trace_id, citation_id, ctx.actor_id, ctx.authorization, patch, cache
    )
    return _citation(citation)


@router.delete("/traces/{trace_id}/citations/{citation_id}", response_model=TraceResponse)
async def delete_citation(
    trace_id: UUID,
    citation_id: UUID,
    expected_version: int = Query(...),
    ctx: ActorContext = Depends(get_actor_context),
    cache: CacheBackend | None = Depends(get_cache),
) -> dict[str, Any]:
    """Remove a citation; the remaining ones are renumbered."""
    await trace_operations.delete_citation(
        ctx.session, trace_id, citation_id, ctx.actor_id, ctx.authorization, expected_version, cache
    )
    return await trace_operations.get_trace(ctx.session, trace_id, cache)


# ============================================================================
# Lifecycle
# ============================================================================


@router.post("/traces/{trace_id}/publish", response_model=TraceResponse)
async def publish_trace(
    trace_id: UUID,
    ctx: ActorContext = Depends(get_actor_context),
    cache: CacheBackend | None = Depends(get_cache),
) -> dict[str, Any]:
    """
    Run the readiness gate and publish. 422 lists every violated rule and
    leaves the trace in DRAFT. Rate limited per actor.
    """
    await rate_limit.enforce(ctx.session, ctx.actor_id, rate_limit.TRACE_PUBLISH)
    await publish(ctx.session, trace_id, ctx.actor_id, ctx.authorization)
    await ctx.session.commit()
    return await trace_operations.get_trace(ctx.session, trace_id, cache)


@router.post("/traces/{trace_id}/transition", response_model=TraceResponse)
async def transition_trace(
    trace_id: UUID,
    data: TransitionRequest,
    ctx: ActorContext = Depends(get_actor_context),
    cache: CacheBackend | None = Depends(get_cache),
) -> dict[str, Any]:
    """Move a trace along its lifecycle. 409 for transitions the lifecycle does not allow."""
    if data.target == TraceStatus.ANALYZING:
        # Entering ANALYZING always comes with a queued analysis job
        await request_analysis(ctx.session, trace_id, ctx.actor_id, ctx.authorization)
        await trace_operations.invalidate(cache, trace_id)
        return await trace_operations.get_trace(ctx.session, trace_id, cache)

    if data.target == TraceStatus.PUBLISHED:
        await rate_limit.enforce(ctx.session, ctx.actor_id, rate_limit.TRACE_PUBLISH)
    await transition(ctx.session, trace_id, data.target, ctx.actor_id, ctx.authorization)
    await ctx.session.commit()
    return await trace_operations.get_trace(ctx.session, trace_id, cache)


@router.post("/traces/{trace_id}/analyze", response_model=TraceAnalysisResponse)
async def analyze_trace(
    trace_id: UUID,
    response: Response,
    ctx: ActorContext = Depends(get_actor_context),
    cache: CacheBackend | None = Depends(get_cache),
) -> TraceAnalysisResponse:
    """Cached analysis when the content is unchanged, otherwise 202 and a queued analysis."""
    analysis = await request_analysis(ctx.session, trace_id, ctx.actor_id, ctx.authorization)
    if analysis is None:
        await trace_operations.invalidate(cache, trace_id)
        response.status_code = status.HTTP_202_ACCEPTED
        return TraceAnalysisResponse(status="analyzing")
    return TraceAnalysisResponse(status="ready", analysis=TraceAnalysisResult.model_validate(analysis))


@router.get("/traces/{trace_id}/analysis", response_model=TraceAnalysisResponse)
async def get_trace_analysis(
    trace_id: UUID,
    ctx: ActorContext = Depends(get_actor_context),
) -> TraceAnalysisResponse:
    state, analysis = await get_analysis(ctx.session, trace_id)
    result = TraceAnalysisResult.model_validate(analysis) if analysis is not None else None
    return TraceAnalysisResponse(status=state, analysis=result)
