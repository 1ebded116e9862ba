"""
Trace and citation mutations.

Every mutation runs under the trace row lock, checks the caller's expected
version, bumps the version with a conditional UPDATE, rewrites the trace's
citation snapshot and drops the cached read model after commit.
"""

import logging
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from colloquy.auth import Authorization
from colloquy.errors import ConflictError, NotFoundError, PermissionDenied, ValidationError
from colloquy.models import Citation, Role, Trace, TraceAnalysis, TraceStatus
from colloquy.schemas import (
    CitationInput,
    CitationInsert,
    CitationPatch,
    StoredCitation,
    TraceCreate,
    TracePatch,
    TraceResponse,
)
from colloquy.services.cache import CacheBackend
from colloquy.services.state_machine import ensure_can_modify, lock_trace
from colloquy.services.trace_validation import validate_draft, validate_for_publish

logger = logging.getLogger(__name__)


def trace_cache_key(trace_id: UUID) -> str:
    return f"trace:{trace_id}"


async def invalidate(cache: CacheBackend | None, trace_id: UUID) -> None:
    if cache is not None:
        await cache.delete(trace_cache_key(trace_id))


def _citation_row(trace_id: UUID, data: CitationInput, order: int) -> Citation:
    return Citation(
        id=uuid4(),
        trace_id=trace_id,
        order=order,
        url=data.url or None,
        title=data.title,
        author=data.author or None,
        publisher=data.publisher or None,
        year=data.year,
        citation_type=data.citation_type,
        quote=data.quote or None,
        page=data.page or None,
    )


async def load_citations(session: AsyncSession, trace_id: UUID) -> list[Citation]:
    result = await session.execute(
        select(Citation)
        .where(Citation.trace_id == trace_id)
        .order_by(Citation.order)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


def citation_snapshot(citations: list[Citation]) -> list[dict[str, Any]]:
    return [
        StoredCitation.model_validate(c, from_attributes=True).model_dump(mode="json")
        for c in citations
    ]


def _check_version(trace: Trace, expected_version: int) -> None:
    if trace.version != expected_version:
        raise ConflictError(expected_version, trace.version)


async def _commit_edit(
    session: AsyncSession,
    trace: Trace,
    expected_version: int,
    cache: CacheBackend | None,
    **values: Any,
) -> Trace:
    """
    Validate the resulting content, bump the version only if it is still the
    expected one, store the citation snapshot and commit.
    """
    trace_id = trace.id
    citations = await load_citations(session, trace_id)
    title = values.get("title", trace.title)
    body = values.get("body", trace.body)

    try:
        validate_draft(title, body, citations)
        if trace.status != TraceStatus.DRAFT:
            validate_for_publish(body, citations)
    except ValidationError:
        await session.rollback()
        raise

    result = await session.execute(
        update(Trace)
        .where(Trace.id == trace_id, Trace.version == expected_version)
        .values(version=Trace.version + 1, citations=citation_snapshot(citations), **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        current = await session.get(Trace, trace_id, populate_existing=True)
        raise ConflictError(expected_version, current.version if current else None)

    await session.commit()
    await session.refresh(trace)
    await invalidate(cache, trace_id)
    return trace


# ============================================================================
# Traces
# ============================================================================


async def create_trace(
    session: AsyncSession,
    actor_id: UUID,
    authorization: Authorization,
    data: TraceCreate,
) -> Trace:
    """Create a DRAFT trace at version 1. Editors and admins only."""
    if not await authorization.has_role(session, actor_id, Role.EDITOR):
        raise PermissionDenied("Creating traces requires the editor role")

    validate_draft(data.title, data.body, data.citations)

    trace = Trace(
        id=uuid4(),
        editor_id=actor_id,
        title=data.title.strip(),
        body=data.body,
        status=TraceStatus.DRAFT,
        version=1,
    )
    session.add(trace)
    await session.flush()

    rows = [_citation_row(trace.id, c, idx) for idx, c in enumerate(data.citations, 1)]
    session.add_all(rows)
    await session.flush()
    trace.citations = citation_snapshot(rows)

    await session.commit()
    await session.refresh(trace)
    logger.info(f"Trace {trace.id} created by {actor_id} with {len(rows)} citations")
    return trace


async def update_trace(
    session: AsyncSession,
    trace_id: UUID,
    actor_id: UUID,
    authorization: Authorization,
    patch: TracePatch,
    cache: CacheBackend | None = None,
) -> Trace:
    """
    Edit title, body and/or the whole citation list.

    Raises ConflictError when the stored version is not patch.expected_version.
    Traces past DRAFT must still pass the readiness gate after the edit.
    """
    trace = await lock_trace(session, trace_id)
    await ensure_can_modify(session, trace_id, actor_id, authorization)
    _check_version(trace, patch.expected_version)

    values: dict[str, Any] = {}
    if patch.title is not None:
        values["title"] = patch.title.strip()
    if patch.body is not None:
        values["body"] = patch.body

    if patch.citations is not None:
        await session.execute(delete(Citation).where(Citation.trace_id == trace_id))
        session.add_all(
            [_citation_row(trace_id, c, idx) for idx, c in enumerate(patch.citations, 1)]
        )
        await session.flush()

    trace = await _commit_edit(session, trace, patch.expected_version, cache, **values)
    logger.info(f"Trace {trace_id} updated to version {trace.version} by {actor_id}")
    return trace


async def delete_trace(
    session: AsyncSession,
    trace_id: UUID,
    actor_id: UUID,
    authorization: Authorization,
    cache: CacheBackend | None = None,
) -> None:
    """Delete a trace and its citations. Approved traces can only be deleted by an admin."""
    trace = await lock_trace(session, trace_id)
    await ensure_can_modify(session, trace_id, actor_id, authorization)

    if trace.status == TraceStatus.APPROVED and not await authorization.has_role(
        session, actor_id, Role.ADMIN
    ):
        raise PermissionDenied("Approved traces can only be deleted by an admin")

    await session.execute(delete(Citation).where(Citation.trace_id == trace_id))
    await session.execute(delete(TraceAnalysis).where(TraceAnalysis.trace_id == trace_id))
    await session.execute(delete(Trace).where(Trace.id == trace_id))
    await session.commit()
    await invalidate(cache, trace_id)
    logger.info(f"Trace {trace_id} ({trace.status.value}) deleted by {actor_id}")


async def get_trace(
    session: AsyncSession, trace_id: UUID, cache: CacheBackend | None = None
) -> dict[str, Any]:
    """
    Read model of a trace, served from the cache when present.

    A cached entry is only used while the row still has the same version
    and status; workers change status without access to this cache.
    """
    key = trace_cache_key(trace_id)
    result = await session.execute(
        select(Trace.version, Trace.status).where(Trace.id == trace_id)
    )
    row = result.one_or_none()
    if row is None:
        await invalidate(cache, trace_id)
        raise NotFoundError(f"Trace {trace_id} not found")

    if cache is not None:
        cached = await cache.get(key)
        if cached is not None and cached["version"] == row.version and cached["status"] == row.status.value:
            return cached

    trace = await session.get(Trace, trace_id, populate_existing=True)

    data = TraceResponse(
        id=trace.id,
        editor_id=trace.editor_id,
        title=trace.title,
        body=trace.body,
        citations=trace.citations or [],
        status=trace.status,
        version=trace.version,
        published_at=trace.published_at,
        approved_at=trace.approved_at,
        created_at=trace.created_at,
        updated_at=trace.updated_at,
    ).model_dump(mode="json")

    if cache is not None:
        await cache.set(key, data)
    return data


# ============================================================================
# Citations
# ============================================================================


async def _get_citation(session: AsyncSession, trace_id: UUID, citation_id: UUID) -> Citation:
    citation = await session.get(Citation, citation_id)
    if citation is None or citation.trace_id != trace_id:
        raise NotFoundError(f"Citation {citation_id} not found on trace {trace_id}")
    return citation


async def insert_citation(
    session: AsyncSession,
    trace_id: UUID,
    actor_id: UUID,
    authorization: Authorization,
    data: CitationInsert,
    cache: CacheBackend | None = None,
) -> Citation:
    """
    Insert a citation at a 1-based position, appending when none is given.
    Citations at or after the position move down by one.
    """
    trace = await lock_trace(session, trace_id)
    await ensure_can_modify(session, trace_id, actor_id, authorization)
    _check_version(trace, data.expected_version)

    existing = await load_citations(session, trace_id)
    last = len(existing) + 1
    position = last if data.position is None else max(1, min(data.position, last))

    await session.execute(
        update(Citation)
        .where(Citation.trace_id == trace_id, Citation.order >= position)
        .values(order=Citation.order + 1)
        .execution_options(synchronize_session="fetch")
    )
    citation = _citation_row(trace_id, data, position)
    session.add(citation)
    await session.flush()

    await _commit_edit(session, trace, data.expected_version, cache)
    logger.info(f"Citation {citation.id} inserted at {position} on trace {trace_id} by {actor_id}")
    return citation


async def update_citation(
    session: AsyncSession,
    trace_id: UUID,
    citation_id: UUID,
    actor_id: UUID,
    authorization: Authorization,
    patch: CitationPatch,
    cache: CacheBackend | None = None,
) -> Citation:
    trace = await lock_trace(session, trace_id)
    await ensure_can_modify(session, trace_id, actor_id, authorization)
    _check_version(trace, patch.expected_version)

    citation = await _get_citation(session, trace_id, citation_id)
    for field, value in patch.model_dump(exclude_unset=True, exclude={"expected_version"}).items():
        if value is None and field in ("title", "citation_type"):
            continue
        setattr(citation, field, value)
    await session.flush()

    await _commit_edit(session, trace, patch.expected_version, cache)
    await session.refresh(citation)
    return citation


async def delete_citation(
    session: AsyncSession,
    trace_id: UUID,
    citation_id: UUID,
    actor_id: UUID,
    authorization: Authorization,
    expected_version: int,
    cache: CacheBackend | None = None,
) -> Trace:
    """Delete a citation; citations after it move up by one so orders stay 1..N."""
    trace = await lock_trace(session, trace_id)
    await ensure_can_modify(session, trace_id, actor_id, authorization)
    _check_version(trace, expected_version)

    citation = await _get_citation(session, trace_id, citation_id)
    removed_order = citation.order
    await session.execute(delete(Citation).where(Citation.id == citation_id))
    await session.flush()

    await session.execute(
        update(Citation)
        .where(Citation.trace_id == trace_id, Citation.order > removed_order)
        .values(order=Citation.order - 1)
        .execution_options(synchronize_session="fetch")
    )

    trace = await _commit_edit(session, trace, expected_version, cache)
    logger.info(f"Citation {citation_id} removed from trace {trace_id} by {actor_id}")
    return trace
