"""
Trace lifecycle: DRAFT -> PUBLISHED -> ANALYZING -> APPROVED.

APPROVED is terminal. Leaving DRAFT for PUBLISHED runs the readiness gate.
"""

import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from colloquy.auth import Authorization
from colloquy.errors import IllegalTransition, NotFoundError, PermissionDenied
from colloquy.models import Citation, Role, Trace, TraceStatus
from colloquy.services.trace_validation import validate_for_publish

logger = logging.getLogger(__name__)

TRANSITIONS: dict[TraceStatus, frozenset[TraceStatus]] = {
    TraceStatus.DRAFT: frozenset({TraceStatus.DRAFT, TraceStatus.PUBLISHED}),
    TraceStatus.PUBLISHED: frozenset(
        {TraceStatus.ANALYZING, TraceStatus.APPROVED, TraceStatus.PUBLISHED}
    ),
    TraceStatus.ANALYZING: frozenset({TraceStatus.PUBLISHED, TraceStatus.APPROVED}),
    TraceStatus.APPROVED: frozenset(),
}


def can_transition(current: TraceStatus, target: TraceStatus) -> bool:
    return target in TRANSITIONS[current]


async def lock_trace(session: AsyncSession, trace_id: UUID) -> Trace:
    """Load a trace with SELECT ... FOR UPDATE, refreshing any cached state."""
    result = await session.execute(
        select(Trace)
        .where(Trace.id == trace_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    trace = result.scalar_one_or_none()
    if trace is None:
        raise NotFoundError(f"Trace {trace_id} not found")
    return trace


async def ensure_can_modify(
    session: AsyncSession, trace_id: UUID, actor_id: UUID, authorization: Authorization
) -> None:
    """Owner or admin."""
    if await authorization.is_owner(session, trace_id, actor_id):
        return
    if await authorization.has_role(session, actor_id, Role.ADMIN):
        return
    raise PermissionDenied(f"Actor {actor_id} may not modify trace {trace_id}")


async def transition(
    session: AsyncSession,
    trace_id: UUID,
    target: TraceStatus,
    actor_id: UUID,
    authorization: Authorization,
) -> Trace:
    """
    Move a trace to a new status. The caller commits.

    The status is read under a row lock and the write is a compare-and-swap
    on that status, so of two concurrent attempts from the same state only
    one succeeds; the other raises IllegalTransition.
    """
    trace = await lock_trace(session, trace_id)
    current = trace.status

    await ensure_can_modify(session, trace_id, actor_id, authorization)

    if not can_transition(current, target):
        logger.info(f"Rejected transition {current.value} -> {target.value} for trace {trace_id} by {actor_id}")
        raise IllegalTransition(current.value, target.value)

    if current == TraceStatus.DRAFT and target == TraceStatus.PUBLISHED:
        result = await session.execute(
            select(Citation).where(Citation.trace_id == trace_id).order_by(Citation.order)
        )
        validate_for_publish(trace.body, result.scalars().all())

    now = datetime.utcnow()
    values = {"status": target, "updated_at": now}
    if target == TraceStatus.PUBLISHED and trace.published_at is None:
        values["published_at"] = now
    if target == TraceStatus.APPROVED:
        values["approved_at"] = now

    result = await session.execute(
        update(Trace)
        .where(Trace.id == trace_id, Trace.status == current)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise IllegalTransition(current.value, target.value)

    await session.refresh(trace)
    logger.info(f"Trace {trace_id} {current.value} -> {target.value} by {actor_id}")
    return trace


async def publish(
    session: AsyncSession, trace_id: UUID, actor_id: UUID, authorization: Authorization
) -> Trace:
    """Readiness gate, then DRAFT -> PUBLISHED. Failing the gate leaves the trace in DRAFT."""
    return await transition(session, trace_id, TraceStatus.PUBLISHED, actor_id, authorization)
