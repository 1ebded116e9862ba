"""
Fixed-window rate limiting per (actor, operation).

The counter is bumped with a single INSERT ... ON CONFLICT DO UPDATE ...
RETURNING, so concurrent requests from the same actor never lose an
increment. Windows do not carry over.
"""

import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from colloquy.config import settings
from colloquy.errors import RateLimitExceeded
from colloquy.models import RateLimitCounter

logger = logging.getLogger(__name__)

TRACE_CREATE = "trace.create"
TRACE_PUBLISH = "trace.publish"


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: datetime
    count: int


def configured_limit(operation: str) -> int:
    limits = {
        TRACE_CREATE: settings.trace_create_per_window,
        TRACE_PUBLISH: settings.trace_publish_per_window,
    }
    return limits[operation]


def _insert_for(session: AsyncSession):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Rate limiting is not supported on {dialect}")


async def check_and_increment(
    session: AsyncSession,
    actor_id: UUID | str,
    operation: str,
    limit: int,
    window_seconds: int,
    now: float | None = None,
) -> RateLimitResult:
    """
    Count one attempt against the actor's current window.

    The attempt is counted even when it is refused. The caller commits.
    """
    now = time.time() if now is None else now
    window_index = math.floor(now / window_seconds)

    insert = _insert_for(session)
    stmt = insert(RateLimitCounter).values(
        actor_id=str(actor_id), operation=operation, window_index=window_index, count=1
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["actor_id", "operation", "window_index"],
        set_={"count": RateLimitCounter.count + 1},
    ).returning(RateLimitCounter.count)

    result = await session.execute(stmt)
    count = result.scalar_one()

    return RateLimitResult(
        allowed=count <= limit,
        remaining=max(0, limit - count),
        reset_at=datetime.fromtimestamp((window_index + 1) * window_seconds, tz=timezone.utc),
        count=count,
    )


async def enforce(
    session: AsyncSession,
    actor_id: UUID | str,
    operation: str,
    limit: int | None = None,
    window_seconds: int | None = None,
    now: float | None = None,
) -> RateLimitResult:
    """check_and_increment, raising RateLimitExceeded when the attempt is over the limit."""
    limit = configured_limit(operation) if limit is None else limit
    window_seconds = settings.rate_limit_window_seconds if window_seconds is None else window_seconds

    result = await check_and_increment(session, actor_id, operation, limit, window_seconds, now)
    if not result.allowed:
        # Keep the refused attempt counted
        await session.commit()
        logger.info(f"Rate limit hit: actor={actor_id} operation={operation} count={result.count}")
        raise RateLimitExceeded(operation, limit, result.reset_at)
    return result
