"""Tests for fixed-window rate limiting."""

from datetime import datetime, timezone
from uuid import uuid4

import pytest

from colloquy.errors import RateLimitExceeded
from colloquy.services import rate_limit

WINDOW = 3600
NOW = 1_800_000_000.0  # window-aligned


class TestCheckAndIncrement:
    @pytest.mark.asyncio
    async def test_limit_is_inclusive(self, session):
        actor = uuid4()
        results = [
            await rate_limit.check_and_increment(session, actor, "op", limit=3, window_seconds=WINDOW, now=NOW)
            for _ in range(4)
        ]
        assert [r.allowed for r in results] == [True, True, True, False]
        assert [r.count for r in results] == [1, 2, 3, 4]
        assert [r.remaining for r in results] == [2, 1, 0, 0]

    @pytest.mark.asyncio
    async def test_new_window_starts_fresh(self, session):
        actor = uuid4()
        for _ in range(2):
            await rate_limit.check_and_increment(session, actor, "op", limit=2, window_seconds=WINDOW, now=NOW)

        refused = await rate_limit.check_and_increment(
            session, actor, "op", limit=2, window_seconds=WINDOW, now=NOW + WINDOW - 1
        )
        assert not refused.allowed

        fresh = await rate_limit.check_and_increment(
            session, actor, "op", limit=2, window_seconds=WINDOW, now=NOW + WINDOW
        )
        assert fresh.allowed
        assert fresh.count == 1

    @pytest.mark.asyncio
    async def test_reset_at_is_window_end(self, session):
        result = await rate_limit.check_and_increment(
            session, uuid4(), "op", limit=5, window_seconds=WINDOW, now=NOW + 100
        )
        assert result.reset_at == datetime.fromtimestamp(NOW + WINDOW, tz=timezone.utc)

    @pytest.mark.asyncio
    async def test_counters_are_per_actor_and_operation(self, session):
        actor, other = uuid4(), uuid4()
        await rate_limit.check_and_increment(session, actor, "a", limit=1, window_seconds=WINDOW, now=NOW)

        assert (await rate_limit.check_and_increment(session, other, "a", limit=1, window_seconds=WINDOW, now=NOW)).allowed
        assert (await rate_limit.check_and_increment(session, actor, "b", limit=1, window_seconds=WINDOW, now=NOW)).allowed
        assert not (
            await rate_limit.check_and_increment(session, actor, "a", limit=1, window_seconds=WINDOW, now=NOW)
        ).allowed


class TestEnforce:
    @pytest.mark.asyncio
    async def test_raises_with_reset_time(self, session):
        actor = uuid4()
        await rate_limit.enforce(session, actor, rate_limit.TRACE_PUBLISH, limit=1, window_seconds=WINDOW, now=NOW)

        with pytest.raises(RateLimitExceeded) as exc_info:
            await rate_limit.enforce(
                session, actor, rate_limit.TRACE_PUBLISH, limit=1, window_seconds=WINDOW, now=NOW
            )
        assert exc_info.value.limit == 1
        assert exc_info.value.to_dict()["reset_at"] == datetime.fromtimestamp(
            NOW + WINDOW, tz=timezone.utc
        ).isoformat()

    @pytest.mark.asyncio
    async def test_refused_attempt_is_kept(self, session):
        actor = uuid4()
        await rate_limit.enforce(session, actor, "op", limit=1, window_seconds=WINDOW, now=NOW)
        await session.commit()
        with pytest.raises(RateLimitExceeded):
            await rate_limit.enforce(session, actor, "op", limit=1, window_seconds=WINDOW, now=NOW)

        await session.rollback()
        result = await rate_limit.check_and_increment(session, actor, "op", limit=1, window_seconds=WINDOW, now=NOW)
        assert result.count == 3

    def test_configured_limits(self):
        assert rate_limit.configured_limit(rate_limit.TRACE_CREATE) >= 1
        assert rate_limit.configured_limit(rate_limit.TRACE_PUBLISH) >= 1
