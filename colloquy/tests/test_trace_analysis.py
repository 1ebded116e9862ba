"""Tests for trace analysis requests, the worker side and the content-hash cache."""

import json
from uuid import uuid4

import pytest
from sqlalchemy import select, update

from colloquy.auth import DatabaseAuthorization
from colloquy.errors import IllegalTransition, PermissionDenied, UpstreamError
from colloquy.models import Citation, Job, JobStatus, JobType, Trace, TraceAnalysis, TraceStatus
from colloquy.services import analysis_cache
from colloquy.services.trace_analysis import get_analysis, parse_analysis, request_analysis, run_analysis
from colloquy.workers.trace_analysis import TraceAnalysisWorker
from conftest import FakeAI

authz = DatabaseAuthorization()

GOOD_RESPONSE = json.dumps(
    {
        "credibility_score": 0.82,
        "completeness_score": 0.7,
        "accuracy_score": 0.9,
        "source_quality_score": 0.75,
        "strengths": ["well sourced"],
        "weaknesses": [],
        "missing_aspects": ["later reception"],
        "suggestions": [],
    }
)


async def _published(session, editor, status=TraceStatus.PUBLISHED):
    trace = Trace(
        id=uuid4(),
        editor_id=editor.id,
        title="Printing press",
        body="Movable type spread across Europe within fifty years. " * 3,
        status=status,
        version=1,
    )
    session.add(trace)
    session.add(
        Citation(id=uuid4(), trace_id=trace.id, order=1, title="Eisenstein", url="https://example.org/e")
    )
    await session.commit()
    return trace


async def _status(session, trace_id):
    return (await session.get(Trace, trace_id, populate_existing=True)).status


class TestParseAnalysis:
    def test_scores_are_clamped(self):
        payload = parse_analysis('{"credibility_score": 1.4, "accuracy_score": -2, "strengths": "x"}')
        assert payload["credibility_score"] == 1.0
        assert payload["accuracy_score"] == 0.0
        assert payload["completeness_score"] is None
        assert payload["strengths"] == []
        assert payload["can_approve"] is True

    def test_below_threshold_cannot_approve(self):
        assert parse_analysis('{"credibility_score": 0.5}')["can_approve"] is False

    def test_unusable_response_yields_placeholder(self):
        payload = parse_analysis("I could not assess this.")
        assert payload["credibility_score"] == 0.5
        assert payload["can_approve"] is False
        assert payload["weaknesses"] == ["Automatic analysis failed"]

    def test_fenced_json(self):
        payload = parse_analysis("```json\n" + GOOD_RESPONSE + "\n```")
        assert payload["credibility_score"] == 0.82


class TestRequestAnalysis:
    @pytest.mark.asyncio
    async def test_moves_to_analyzing_and_enqueues(self, session, editor):
        trace = await _published(session, editor)
        assert await request_analysis(session, trace.id, editor.id, authz) is None
        assert await _status(session, trace.id) == TraceStatus.ANALYZING

        jobs = (await session.execute(select(Job))).scalars().all()
        assert len(jobs) == 1
        assert jobs[0].job_type == JobType.ANALYZE_TRACE
        assert jobs[0].payload["trace_id"] == str(trace.id)

    @pytest.mark.asyncio
    async def test_repeat_request_does_not_duplicate_job(self, session, editor):
        trace = await _published(session, editor)
        await request_analysis(session, trace.id, editor.id, authz)
        await request_analysis(session, trace.id, editor.id, authz)
        jobs = (await session.execute(select(Job))).scalars().all()
        assert len(jobs) == 1

    @pytest.mark.asyncio
    async def test_draft_cannot_be_analyzed(self, session, editor):
        trace = await _published(session, editor, status=TraceStatus.DRAFT)
        with pytest.raises(IllegalTransition):
            await request_analysis(session, trace.id, editor.id, authz)

    @pytest.mark.asyncio
    async def test_requires_owner_or_admin(self, session, editor, other_editor):
        trace = await _published(session, editor)
        with pytest.raises(PermissionDenied):
            await request_analysis(session, trace.id, other_editor.id, authz)

    @pytest.mark.asyncio
    async def test_cached_analysis_returned_without_transition(self, session, editor):
        trace = await _published(session, editor)
        current = await analysis_cache.current_content_hash(session, trace.id)
        await analysis_cache.store(session, trace.id, parse_analysis(GOOD_RESPONSE), current)
        await session.commit()

        analysis = await request_analysis(session, trace.id, editor.id, authz)
        assert analysis is not None
        assert analysis.credibility_score == 0.82
        assert await _status(session, trace.id) == TraceStatus.PUBLISHED
        assert (await session.execute(select(Job))).scalars().all() == []


class TestRunAnalysis:
    @pytest.mark.asyncio
    async def test_stores_result_and_returns_to_published(self, session, editor):
        trace = await _published(session, editor)
        await request_analysis(session, trace.id, editor.id, authz)
        ai = FakeAI(responses=[GOOD_RESPONSE])

        analysis = await run_analysis(session, trace.id, ai)
        assert analysis.credibility_score == 0.82
        assert analysis.can_approve is True
        assert await _status(session, trace.id) == TraceStatus.PUBLISHED
        assert "Eisenstein" in ai.prompts[0]

        state, ready = await get_analysis(session, trace.id)
        assert state == "ready"
        assert ready.missing_aspects == ["later reception"]

    @pytest.mark.asyncio
    async def test_second_run_is_served_from_cache(self, session, editor):
        trace = await _published(session, editor)
        ai = FakeAI(responses=[GOOD_RESPONSE])
        await run_analysis(session, trace.id, ai)
        await run_analysis(session, trace.id, ai)
        assert len(ai.prompts) == 1

    @pytest.mark.asyncio
    async def test_discarded_when_content_changes_meanwhile(self, session_factory, editor):
        async with session_factory() as session:
            trace = await _published(session, editor)

        class EditingAI(FakeAI):
            async def complete(self, prompt, max_tokens=1500, temperature=0):
                async with session_factory() as other:
                    await other.execute(
                        update(Trace).where(Trace.id == trace.id).values(body="Edited. " * 20)
                    )
                    await other.commit()
                return await super().complete(prompt, max_tokens, temperature)

        async with session_factory() as session:
            result = await run_analysis(session, trace.id, EditingAI(responses=[GOOD_RESPONSE]))
            assert result is None
            assert await session.get(TraceAnalysis, trace.id) is None
            assert await _status(session, trace.id) == TraceStatus.PUBLISHED

    @pytest.mark.asyncio
    async def test_ai_failure_reverts_to_published(self, session, editor):
        trace = await _published(session, editor)
        await request_analysis(session, trace.id, editor.id, authz)

        with pytest.raises(UpstreamError):
            await run_analysis(session, trace.id, FakeAI(error=UpstreamError("timeout")))
        assert await _status(session, trace.id) == TraceStatus.PUBLISHED

    @pytest.mark.asyncio
    async def test_bad_output_stores_placeholder(self, session, editor):
        trace = await _published(session, editor)
        analysis = await run_analysis(session, trace.id, FakeAI(responses=["not json"]))
        assert analysis.can_approve is False
        assert analysis.credibility_score == 0.5

    @pytest.mark.asyncio
    async def test_stale_after_edit(self, session, editor):
        trace = await _published(session, editor)
        await run_analysis(session, trace.id, FakeAI(responses=[GOOD_RESPONSE]))

        trace.body = trace.body + " Revised."
        await session.commit()
        state, analysis = await get_analysis(session, trace.id)
        assert state == "not_analyzed"
        assert analysis is None


class TestTraceAnalysisWorker:
    @pytest.mark.asyncio
    async def test_worker_processes_request(self, session_factory, session, editor):
        trace = await _published(session, editor)
        await request_analysis(session, trace.id, editor.id, authz)

        worker = TraceAnalysisWorker(session_factory=session_factory, ai=FakeAI(responses=[GOOD_RESPONSE]))
        assert await worker.run_once() is True
        assert await worker.run_once() is False

        job = (await session.execute(select(Job).execution_options(populate_existing=True))).scalar_one()
        assert job.status == JobStatus.SUCCEEDED
        assert await _status(session, trace.id) == TraceStatus.PUBLISHED

    @pytest.mark.asyncio
    async def test_illegal_transition_is_not_retried(self, session_factory, session, editor):
        trace = await _published(session, editor)
        await request_analysis(session, trace.id, editor.id, authz)
        await session.execute(
            update(Trace).where(Trace.id == trace.id).values(status=TraceStatus.APPROVED)
        )
        await session.commit()

        worker = TraceAnalysisWorker(session_factory=session_factory, ai=FakeAI(responses=[GOOD_RESPONSE]))
        await worker.run_once()

        job = (await session.execute(select(Job).execution_options(populate_existing=True))).scalar_one()
        assert job.status == JobStatus.FAILED
        assert "APPROVED" in job.last_error
