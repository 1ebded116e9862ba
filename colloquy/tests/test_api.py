"""HTTP-level tests for the topic and trace routes."""

from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from colloquy.auth import generate_api_key, hash_api_key
from colloquy.config import settings
from colloquy.db import get_session
from colloquy.main import create_app
from colloquy.models import Job, JobType, Role, User
from conftest import add_document

BODY = "The printing press lowered the cost of books by an order of magnitude within decades. " * 2
CITATION = {"title": "The Printing Revolution", "url": "https://example.org/eisenstein", "year": 1983}


@pytest_asyncio.fixture
async def client(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


async def _headers(session, role: Role) -> tuple[User, dict[str, str]]:
    api_key = generate_api_key()
    user = User(id=uuid4(), display_name=role.value.lower(), role=role, api_key_hash=hash_api_key(api_key))
    session.add(user)
    await session.commit()
    return user, {"Authorization": f"Bearer {api_key}"}


@pytest_asyncio.fixture
async def editor_auth(session):
    return await _headers(session, Role.EDITOR)


@pytest_asyncio.fixture
async def admin_auth(session):
    return await _headers(session, Role.ADMIN)


@pytest_asyncio.fixture
async def member_auth(session):
    return await _headers(session, Role.MEMBER)


async def _create_trace(client, headers, body=BODY, citations=None):
    response = await client.post(
        "/v1/traces",
        json={"title": "Printing press", "body": body, "citations": [CITATION] if citations is None else citations},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()


class TestAuth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    @pytest.mark.asyncio
    async def test_missing_header(self, client):
        response = await client.get(f"/v1/traces/{uuid4()}")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_key(self, client):
        response = await client.get(f"/v1/traces/{uuid4()}", headers={"Authorization": "Bearer clq_nope"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid API key"


class TestTraceRoutes:
    @pytest.mark.asyncio
    async def test_member_cannot_create(self, client, member_auth):
        _, headers = member_auth
        response = await client.post("/v1/traces", json={"title": "T", "body": BODY}, headers=headers)
        assert response.status_code == 403
        assert response.json()["error"] == "permission_denied"

    @pytest.mark.asyncio
    async def test_create_read_and_update(self, client, editor_auth):
        _, headers = editor_auth
        trace = await _create_trace(client, headers)
        assert trace["status"] == "DRAFT"
        assert trace["version"] == 1
        assert trace["citations"][0]["order"] == 1

        response = await client.get(f"/v1/traces/{trace['id']}", headers=headers)
        assert response.json()["title"] == "Printing press"

        response = await client.patch(
            f"/v1/traces/{trace['id']}", json={"expected_version": 1, "title": "Movable type"}, headers=headers
        )
        assert response.status_code == 200
        assert response.json()["version"] == 2
        assert response.json()["title"] == "Movable type"

    @pytest.mark.asyncio
    async def test_stale_version_is_409(self, client, editor_auth):
        _, headers = editor_auth
        trace = await _create_trace(client, headers)
        await client.patch(f"/v1/traces/{trace['id']}", json={"expected_version": 1, "title": "A"}, headers=headers)

        response = await client.patch(
            f"/v1/traces/{trace['id']}", json={"expected_version": 1, "title": "B"}, headers=headers
        )
        assert response.status_code == 409
        assert response.json()["error"] == "conflict"
        assert response.json()["actual_version"] == 2

    @pytest.mark.asyncio
    async def test_publish_gate_lists_violations(self, client, editor_auth):
        _, headers = editor_auth
        trace = await _create_trace(client, headers, body="short", citations=[])

        response = await client.post(f"/v1/traces/{trace['id']}/publish", headers=headers)
        assert response.status_code == 422
        violations = response.json()["violations"]
        assert "at least one citation is required" in violations
        assert any(v.startswith("body must be at least") for v in violations)

        response = await client.get(f"/v1/traces/{trace['id']}", headers=headers)
        assert response.json()["status"] == "DRAFT"

    @pytest.mark.asyncio
    async def test_lifecycle(self, client, editor_auth, admin_auth):
        _, headers = editor_auth
        _, admin_headers = admin_auth
        trace = await _create_trace(client, headers)

        response = await client.post(f"/v1/traces/{trace['id']}/publish", headers=headers)
        assert response.status_code == 200
        assert response.json()["status"] == "PUBLISHED"
        assert response.json()["published_at"] is not None

        response = await client.post(
            f"/v1/traces/{trace['id']}/transition", json={"target": "APPROVED"}, headers=admin_headers
        )
        assert response.json()["status"] == "APPROVED"

        response = await client.post(
            f"/v1/traces/{trace['id']}/transition", json={"target": "DRAFT"}, headers=admin_headers
        )
        assert response.status_code == 409
        assert response.json()["error"] == "illegal_transition"

        response = await client.delete(f"/v1/traces/{trace['id']}", headers=headers)
        assert response.status_code == 403
        response = await client.delete(f"/v1/traces/{trace['id']}", headers=admin_headers)
        assert response.status_code == 204

    @pytest.mark.asyncio
    async def test_create_rate_limit(self, client, editor_auth, monkeypatch):
        monkeypatch.setattr(settings, "trace_create_per_window", 1)
        _, headers = editor_auth
        await _create_trace(client, headers)

        response = await client.post("/v1/traces", json={"title": "Again", "body": BODY}, headers=headers)
        assert response.status_code == 429
        assert response.json()["error"] == "rate_limited"
        assert "X-RateLimit-Reset" in response.headers

    @pytest.mark.asyncio
    async def test_citation_routes(self, client, editor_auth):
        _, headers = editor_auth
        trace = await _create_trace(client, headers)

        response = await client.post(
            f"/v1/traces/{trace['id']}/citations",
            json={"expected_version": 1, "position": 1, "title": "Febvre", "publisher": "Verso"},
            headers=headers,
        )
        assert response.status_code == 201
        inserted = response.json()
        assert inserted["order"] == 1

        response = await client.get(f"/v1/traces/{trace['id']}", headers=headers)
        assert [c["title"] for c in response.json()["citations"]] == ["Febvre", "The Printing Revolution"]

        response = await client.delete(
            f"/v1/traces/{trace['id']}/citations/{inserted['id']}",
            params={"expected_version": 2},
            headers=headers,
        )
        assert response.status_code == 200
        assert [c["order"] for c in response.json()["citations"]] == [1]
        assert response.json()["version"] == 3

    @pytest.mark.asyncio
    async def test_analyze_is_accepted(self, client, editor_auth):
        _, headers = editor_auth
        trace = await _create_trace(client, headers)
        await client.post(f"/v1/traces/{trace['id']}/publish", headers=headers)

        response = await client.post(f"/v1/traces/{trace['id']}/analyze", headers=headers)
        assert response.status_code == 202
        assert response.json()["status"] == "analyzing"

        response = await client.get(f"/v1/traces/{trace['id']}/analysis", headers=headers)
        assert response.json() == {"status": "analyzing", "analysis": None}

        response = await client.get(f"/v1/traces/{trace['id']}", headers=headers)
        assert response.json()["status"] == "ANALYZING"

    @pytest.mark.asyncio
    async def test_transition_to_analyzing_queues_analysis(self, client, session, editor_auth):
        _, headers = editor_auth
        trace = await _create_trace(client, headers)
        await client.post(f"/v1/traces/{trace['id']}/publish", headers=headers)

        response = await client.post(
            f"/v1/traces/{trace['id']}/transition", json={"target": "ANALYZING"}, headers=headers
        )
        assert response.status_code == 200
        assert response.json()["status"] == "ANALYZING"

        result = await session.execute(select(Job).where(Job.job_type == JobType.ANALYZE_TRACE))
        (job,) = result.scalars().all()
        assert job.payload["trace_id"] == trace["id"]

    @pytest.mark.asyncio
    async def test_draft_cannot_enter_analyzing(self, client, editor_auth):
        _, headers = editor_auth
        trace = await _create_trace(client, headers)

        response = await client.post(
            f"/v1/traces/{trace['id']}/transition", json={"target": "ANALYZING"}, headers=headers
        )
        assert response.status_code == 409
        assert response.json()["error"] == "illegal_transition"

    @pytest.mark.asyncio
    async def test_unknown_trace_is_404(self, client, editor_auth):
        _, headers = editor_auth
        response = await client.get(f"/v1/traces/{uuid4()}", headers=headers)
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"


class TestTopicRoutes:
    @pytest.mark.asyncio
    async def test_topic_and_documents(self, client, member_auth):
        _, headers = member_auth
        response = await client.post("/v1/topics", json={"title": "Free will", "discipline": "philosophy"}, headers=headers)
        assert response.status_code == 201
        topic_id = response.json()["id"]

        response = await client.post(
            f"/v1/topics/{topic_id}/documents", json={"file_key": "essay.md", "mime": "text/markdown"}, headers=headers
        )
        assert response.status_code == 201
        document = response.json()
        assert document["extract_status"] == "PENDING"

        response = await client.get(f"/v1/documents/{document['id']}/status", headers=headers)
        assert response.status_code == 200
        assert response.json()["stages"]["extract"] == {"status": "PENDING", "error": None}

    @pytest.mark.asyncio
    async def test_parent_must_be_in_topic(self, client, member_auth):
        _, headers = member_auth
        first = (await client.post("/v1/topics", json={"title": "A"}, headers=headers)).json()
        second = (await client.post("/v1/topics", json={"title": "B"}, headers=headers)).json()
        parent = (
            await client.post(f"/v1/topics/{first['id']}/documents", json={"file_key": "a.txt"}, headers=headers)
        ).json()

        response = await client.post(
            f"/v1/topics/{second['id']}/documents",
            json={"file_key": "b.txt", "parent_id": parent["id"]},
            headers=headers,
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_pairs_and_consensus_reads(self, client, session, topic, member_auth, editor):
        author, headers = member_auth
        root = await add_document(session, topic, author.id, claims=["Determinism is true"])
        await add_document(session, topic, editor.id, parent_id=root.id, claims=["Determinism is false"])

        response = await client.get(f"/v1/topics/{topic.id}/pairs", headers=headers)
        (pair,) = response.json()
        assert {pair["user_id1"], pair["user_id2"]} == {str(author.id), str(editor.id)}

        response = await client.get(f"/v1/topics/{topic.id}/consensus", headers=headers)
        assert response.status_code == 202
        assert response.json() == {"status": "analyzing", "snapshot": None}

        response = await client.get(
            f"/v1/topics/{topic.id}/consensus/pairs/{editor.id}/{author.id}", headers=headers
        )
        assert response.status_code == 202

        response = await client.get(f"/v1/topics/{topic.id}/consensus/history", headers=headers)
        assert response.json() == []

    @pytest.mark.asyncio
    async def test_consensus_needs_evaluated_documents(self, client, session, topic, member_auth):
        author, headers = member_auth
        await add_document(session, topic, author.id, claims=["Only one"])

        response = await client.get(f"/v1/topics/{topic.id}/consensus", headers=headers)
        assert response.status_code == 409
        assert response.json()["error"] == "precondition_failed"
        assert response.json()["missing"] == 1

    @pytest.mark.asyncio
    async def test_trigger_refused_until_enough_evaluated(self, client, session, topic, member_auth):
        author, headers = member_auth
        await add_document(session, topic, author.id, claims=["Only one"])

        response = await client.post(f"/v1/topics/{topic.id}/consensus/trigger", headers=headers)
        assert response.status_code == 409
        assert response.json()["missing"] == 1

        result = await session.execute(select(Job).where(Job.job_type == JobType.TRACK_CONSENSUS))
        assert result.scalars().all() == []

    @pytest.mark.asyncio
    async def test_trigger_queues_one_tracking_job(self, client, session, topic, member_auth, editor):
        author, headers = member_auth
        root = await add_document(session, topic, author.id, claims=["Determinism is true"])
        await add_document(session, topic, editor.id, parent_id=root.id, claims=["Determinism is false"])

        response = await client.post(f"/v1/topics/{topic.id}/consensus/trigger", headers=headers)
        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "queued"
        assert body["evaluated_documents"] == 2
        assert body["total_documents"] == 2

        again = await client.post(f"/v1/topics/{topic.id}/consensus/trigger", headers=headers)
        assert again.json()["job_id"] == body["job_id"]

        result = await session.execute(select(Job).where(Job.job_type == JobType.TRACK_CONSENSUS))
        (job,) = result.scalars().all()
        assert str(job.id) == body["job_id"]
        assert job.payload == {"topic_id": str(topic.id)}
