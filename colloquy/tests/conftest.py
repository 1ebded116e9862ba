"""
Pytest configuration for Colloquy tests.

Every test gets a fresh in-memory SQLite database built from the ORM
metadata. The AI capability is replaced by FakeAI, which replays scripted
completions and answers claim classifications from a lookup table.
"""

from datetime import datetime, timedelta
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from colloquy.auth import hash_api_key
from colloquy.models import (
    Base,
    Document,
    Evaluation,
    Role,
    StageStatus,
    Summary,
    Topic,
    User,
)
from colloquy.schemas import ClaimRelation
from colloquy.services.ai import AIClient

GOOD_SCORES = {"structure": 7, "logic": 7, "viewpoint": 7, "evidence": 7, "citation": 6}


class FakeAI(AIClient):
    """Scripted AI client."""

    def __init__(self, responses=None, relations=None, error: Exception | None = None):
        self.responses = list(responses or [])
        self.relations: dict[tuple[str, str], ClaimRelation] = dict(relations or {})
        self.error = error
        self.prompts: list[str] = []
        self.classified: list[tuple[str, str]] = []

    async def complete(self, prompt: str, max_tokens: int = 1500, temperature: float = 0) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.responses.pop(0) if self.responses else ""

    async def classify(self, claim_a: str, claim_b: str) -> ClaimRelation | None:
        self.classified.append((claim_a, claim_b))
        if self.error is not None:
            raise self.error
        relation = self.relations.get((claim_a, claim_b)) or self.relations.get((claim_b, claim_a))
        return relation or ClaimRelation(relation="unrelated", confidence=0.9)


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncSession:
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_ai():
    return FakeAI()


async def make_user(session: AsyncSession, role: Role = Role.MEMBER, name: str = "user") -> User:
    user = User(id=uuid4(), display_name=name, role=role, api_key_hash=hash_api_key(f"key-{uuid4()}"))
    session.add(user)
    await session.commit()
    return user


@pytest_asyncio.fixture
async def editor(session) -> User:
    return await make_user(session, Role.EDITOR, "editor")


@pytest_asyncio.fixture
async def other_editor(session) -> User:
    return await make_user(session, Role.EDITOR, "other editor")


@pytest_asyncio.fixture
async def admin(session) -> User:
    return await make_user(session, Role.ADMIN, "admin")


@pytest_asyncio.fixture
async def member(session) -> User:
    return await make_user(session, Role.MEMBER, "member")


@pytest_asyncio.fixture
async def topic(session, member) -> Topic:
    topic = Topic(id=uuid4(), title="Free will", discipline=None, creator_id=member.id)
    session.add(topic)
    await session.commit()
    return topic


_clock = [datetime(2026, 1, 1)]


def next_timestamp() -> datetime:
    _clock[0] += timedelta(seconds=1)
    return _clock[0]


async def add_document(
    session: AsyncSession,
    topic: Topic,
    author_id: UUID,
    parent_id: UUID | None = None,
    claims: list[str] | None = None,
    scores: dict | None = None,
    evaluated: bool = True,
) -> Document:
    """A document already through the pipeline (or only extracted when evaluated=False)."""
    document = Document(
        id=uuid4(),
        topic_id=topic.id,
        author_id=author_id,
        parent_id=parent_id,
        file_key=f"{uuid4()}.txt",
        mime="text/plain",
        extracted_text="text",
        extract_status=StageStatus.COMPLETED,
        summarize_status=StageStatus.COMPLETED if evaluated else StageStatus.PENDING,
        evaluate_status=StageStatus.COMPLETED if evaluated else StageStatus.PENDING,
        stage_errors={},
        created_at=next_timestamp(),
    )
    session.add(document)
    await session.flush()

    if evaluated:
        session.add(
            Summary(document_id=document.id, title="t", overview="o", claims=claims or [], keywords=[])
        )
        session.add(
            Evaluation(document_id=document.id, scores=scores or GOOD_SCORES, verdict="ok", rubric="default")
        )
    await session.commit()
    return document
