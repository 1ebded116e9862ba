"""
Consensus and divergence across a topic's evaluated documents.

Claims come from the latest summary of every evaluated document that passes
the quality check. Candidate pairs of claims from different participants are
classified by the AI capability:

* agree (confident)               -> consensus point
* contradict (confident), where one
  document is a reply-ancestor of
  the other                       -> disagreement point
* anything else classified        -> unrelated

consensus_score and divergence_score are the share of classified pairs that
landed in each bucket. Claims with no consensus or disagreement relationship
are reported as unverified.

Every aggregate records a fingerprint of its input. It is recomputed just
before persisting; if the topic changed while the model was working, the
result is discarded and a fresh job is enqueued. Stored aggregates whose
fingerprint no longer matches are stale on read.
"""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from colloquy.config import settings
from colloquy.errors import NotFoundError, PreconditionError, UpstreamError
from colloquy.models import (
    ConsensusSnapshot,
    Document,
    Evaluation,
    Job,
    JobType,
    StageStatus,
    Summary,
    Topic,
    UserPairConsensus,
)
from colloquy.schemas import Claim, ClaimRelation, ConsensusPoint, DisagreementPoint
from colloquy.services.ai import AIClient
from colloquy.services.evaluation import check_document_quality
from colloquy.services.hashing import fingerprint
from colloquy.services.queue import enqueue
from colloquy.services.user_pairs import (
    ReplyForest,
    UserPair,
    canonical_pair,
    identify_user_pairs,
    pair_documents,
)

logger = logging.getLogger(__name__)

KEY_POINT_LIMIT = 5
DISAGREEMENT_LIMIT = 10


@dataclass
class AggregateResult:
    consensus_points: list[ConsensusPoint] = field(default_factory=list)
    disagreement_points: list[DisagreementPoint] = field(default_factory=list)
    unverified_claims: list[Claim] = field(default_factory=list)
    classified_count: int = 0
    claim_count: int = 0

    @property
    def consensus_score(self) -> float:
        if not self.classified_count:
            return 0.0
        return len(self.consensus_points) / self.classified_count

    @property
    def divergence_score(self) -> float:
        if not self.classified_count:
            return 0.0
        return len(self.disagreement_points) / self.classified_count


@dataclass
class TopicInputs:
    topic: Topic
    documents: list[Document]
    summaries: dict[UUID, Summary]
    evaluations: dict[UUID, Evaluation]
    fingerprint: str

    @property
    def evaluated(self) -> list[Document]:
        return [d for d in self.documents if d.evaluate_status == StageStatus.COMPLETED]


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# ============================================================================
# Inputs
# ============================================================================


async def _latest_rows(session: AsyncSession, model, document_ids: list[UUID]) -> dict[UUID, Any]:
    if not document_ids:
        return {}
    latest = (
        select(func.max(model.id))
        .where(model.document_id.in_(document_ids))
        .group_by(model.document_id)
    )
    result = await session.execute(select(model).where(model.id.in_(latest)))
    return {row.document_id: row for row in result.scalars().all()}


def _fingerprint(
    documents: list[Document], summaries: dict[UUID, Summary], evaluations: dict[UUID, Evaluation]
) -> str:
    return fingerprint(
        [
            [
                str(d.id),
                str(d.parent_id) if d.parent_id else None,
                d.evaluate_status.value,
                summaries[d.id].id if d.id in summaries else None,
                evaluations[d.id].id if d.id in evaluations else None,
            ]
            for d in sorted(documents, key=lambda d: str(d.id))
        ]
    )


async def load_inputs(session: AsyncSession, topic_id: UUID) -> TopicInputs:
    topic = await session.get(Topic, topic_id)
    if topic is None:
        raise NotFoundError(f"Topic {topic_id} not found")

    result = await session.execute(
        select(Document)
        .where(Document.topic_id == topic_id)
        .order_by(Document.created_at, Document.id)
        .execution_options(populate_existing=True)
    )
    documents = list(result.scalars().all())
    ids = [d.id for d in documents]
    summaries = await _latest_rows(session, Summary, ids)
    evaluations = await _latest_rows(session, Evaluation, ids)

    return TopicInputs(
        topic=topic,
        documents=documents,
        summaries=summaries,
        evaluations=evaluations,
        fingerprint=_fingerprint(documents, summaries, evaluations),
    )


async def current_fingerprint(session: AsyncSession, topic_id: UUID) -> str:
    return (await load_inputs(session, topic_id)).fingerprint


def require_enough_evaluated(inputs: TopicInputs) -> None:
    needed = settings.consensus_min_evaluated_documents
    evaluated = len(inputs.evaluated)
    if evaluated < needed:
        missing = needed - evaluated
        raise PreconditionError(
            f"Topic {inputs.topic.id} has {evaluated} evaluated documents; "
            f"{missing} more needed before consensus can be computed",
            missing=missing,
        )


def collect_claims(inputs: TopicInputs, documents: list[Document] | None = None) -> list[Claim]:
    """Claims of evaluated documents that pass the quality check, in document order."""
    claims = []
    for doc in documents if documents is not None else inputs.documents:
        if doc.evaluate_status != StageStatus.COMPLETED:
            continue
        summary = inputs.summaries.get(doc.id)
        evaluation = inputs.evaluations.get(doc.id)
        if summary is None or evaluation is None:
            continue

        report = check_document_quality(evaluation.scores or {}, inputs.topic.discipline)
        if not report.is_sufficient:
            logger.info(f"Document {doc.id} excluded from consensus: {'; '.join(report.reasons)}")
            continue

        for text in summary.claims or []:
            if isinstance(text, str) and text.strip():
                claims.append(Claim(text=text.strip(), author_id=doc.author_id, document_id=doc.id))
    return claims


# ============================================================================
# Aggregation
# ============================================================================


def candidate_pairs(claims: list[Claim]) -> list[tuple[Claim, Claim]]:
    """Claims from different documents by different authors, capped."""
    pairs = []
    for i, a in enumerate(claims):
        for b in claims[i + 1 :]:
            if a.document_id == b.document_id or a.author_id == b.author_id:
                continue
            pairs.append((a, b))
            if len(pairs) >= settings.consensus_max_claim_pairs:
                logger.warning(f"Claim pairs capped at {settings.consensus_max_claim_pairs}")
                return pairs
    return pairs


async def classify_pairs(
    pairs: list[tuple[Claim, Claim]], ai: AIClient
) -> list[ClaimRelation | None]:
    semaphore = asyncio.Semaphore(settings.ai_max_concurrency)

    async def classify(a: Claim, b: Claim) -> ClaimRelation | None:
        async with semaphore:
            try:
                return await ai.classify(a.text, b.text)
            except UpstreamError as e:
                logger.warning(f"Classification failed for documents {a.document_id}/{b.document_id}: {e}")
                return None

    return await asyncio.gather(*(classify(a, b) for a, b in pairs))


async def aggregate(claims: list[Claim], forest: ReplyForest, ai: AIClient) -> AggregateResult:
    pairs = candidate_pairs(claims)
    relations = await classify_pairs(pairs, ai)

    result = AggregateResult(claim_count=len(claims))
    related: set[int] = set()
    threshold = settings.consensus_min_confidence

    for (a, b), relation in zip(pairs, relations):
        if relation is None:
            continue
        result.classified_count += 1
        if relation.confidence < threshold:
            continue

        if relation.relation == "agree":
            result.consensus_points.append(
                ConsensusPoint(text=a.text, claims=[a, b], confidence=relation.confidence)
            )
        elif relation.relation == "contradict":
            if forest.is_ancestor(a.document_id, b.document_id):
                ancestor, reply = a, b
            elif forest.is_ancestor(b.document_id, a.document_id):
                ancestor, reply = b, a
            else:
                continue
            result.disagreement_points.append(
                DisagreementPoint(ancestor_claim=ancestor, reply_claim=reply, confidence=relation.confidence)
            )
        else:
            continue
        related.update((id(a), id(b)))

    result.unverified_claims = [c for c in claims if id(c) not in related]
    return result


def compute_trend(
    previous: ConsensusSnapshot | None, consensus_score: float, divergence_score: float
) -> str:
    if previous is None:
        return "stable"
    epsilon = settings.consensus_trend_epsilon
    if consensus_score - previous.consensus_score > epsilon:
        return "converging"
    if divergence_score - previous.divergence_score > epsilon:
        return "diverging"
    return "stable"


def key_points(result: AggregateResult) -> list[str]:
    """Most corroborated consensus texts first."""
    support = Counter()
    best_confidence: dict[str, float] = {}
    for point in result.consensus_points:
        support[point.text] += 1
        best_confidence[point.text] = max(best_confidence.get(point.text, 0.0), point.confidence)
    ranked = sorted(support, key=lambda t: (-support[t], -best_confidence[t], t))
    return ranked[:KEY_POINT_LIMIT]


def disagreement_summaries(result: AggregateResult) -> list[str]:
    ranked = sorted(result.disagreement_points, key=lambda d: -d.confidence)
    return [
        f'"{d.reply_claim.text}" rebuts "{d.ancestor_claim.text}"'
        for d in ranked[:DISAGREEMENT_LIMIT]
    ]


# ============================================================================
# Persistence
# ============================================================================


def pair_dedupe_key(topic_id: UUID, user_id1: UUID, user_id2: UUID) -> str:
    return f"user_pair:{topic_id}:{user_id1}:{user_id2}"


def topic_dedupe_key(topic_id: UUID) -> str:
    return f"track_consensus:{topic_id}"


def find_pair(documents: list[Document], user_id1: UUID, user_id2: UUID) -> UserPair:
    for pair in identify_user_pairs(documents):
        if pair.key == (user_id1, user_id2):
            return pair
    raise NotFoundError(f"Users {user_id1} and {user_id2} never replied to each other")


async def _get_pair_record(
    session: AsyncSession, topic_id: UUID, user_id1: UUID, user_id2: UUID
) -> UserPairConsensus | None:
    result = await session.execute(
        select(UserPairConsensus).where(
            UserPairConsensus.topic_id == topic_id,
            UserPairConsensus.user_id1 == user_id1,
            UserPairConsensus.user_id2 == user_id2,
        )
    )
    return result.scalar_one_or_none()


async def analyze_pair(
    session: AsyncSession, topic_id: UUID, user_a: UUID, user_b: UUID, ai: AIClient
) -> UserPairConsensus | None:
    """
    Compute and upsert the consensus record of one user pair.

    Returns None when the topic changed during the computation; a fresh job
    has been enqueued in that case.
    """
    user_id1, user_id2 = canonical_pair(user_a, user_b)
    inputs = await load_inputs(session, topic_id)
    require_enough_evaluated(inputs)

    pair = find_pair(inputs.documents, user_id1, user_id2)
    docs = pair_documents(inputs.documents, user_id1, user_id2)

    forest = ReplyForest(inputs.documents)
    claims = [c for c in collect_claims(inputs, docs) if c.author_id in (user_id1, user_id2)]
    await session.commit()

    result = await aggregate(claims, forest, ai)

    if await current_fingerprint(session, topic_id) != inputs.fingerprint:
        logger.warning(f"Topic {topic_id} changed while analyzing pair {user_id1}/{user_id2}, recomputing")
        await enqueue(
            session,
            JobType.ANALYZE_USER_PAIR,
            {"topic_id": str(topic_id), "user_id1": str(user_id1), "user_id2": str(user_id2)},
            dedupe_key=pair_dedupe_key(topic_id, user_id1, user_id2),
        )
        await session.commit()
        return None

    record = await _get_pair_record(session, topic_id, user_id1, user_id2)
    if record is None:
        record = UserPairConsensus(id=uuid4(), topic_id=topic_id, user_id1=user_id1, user_id2=user_id2)
        session.add(record)

    record.consensus_points = [p.model_dump(mode="json") for p in result.consensus_points]
    record.disagreement_points = [p.model_dump(mode="json") for p in result.disagreement_points]
    record.unverified_claims = [c.model_dump(mode="json") for c in result.unverified_claims]
    record.consensus_score = result.consensus_score
    record.divergence_score = result.divergence_score
    record.document_ids = [str(d) for d in pair.document_ids]
    record.discussion_paths = pair.discussion_paths
    record.input_hash = inputs.fingerprint
    record.last_analyzed_at = datetime.utcnow()

    await session.commit()
    logger.info(
        f"Pair {user_id1}/{user_id2} in topic {topic_id}: consensus={record.consensus_score:.2f} "
        f"divergence={record.divergence_score:.2f} classified={result.classified_count}"
    )
    return record


async def track_topic(session: AsyncSession, topic_id: UUID, ai: AIClient) -> ConsensusSnapshot | None:
    """
    Append a topic-level snapshot and enqueue recomputation of every user pair.

    Returns None when the topic changed during the computation.
    """
    inputs = await load_inputs(session, topic_id)
    require_enough_evaluated(inputs)

    forest = ReplyForest(inputs.documents)
    claims = collect_claims(inputs)
    await session.commit()

    result = await aggregate(claims, forest, ai)

    if await current_fingerprint(session, topic_id) != inputs.fingerprint:
        logger.warning(f"Topic {topic_id} changed during consensus tracking, recomputing")
        await enqueue(
            session,
            JobType.TRACK_CONSENSUS,
            {"topic_id": str(topic_id)},
            dedupe_key=topic_dedupe_key(topic_id),
        )
        await session.commit()
        return None

    previous = await latest_snapshot(session, topic_id)
    trend = compute_trend(previous, result.consensus_score, result.divergence_score)

    snapshot = ConsensusSnapshot(
        id=uuid4(),
        topic_id=topic_id,
        snapshot_at=datetime.utcnow(),
        consensus_score=result.consensus_score,
        divergence_score=result.divergence_score,
        consensus_data={
            "trend": trend,
            "key_points": key_points(result),
            "disagreements": disagreement_summaries(result),
            "consensus_count": len(result.consensus_points),
            "disagreement_count": len(result.disagreement_points),
            "unverified_count": len(result.unverified_claims),
            "classified_count": result.classified_count,
            "document_count": len(inputs.evaluated),
        },
        input_hash=inputs.fingerprint,
    )
    session.add(snapshot)
    await session.flush()
    await prune_snapshots(session, topic_id)

    for pair in identify_user_pairs(inputs.documents):
        await enqueue(
            session,
            JobType.ANALYZE_USER_PAIR,
            {"topic_id": str(topic_id), "user_id1": str(pair.user_id1), "user_id2": str(pair.user_id2)},
            dedupe_key=pair_dedupe_key(topic_id, pair.user_id1, pair.user_id2),
        )

    await session.commit()
    logger.info(
        f"Topic {topic_id} snapshot: consensus={snapshot.consensus_score:.2f} "
        f"divergence={snapshot.divergence_score:.2f} trend={trend}"
    )
    return snapshot


async def latest_snapshot(session: AsyncSession, topic_id: UUID) -> ConsensusSnapshot | None:
    result = await session.execute(
        select(ConsensusSnapshot)
        .where(ConsensusSnapshot.topic_id == topic_id)
        .order_by(ConsensusSnapshot.snapshot_at.desc(), ConsensusSnapshot.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def prune_snapshots(session: AsyncSession, topic_id: UUID) -> int:
    """Keep only the newest snapshots of a topic."""
    keep = (
        select(ConsensusSnapshot.id)
        .where(ConsensusSnapshot.topic_id == topic_id)
        .order_by(ConsensusSnapshot.snapshot_at.desc(), ConsensusSnapshot.id.desc())
        .limit(settings.consensus_snapshot_retention)
    )
    result = await session.execute(
        delete(ConsensusSnapshot)
        .where(ConsensusSnapshot.topic_id == topic_id, ConsensusSnapshot.id.not_in(keep))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.info(f"Pruned {result.rowcount} old snapshots for topic {topic_id}")
    return result.rowcount


async def snapshot_history(
    session: AsyncSession, topic_id: UUID, limit: int = 50
) -> list[ConsensusSnapshot]:
    """Snapshots oldest first."""
    if await session.get(Topic, topic_id) is None:
        raise NotFoundError(f"Topic {topic_id} not found")
    result = await session.execute(
        select(ConsensusSnapshot)
        .where(ConsensusSnapshot.topic_id == topic_id)
        .order_by(ConsensusSnapshot.snapshot_at.desc(), ConsensusSnapshot.id.desc())
        .limit(limit)
    )
    return list(reversed(result.scalars().all()))


# ============================================================================
# Read paths
# ============================================================================


def is_fresh(analyzed_at: datetime, input_hash: str, current_hash: str, now: datetime | None = None) -> bool:
    now = _naive_utc(now or datetime.utcnow())
    age = now - _naive_utc(analyzed_at)
    return input_hash == current_hash and age <= timedelta(seconds=settings.consensus_freshness_seconds)


async def get_pair_consensus(
    session: AsyncSession,
    topic_id: UUID,
    user_a: UUID,
    user_b: UUID,
    now: datetime | None = None,
) -> tuple[str, UserPairConsensus | None]:
    """
    ("ready", record) when a fresh record exists. Otherwise a recompute job is
    enqueued and ("analyzing", None) is returned.
    """
    user_id1, user_id2 = canonical_pair(user_a, user_b)
    inputs = await load_inputs(session, topic_id)
    require_enough_evaluated(inputs)

    record = await _get_pair_record(session, topic_id, user_id1, user_id2)
    if record is not None and is_fresh(record.last_analyzed_at, record.input_hash, inputs.fingerprint, now):
        return "ready", record

    if not pair_documents(inputs.documents, user_id1, user_id2):
        raise NotFoundError(f"Users {user_id1} and {user_id2} never replied to each other in topic {topic_id}")

    await enqueue(
        session,
        JobType.ANALYZE_USER_PAIR,
        {"topic_id": str(topic_id), "user_id1": str(user_id1), "user_id2": str(user_id2)},
        dedupe_key=pair_dedupe_key(topic_id, user_id1, user_id2),
    )
    await session.commit()
    return "analyzing", None


async def get_topic_consensus(
    session: AsyncSession, topic_id: UUID, now: datetime | None = None
) -> tuple[str, ConsensusSnapshot | None]:
    """Same contract as get_pair_consensus, for the topic snapshot."""
    inputs = await load_inputs(session, topic_id)
    require_enough_evaluated(inputs)

    snapshot = await latest_snapshot(session, topic_id)
    if snapshot is not None and is_fresh(snapshot.snapshot_at, snapshot.input_hash, inputs.fingerprint, now):
        return "ready", snapshot

    await enqueue(
        session,
        JobType.TRACK_CONSENSUS,
        {"topic_id": str(topic_id)},
        dedupe_key=topic_dedupe_key(topic_id),
    )
    await session.commit()
    return "analyzing", None


async def trigger_tracking(session: AsyncSession, topic_id: UUID) -> tuple[Job, TopicInputs]:
    """
    Queue a recompute of the topic snapshot and its pair records on demand.

    Refuses with PreconditionError while too few documents are evaluated, so
    the caller learns the missing count at request time. A pending tracking
    job for the topic is reused.
    """
    inputs = await load_inputs(session, topic_id)
    require_enough_evaluated(inputs)

    job = await enqueue(
        session,
        JobType.TRACK_CONSENSUS,
        {"topic_id": str(topic_id)},
        dedupe_key=topic_dedupe_key(topic_id),
    )
    await session.commit()
    logger.info(f"Consensus tracking for topic {topic_id} triggered as job {job.id}")
    return job, inputs
