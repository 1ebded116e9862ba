from uuid import UUID, uuid4

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy import select

from colloquy.auth import ActorContext, get_actor_context
from colloquy.models import Document, JobType, Stage, StageStatus, Topic, UserPairConsensus
from colloquy.schemas import (
    ConsensusTriggerResponse,
    DocumentCreate,
    DocumentResponse,
    PairConsensusResponse,
    PairConsensusResult,
    ProcessingStatusResponse,
    SnapshotData,
    SnapshotResponse,
    TopicConsensusResponse,
    TopicCreate,
    TopicResponse,
    UserPairResponse,
)
from colloquy.services.consensus import (
    get_pair_consensus,
    get_topic_consensus,
    snapshot_history,
    trigger_tracking,
)
from colloquy.services.queue import enqueue, stage_dedupe_key
from colloquy.services.stage_tracker import processing_status
from colloquy.services.user_pairs import identify_user_pairs

router = APIRouter()


def _snapshot_response(snapshot) -> SnapshotResponse:
    return SnapshotResponse(
        id=snapshot.id,
        topic_id=snapshot.topic_id,
        snapshot_at=snapshot.snapshot_at,
        consensus_score=snapshot.consensus_score,
        divergence_score=snapshot.divergence_score,
        data=SnapshotData.model_validate(snapshot.consensus_data),
    )


def _pair_result(record: UserPairConsensus) -> PairConsensusResult:
    return PairConsensusResult(
        topic_id=record.topic_id,
        user_id1=record.user_id1,
        user_id2=record.user_id2,
        consensus_points=record.consensus_points,
        disagreement_points=record.disagreement_points,
        unverified_claims=record.unverified_claims,
        consensus_score=record.consensus_score,
        divergence_score=record.divergence_score,
        document_ids=record.document_ids,
        discussion_paths=record.discussion_paths,
        last_analyzed_at=record.last_analyzed_at,
    )


async def _get_topic(ctx: ActorContext, topic_id: UUID) -> Topic:
    topic = await ctx.session.get(Topic, topic_id)
    if not topic:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Topic not found",
        )
    return topic


@router.post("/topics", response_model=TopicResponse, status_code=status.HTTP_201_CREATED)
async def create_topic(
    data: TopicCreate,
    ctx: ActorContext = Depends(get_actor_context),
) -> TopicResponse:
    """Open a new discussion topic."""
    topic = Topic(
        id=uuid4(),
        title=data.title.strip(),
        discipline=data.discipline,
        creator_id=ctx.actor_id,
    )
    ctx.session.add(topic)
    await ctx.session.commit()
    await ctx.session.refresh(topic)

    return TopicResponse.model_validate(topic)


@router.post(
    "/topics/{topic_id}/documents",
    response_model=DocumentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_document(
    topic_id: UUID,
    data: DocumentCreate,
    ctx: ActorContext = Depends(get_actor_context),
) -> DocumentResponse:
    """
    Register an uploaded file as a document of the topic and schedule its
    extraction. Replies name the document they answer in parent_id.
    """
    await _get_topic(ctx, topic_id)

    if data.parent_id is not None:
        parent = await ctx.session.get(Document, data.parent_id)
        if not parent or parent.topic_id != topic_id:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Parent document not found in this topic",
            )

    document = Document(
        id=uuid4(),
        topic_id=topic_id,
        author_id=ctx.actor_id,
        parent_id=data.parent_id,
        file_key=data.file_key,
        mime=data.mime,
        extract_status=StageStatus.PENDING,
        summarize_status=StageStatus.PENDING,
        evaluate_status=StageStatus.PENDING,
        stage_errors={},
    )
    ctx.session.add(document)
    await ctx.session.flush()

    await enqueue(
        ctx.session,
        JobType.EXTRACT,
        {"document_id": str(document.id)},
        dedupe_key=stage_dedupe_key(Stage.EXTRACT.value, document.id),
    )
    await ctx.session.commit()
    await ctx.session.refresh(document)

    return DocumentResponse.model_validate(document)


@router.get("/documents/{document_id}/status", response_model=ProcessingStatusResponse)
async def get_document_status(
    document_id: UUID,
    ctx: ActorContext = Depends(get_actor_context),
) -> ProcessingStatusResponse:
    """Per-stage status and error of a document."""
    document = await ctx.session.get(Document, document_id)
    if not document:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Document not found",
        )
    return ProcessingStatusResponse.model_validate(processing_status(document))


@router.get("/topics/{topic_id}/pairs", response_model=list[UserPairResponse])
async def list_user_pairs(
    topic_id: UUID,
    ctx: ActorContext = Depends(get_actor_context),
) -> list[UserPairResponse]:
    """Pairs of participants joined by at least one direct reply."""
    await _get_topic(ctx, topic_id)
    result = await ctx.session.execute(select(Document).where(Document.topic_id == topic_id))
    return [
        UserPairResponse(
            user_id1=pair.user_id1,
            user_id2=pair.user_id2,
            document_ids=pair.document_ids,
            discussion_paths=pair.discussion_paths,
        )
        for pair in identify_user_pairs(list(result.scalars().all()))
    ]


@router.get("/topics/{topic_id}/consensus", response_model=TopicConsensusResponse)
async def get_consensus(
    topic_id: UUID,
    response: Response,
    ctx: ActorContext = Depends(get_actor_context),
) -> TopicConsensusResponse:
    """Latest topic snapshot, or 202 while a fresh one is computed."""
    state, snapshot = await get_topic_consensus(ctx.session, topic_id)
    if snapshot is None:
        response.status_code = status.HTTP_202_ACCEPTED
        return TopicConsensusResponse(status=state)
    return TopicConsensusResponse(status=state, snapshot=_snapshot_response(snapshot))


@router.post(
    "/topics/{topic_id}/consensus/trigger",
    response_model=ConsensusTriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_consensus(
    topic_id: UUID,
    ctx: ActorContext = Depends(get_actor_context),
) -> ConsensusTriggerResponse:
    """Queue a recompute now. 409 with the missing count while too few documents are evaluated."""
    job, inputs = await trigger_tracking(ctx.session, topic_id)
    return ConsensusTriggerResponse(
        job_id=job.id,
        evaluated_documents=len(inputs.evaluated),
        total_documents=len(inputs.documents),
    )


@router.get("/topics/{topic_id}/consensus/history", response_model=list[SnapshotResponse])
async def get_consensus_history(
    topic_id: UUID,
    limit: int = Query(default=50, ge=1, le=50),
    ctx: ActorContext = Depends(get_actor_context),
) -> list[SnapshotResponse]:
    """Snapshots oldest first."""
    snapshots = await snapshot_history(ctx.session, topic_id, limit=limit)
    return [_snapshot_response(s) for s in snapshots]


@router.get(
    "/topics/{topic_id}/consensus/pairs/{user_a}/{user_b}",
    response_model=PairConsensusResponse,
)
async def get_user_pair_consensus(
    topic_id: UUID,
    user_a: UUID,
    user_b: UUID,
    response: Response,
    ctx: ActorContext = Depends(get_actor_context),
) -> PairConsensusResponse:
    """Consensus record of two participants, or 202 while it is computed."""
    state, record = await get_pair_consensus(ctx.session, topic_id, user_a, user_b)
    if record is None:
        response.status_code = status.HTTP_202_ACCEPTED
        return PairConsensusResponse(status=state)
    return PairConsensusResponse(status=state, result=_pair_result(record))
