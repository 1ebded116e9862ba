from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from colloquy.models import CitationType, StageStatus, TraceStatus

# ============================================================================
# Stored JSON shapes (validated on read)
# ============================================================================


class Claim(BaseModel):
    text: str
    author_id: UUID
    document_id: UUID


class ClaimRelation(BaseModel):
    relation: Literal["agree", "contradict", "unrelated"]
    confidence: float = Field(ge=0, le=1)


class ConsensusPoint(BaseModel):
    text: str
    claims: list[Claim]
    confidence: float


class DisagreementPoint(BaseModel):
    ancestor_claim: Claim
    reply_claim: Claim
    confidence: float


class DiscussionPath(BaseModel):
    path: list[UUID]  # [parent_id, child_id]
    depth: int
    direction: Literal["user1_to_user2", "user2_to_user1"]


Trend = Literal["converging", "diverging", "stable"]


class SnapshotData(BaseModel):
    trend: Trend
    key_points: list[str] = []
    disagreements: list[str] = []
    consensus_count: int = 0
    disagreement_count: int = 0
    unverified_count: int = 0
    classified_count: int = 0
    document_count: int = 0


class StoredCitation(BaseModel):
    """One entry of a trace's denormalized citation snapshot."""

    id: UUID
    order: int
    url: str | None = None
    title: str
    author: str | None = None
    publisher: str | None = None
    year: int | None = None
    citation_type: CitationType = CitationType.OTHER
    quote: str | None = None
    page: str | None = None


# ============================================================================
# Topic & Document Schemas
# ============================================================================


class TopicCreate(BaseModel):
    title: str = Field(min_length=1)
    discipline: str | None = None


class TopicResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    discipline: str | None
    creator_id: UUID
    created_at: datetime


class DocumentCreate(BaseModel):
    file_key: str = Field(min_length=1)
    mime: str = "text/plain"
    parent_id: UUID | None = None


class DocumentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    topic_id: UUID
    author_id: UUID
    parent_id: UUID | None
    file_key: str
    mime: str
    extract_status: StageStatus
    summarize_status: StageStatus
    evaluate_status: StageStatus
    created_at: datetime


class StageState(BaseModel):
    status: StageStatus
    error: str | None = None


class ProcessingStatusResponse(BaseModel):
    document_id: UUID
    stages: dict[str, StageState]
    last_processed_at: datetime | None = None


class UserPairResponse(BaseModel):
    user_id1: UUID
    user_id2: UUID
    document_ids: list[UUID]
    discussion_paths: list[DiscussionPath]


# ============================================================================
# Consensus Schemas
# ============================================================================


class PairConsensusResult(BaseModel):
    topic_id: UUID
    user_id1: UUID
    user_id2: UUID
    consensus_points: list[ConsensusPoint]
    disagreement_points: list[DisagreementPoint]
    unverified_claims: list[Claim]
    consensus_score: float
    divergence_score: float
    document_ids: list[UUID]
    discussion_paths: list[DiscussionPath]
    last_analyzed_at: datetime


class PairConsensusResponse(BaseModel):
    status: Literal["ready", "analyzing"]
    result: PairConsensusResult | None = None


class SnapshotResponse(BaseModel):
    id: UUID
    topic_id: UUID
    snapshot_at: datetime
    consensus_score: float
    divergence_score: float
    data: SnapshotData


class TopicConsensusResponse(BaseModel):
    status: Literal["ready", "analyzing"]
    snapshot: SnapshotResponse | None = None


class ConsensusTriggerResponse(BaseModel):
    status: Literal["queued"] = "queued"
    job_id: UUID
    evaluated_documents: int
    total_documents: int


# ============================================================================
# Trace Schemas
# ============================================================================


class CitationInput(BaseModel):
    url: str | None = None
    title: str = ""
    author: str | None = None
    publisher: str | None = None
    year: int | None = None
    citation_type: CitationType = CitationType.OTHER
    quote: str | None = None
    page: str | None = None


class CitationInsert(CitationInput):
    expected_version: int
    position: int | None = None  # 1-based; appended when omitted


class CitationPatch(BaseModel):
    expected_version: int
    url: str | None = None
    title: str | None = None
    author: str | None = None
    publisher: str | None = None
    year: int | None = None
    citation_type: CitationType | None = None
    quote: str | None = None
    page: str | None = None


class TraceCreate(BaseModel):
    title: str
    body: str = ""
    citations: list[CitationInput] = []


class TracePatch(BaseModel):
    expected_version: int
    title: str | None = None
    body: str | None = None
    citations: list[CitationInput] | None = None  # replaces the whole list


class TransitionRequest(BaseModel):
    target: TraceStatus


class TraceResponse(BaseModel):
    id: UUID
    editor_id: UUID
    title: str
    body: str
    citations: list[StoredCitation]
    status: TraceStatus
    version: int
    published_at: datetime | None = None
    approved_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class TraceAnalysisResult(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    trace_id: UUID
    credibility_score: float
    completeness_score: float | None = None
    accuracy_score: float | None = None
    source_quality_score: float | None = None
    strengths: list[str] = []
    weaknesses: list[str] = []
    missing_aspects: list[str] = []
    suggestions: list[str] = []
    can_approve: bool
    analyzed_at: datetime


class TraceAnalysisResponse(BaseModel):
    status: Literal["ready", "analyzing", "not_analyzed"]
    analysis: TraceAnalysisResult | None = None
