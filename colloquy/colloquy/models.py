import enum
from datetime import datetime
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


# ============================================================================
# Enums
# ============================================================================


class Role(str, enum.Enum):
    MEMBER = "MEMBER"
    EDITOR = "EDITOR"
    ADMIN = "ADMIN"


class Stage(str, enum.Enum):
    EXTRACT = "EXTRACT"
    SUMMARIZE = "SUMMARIZE"
    EVALUATE = "EVALUATE"


class StageStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class TraceStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    ANALYZING = "ANALYZING"
    APPROVED = "APPROVED"


class CitationType(str, enum.Enum):
    WEB = "web"
    BOOK = "book"
    PAPER = "paper"
    JOURNAL = "journal"
    OTHER = "other"


class JobType(str, enum.Enum):
    EXTRACT = "EXTRACT"
    SUMMARIZE = "SUMMARIZE"
    EVALUATE = "EVALUATE"
    TRACK_CONSENSUS = "TRACK_CONSENSUS"
    ANALYZE_USER_PAIR = "ANALYZE_USER_PAIR"
    ANALYZE_TRACE = "ANALYZE_TRACE"


class JobStatus(str, enum.Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


# ============================================================================
# Users & Topics
# ============================================================================


class User(Base):
    __tablename__ = "app_user"

    id: Mapped[UUID] = mapped_column(primary_key=True)
    display_name: Mapped[str] = mapped_column(Text, nullable=False)
    role: Mapped[Role] = mapped_column(Enum(Role), nullable=False, default=Role.MEMBER)
    api_key_hash: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=datetime.utcnow
    )


class Topic(Base):
    __tablename__ = "topic"

    id: Mapped[UUID] = mapped_column(primary_key=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    discipline: Mapped[str | None] = mapped_column(Text, nullable=True)
    creator_id: Mapped[UUID] = mapped_column(ForeignKey("app_user.id"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=datetime.utcnow
    )

    # Relationships
    documents: Mapped[list["Document"]] = relationship(back_populates="topic")


# ============================================================================
# Documents & derived analysis rows
# ============================================================================


class Document(Base):
    __tablename__ = "document"

    id: Mapped[UUID] = mapped_column(primary_key=True)
    topic_id: Mapped[UUID] = mapped_column(
        ForeignKey("topic.id", ondelete="RESTRICT"), nullable=False
    )
    author_id: Mapped[UUID] = mapped_column(ForeignKey("app_user.id"), nullable=False)
    parent_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("document.id", ondelete="RESTRICT"), nullable=True
    )
    file_key: Mapped[str] = mapped_column(Text, nullable=False)
    mime: Mapped[str] = mapped_column(Text, nullable=False)
    extracted_text: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Stage tracker slots
    extract_status: Mapped[StageStatus] = mapped_column(
        Enum(StageStatus), nullable=False, default=StageStatus.PENDING
    )
    summarize_status: Mapped[StageStatus] = mapped_column(
        Enum(StageStatus), nullable=False, default=StageStatus.PENDING
    )
    evaluate_status: Mapped[StageStatus] = mapped_column(
        Enum(StageStatus), nullable=False, default=StageStatus.PENDING
    )
    stage_errors = mapped_column(JSONType, nullable=False, default=dict)  # stage -> message
    last_processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=datetime.utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "summarize_status <> 'COMPLETED' OR extract_status = 'COMPLETED'",
            name="ck_document_summarize_after_extract",
        ),
        CheckConstraint(
            "evaluate_status <> 'COMPLETED' OR summarize_status = 'COMPLETED'",
            name="ck_document_evaluate_after_summarize",
        ),
        Index("ix_document_topic", "topic_id"),
        Index("ix_document_parent", "parent_id"),
    )

    # Relationships
    topic: Mapped["Topic"] = relationship(back_populates="documents")
    summaries: Mapped[list["Summary"]] = relationship(
        back_populates="document", order_by="Summary.id"
    )
    evaluations: Mapped[list["Evaluation"]] = relationship(
        back_populates="document", order_by="Evaluation.id"
    )


class Summary(Base):
    """Append-only; the highest id per document is authoritative."""

    __tablename__ = "summary"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    document_id: Mapped[UUID] = mapped_column(
        ForeignKey("document.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(Text, nullable=False)
    overview: Mapped[str] = mapped_column(Text, nullable=False)
    claims = mapped_column(JSONType, nullable=False, default=list)  # list[str]
    keywords = mapped_column(JSONType, nullable=False, default=list)  # list[str]
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=datetime.utcnow
    )

    __table_args__ = (Index("ix_summary_document", "document_id"),)

    # Relationships
    document: Mapped["Document"] = relationship(back_populates="summaries")


class Evaluation(Base):
    """Append-only; the highest id per document is authoritative."""

    __tablename__ = "evaluation"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    document_id: Mapped[UUID] = mapped_column(
        ForeignKey("document.id", ondelete="CASCADE"), nullable=False
    )
    scores = mapped_column(JSONType, nullable=False)  # dimension -> 0..10
    verdict: Mapped[str] = mapped_column(Text, nullable=False)
    rubric: Mapped[str] = mapped_column(Text, nullable=False, default="default")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=datetime.utcnow
    )

    __table_args__ = (Index("ix_evaluation_document", "document_id"),)

    # Relationships
    document: Mapped["Document"] = relationship(back_populates="evaluations")


# ============================================================================
# Traces & Citations
# ============================================================================


class Trace(Base):
    __tablename__ = "trace"

    id: Mapped[UUID] = mapped_column(primary_key=True)
    editor_id: Mapped[UUID] = mapped_column(ForeignKey("app_user.id"), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    citations = mapped_column(JSONType, nullable=False, default=list)  # denormalized snapshot
    status: Mapped[TraceStatus] = mapped_column(
        Enum(TraceStatus), nullable=False, default=TraceStatus.DRAFT
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (Index("ix_trace_editor", "editor_id"),)

    # Relationships
    citation_rows: Mapped[list["Citation"]] = relationship(
        back_populates="trace", cascade="all, delete", order_by="Citation.order"
    )
    analysis: Mapped["TraceAnalysis | None"] = relationship(
        back_populates="trace", cascade="all, delete", uselist=False
    )


class Citation(Base):
    __tablename__ = "citation"

    id: Mapped[UUID] = mapped_column(primary_key=True)
    trace_id: Mapped[UUID] = mapped_column(
        ForeignKey("trace.id", ondelete="CASCADE"), nullable=False
    )
    order: Mapped[int] = mapped_column(Integer, nullable=False)  # dense 1..N per trace
    url: Mapped[str | None] = mapped_column(Text, nullable=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    author: Mapped[str | None] = mapped_column(Text, nullable=True)
    publisher: Mapped[str | None] = mapped_column(Text, nullable=True)
    year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    citation_type: Mapped[CitationType] = mapped_column(
        Enum(CitationType), nullable=False, default=CitationType.OTHER
    )
    quote: Mapped[str | None] = mapped_column(Text, nullable=True)
    page: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=datetime.utcnow
    )

    __table_args__ = (Index("ix_citation_trace_order", "trace_id", "order"),)

    # Relationships
    trace: Mapped["Trace"] = relationship(back_populates="citation_rows")


class TraceAnalysis(Base):
    """Latest AI analysis of a trace, keyed by trace id."""

    __tablename__ = "trace_analysis"

    trace_id: Mapped[UUID] = mapped_column(
        ForeignKey("trace.id", ondelete="CASCADE"), primary_key=True
    )
    credibility_score: Mapped[float] = mapped_column(Float, nullable=False)
    completeness_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    accuracy_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    source_quality_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    strengths = mapped_column(JSONType, nullable=False, default=list)
    weaknesses = mapped_column(JSONType, nullable=False, default=list)
    missing_aspects = mapped_column(JSONType, nullable=False, default=list)
    suggestions = mapped_column(JSONType, nullable=False, default=list)
    can_approve: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    content_hash: Mapped[str] = mapped_column(Text, nullable=False)
    analyzed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=datetime.utcnow
    )

    # Relationships
    trace: Mapped["Trace"] = relationship(back_populates="analysis")


# ============================================================================
# Consensus
# ============================================================================


class UserPairConsensus(Base):
    __tablename__ = "user_pair_consensus"

    id: Mapped[UUID] = mapped_column(primary_key=True)
    topic_id: Mapped[UUID] = mapped_column(
        ForeignKey("topic.id", ondelete="CASCADE"), nullable=False
    )
    user_id1: Mapped[UUID] = mapped_column(ForeignKey("app_user.id"), nullable=False)
    user_id2: Mapped[UUID] = mapped_column(ForeignKey("app_user.id"), nullable=False)
    consensus_points = mapped_column(JSONType, nullable=False, default=list)
    disagreement_points = mapped_column(JSONType, nullable=False, default=list)
    unverified_claims = mapped_column(JSONType, nullable=False, default=list)
    consensus_score: Mapped[float] = mapped_column(Float, nullable=False)
    divergence_score: Mapped[float] = mapped_column(Float, nullable=False)
    document_ids = mapped_column(JSONType, nullable=False, default=list)
    discussion_paths = mapped_column(JSONType, nullable=False, default=list)
    input_hash: Mapped[str] = mapped_column(Text, nullable=False)
    last_analyzed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=datetime.utcnow
    )

    __table_args__ = (
        UniqueConstraint("topic_id", "user_id1", "user_id2", name="uq_user_pair_consensus"),
        CheckConstraint("user_id1 < user_id2", name="ck_user_pair_canonical_order"),
        CheckConstraint(
            "consensus_score >= 0 AND consensus_score <= 1", name="ck_user_pair_consensus_score"
        ),
        CheckConstraint(
            "divergence_score >= 0 AND divergence_score <= 1", name="ck_user_pair_divergence_score"
        ),
    )


class ConsensusSnapshot(Base):
    """Append-only time series of topic-level consensus."""

    __tablename__ = "consensus_snapshot"

    id: Mapped[UUID] = mapped_column(primary_key=True)
    topic_id: Mapped[UUID] = mapped_column(
        ForeignKey("topic.id", ondelete="CASCADE"), nullable=False
    )
    snapshot_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=datetime.utcnow
    )
    consensus_score: Mapped[float] = mapped_column(Float, nullable=False)
    divergence_score: Mapped[float] = mapped_column(Float, nullable=False)
    consensus_data = mapped_column(JSONType, nullable=False)  # trend, key points, counts
    input_hash: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (Index("ix_consensus_snapshot_topic_time", "topic_id", "snapshot_at"),)


# ============================================================================
# Jobs & Rate limiting
# ============================================================================


class Job(Base):
    __tablename__ = "job"

    id: Mapped[UUID] = mapped_column(primary_key=True)
    job_type: Mapped[JobType] = mapped_column(Enum(JobType), nullable=False)
    payload = mapped_column(JSONType, nullable=False, default=dict)
    dedupe_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus), nullable=False, default=JobStatus.PENDING
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    run_after: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        Index("ix_job_pending", "status", "job_type", "created_at"),
        Index("ix_job_dedupe", "dedupe_key", "status"),
    )


class RateLimitCounter(Base):
    __tablename__ = "rate_limit_counter"

    actor_id: Mapped[str] = mapped_column(Text, primary_key=True)
    operation: Mapped[str] = mapped_column(Text, primary_key=True)
    window_index: Mapped[int] = mapped_column(Integer, primary_key=True)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
