"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # Create enums
    op.execute("""
        CREATE TYPE role AS ENUM ('MEMBER', 'EDITOR', 'ADMIN');
        CREATE TYPE stagestatus AS ENUM ('PENDING', 'COMPLETED', 'FAILED');
        CREATE TYPE tracestatus AS ENUM ('DRAFT', 'PUBLISHED', 'ANALYZING', 'APPROVED');
        CREATE TYPE citationtype AS ENUM ('WEB', 'BOOK', 'PAPER', 'JOURNAL', 'OTHER');
        CREATE TYPE jobtype AS ENUM ('EXTRACT', 'SUMMARIZE', 'EVALUATE', 'TRACK_CONSENSUS', 'ANALYZE_USER_PAIR', 'ANALYZE_TRACE');
        CREATE TYPE jobstatus AS ENUM ('PENDING', 'IN_PROGRESS', 'SUCCEEDED', 'FAILED');
    """)

    # app_user
    op.create_table(
        "app_user",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("display_name", sa.Text(), nullable=False),
        sa.Column(
            "role",
            postgresql.ENUM("MEMBER", "EDITOR", "ADMIN", name="role", create_type=False),
            nullable=False,
        ),
        sa.Column("api_key_hash", sa.Text(), nullable=False),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("api_key_hash"),
    )

    # topic
    op.create_table(
        "topic",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("discipline", sa.Text(), nullable=True),
        sa.Column("creator_id", sa.UUID(), nullable=False),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.ForeignKeyConstraint(["creator_id"], ["app_user.id"]),
        sa.PrimaryKeyConstraint("id"),
    )

    stage_status = postgresql.ENUM(
        "PENDING", "COMPLETED", "FAILED", name="stagestatus", create_type=False
    )

    # document
    op.create_table(
        "document",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("topic_id", sa.UUID(), nullable=False),
        sa.Column("author_id", sa.UUID(), nullable=False),
        sa.Column("parent_id", sa.UUID(), nullable=True),
        sa.Column("file_key", sa.Text(), nullable=False),
        sa.Column("mime", sa.Text(), nullable=False),
        sa.Column("extracted_text", sa.Text(), nullable=True),
        sa.Column("extract_status", stage_status, nullable=False, server_default="PENDING"),
        sa.Column("summarize_status", stage_status, nullable=False, server_default="PENDING"),
        sa.Column("evaluate_status", stage_status, nullable=False, server_default="PENDING"),
        sa.Column(
            "stage_errors",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("last_processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.ForeignKeyConstraint(["topic_id"], ["topic.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["author_id"], ["app_user.id"]),
        sa.ForeignKeyConstraint(["parent_id"], ["document.id"], ondelete="RESTRICT"),
        sa.CheckConstraint(
            "summarize_status <> 'COMPLETED' OR extract_status = 'COMPLETED'",
            name="ck_document_summarize_after_extract",
        ),
        sa.CheckConstraint(
            "evaluate_status <> 'COMPLETED' OR summarize_status = 'COMPLETED'",
            name="ck_document_evaluate_after_summarize",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_document_topic", "document", ["topic_id"])
    op.create_index("ix_document_parent", "document", ["parent_id"])

    # summary
    op.create_table(
        "summary",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("document_id", sa.UUID(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("overview", sa.Text(), nullable=False),
        sa.Column("claims", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("keywords", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.ForeignKeyConstraint(["document_id"], ["document.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_summary_document", "summary", ["document_id"])

    # evaluation
    op.create_table(
        "evaluation",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("document_id", sa.UUID(), nullable=False),
        sa.Column("scores", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("verdict", sa.Text(), nullable=False),
        sa.Column("rubric", sa.Text(), nullable=False, server_default="default"),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.ForeignKeyConstraint(["document_id"], ["document.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_evaluation_document", "evaluation", ["document_id"])

    # trace
    op.create_table(
        "trace",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("editor_id", sa.UUID(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("body", sa.Text(), nullable=False, server_default=""),
        sa.Column(
            "citations",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column(
            "status",
            postgresql.ENUM(
                "DRAFT", "PUBLISHED", "ANALYZING", "APPROVED", name="tracestatus", create_type=False
            ),
            nullable=False,
            server_default="DRAFT",
        ),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.ForeignKeyConstraint(["editor_id"], ["app_user.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_trace_editor", "trace", ["editor_id"])

    # citation
    op.create_table(
        "citation",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("trace_id", sa.UUID(), nullable=False),
        sa.Column("order", sa.Integer(), nullable=False),
        sa.Column("url", sa.Text(), nullable=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("author", sa.Text(), nullable=True),
        sa.Column("publisher", sa.Text(), nullable=True),
        sa.Column("year", sa.Integer(), nullable=True),
        sa.Column(
            "citation_type",
            postgresql.ENUM(
                "WEB", "BOOK", "PAPER", "JOURNAL", "OTHER", name="citationtype", create_type=False
            ),
            nullable=False,
            server_default="OTHER",
        ),
        sa.Column("quote", sa.Text(), nullable=True),
        sa.Column("page", sa.Text(), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.ForeignKeyConstraint(["trace_id"], ["trace.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_citation_trace_order", "citation", ["trace_id", "order"])

    # trace_analysis
    op.create_table(
        "trace_analysis",
        sa.Column("trace_id", sa.UUID(), nullable=False),
        sa.Column("credibility_score", sa.Float(), nullable=False),
        sa.Column("completeness_score", sa.Float(), nullable=True),
        sa.Column("accuracy_score", sa.Float(), nullable=True),
        sa.Column("source_quality_score", sa.Float(), nullable=True),
        sa.Column("strengths", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("weaknesses", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("missing_aspects", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("suggestions", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("can_approve", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("content_hash", sa.Text(), nullable=False),
        sa.Column(
            "analyzed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.ForeignKeyConstraint(["trace_id"], ["trace.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("trace_id"),
    )

    # user_pair_consensus
    op.create_table(
        "user_pair_consensus",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("topic_id", sa.UUID(), nullable=False),
        sa.Column("user_id1", sa.UUID(), nullable=False),
        sa.Column("user_id2", sa.UUID(), nullable=False),
        sa.Column("consensus_points", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("disagreement_points", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("unverified_claims", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("consensus_score", sa.Float(), nullable=False),
        sa.Column("divergence_score", sa.Float(), nullable=False),
        sa.Column("document_ids", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("discussion_paths", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("input_hash", sa.Text(), nullable=False),
        sa.Column(
            "last_analyzed_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.ForeignKeyConstraint(["topic_id"], ["topic.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id1"], ["app_user.id"]),
        sa.ForeignKeyConstraint(["user_id2"], ["app_user.id"]),
        sa.UniqueConstraint("topic_id", "user_id1", "user_id2", name="uq_user_pair_consensus"),
        sa.CheckConstraint("user_id1 < user_id2", name="ck_user_pair_canonical_order"),
        sa.CheckConstraint(
            "consensus_score >= 0 AND consensus_score <= 1", name="ck_user_pair_consensus_score"
        ),
        sa.CheckConstraint(
            "divergence_score >= 0 AND divergence_score <= 1", name="ck_user_pair_divergence_score"
        ),
        sa.PrimaryKeyConstraint("id"),
    )

    # consensus_snapshot
    op.create_table(
        "consensus_snapshot",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("topic_id", sa.UUID(), nullable=False),
        sa.Column(
            "snapshot_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column("consensus_score", sa.Float(), nullable=False),
        sa.Column("divergence_score", sa.Float(), nullable=False),
        sa.Column("consensus_data", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("input_hash", sa.Text(), nullable=False),
        sa.ForeignKeyConstraint(["topic_id"], ["topic.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_consensus_snapshot_topic_time", "consensus_snapshot", ["topic_id", "snapshot_at"]
    )

    # job
    op.create_table(
        "job",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column(
            "job_type",
            postgresql.ENUM(
                "EXTRACT",
                "SUMMARIZE",
                "EVALUATE",
                "TRACK_CONSENSUS",
                "ANALYZE_USER_PAIR",
                "ANALYZE_TRACE",
                name="jobtype",
                create_type=False,
            ),
            nullable=False,
        ),
        sa.Column(
            "payload",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("dedupe_key", sa.Text(), nullable=True),
        sa.Column(
            "status",
            postgresql.ENUM(
                "PENDING", "IN_PROGRESS", "SUCCEEDED", "FAILED", name="jobstatus", create_type=False
            ),
            nullable=False,
            server_default="PENDING",
        ),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("run_after", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_job_pending", "job", ["status", "job_type", "created_at"])
    op.create_index("ix_job_dedupe", "job", ["dedupe_key", "status"])

    # rate_limit_counter
    op.create_table(
        "rate_limit_counter",
        sa.Column("actor_id", sa.Text(), nullable=False),
        sa.Column("operation", sa.Text(), nullable=False),
        sa.Column("window_index", sa.Integer(), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("actor_id", "operation", "window_index"),
    )


def downgrade() -> None:
    op.drop_table("rate_limit_counter")
    op.drop_index("ix_job_dedupe", table_name="job")
    op.drop_index("ix_job_pending", table_name="job")
    op.drop_table("job")
    op.drop_index("ix_consensus_snapshot_topic_time", table_name="consensus_snapshot")
    op.drop_table("consensus_snapshot")
    op.drop_table("user_pair_consensus")
    op.drop_table("trace_analysis")
    op.drop_index("ix_citation_trace_order", table_name="citation")
    op.drop_table("citation")
    op.drop_index("ix_trace_editor", table_name="trace")
    op.drop_table("trace")
    op.drop_index("ix_evaluation_document", table_name="evaluation")
    op.drop_table("evaluation")
    op.drop_index("ix_summary_document", table_name="summary")
    op.drop_table("summary")
    op.drop_index("ix_document_parent", table_name="document")
    op.drop_index("ix_document_topic", table_name="document")
    op.drop_table("document")
    op.drop_table("topic")
    op.drop_table("app_user")

    op.execute("""
        DROP TYPE IF EXISTS jobstatus;
        DROP TYPE IF EXISTS jobtype;
        DROP TYPE IF EXISTS citationtype;
        DROP TYPE IF EXISTS tracestatus;
        DROP TYPE IF EXISTS stagestatus;
        DROP TYPE IF EXISTS role;
    """)
