"""Embedding queue schema.

Creates the job queue, the active-embedding store, the drain run log and
the runtime settings table. Enables pgvector for the embedding column.

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from pgvector.sqlalchemy import Vector
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JOB_STATUSES = ("pending", "processing", "completed", "failed")
DRAIN_RUN_STATUSES = ("running", "succeeded", "failed")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    ]


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    sa.Enum(*JOB_STATUSES, name="job_status").create(op.get_bind(), checkfirst=True)
    sa.Enum(*DRAIN_RUN_STATUSES, name="drain_run_status").create(op.get_bind(), checkfirst=True)

    op.create_table(
        "embedding_jobs",
        sa.Column("id", sa.Uuid(), server_default=sa.text("gen_random_uuid()"), primary_key=True),
        sa.Column("organization_id", sa.Text(), nullable=False),
        sa.Column("source_table", sa.Text(), nullable=False),
        sa.Column("source_field", sa.Text(), nullable=False),
        sa.Column("source_id", sa.Text(), nullable=False),
        sa.Column(
            "status",
            sa.Enum(*JOB_STATUSES, name="job_status", create_type=False),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("5")),
        sa.Column("content_hash", sa.Text(), nullable=False),
        sa.Column("content_text", sa.Text(), nullable=True),
        sa.Column("force", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("error_code", sa.Text(), nullable=True),
        sa.Column(
            "scheduled_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("claimed_by", sa.Text(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("priority BETWEEN 1 AND 10", name="ck_embedding_jobs_priority"),
    )
    op.create_index(
        "uq_embedding_jobs_active_target",
        "embedding_jobs",
        ["organization_id", "source_table", "source_field", "source_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'processing')"),
    )
    op.create_index(
        "ix_embedding_jobs_drain_order",
        "embedding_jobs",
        ["status", "priority", "created_at"],
    )
    op.create_index("ix_embedding_jobs_organization_id", "embedding_jobs", ["organization_id"])
    op.create_index("ix_embedding_jobs_claimed_by", "embedding_jobs", ["claimed_by"])

    op.create_table(
        "embeddings",
        sa.Column("id", sa.Uuid(), server_default=sa.text("gen_random_uuid()"), primary_key=True),
        sa.Column("organization_id", sa.Text(), nullable=False),
        sa.Column("source_table", sa.Text(), nullable=False),
        sa.Column("source_id", sa.Text(), nullable=False),
        sa.Column("source_field", sa.Text(), nullable=False),
        sa.Column("chunk_index", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("chunk_text", sa.Text(), nullable=False),
        # Unsized so models with different dimensions can coexist
        sa.Column("vector", Vector(), nullable=False),
        sa.Column("dimensions", sa.Integer(), nullable=False),
        sa.Column("content_hash", sa.Text(), nullable=False),
        sa.Column("embedding_model", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index(
        "uq_embeddings_active_chunk",
        "embeddings",
        ["organization_id", "source_table", "source_id", "source_field", "chunk_index"],
        unique=True,
        postgresql_where=sa.text("is_active"),
    )
    op.create_index(
        "ix_embeddings_source",
        "embeddings",
        ["organization_id", "source_table", "source_id"],
    )

    op.create_table(
        "drain_runs",
        sa.Column("id", sa.Uuid(), server_default=sa.text("gen_random_uuid()"), primary_key=True),
        sa.Column("organization_id", sa.Text(), nullable=True),
        sa.Column("worker_id", sa.Text(), nullable=False),
        sa.Column(
            "status",
            sa.Enum(*DRAIN_RUN_STATUSES, name="drain_run_status", create_type=False),
            nullable=False,
            server_default="running",
        ),
        sa.Column("claimed_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("processed_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("skipped_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("retried_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("reclaimed_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("meta", JSONB, nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "queue_settings",
        sa.Column("key", sa.Text(), primary_key=True),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )


def downgrade() -> None:
    op.drop_table("queue_settings")
    op.drop_table("drain_runs")
    op.drop_index("ix_embeddings_source", table_name="embeddings")
    op.drop_index("uq_embeddings_active_chunk", table_name="embeddings")
    op.drop_table("embeddings")
    op.drop_index("ix_embedding_jobs_claimed_by", table_name="embedding_jobs")
    op.drop_index("ix_embedding_jobs_organization_id", table_name="embedding_jobs")
    op.drop_index("ix_embedding_jobs_drain_order", table_name="embedding_jobs")
    op.drop_index("uq_embedding_jobs_active_target", table_name="embedding_jobs")
    op.drop_table("embedding_jobs")

    sa.Enum(name="drain_run_status").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="job_status").drop(op.get_bind(), checkfirst=True)

    op.execute("DROP EXTENSION IF EXISTS vector")
