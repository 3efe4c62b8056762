"""Embedding job model for embedsync.

Defines the EmbeddingJob table and JobStatus enum. The job table is the
single source of truth for queue state and the only synchronization point
between concurrent drains: every transition out of ``pending`` is a
conditional update against this table.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, Enum, Index, Integer, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from embedsync.database.models.base import Base, TimestampMixin, utcnow


class JobStatus(str, enum.Enum):
    """State machine for embedding job lifecycle.

    States:
        pending: Waiting to be claimed by a drain.
        processing: Claimed by exactly one drain, embedding in progress.
        completed: Embedding written (or content found unchanged).
        failed: Terminal failure, see error_code and last_error.
    """

    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


NON_TERMINAL_STATUSES = (JobStatus.pending, JobStatus.processing)
TERMINAL_STATUSES = (JobStatus.completed, JobStatus.failed)

_NON_TERMINAL_PREDICATE = "status IN ('pending', 'processing')"


class EmbeddingJob(TimestampMixin, Base):
    """A request to (re)embed one field of one source record.

    Attributes:
        id: UUID primary key (from TimestampMixin).
        organization_id: Owning organization.
        source_table: Content type of the source record (posts, faqs, ...).
        source_field: Embeddable field, or ``document`` for all fields.
        source_id: Identifier of the source record.
        status: Current state in the job lifecycle.
        priority: Higher values drain first (1-10).
        content_hash: Hash of the source text at (latest) enqueue time.
        content_text: Optional payload snapshot supplied with the request.
        force: Re-embed even if the content matches the active embedding.
        attempts: Transient failures consumed so far.
        last_error: Diagnostic message of the latest failure.
        error_code: Machine-readable code of the latest failure.
        scheduled_at: Earliest time the job may be claimed (backoff).
        claimed_by: Claim token of the drain that owns the job.
        claimed_at: When the current claim was taken.
        completed_at: When the job reached a terminal state.
    """

    __tablename__ = "embedding_jobs"

    organization_id: Mapped[str] = mapped_column(Text, nullable=False)
    source_table: Mapped[str] = mapped_column(Text, nullable=False)
    source_field: Mapped[str] = mapped_column(Text, nullable=False)
    source_id: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, name="job_status"),
        default=JobStatus.pending,
        nullable=False,
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    content_hash: Mapped[str] = mapped_column(Text, nullable=False)
    content_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    force: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    scheduled_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    claimed_by: Mapped[str | None] = mapped_column(Text, nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        CheckConstraint("priority BETWEEN 1 AND 10", name="ck_embedding_jobs_priority"),
        # At most one non-terminal job per target
        Index(
            "uq_embedding_jobs_active_target",
            "organization_id",
            "source_table",
            "source_field",
            "source_id",
            unique=True,
            postgresql_where=text(_NON_TERMINAL_PREDICATE),
            sqlite_where=text(_NON_TERMINAL_PREDICATE),
        ),
        Index(
            "ix_embedding_jobs_drain_order",
            "status",
            "priority",
            "created_at",
        ),
        Index("ix_embedding_jobs_organization_id", "organization_id"),
        Index("ix_embedding_jobs_claimed_by", "claimed_by"),
    )

    @property
    def target_key(self) -> tuple[str, str, str, str]:
        """Return (organization_id, source_table, source_field, source_id)."""
        return (self.organization_id, self.source_table, self.source_field, self.source_id)
