"""Drain run model for embedsync.

A DrainRun row is a best-effort audit record of one drain invocation. It is
written through a fire-and-forget side channel, so a missing or stale row
never means the drain itself failed.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import JSON, DateTime, Enum, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from embedsync.database.models.base import Base, TimestampMixin


class DrainRunStatus(str, enum.Enum):
    """Lifecycle of a drain run record."""

    running = "running"
    succeeded = "succeeded"
    failed = "failed"


class DrainRun(TimestampMixin, Base):
    """Audit record of one drain invocation.

    Attributes:
        id: UUID primary key (from TimestampMixin).
        organization_id: Organization filter of the drain, if any.
        worker_id: Worker that executed the drain.
        status: Run status.
        claimed_count: Jobs claimed by the drain.
        processed_count: Jobs that produced a new embedding.
        skipped_count: Jobs completed without calling the generator.
        failed_count: Jobs that ended terminally failed.
        retried_count: Jobs returned to pending for another attempt.
        reclaimed_count: Abandoned claims swept back before claiming.
        duration_ms: Wall-clock duration of the drain.
        error: Error message when the drain itself failed.
        meta: Drain options (batch size, diff strategy, priority range).
        started_at: When the drain started.
        finished_at: When the drain finished.
    """

    __tablename__ = "drain_runs"

    organization_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    worker_id: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[DrainRunStatus] = mapped_column(
        Enum(DrainRunStatus, name="drain_run_status"),
        default=DrainRunStatus.running,
        nullable=False,
    )
    claimed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retried_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reclaimed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
