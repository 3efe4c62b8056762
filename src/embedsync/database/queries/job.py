"""Embedding job query functions for embedsync.

Provides async functions over the ``embedding_jobs`` table: lookups used by
the enqueuer, the atomic claim used by drains, and the guarded transitions a
drain applies to the jobs it owns.

Write functions never open their own transaction; callers run them inside
``async with session.begin()`` so a decision and its write commit together.
Every transition out of ``processing`` is a conditional update guarded by the
claim token, and the functions report whether the guard held instead of
raising, so a lost claim is an ordinary outcome.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from embedsync.database.models.base import utcnow
from embedsync.database.models.job import (
    NON_TERMINAL_STATUSES,
    EmbeddingJob,
    JobStatus,
)

logger = structlog.get_logger(__name__)

_NO_SYNC = {"synchronize_session": False}


async def get_job(
    session: AsyncSession,
    job_id: UUID,
) -> EmbeddingJob | None:
    """Retrieve a job by ID.

    Args:
        session: Active async database session.
        job_id: UUID of the job to retrieve.

    Returns:
        The EmbeddingJob if found, None otherwise.
    """
    stmt = (
        select(EmbeddingJob)
        .where(EmbeddingJob.id == job_id)
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


def _target_clause(
    organization_id: str,
    source_table: str,
    source_field: str,
    source_id: str,
) -> Any:
    return and_(
        EmbeddingJob.organization_id == organization_id,
        EmbeddingJob.source_table == source_table,
        EmbeddingJob.source_field == source_field,
        EmbeddingJob.source_id == source_id,
    )


async def find_active_job(
    session: AsyncSession,
    organization_id: str,
    source_table: str,
    source_field: str,
    source_id: str,
) -> EmbeddingJob | None:
    """Return the non-terminal job for a target, if one exists."""
    stmt = (
        select(EmbeddingJob)
        .where(_target_clause(organization_id, source_table, source_field, source_id))
        .where(EmbeddingJob.status.in_(NON_TERMINAL_STATUSES))
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalars().first()


async def find_failed_job(
    session: AsyncSession,
    organization_id: str,
    source_table: str,
    source_field: str,
    source_id: str,
) -> EmbeddingJob | None:
    """Return the most recently updated failed job for a target, if any."""
    stmt = (
        select(EmbeddingJob)
        .where(_target_clause(organization_id, source_table, source_field, source_id))
        .where(EmbeddingJob.status == JobStatus.failed)
        .order_by(EmbeddingJob.updated_at.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def insert_job(
    session: AsyncSession,
    organization_id: str,
    source_table: str,
    source_field: str,
    source_id: str,
    content_hash: str,
    priority: int = 5,
    content_text: str | None = None,
    force: bool = False,
) -> EmbeddingJob:
    """Insert a new pending job.

    Raises ``sqlalchemy.exc.IntegrityError`` when a concurrent enqueue
    already holds the non-terminal slot for the target.

    Args:
        session: Session inside an open transaction.
        organization_id: Owning organization.
        source_table: Content type of the source record.
        source_field: Field to embed.
        source_id: Identifier of the source record.
        content_hash: Hash of the text at enqueue time.
        priority: Drain priority (higher first).
        content_text: Optional payload snapshot.
        force: Bypass the unchanged-content skip at drain time.

    Returns:
        The flushed EmbeddingJob.
    """
    now = utcnow()
    job = EmbeddingJob(
        organization_id=organization_id,
        source_table=source_table,
        source_field=source_field,
        source_id=source_id,
        status=JobStatus.pending,
        priority=priority,
        content_hash=content_hash,
        content_text=content_text,
        force=force,
        attempts=0,
        scheduled_at=now,
        created_at=now,
        updated_at=now,
    )
    session.add(job)
    await session.flush()
    return job


async def refresh_active_job(
    session: AsyncSession,
    job_id: UUID,
    observed_hash: str,
    content_hash: str,
    priority: int,
    content_text: str | None = None,
    force: bool = False,
) -> bool:
    """Fold a content change into an existing non-terminal job.

    The job keeps its status. A pending job becomes eligible immediately; a
    processing job keeps its claim, and the drain that owns it notices the
    new hash when it tries to complete and returns the job to pending.

    Args:
        session: Session inside an open transaction.
        job_id: Job to update.
        observed_hash: Hash read before deciding to update (guard).
        content_hash: New content hash.
        priority: New priority.
        content_text: New payload snapshot, if any.
        force: Requested force flag, OR'd into the existing one.

    Returns:
        True if the job was updated, False if it changed concurrently.
    """
    values: dict[str, Any] = {
        "content_hash": content_hash,
        "content_text": content_text,
        "priority": priority,
        "attempts": 0,
        "scheduled_at": utcnow(),
        "updated_at": utcnow(),
    }
    if force:
        values["force"] = True

    stmt = (
        update(EmbeddingJob)
        .where(EmbeddingJob.id == job_id)
        .where(EmbeddingJob.status.in_(NON_TERMINAL_STATUSES))
        .where(EmbeddingJob.content_hash == observed_hash)
        .values(**values)
        .execution_options(**_NO_SYNC)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def reset_failed_job(
    session: AsyncSession,
    job_id: UUID,
    content_hash: str | None = None,
    priority: int | None = None,
    content_text: str | None = None,
    force: bool = False,
) -> bool:
    """Return a failed job to pending, preserving its attempts.

    Used both when new content arrives for a failed target and for an
    operator retry (no content arguments).

    Raises ``sqlalchemy.exc.IntegrityError`` if another non-terminal job
    exists for the same target.

    Returns:
        True if the job was reset, False if it was no longer failed.
    """
    now = utcnow()
    values: dict[str, Any] = {
        "status": JobStatus.pending,
        "scheduled_at": now,
        "claimed_by": None,
        "claimed_at": None,
        "completed_at": None,
        "updated_at": now,
    }
    if content_hash is not None:
        values["content_hash"] = content_hash
        values["content_text"] = content_text
    if priority is not None:
        values["priority"] = priority
    if force:
        values["force"] = True

    stmt = (
        update(EmbeddingJob)
        .where(EmbeddingJob.id == job_id)
        .where(EmbeddingJob.status == JobStatus.failed)
        .values(**values)
        .execution_options(**_NO_SYNC)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def claim_jobs(
    session: AsyncSession,
    claim_token: str,
    limit: int,
    organization_id: str | None = None,
    priority_min: int | None = None,
    priority_max: int | None = None,
    now: datetime | None = None,
) -> list[EmbeddingJob]:
    """Atomically claim up to ``limit`` eligible pending jobs.

    Selection and the transition to ``processing`` happen in one UPDATE
    statement. On PostgreSQL the inner SELECT takes ``FOR UPDATE SKIP
    LOCKED`` row locks so concurrent drains pick disjoint rows instead of
    waiting on each other; the outer ``status = 'pending'`` predicate is
    re-checked after any lock wait, so a row can only ever move to
    ``processing`` once. Claimed rows are read back by token.

    Args:
        session: Session inside an open transaction.
        claim_token: Unique token identifying this drain.
        limit: Maximum number of jobs to claim.
        organization_id: Only claim jobs of this organization.
        priority_min: Minimum priority (inclusive).
        priority_max: Maximum priority (inclusive).
        now: Claim timestamp (defaults to current UTC time).

    Returns:
        Claimed jobs ordered by priority DESC, created_at ASC.
    """
    now = now or utcnow()

    candidates = (
        select(EmbeddingJob.id)
        .where(EmbeddingJob.status == JobStatus.pending)
        .where(EmbeddingJob.scheduled_at <= now)
    )
    if organization_id is not None:
        candidates = candidates.where(EmbeddingJob.organization_id == organization_id)
    if priority_min is not None:
        candidates = candidates.where(EmbeddingJob.priority >= priority_min)
    if priority_max is not None:
        candidates = candidates.where(EmbeddingJob.priority <= priority_max)
    candidates = (
        candidates.order_by(EmbeddingJob.priority.desc(), EmbeddingJob.created_at.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
    )

    stmt = (
        update(EmbeddingJob)
        .where(EmbeddingJob.id.in_(candidates))
        .where(EmbeddingJob.status == JobStatus.pending)
        .values(
            status=JobStatus.processing,
            claimed_by=claim_token,
            claimed_at=now,
            updated_at=now,
        )
        .execution_options(**_NO_SYNC)
    )
    result = await session.execute(stmt)
    if result.rowcount == 0:
        return []

    claimed_stmt = (
        select(EmbeddingJob)
        .where(EmbeddingJob.claimed_by == claim_token)
        .where(EmbeddingJob.status == JobStatus.processing)
        .order_by(EmbeddingJob.priority.desc(), EmbeddingJob.created_at.asc())
        .execution_options(populate_existing=True)
    )
    claimed = await session.execute(claimed_stmt)
    jobs = list(claimed.scalars().all())

    logger.debug(
        "embedding_jobs_claimed",
        claim_token=claim_token,
        claimed_count=len(jobs),
    )

    return jobs


def _owned(job_id: UUID, claim_token: str) -> Any:
    return and_(
        EmbeddingJob.id == job_id,
        EmbeddingJob.claimed_by == claim_token,
        EmbeddingJob.status == JobStatus.processing,
    )


async def renew_claims(
    session: AsyncSession,
    claim_token: str,
    job_id: UUID | None = None,
    now: datetime | None = None,
) -> int:
    """Restart the claim clock of jobs held by ``claim_token``.

    A drain renews its claims while it is alive, so the sweep only ever
    reclaims jobs whose owner stopped renewing them.

    Args:
        session: Session inside an open transaction.
        claim_token: Token of the owning drain.
        job_id: Renew only this job (default: every job held by the token).
        now: New claim timestamp (defaults to current UTC time).

    Returns:
        Number of claims renewed. Zero for a single job means the claim was
        lost.
    """
    now = now or utcnow()
    stmt = (
        update(EmbeddingJob)
        .where(EmbeddingJob.claimed_by == claim_token)
        .where(EmbeddingJob.status == JobStatus.processing)
    )
    if job_id is not None:
        stmt = stmt.where(EmbeddingJob.id == job_id)
    stmt = stmt.values(claimed_at=now, updated_at=now).execution_options(**_NO_SYNC)
    result = await session.execute(stmt)
    return result.rowcount


async def complete_job(
    session: AsyncSession,
    job_id: UUID,
    claim_token: str,
    expected_hash: str,
) -> bool:
    """Mark an owned job completed if its content did not change.

    Returns:
        True if the job was completed. False if the claim was lost or an
        enqueue replaced the content hash while the job was in flight.
    """
    now = utcnow()
    stmt = (
        update(EmbeddingJob)
        .where(_owned(job_id, claim_token))
        .where(EmbeddingJob.content_hash == expected_hash)
        .values(
            status=JobStatus.completed,
            claimed_by=None,
            claimed_at=None,
            completed_at=now,
            last_error=None,
            error_code=None,
            updated_at=now,
        )
        .execution_options(**_NO_SYNC)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def release_job(
    session: AsyncSession,
    job_id: UUID,
    claim_token: str,
) -> bool:
    """Return an owned job to pending without consuming an attempt.

    Used when the content changed mid-flight: the job already carries the
    new hash and must be embedded again.
    """
    now = utcnow()
    stmt = (
        update(EmbeddingJob)
        .where(_owned(job_id, claim_token))
        .values(
            status=JobStatus.pending,
            claimed_by=None,
            claimed_at=None,
            scheduled_at=now,
            updated_at=now,
        )
        .execution_options(**_NO_SYNC)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def fail_job(
    session: AsyncSession,
    job_id: UUID,
    claim_token: str,
    status: JobStatus,
    attempts: int,
    error_code: str,
    last_error: str,
    scheduled_at: datetime | None = None,
    expected_hash: str | None = None,
    claimed_before: datetime | None = None,
) -> bool:
    """Record a failure on an owned job.

    Args:
        session: Session inside an open transaction.
        job_id: Job that failed.
        claim_token: Token of the owning drain.
        status: ``pending`` to retry later or ``failed`` for terminal.
        attempts: New attempts value.
        error_code: Machine-readable failure code.
        last_error: ``CODE: message`` diagnostic.
        scheduled_at: Next eligibility time when retrying.
        expected_hash: If given, only apply while the content hash matches.
        claimed_before: If given, only apply while the claim is older than
            this instant (a renewed claim is no longer stale).

    Returns:
        True if the failure was recorded, False if the guard did not hold.
    """
    now = utcnow()
    values: dict[str, Any] = {
        "status": status,
        "attempts": attempts,
        "error_code": error_code,
        "last_error": last_error,
        "claimed_by": None,
        "claimed_at": None,
        "updated_at": now,
    }
    if status == JobStatus.failed:
        values["completed_at"] = now
    else:
        values["scheduled_at"] = scheduled_at or now

    stmt = update(EmbeddingJob).where(_owned(job_id, claim_token))
    if expected_hash is not None:
        stmt = stmt.where(EmbeddingJob.content_hash == expected_hash)
    if claimed_before is not None:
        stmt = stmt.where(EmbeddingJob.claimed_at < claimed_before)
    stmt = stmt.values(**values).execution_options(**_NO_SYNC)

    result = await session.execute(stmt)
    return result.rowcount == 1


async def find_stale_jobs(
    session: AsyncSession,
    claimed_before: datetime,
    limit: int = 500,
) -> list[EmbeddingJob]:
    """Return processing jobs whose claim is older than ``claimed_before``."""
    stmt = (
        select(EmbeddingJob)
        .where(EmbeddingJob.status == JobStatus.processing)
        .where(EmbeddingJob.claimed_at < claimed_before)
        .order_by(EmbeddingJob.claimed_at.asc())
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_jobs(
    session: AsyncSession,
    organization_id: str | None = None,
    source_table: str | None = None,
    source_field: str | None = None,
    source_id: str | None = None,
    status_filter: JobStatus | None = None,
    priority_min: int | None = None,
    priority_max: int | None = None,
    created_after: datetime | None = None,
    created_before: datetime | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[EmbeddingJob], int]:
    """List jobs with optional filters and pagination.

    Returns:
        Tuple of (jobs ordered newest first, total matching count).
    """
    conditions = []
    if organization_id is not None:
        conditions.append(EmbeddingJob.organization_id == organization_id)
    if source_table is not None:
        conditions.append(EmbeddingJob.source_table == source_table)
    if source_field is not None:
        conditions.append(EmbeddingJob.source_field == source_field)
    if source_id is not None:
        conditions.append(EmbeddingJob.source_id == source_id)
    if status_filter is not None:
        conditions.append(EmbeddingJob.status == status_filter)
    if priority_min is not None:
        conditions.append(EmbeddingJob.priority >= priority_min)
    if priority_max is not None:
        conditions.append(EmbeddingJob.priority <= priority_max)
    if created_after is not None:
        conditions.append(EmbeddingJob.created_at >= created_after)
    if created_before is not None:
        conditions.append(EmbeddingJob.created_at <= created_before)

    count_stmt = select(func.count()).select_from(EmbeddingJob).where(*conditions)
    total = (await session.execute(count_stmt)).scalar_one()

    stmt = (
        select(EmbeddingJob)
        .where(*conditions)
        .order_by(EmbeddingJob.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all()), total


async def get_job_metrics(
    session: AsyncSession,
    organization_id: str | None = None,
) -> dict[str, Any]:
    """Aggregate job counts for dashboards.

    Returns:
        Dictionary with ``total``, one count per status, ``success_rate``
        (completed share of terminal jobs, in percent),
        ``avg_processing_minutes`` over completed jobs and ``jobs_by_table``.
    """
    conditions = []
    if organization_id is not None:
        conditions.append(EmbeddingJob.organization_id == organization_id)

    status_stmt = (
        select(EmbeddingJob.status, func.count())
        .where(*conditions)
        .group_by(EmbeddingJob.status)
    )
    status_rows = (await session.execute(status_stmt)).all()
    by_status = {status.value: 0 for status in JobStatus}
    for status, count in status_rows:
        by_status[JobStatus(status).value] = count

    table_stmt = (
        select(EmbeddingJob.source_table, func.count())
        .where(*conditions)
        .group_by(EmbeddingJob.source_table)
    )
    jobs_by_table = {table: count for table, count in (await session.execute(table_stmt)).all()}

    # Durations are computed here rather than in SQL so the same code runs on
    # PostgreSQL and SQLite.
    duration_stmt = (
        select(EmbeddingJob.created_at, EmbeddingJob.completed_at)
        .where(*conditions)
        .where(EmbeddingJob.status == JobStatus.completed)
        .where(EmbeddingJob.completed_at.is_not(None))
    )
    durations = [
        (completed_at - created_at).total_seconds() / 60
        for created_at, completed_at in (await session.execute(duration_stmt)).all()
    ]

    completed = by_status[JobStatus.completed.value]
    failed = by_status[JobStatus.failed.value]
    terminal = completed + failed

    return {
        "total": sum(by_status.values()),
        **by_status,
        "success_rate": round(completed / terminal * 100, 2) if terminal else 0.0,
        "avg_processing_minutes": (
            round(sum(durations) / len(durations), 3) if durations else 0.0
        ),
        "jobs_by_table": jobs_by_table,
    }
