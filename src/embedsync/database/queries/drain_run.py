"""Drain run query functions for embedsync.

Each function commits on its own; drain-run records are written from a
side-channel task with a dedicated session, never inside a drain's
job transactions.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from embedsync.database.models.drain_run import DrainRun, DrainRunStatus

logger = structlog.get_logger(__name__)


async def create_drain_run(
    session: AsyncSession,
    run_id: UUID,
    worker_id: str,
    started_at: datetime,
    organization_id: str | None = None,
    meta: dict[str, Any] | None = None,
) -> DrainRun:
    """Insert a drain run in ``running`` state.

    Args:
        session: Active async database session.
        run_id: Identifier chosen by the drain.
        worker_id: Worker executing the drain.
        started_at: Drain start time.
        organization_id: Organization filter of the drain.
        meta: Drain options for the audit trail.

    Returns:
        The created DrainRun.
    """
    run = DrainRun(
        id=run_id,
        worker_id=worker_id,
        organization_id=organization_id,
        status=DrainRunStatus.running,
        started_at=started_at,
        meta=meta,
    )
    async with session.begin():
        session.add(run)
    return run


async def finish_drain_run(
    session: AsyncSession,
    run_id: UUID,
    status: DrainRunStatus,
    finished_at: datetime,
    counts: dict[str, int],
    duration_ms: int,
    error: str | None = None,
) -> bool:
    """Record the outcome of a drain run.

    Args:
        session: Active async database session.
        run_id: Drain run to update.
        status: Final status.
        finished_at: Drain end time.
        counts: Column name to value for the ``*_count`` columns.
        duration_ms: Wall-clock duration.
        error: Error message if the drain itself failed.

    Returns:
        True if the run row existed and was updated.
    """
    async with session.begin():
        stmt = (
            update(DrainRun)
            .where(DrainRun.id == run_id)
            .values(
                status=status,
                finished_at=finished_at,
                duration_ms=duration_ms,
                error=error,
                **counts,
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
    return result.rowcount == 1


async def list_drain_runs(
    session: AsyncSession,
    organization_id: str | None = None,
    limit: int = 20,
) -> list[DrainRun]:
    """List the most recent drain runs."""
    stmt = select(DrainRun)
    if organization_id is not None:
        stmt = stmt.where(DrainRun.organization_id == organization_id)
    stmt = stmt.order_by(DrainRun.started_at.desc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
