"""Fire-and-forget drain run records.

DrainRunRecorder writes one ``drain_runs`` row per drain from background
asyncio tasks. The drain never awaits these writes and never sees their
failures: a write error is logged and dropped. ``aclose()`` waits for writes
still in flight so a clean shutdown does not lose them.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from embedsync.database.models.drain_run import DrainRunStatus
from embedsync.database.queries.drain_run import create_drain_run, finish_drain_run

logger = structlog.get_logger(__name__)


class DrainRunRecorder:
    """Background writer for drain run audit rows.

    Args:
        session_factory: Factory for database sessions.
        worker_id: Worker identifier stamped on each run.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        worker_id: str,
    ) -> None:
        self._session_factory = session_factory
        self._worker_id = worker_id
        self._tasks: set[asyncio.Task[None]] = set()
        self._started: dict[UUID, asyncio.Task[None]] = {}

    @property
    def pending_writes(self) -> int:
        """Number of writes still in flight."""
        return len(self._tasks)

    def _spawn(self, name: str, run_id: UUID, write: Callable[[], Awaitable[Any]]) -> asyncio.Task[None]:
        async def guarded() -> None:
            try:
                await write()
            except Exception as e:
                logger.warning(
                    "drain_run_record_failed",
                    operation=name,
                    run_id=str(run_id),
                    error=str(e),
                    error_type=type(e).__name__,
                )

        task = asyncio.create_task(guarded())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def record_start(
        self,
        run_id: UUID,
        started_at: datetime,
        organization_id: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        """Schedule the insert of a ``running`` drain run row."""

        async def write() -> None:
            async with self._session_factory() as session:
                await create_drain_run(
                    session,
                    run_id=run_id,
                    worker_id=self._worker_id,
                    started_at=started_at,
                    organization_id=organization_id,
                    meta=meta,
                )

        self._started[run_id] = self._spawn("start", run_id, write)

    def record_finish(
        self,
        run_id: UUID,
        status: DrainRunStatus,
        finished_at: datetime,
        counts: dict[str, int],
        duration_ms: int,
        error: str | None = None,
    ) -> None:
        """Schedule the update recording a drain's outcome.

        Runs after the matching start write, whatever its outcome.
        """
        start_task = self._started.pop(run_id, None)

        async def write() -> None:
            if start_task is not None:
                await start_task
            async with self._session_factory() as session:
                await finish_drain_run(
                    session,
                    run_id=run_id,
                    status=status,
                    finished_at=finished_at,
                    counts=counts,
                    duration_ms=duration_ms,
                    error=error,
                )

        self._spawn("finish", run_id, write)

    async def aclose(self) -> None:
        """Wait for every in-flight write to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks))
        self._started.clear()
