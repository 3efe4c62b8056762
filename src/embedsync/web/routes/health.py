"""Health check endpoints for embedsync.

Routes:
    GET /health/       Liveness: the process is serving requests.
    GET /health/ready  Readiness: the job store accepts queries.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import func, select

from embedsync import __version__
from embedsync.database.connection import STORE_ERRORS
from embedsync.database.models.job import EmbeddingJob, JobStatus
from embedsync.logging import get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = get_logger(__name__)


class HealthResponse(BaseModel):
    """Liveness response.

    Attributes:
        status: Always "ok" when the process answers.
        version: Package version.
        timestamp: Server time (UTC, ISO-8601).
    """

    status: str
    version: str
    timestamp: str


class ReadinessResponse(BaseModel):
    """Readiness response.

    Attributes:
        status: "ok" or "unhealthy".
        database: "connected" or "disconnected".
        pending_jobs: Jobs waiting to be drained, when the store is reachable.
    """

    status: str
    database: str
    pending_jobs: int | None = None


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    """Dependency that retrieves session factory from app state."""
    return request.app.state.session_factory  # type: ignore[return-value]


def create_health_router() -> APIRouter:
    """Create health check router.

    Returns:
        Configured APIRouter with health endpoints.
    """
    router = APIRouter(prefix="/health", tags=["health"])

    @router.get("/", response_model=HealthResponse)
    async def health() -> dict[str, Any]:
        """Basic liveness check."""
        return {
            "status": "ok",
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @router.get("/ready", response_model=ReadinessResponse)
    async def readiness(
        session_factory: async_sessionmaker[AsyncSession] = Depends(  # noqa: B008
            get_session_factory
        ),
    ) -> dict[str, Any]:
        """Readiness check that queries the job table."""
        try:
            async with session_factory() as session:
                pending = (
                    await session.execute(
                        select(func.count())
                        .select_from(EmbeddingJob)
                        .where(EmbeddingJob.status == JobStatus.pending)
                    )
                ).scalar_one()
        except STORE_ERRORS as exc:
            logger.warning(
                "readiness_check_failed",
                database="disconnected",
                error=str(exc),
            )
            return {"status": "unhealthy", "database": "disconnected"}

        logger.debug("readiness_check_passed", pending_jobs=pending)
        return {"status": "ok", "database": "connected", "pending_jobs": pending}

    return router
