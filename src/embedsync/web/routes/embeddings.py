"""Embedding queue REST API endpoints for embedsync.

Mutating endpoints answer HTTP 200 with a ``success`` flag; only malformed
request bodies are rejected with 422 by FastAPI validation. Listing
endpoints serve the operational dashboards.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from embedsync.database.models.job import JobStatus
from embedsync.queue.enqueuer import EnqueueRequest
from embedsync.queue.schemas import (
    BulkEnqueueResponse,
    DrainResponse,
    EmbeddingPage,
    EnqueueResponse,
    JobPage,
    JobResponse,
    MetricsResponse,
    RetryResponse,
    SweepResponse,
)
from embedsync.queue.service import EmbeddingQueueService
from embedsync.queue.worker import DrainOptions
from embedsync.sources import CONTENT_TYPES

logger = structlog.get_logger(__name__)


# --- Pydantic Schemas ---


class BulkEnqueueBody(BaseModel):
    """Request schema for a bulk enqueue."""

    organization_id: str = Field(..., min_length=1)
    content_types: list[str] = Field(default_factory=lambda: list(CONTENT_TYPES))
    priority: int | None = Field(default=None, ge=1, le=10)
    per_field: bool = False
    allow_full_rebuild: bool = True


# --- Dependency Injection ---


def get_queue_service(request: Request) -> EmbeddingQueueService:
    """Extract the queue service from FastAPI app state."""
    return request.app.state.queue_service


# --- Router ---


def create_embeddings_router() -> APIRouter:
    """Create the embedding queue router.

    Routes:
        POST /embeddings/enqueue
        POST /embeddings/drain
        POST /embeddings/bulk-enqueue
        POST /embeddings/sweep
        GET  /embeddings/jobs
        GET  /embeddings/jobs/metrics
        GET  /embeddings/jobs/{job_id}
        POST /embeddings/jobs/{job_id}/retry
        GET  /embeddings/

    Returns:
        Configured APIRouter.
    """
    router = APIRouter(prefix="/embeddings", tags=["embeddings"])

    @router.post("/enqueue", response_model=EnqueueResponse)
    async def enqueue_endpoint(
        body: EnqueueRequest,
        service: EmbeddingQueueService = Depends(get_queue_service),
    ) -> EnqueueResponse:
        """Enqueue one record field for (re)embedding."""
        return await service.enqueue(body)

    @router.post("/drain", response_model=DrainResponse)
    async def drain_endpoint(
        body: DrainOptions | None = None,
        service: EmbeddingQueueService = Depends(get_queue_service),
    ) -> DrainResponse:
        """Run one drain synchronously and report its counts."""
        return await service.drain(body)

    @router.post("/bulk-enqueue", response_model=BulkEnqueueResponse)
    async def bulk_enqueue_endpoint(
        body: BulkEnqueueBody,
        service: EmbeddingQueueService = Depends(get_queue_service),
    ) -> BulkEnqueueResponse:
        """Diff and enqueue whole content types for an organization."""
        return await service.bulk_enqueue(
            body.organization_id,
            body.content_types,
            priority=body.priority,
            per_field=body.per_field,
            allow_full_rebuild=body.allow_full_rebuild,
        )

    @router.post("/sweep", response_model=SweepResponse)
    async def sweep_endpoint(
        service: EmbeddingQueueService = Depends(get_queue_service),
    ) -> SweepResponse:
        """Release abandoned claims immediately."""
        return await service.sweep()

    @router.get("/jobs", response_model=JobPage)
    async def list_jobs_endpoint(
        organization_id: str | None = None,
        source_table: str | None = None,
        source_field: str | None = None,
        source_id: str | None = None,
        status: str | None = None,
        priority_min: int | None = Query(default=None, ge=1, le=10),
        priority_max: int | None = Query(default=None, ge=1, le=10),
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = Query(default=50, ge=1, le=500),
        offset: int = Query(default=0, ge=0),
        service: EmbeddingQueueService = Depends(get_queue_service),
    ) -> JobPage:
        """List jobs with filters and pagination.

        Raises:
            HTTPException: 400 if status is invalid.
        """
        status_filter = None
        if status is not None:
            try:
                status_filter = JobStatus[status]
            except KeyError:
                logger.warning("invalid_status_filter", status=status)
                raise HTTPException(status_code=400, detail=f"Invalid status: {status}")

        return await service.list_jobs(
            organization_id=organization_id,
            source_table=source_table,
            source_field=source_field,
            source_id=source_id,
            status=status_filter,
            priority_min=priority_min,
            priority_max=priority_max,
            created_after=created_after,
            created_before=created_before,
            limit=limit,
            offset=offset,
        )

    @router.get("/jobs/metrics", response_model=MetricsResponse)
    async def metrics_endpoint(
        organization_id: str | None = None,
        service: EmbeddingQueueService = Depends(get_queue_service),
    ) -> MetricsResponse:
        """Queue and embedding statistics."""
        return await service.get_metrics(organization_id)

    @router.get("/jobs/{job_id}", response_model=JobResponse)
    async def get_job_endpoint(
        job_id: UUID,
        service: EmbeddingQueueService = Depends(get_queue_service),
    ) -> JobResponse:
        """Get one job.

        Raises:
            HTTPException: 404 if the job does not exist.
        """
        job = await service.get_job(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
        return job

    @router.post("/jobs/{job_id}/retry", response_model=RetryResponse)
    async def retry_job_endpoint(
        job_id: UUID,
        service: EmbeddingQueueService = Depends(get_queue_service),
    ) -> RetryResponse:
        """Return a failed job to pending."""
        return await service.retry_job(job_id)

    @router.get("/", response_model=EmbeddingPage)
    async def list_embeddings_endpoint(
        organization_id: str | None = None,
        source_table: str | None = None,
        source_id: str | None = None,
        source_field: str | None = None,
        is_active: bool | None = True,
        limit: int = Query(default=50, ge=1, le=500),
        offset: int = Query(default=0, ge=0),
        service: EmbeddingQueueService = Depends(get_queue_service),
    ) -> EmbeddingPage:
        """List embedding chunks with filters and pagination."""
        return await service.list_embeddings(
            organization_id=organization_id,
            source_table=source_table,
            source_id=source_id,
            source_field=source_field,
            is_active=is_active,
            limit=limit,
            offset=offset,
        )

    return router
