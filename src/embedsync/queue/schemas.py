"""Structured payloads returned by the queue service.

Every mutating operation answers with ``success`` plus either its result or
an ``error``/``error_code`` pair. Callers never need to catch exceptions to
learn that an enqueue or drain failed.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from embedsync.database.models.job import JobStatus
from embedsync.queue.enqueuer import EnqueueOutcome


class OperationResponse(BaseModel):
    """Common envelope fields.

    Attributes:
        success: Whether the operation succeeded.
        error: Error message when it did not.
        error_code: Machine-readable error code.
        retryable: Whether repeating the call may succeed.
    """

    success: bool = True
    error: str | None = None
    error_code: str | None = None
    retryable: bool = False


class EnqueueResponse(OperationResponse):
    job_id: UUID | None = None
    outcome: EnqueueOutcome | None = None
    content_hash: str | None = None
    reason: str | None = None


class DrainResponse(OperationResponse):
    run_id: UUID | None = None
    claimed_count: int = 0
    processed_count: int = 0
    skipped_count: int = 0
    failed_count: int = 0
    retried_count: int = 0
    requeued_count: int = 0
    reclaimed_count: int = 0
    duration_ms: int = 0


class BulkEnqueueResponse(OperationResponse):
    organization_id: str | None = None
    content_types: list[str] = Field(default_factory=list)
    total_targets: int = 0
    diff_count: int = 0
    diff_rate_percent: float = 0.0
    threshold_percent: float = 0.0
    is_full_rebuild: bool = False
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[dict[str, Any]] = Field(default_factory=list)


class SweepResponse(OperationResponse):
    reclaimed_count: int = 0
    requeued_count: int = 0
    failed_count: int = 0
    job_ids: list[UUID] = Field(default_factory=list)


class JobResponse(BaseModel):
    """Job as exposed to dashboards and the CLI."""

    model_config = {"from_attributes": True}

    id: UUID
    organization_id: str
    source_table: str
    source_field: str
    source_id: str
    status: JobStatus
    priority: int
    content_hash: str
    force: bool
    attempts: int
    last_error: str | None
    error_code: str | None
    scheduled_at: datetime
    claimed_by: str | None
    claimed_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime


class RetryResponse(OperationResponse):
    job: JobResponse | None = None


class EmbeddingResponse(BaseModel):
    """Embedding chunk metadata (the vector itself is not returned)."""

    model_config = {"from_attributes": True}

    id: UUID
    organization_id: str
    source_table: str
    source_id: str
    source_field: str
    chunk_index: int
    chunk_text: str
    dimensions: int
    content_hash: str
    embedding_model: str
    is_active: bool
    created_at: datetime
    updated_at: datetime


class Page(BaseModel):
    """Pagination envelope."""

    total: int
    limit: int
    offset: int


class JobPage(Page):
    items: list[JobResponse]


class EmbeddingPage(Page):
    items: list[EmbeddingResponse]


class MetricsResponse(BaseModel):
    """Queue health for one organization or the whole store."""

    organization_id: str | None = None
    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    success_rate: float = 0.0
    avg_processing_minutes: float = 0.0
    jobs_by_table: dict[str, int] = Field(default_factory=dict)
    active_embeddings: int = 0
    active_chunks: int = 0
    embeddings_by_model: dict[str, int] = Field(default_factory=dict)
