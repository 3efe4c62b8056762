"""Queue service facade used by the HTTP API and the CLI.

EmbeddingQueueService bundles the Enqueuer, the DrainWorker, the settings
provider and the drain-run recorder behind one object and converts every
failure of a mutating operation into a structured response. Read operations
return models directly and let store errors propagate to the caller.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

import structlog
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from embedsync.config import EmbedsyncConfig
from embedsync.database.models.job import JobStatus
from embedsync.database.queries.embedding import get_embedding_stats, list_embeddings
from embedsync.database.queries.job import get_job, get_job_metrics, list_jobs
from embedsync.errors import (
    INVALID_REQUEST,
    UNEXPECTED_ERROR,
    EmbedsyncError,
    TransientJobError,
)
from embedsync.generation.service import EmbeddingGenerator
from embedsync.queue.enqueuer import Enqueuer, EnqueueRequest
from embedsync.queue.retry import RetryPolicy
from embedsync.queue.run_log import DrainRunRecorder
from embedsync.queue.schemas import (
    BulkEnqueueResponse,
    DrainResponse,
    EmbeddingPage,
    EmbeddingResponse,
    EnqueueResponse,
    JobPage,
    JobResponse,
    MetricsResponse,
    OperationResponse,
    RetryResponse,
    SweepResponse,
)
from embedsync.queue.worker import DrainOptions, DrainWorker
from embedsync.settings import QueueSettings, SettingsProvider
from embedsync.sources import ContentSource

logger = structlog.get_logger(__name__)


def _error_fields(exc: Exception) -> dict[str, Any]:
    if isinstance(exc, ValidationError):
        return {
            "success": False,
            "error": str(exc),
            "error_code": INVALID_REQUEST,
            "retryable": False,
        }
    if isinstance(exc, EmbedsyncError):
        return {
            "success": False,
            "error": str(exc),
            "error_code": exc.code,
            "retryable": isinstance(exc, TransientJobError),
        }
    return {
        "success": False,
        "error": f"{type(exc).__name__}: {exc}",
        "error_code": UNEXPECTED_ERROR,
        "retryable": True,
    }


class EmbeddingQueueService:
    """Entry point for every queue operation.

    Attributes:
        session_factory: Factory for database sessions.
        enqueuer: Diff-aware job upserts.
        worker: Drain worker.
        settings_provider: Runtime tunables.
        recorder: Drain run side channel.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        enqueuer: Enqueuer,
        worker: DrainWorker,
        settings_provider: SettingsProvider,
        recorder: DrainRunRecorder | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.enqueuer = enqueuer
        self.worker = worker
        self.settings_provider = settings_provider
        self.recorder = recorder

    @classmethod
    def from_config(
        cls,
        config: EmbedsyncConfig,
        session_factory: async_sessionmaker[AsyncSession],
        generator: EmbeddingGenerator,
        content_source: ContentSource,
    ) -> EmbeddingQueueService:
        """Wire the queue components from configuration.

        Args:
            config: Loaded configuration.
            session_factory: Factory for job store sessions.
            generator: Embedding generator used by drains.
            content_source: Source of current record content.

        Returns:
            A ready-to-use service.
        """
        queue = config.queue
        settings_provider = SettingsProvider(session_factory)
        recorder = DrainRunRecorder(session_factory, worker_id=queue.worker_id)
        enqueuer = Enqueuer(
            session_factory,
            content_source,
            default_priority=queue.default_priority,
            settings_provider=settings_provider,
        )
        worker = DrainWorker(
            session_factory,
            generator=generator,
            content_source=content_source,
            settings_provider=settings_provider,
            retry_policy=RetryPolicy(
                max_attempts=queue.max_attempts,
                base_delay=queue.retry_base_delay_seconds,
                max_delay=queue.retry_max_delay_seconds,
            ),
            worker_id=queue.worker_id,
            batch_size=queue.batch_size,
            chunk_size=queue.chunk_size,
            chunk_overlap=queue.chunk_overlap,
            recorder=recorder,
            poll_interval=queue.poll_interval_seconds,
        )
        return cls(session_factory, enqueuer, worker, settings_provider, recorder)

    async def aclose(self) -> None:
        """Stop the polling loop and flush drain run records."""
        self.worker.stop()
        if self.recorder is not None:
            await self.recorder.aclose()

    # ------------------------------------------------------------------
    # Mutating operations (never raise)
    # ------------------------------------------------------------------

    async def enqueue(self, request: EnqueueRequest | dict[str, Any]) -> EnqueueResponse:
        """Enqueue one target; see ``Enqueuer.enqueue``."""
        try:
            if not isinstance(request, EnqueueRequest):
                request = EnqueueRequest.model_validate(request)
            result = await self.enqueuer.enqueue(request)
        except Exception as e:
            logger.warning("enqueue_rejected", error=str(e), error_type=type(e).__name__)
            return EnqueueResponse(**_error_fields(e))

        return EnqueueResponse(
            job_id=result.job_id,
            outcome=result.outcome,
            content_hash=result.content_hash,
            reason=result.reason,
        )

    async def drain(self, options: DrainOptions | dict[str, Any] | None = None) -> DrainResponse:
        """Run one drain; see ``DrainWorker.drain``."""
        try:
            if options is not None and not isinstance(options, DrainOptions):
                options = DrainOptions.model_validate(options)
            result = await self.worker.drain(options)
        except Exception as e:
            logger.error("drain_failed", error=str(e), error_type=type(e).__name__)
            return DrainResponse(**_error_fields(e))

        return DrainResponse(**result.model_dump())

    async def bulk_enqueue(
        self,
        organization_id: str,
        content_types: list[str],
        priority: int | None = None,
        per_field: bool = False,
        allow_full_rebuild: bool = True,
    ) -> BulkEnqueueResponse:
        """Diff and enqueue whole content types; see ``Enqueuer.bulk_enqueue``."""
        try:
            result = await self.enqueuer.bulk_enqueue(
                organization_id,
                content_types,
                priority=priority,
                per_field=per_field,
                allow_full_rebuild=allow_full_rebuild,
            )
        except Exception as e:
            logger.error("bulk_enqueue_failed", error=str(e), error_type=type(e).__name__)
            return BulkEnqueueResponse(
                organization_id=organization_id,
                content_types=content_types,
                **_error_fields(e),
            )

        return BulkEnqueueResponse(**result.model_dump())

    async def sweep(self) -> SweepResponse:
        """Release abandoned claims now."""
        try:
            result = await self.worker.sweep()
        except Exception as e:
            logger.error("sweep_failed", error=str(e))
            return SweepResponse(**_error_fields(e))

        return SweepResponse(**result.model_dump())

    async def retry_job(self, job_id: UUID) -> RetryResponse:
        """Return a failed job to pending."""
        try:
            job = await self.worker.retry_job(job_id)
        except Exception as e:
            logger.warning("retry_rejected", job_id=str(job_id), error=str(e))
            return RetryResponse(**_error_fields(e))

        return RetryResponse(job=JobResponse.model_validate(job))

    async def update_settings(self, **changes: Any) -> tuple[OperationResponse, QueueSettings]:
        """Persist settings changes.

        Returns:
            Tuple of (status envelope, settings in effect afterwards).
        """
        try:
            settings = await self.settings_provider.update(**changes)
        except ValueError as e:
            return (
                OperationResponse(
                    success=False,
                    error=str(e),
                    error_code=INVALID_REQUEST,
                ),
                await self.settings_provider.load(),
            )
        return OperationResponse(), settings

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    async def get_settings(self) -> QueueSettings:
        """Return the settings a drain started now would use."""
        return await self.settings_provider.load()

    async def get_job(self, job_id: UUID) -> JobResponse | None:
        """Return one job, or None if it does not exist."""
        async with self.session_factory() as session:
            job = await get_job(session, job_id)
        return JobResponse.model_validate(job) if job is not None else None

    async def list_jobs(
        self,
        organization_id: str | None = None,
        source_table: str | None = None,
        source_field: str | None = None,
        source_id: str | None = None,
        status: JobStatus | None = None,
        priority_min: int | None = None,
        priority_max: int | None = None,
        created_after: Any = None,
        created_before: Any = None,
        limit: int = 50,
        offset: int = 0,
    ) -> JobPage:
        """List jobs for dashboards with filters and pagination."""
        async with self.session_factory() as session:
            jobs, total = await list_jobs(
                session,
                organization_id=organization_id,
                source_table=source_table,
                source_field=source_field,
                source_id=source_id,
                status_filter=status,
                priority_min=priority_min,
                priority_max=priority_max,
                created_after=created_after,
                created_before=created_before,
                limit=limit,
                offset=offset,
            )
        return JobPage(
            items=[JobResponse.model_validate(job) for job in jobs],
            total=total,
            limit=limit,
            offset=offset,
        )

    async def list_embeddings(
        self,
        organization_id: str | None = None,
        source_table: str | None = None,
        source_id: str | None = None,
        source_field: str | None = None,
        is_active: bool | None = True,
        limit: int = 50,
        offset: int = 0,
    ) -> EmbeddingPage:
        """List embedding chunks with filters and pagination."""
        async with self.session_factory() as session:
            rows, total = await list_embeddings(
                session,
                organization_id=organization_id,
                source_table=source_table,
                source_id=source_id,
                source_field=source_field,
                is_active=is_active,
                limit=limit,
                offset=offset,
            )
        return EmbeddingPage(
            items=[EmbeddingResponse.model_validate(row) for row in rows],
            total=total,
            limit=limit,
            offset=offset,
        )

    async def get_metrics(self, organization_id: str | None = None) -> MetricsResponse:
        """Aggregate job and embedding statistics."""
        async with self.session_factory() as session:
            job_metrics = await get_job_metrics(session, organization_id)
            embedding_stats = await get_embedding_stats(session, organization_id)
        return MetricsResponse(
            organization_id=organization_id,
            **job_metrics,
            **embedding_stats,
        )
