"""Drain worker: claims pending jobs and writes their embeddings.

A drain loads the runtime settings once, sweeps abandoned claims back into
the queue, claims a batch of eligible jobs in one atomic statement, and
processes the batch concurrently up to ``max_concurrent_jobs``. Each job is
bounded by ``job_timeout_ms``.

Ownership of a claimed job is proven by its claim token. Every write the
worker makes to a job is conditional on the row still carrying that token
in ``processing``; if the guard fails the claim was lost (for example swept
after a timeout) and the worker leaves the row alone. Completion is also
conditional on the content hash observed at claim time: if an enqueue
replaced it while the job was in flight, the job goes back to pending
instead of completing with stale content.

A drain renews ``claimed_at`` on every job it holds while the batch runs,
including jobs still waiting for a concurrency slot, so the sweep only
reclaims jobs whose drain has died.

Any number of drains may run at once, in one process or many. The job
table is the only synchronization point.
"""

from __future__ import annotations

import asyncio
import enum
import time
import uuid
from datetime import timedelta
from uuid import UUID

import structlog
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from embedsync.database.connection import STORE_ERRORS
from embedsync.database.models.base import utcnow
from embedsync.database.models.drain_run import DrainRunStatus
from embedsync.database.models.job import EmbeddingJob, JobStatus
from embedsync.database.queries.embedding import get_active_hash, replace_active_embedding
from embedsync.database.queries.job import (
    claim_jobs,
    complete_job,
    fail_job,
    find_stale_jobs,
    get_job,
    release_job,
    renew_claims,
    reset_failed_job,
)
from embedsync.errors import (
    CLAIM_TIMEOUT,
    EMPTY_CONTENT,
    GENERATOR_TIMEOUT,
    JOB_CONFLICT,
    SOURCE_NOT_FOUND,
    STORE_ERROR,
    UNEXPECTED_ERROR,
    EmbedsyncError,
    GeneratorError,
    JobNotFoundError,
    PermanentJobError,
    TransientJobError,
    UnsupportedContentType,
)
from embedsync.generation.service import EmbeddingGenerator
from embedsync.hashing import chunk_text, compute_content_hash, normalize_text
from embedsync.logging import bind_job_context, clear_job_context
from embedsync.queue.retry import RetryPolicy
from embedsync.queue.run_log import DrainRunRecorder
from embedsync.queue.state_machine import ensure_transition
from embedsync.settings import QueueSettings, SettingsProvider
from embedsync.sources import ContentSource

logger = structlog.get_logger(__name__)


class DiffStrategy(str, enum.Enum):
    """How a drain decides whether a claimed job needs a new embedding.

    content_hash: Skip the generator when the fresh content hash equals the
        active embedding's hash (unless the job is forced).
    force: Always embed.
    """

    content_hash = "content_hash"
    force = "force"


class JobOutcome(str, enum.Enum):
    """Result of processing one claimed job."""

    processed = "processed"
    skipped = "skipped"
    failed = "failed"
    retried = "retried"
    requeued = "requeued"
    lost = "lost"


class DrainOptions(BaseModel):
    """Parameters of one drain invocation.

    Attributes:
        organization_id: Only drain jobs of this organization.
        batch_size: Jobs to claim (default: configured batch size).
        diff_strategy: content_hash or force.
        priority_min: Minimum priority (inclusive).
        priority_max: Maximum priority (inclusive).
    """

    organization_id: str | None = None
    batch_size: int | None = Field(default=None, ge=1, le=500)
    diff_strategy: DiffStrategy = DiffStrategy.content_hash
    priority_min: int | None = Field(default=None, ge=1, le=10)
    priority_max: int | None = Field(default=None, ge=1, le=10)

    @model_validator(mode="after")
    def validate_priority_range(self) -> DrainOptions:
        """Ensure priority_min does not exceed priority_max."""
        if (
            self.priority_min is not None
            and self.priority_max is not None
            and self.priority_min > self.priority_max
        ):
            raise ValueError("priority_min must not exceed priority_max")
        return self


class DrainResult(BaseModel):
    """Counts and timing of one drain.

    Attributes:
        run_id: Identifier of the drain (also the drain_runs row id).
        claimed_count: Jobs claimed by this drain.
        processed_count: Jobs that produced a new embedding.
        skipped_count: Jobs completed without calling the generator, or
            whose claim was lost before they could be written.
        failed_count: Jobs that ended terminally failed.
        retried_count: Jobs returned to pending with backoff.
        requeued_count: Jobs returned to pending because their content
            changed while in flight.
        reclaimed_count: Abandoned claims swept before claiming.
        duration_ms: Wall-clock duration.
    """

    run_id: UUID
    claimed_count: int = 0
    processed_count: int = 0
    skipped_count: int = 0
    failed_count: int = 0
    retried_count: int = 0
    requeued_count: int = 0
    reclaimed_count: int = 0
    duration_ms: int = 0


class SweepResult(BaseModel):
    """Outcome of reclaiming abandoned claims.

    Attributes:
        reclaimed_count: Stale claims released.
        requeued_count: Released jobs returned to pending.
        failed_count: Released jobs that exhausted their attempts.
        job_ids: Jobs that were released.
    """

    reclaimed_count: int = 0
    requeued_count: int = 0
    failed_count: int = 0
    job_ids: list[UUID] = Field(default_factory=list)


def classify_error(exc: BaseException) -> EmbedsyncError:
    """Map an exception raised while processing a job to the error taxonomy.

    Args:
        exc: Exception raised by the content source, generator or store.

    Returns:
        A TransientJobError or PermanentJobError carrying the failure code.
    """
    if isinstance(exc, (PermanentJobError, TransientJobError)):
        return exc
    if isinstance(exc, GeneratorError):
        if exc.retryable:
            return TransientJobError(str(exc), exc.code)
        return PermanentJobError(str(exc), exc.code)
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return TransientJobError("Job exceeded its timeout", GENERATOR_TIMEOUT)
    if isinstance(exc, STORE_ERRORS):
        return TransientJobError(f"Store error: {exc}", STORE_ERROR)
    if isinstance(exc, EmbedsyncError):
        return TransientJobError(str(exc), exc.code)
    return TransientJobError(f"{type(exc).__name__}: {exc}", UNEXPECTED_ERROR)


class DrainWorker:
    """Processes batches of embedding jobs.

    Args:
        session_factory: Factory for job and embedding store sessions.
        generator: Embedding generator.
        content_source: Source used to re-fetch content at drain time.
        settings_provider: Runtime tunables; defaults are used when None.
        retry_policy: Attempts limit and backoff.
        worker_id: Prefix of claim tokens and drain run records.
        batch_size: Default number of jobs per drain.
        chunk_size: Maximum characters per embedded chunk.
        chunk_overlap: Characters shared by consecutive chunks.
        recorder: Side channel for drain run records.
        poll_interval: Delay between drains in ``run_forever``.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        generator: EmbeddingGenerator,
        content_source: ContentSource,
        settings_provider: SettingsProvider | None = None,
        retry_policy: RetryPolicy | None = None,
        worker_id: str = "worker",
        batch_size: int = 10,
        chunk_size: int = 1000,
        chunk_overlap: int = 100,
        recorder: DrainRunRecorder | None = None,
        poll_interval: float = 5.0,
    ) -> None:
        self.session_factory = session_factory
        self.generator = generator
        self.content_source = content_source
        self.settings_provider = settings_provider
        self.retry_policy = retry_policy or RetryPolicy()
        self.worker_id = worker_id
        self.batch_size = batch_size
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.recorder = recorder
        self.poll_interval = poll_interval
        self._stop_event = asyncio.Event()
        self._logger = logger.bind(component="DrainWorker", worker_id=worker_id)

    async def load_settings(self) -> QueueSettings:
        """Load a settings snapshot for one drain."""
        if self.settings_provider is None:
            return QueueSettings()
        return await self.settings_provider.load()

    # ------------------------------------------------------------------
    # Drain
    # ------------------------------------------------------------------

    async def drain(self, options: DrainOptions | None = None) -> DrainResult:
        """Run one drain.

        Args:
            options: Drain parameters (defaults when omitted).

        Returns:
            DrainResult with per-outcome counts.

        Raises:
            TransientJobError: If the job store is unavailable while
                sweeping or claiming (STORE_ERROR).
        """
        options = options or DrainOptions()
        started = time.monotonic()
        run_id = uuid.uuid4()
        claim_token = f"{self.worker_id}:{uuid.uuid4().hex}"
        batch_size = options.batch_size or self.batch_size
        result = DrainResult(run_id=run_id)

        settings = await self.load_settings()

        if self.recorder is not None:
            self.recorder.record_start(
                run_id,
                started_at=utcnow(),
                organization_id=options.organization_id,
                meta={
                    "batch_size": batch_size,
                    "diff_strategy": options.diff_strategy.value,
                    "priority_min": options.priority_min,
                    "priority_max": options.priority_max,
                    "max_concurrent_jobs": settings.max_concurrent_jobs,
                    "job_timeout_ms": settings.job_timeout_ms,
                },
            )

        self._logger.info(
            "drain_started",
            run_id=str(run_id),
            organization_id=options.organization_id,
            batch_size=batch_size,
            diff_strategy=options.diff_strategy.value,
        )

        try:
            sweep = await self.sweep(settings)
            result.reclaimed_count = sweep.reclaimed_count

            async with self.session_factory() as session:
                async with session.begin():
                    jobs = await claim_jobs(
                        session,
                        claim_token=claim_token,
                        limit=batch_size,
                        organization_id=options.organization_id,
                        priority_min=options.priority_min,
                        priority_max=options.priority_max,
                    )
        except STORE_ERRORS as e:
            result.duration_ms = int((time.monotonic() - started) * 1000)
            self._logger.error("drain_store_error", run_id=str(run_id), error=str(e))
            self._record_finish(result, DrainRunStatus.failed, error=str(e))
            raise TransientJobError(f"Job store unavailable: {e}", STORE_ERROR) from e

        result.claimed_count = len(jobs)

        semaphore = asyncio.Semaphore(settings.max_concurrent_jobs)
        heartbeat = asyncio.create_task(self._heartbeat(claim_token, settings)) if jobs else None
        try:
            outcomes = await asyncio.gather(
                *(
                    self._run_job(job, claim_token, settings, options, semaphore)
                    for job in jobs
                ),
                return_exceptions=True,
            )
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
                try:
                    await heartbeat
                except asyncio.CancelledError:
                    pass

        for job, outcome in zip(jobs, outcomes):
            if isinstance(outcome, BaseException):
                # Claim left in place; the sweep releases it after the timeout
                self._logger.error(
                    "embedding_job_outcome_unknown",
                    job_id=str(job.id),
                    error=str(outcome),
                    error_type=type(outcome).__name__,
                )
                outcome = JobOutcome.lost
            if outcome == JobOutcome.processed:
                result.processed_count += 1
            elif outcome in (JobOutcome.skipped, JobOutcome.lost):
                result.skipped_count += 1
            elif outcome == JobOutcome.failed:
                result.failed_count += 1
            elif outcome == JobOutcome.retried:
                result.retried_count += 1
            elif outcome == JobOutcome.requeued:
                result.requeued_count += 1

        result.duration_ms = int((time.monotonic() - started) * 1000)
        self._record_finish(result, DrainRunStatus.succeeded)

        self._logger.info(
            "drain_completed",
            run_id=str(run_id),
            claimed_count=result.claimed_count,
            processed_count=result.processed_count,
            skipped_count=result.skipped_count,
            failed_count=result.failed_count,
            retried_count=result.retried_count,
            requeued_count=result.requeued_count,
            reclaimed_count=result.reclaimed_count,
            duration_ms=result.duration_ms,
        )
        return result

    def _record_finish(
        self,
        result: DrainResult,
        status: DrainRunStatus,
        error: str | None = None,
    ) -> None:
        if self.recorder is None:
            return
        self.recorder.record_finish(
            result.run_id,
            status=status,
            finished_at=utcnow(),
            counts={
                "claimed_count": result.claimed_count,
                "processed_count": result.processed_count,
                "skipped_count": result.skipped_count,
                "failed_count": result.failed_count,
                "retried_count": result.retried_count,
                "reclaimed_count": result.reclaimed_count,
            },
            duration_ms=result.duration_ms,
            error=error,
        )

    async def _heartbeat(self, claim_token: str, settings: QueueSettings) -> None:
        """Keep this drain's claims fresh until cancelled.

        Jobs waiting for a concurrency slot would otherwise age past the
        timeout and be swept by another drain while this one is alive.
        """
        interval = settings.job_timeout_seconds / 3
        while True:
            await asyncio.sleep(interval)
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        renewed = await renew_claims(session, claim_token)
            except Exception as e:
                self._logger.warning("claim_renewal_failed", claim_token=claim_token, error=str(e))
                continue
            self._logger.debug("claims_renewed", claim_token=claim_token, renewed_count=renewed)

    async def _run_job(
        self,
        job: EmbeddingJob,
        claim_token: str,
        settings: QueueSettings,
        options: DrainOptions,
        semaphore: asyncio.Semaphore,
    ) -> JobOutcome:
        async with semaphore:
            bind_job_context(str(job.id), job.organization_id)
            try:
                # The claim clock restarts once the job holds a slot
                async with self.session_factory() as session:
                    async with session.begin():
                        owned = await renew_claims(session, claim_token, job_id=job.id)
                if not owned:
                    self._logger.warning(
                        "embedding_job_claim_lost",
                        job_id=str(job.id),
                        claim_token=claim_token,
                    )
                    return JobOutcome.lost

                return await asyncio.wait_for(
                    self._process(job, claim_token, options),
                    timeout=settings.job_timeout_seconds,
                )
            except Exception as e:
                error = classify_error(e)
                if error.code == UNEXPECTED_ERROR:
                    self._logger.exception("embedding_job_unexpected_error", job_id=str(job.id))
                return await self._record_failure(job, claim_token, error)
            finally:
                clear_job_context()

    async def _load_text(self, job: EmbeddingJob) -> str:
        try:
            record = await self.content_source.fetch(
                job.organization_id, job.source_table, job.source_id
            )
        except UnsupportedContentType:
            if job.content_text is None:
                raise
            return job.content_text

        if record is None:
            raise PermanentJobError(
                f"{job.source_table}/{job.source_id} no longer exists",
                SOURCE_NOT_FOUND,
            )
        return record.text_for(job.source_field)

    async def _process(
        self,
        job: EmbeddingJob,
        claim_token: str,
        options: DrainOptions,
    ) -> JobOutcome:
        claimed_hash = job.content_hash

        text = normalize_text(await self._load_text(job))
        if not text:
            raise PermanentJobError(
                f"{job.source_table}/{job.source_id} has no embeddable text",
                EMPTY_CONTENT,
            )
        content_hash = compute_content_hash(text)

        if options.diff_strategy == DiffStrategy.content_hash and not job.force:
            async with self.session_factory() as session:
                active_hash = await get_active_hash(
                    session,
                    job.organization_id,
                    job.source_table,
                    job.source_id,
                    job.source_field,
                )
            if active_hash == content_hash:
                async with self.session_factory() as session:
                    async with session.begin():
                        completed = await complete_job(session, job.id, claim_token, claimed_hash)
                if not completed:
                    return await self._release_or_lose(job, claim_token)
                self._logger.info("embedding_job_unchanged", job_id=str(job.id))
                return JobOutcome.skipped

        chunks = chunk_text(text, self.chunk_size, self.chunk_overlap)
        vectors = [await self.generator.generate(chunk) for chunk in chunks]
        model = self.generator.model_name

        async with self.session_factory() as session:
            async with session.begin():
                completed = await complete_job(session, job.id, claim_token, claimed_hash)
                if completed:
                    superseded = await replace_active_embedding(
                        session,
                        organization_id=job.organization_id,
                        source_table=job.source_table,
                        source_id=job.source_id,
                        source_field=job.source_field,
                        chunks=list(zip(chunks, vectors)),
                        content_hash=content_hash,
                        embedding_model=model,
                    )

        if not completed:
            return await self._release_or_lose(job, claim_token)

        self._logger.info(
            "embedding_job_completed",
            job_id=str(job.id),
            source_table=job.source_table,
            source_id=job.source_id,
            source_field=job.source_field,
            chunk_count=len(chunks),
            superseded_count=superseded,
            model=model,
        )
        return JobOutcome.processed

    async def _release_or_lose(self, job: EmbeddingJob, claim_token: str) -> JobOutcome:
        """Handle a completion or failure whose guard did not hold.

        If the job is still ours its content changed in flight, so it goes
        back to pending without consuming an attempt. Otherwise the claim
        was lost and the row belongs to someone else.
        """
        async with self.session_factory() as session:
            async with session.begin():
                released = await release_job(session, job.id, claim_token)

        if released:
            self._logger.info("embedding_job_requeued", job_id=str(job.id))
            return JobOutcome.requeued

        self._logger.warning(
            "embedding_job_claim_lost",
            job_id=str(job.id),
            claim_token=claim_token,
        )
        return JobOutcome.lost

    async def _record_failure(
        self,
        job: EmbeddingJob,
        claim_token: str,
        error: EmbedsyncError,
    ) -> JobOutcome:
        decision = self.retry_policy.decide(job.attempts, error)

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    recorded = await fail_job(
                        session,
                        job.id,
                        claim_token,
                        status=decision.status,
                        attempts=decision.attempts,
                        error_code=decision.error_code,
                        last_error=decision.last_error,
                        scheduled_at=decision.scheduled_at(utcnow()),
                        expected_hash=job.content_hash,
                    )
            if not recorded:
                return await self._release_or_lose(job, claim_token)
        except STORE_ERRORS as e:
            # The claim stays in place and the sweep releases it once it times out
            self._logger.error(
                "embedding_job_failure_not_recorded",
                job_id=str(job.id),
                error_code=error.code,
                error=str(e),
            )
            return JobOutcome.lost

        if decision.should_retry:
            self._logger.warning(
                "embedding_job_retry_scheduled",
                job_id=str(job.id),
                error_code=decision.error_code,
                attempts=decision.attempts,
                max_attempts=decision.max_attempts,
                delay_seconds=decision.delay_seconds,
            )
            return JobOutcome.retried

        self._logger.error(
            "embedding_job_failed",
            job_id=str(job.id),
            error_code=decision.error_code,
            error=decision.last_error,
            attempts=decision.attempts,
            reason=decision.reason,
        )
        return JobOutcome.failed

    # ------------------------------------------------------------------
    # Sweep and operator actions
    # ------------------------------------------------------------------

    async def sweep(self, settings: QueueSettings | None = None) -> SweepResult:
        """Release claims older than the per-job timeout.

        An abandoned claim counts as a transient failure: it consumes an
        attempt and the job returns to pending, or fails terminally once
        the attempts are exhausted.

        Args:
            settings: Settings snapshot (loaded when omitted).

        Returns:
            SweepResult with the released job ids.
        """
        settings = settings or await self.load_settings()
        cutoff = utcnow() - timedelta(milliseconds=settings.job_timeout_ms)

        async with self.session_factory() as session:
            stale = await find_stale_jobs(session, claimed_before=cutoff)

        result = SweepResult()
        for job in stale:
            error = TransientJobError(
                f"Claim {job.claimed_by} exceeded {settings.job_timeout_ms} ms",
                CLAIM_TIMEOUT,
            )
            decision = self.retry_policy.decide(job.attempts, error)
            async with self.session_factory() as session:
                async with session.begin():
                    released = await fail_job(
                        session,
                        job.id,
                        job.claimed_by,
                        status=decision.status,
                        attempts=decision.attempts,
                        error_code=decision.error_code,
                        last_error=decision.last_error,
                        scheduled_at=decision.scheduled_at(utcnow()),
                        claimed_before=cutoff,
                    )
            if not released:
                continue

            result.reclaimed_count += 1
            result.job_ids.append(job.id)
            if decision.should_retry:
                result.requeued_count += 1
            else:
                result.failed_count += 1

        if result.reclaimed_count:
            self._logger.warning(
                "stale_claims_swept",
                reclaimed_count=result.reclaimed_count,
                requeued_count=result.requeued_count,
                failed_count=result.failed_count,
                job_timeout_ms=settings.job_timeout_ms,
            )
        return result

    async def retry_job(self, job_id: UUID) -> EmbeddingJob:
        """Return a failed job to pending, keeping its attempts.

        Args:
            job_id: Job to retry.

        Returns:
            The job after the reset.

        Raises:
            JobNotFoundError: If the job does not exist.
            InvalidTransitionError: If the job is not failed.
            EmbedsyncError: If another job is already queued for the same
                target (JOB_CONFLICT).
        """
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    job = await get_job(session, job_id)
                    if job is None:
                        raise JobNotFoundError(str(job_id))
                    ensure_transition(job.status, JobStatus.pending, str(job_id))
                    if not await reset_failed_job(session, job_id):
                        # Lost a race with a concurrent reset
                        job = await get_job(session, job_id)
                        ensure_transition(job.status, JobStatus.pending, str(job_id))
        except IntegrityError as e:
            raise EmbedsyncError(
                f"Another job is already queued for the target of job {job_id}",
                JOB_CONFLICT,
            ) from e

        async with self.session_factory() as session:
            job = await get_job(session, job_id)

        self._logger.info(
            "embedding_job_retried",
            job_id=str(job_id),
            attempts=job.attempts,
        )
        return job

    # ------------------------------------------------------------------
    # Polling loop
    # ------------------------------------------------------------------

    async def run_forever(self, options: DrainOptions | None = None) -> None:
        """Drain repeatedly until ``stop()`` is called.

        Errors in individual drains are logged and do not stop the loop.
        The next drain starts immediately when the previous one claimed a
        full batch, otherwise after ``poll_interval`` seconds.
        """
        options = options or DrainOptions()
        self._stop_event.clear()
        self._logger.info("drain_worker_started", poll_interval=self.poll_interval)

        while not self._stop_event.is_set():
            delay = self.poll_interval
            try:
                result = await self.drain(options)
                if result.claimed_count >= (options.batch_size or self.batch_size):
                    delay = 0.0
            except asyncio.CancelledError:
                self._logger.info("drain_worker_cancelled")
                raise
            except Exception as e:
                self._logger.error("drain_worker_error", error=str(e), exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue

        self._logger.info("drain_worker_stopped")

    def stop(self) -> None:
        """Ask ``run_forever`` to exit after the current drain."""
        self._stop_event.set()
