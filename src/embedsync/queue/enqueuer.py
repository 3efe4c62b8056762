"""Diff-aware enqueueing of embedding jobs.

The Enqueuer turns "this record may have changed" into at most one pending
job per target. It hashes the embeddable text and compares it with the
non-terminal job and the active embedding for the same target, so repeated
saves of identical content write nothing and bursts of edits collapse into
a single pending job.

Each decision and its write run in one transaction. The partial unique
index on non-terminal jobs settles the race between two concurrent first
enqueues of a target: the loser gets an IntegrityError and re-runs the
decision, which then finds the winner's job.
"""

from __future__ import annotations

import enum
from collections.abc import Sequence
from typing import Any
from uuid import UUID

import structlog
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from embedsync.database.connection import STORE_ERRORS
from embedsync.database.queries.embedding import get_active_hash, get_active_hash_map
from embedsync.database.queries.job import (
    find_active_job,
    find_failed_job,
    insert_job,
    refresh_active_job,
    reset_failed_job,
)
from embedsync.errors import (
    EMPTY_CONTENT,
    SOURCE_NOT_FOUND,
    STORE_ERROR,
    UNKNOWN_FIELD,
    UNSUPPORTED_CONTENT_TYPE,
    EmbedsyncError,
    EnqueueValidationError,
    TransientJobError,
)
from embedsync.hashing import compute_content_hash, normalize_text
from embedsync.settings import QueueSettings, SettingsProvider
from embedsync.sources import (
    CONTENT_TYPES,
    DOCUMENT_FIELD,
    BaseContent,
    ContentSource,
    is_valid_field,
)

logger = structlog.get_logger(__name__)

_UPSERT_ATTEMPTS = 2


class EnqueueOutcome(str, enum.Enum):
    """What an enqueue did to the job store."""

    created = "created"
    updated = "updated"
    skipped = "skipped"


class EnqueueRequest(BaseModel):
    """Request to (re)embed one field of one source record.

    Attributes:
        organization_id: Owning organization.
        source_table: Content type.
        source_id: Source record identifier.
        source_field: Field to embed, ``document`` for the whole record.
        content_text: Explicit text; when omitted the current record is
            fetched from the content source and hashed.
        priority: 1-10, higher drains first; defaults to the configured
            mid-range value.
        force: Enqueue (and later embed) even if the content is unchanged.
    """

    organization_id: str = Field(min_length=1)
    source_table: str = Field(min_length=1)
    source_id: str = Field(min_length=1)
    source_field: str = Field(default=DOCUMENT_FIELD, min_length=1)
    content_text: str | None = None
    priority: int | None = Field(default=None, ge=1, le=10)
    force: bool = False

    @field_validator("organization_id", "source_table", "source_id", "source_field")
    @classmethod
    def validate_identifier(cls, v: str) -> str:
        """Reject identifiers that are only whitespace."""
        stripped = v.strip()
        if not stripped:
            raise ValueError("must not be blank")
        return stripped


class EnqueueResult(BaseModel):
    """Outcome of a single enqueue.

    Attributes:
        job_id: The created, updated or already pending job; None when the
            request was skipped because the active embedding is current.
        outcome: created, updated or skipped.
        content_hash: Hash of the text that was evaluated.
        reason: Short machine-friendly explanation.
    """

    job_id: UUID | None = None
    outcome: EnqueueOutcome
    content_hash: str
    reason: str = ""


class BulkEnqueueResult(BaseModel):
    """Aggregate outcome of a bulk enqueue.

    Attributes:
        organization_id: Organization that was scanned.
        content_types: Content types that were scanned.
        total_targets: Embeddable targets found.
        diff_count: Targets whose hash differs from the active embedding.
        diff_rate_percent: ``diff_count / total_targets`` in percent.
        threshold_percent: Rebuild threshold in effect.
        is_full_rebuild: Whether every target was enqueued with force.
        created: Jobs created.
        updated: Jobs updated in place.
        skipped: Targets that needed no new job.
        errors: Per-target or per-type failures.
    """

    organization_id: str
    content_types: list[str]
    total_targets: int = 0
    diff_count: int = 0
    diff_rate_percent: float = 0.0
    threshold_percent: float = 0.0
    is_full_rebuild: bool = False
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[dict[str, Any]] = Field(default_factory=list)


class _Target(BaseModel):
    source_table: str
    source_id: str
    source_field: str
    content_hash: str


class _GuardLost(Exception):
    """A guarded write found the row changed since it was read."""


class Enqueuer:
    """Idempotent, diff-aware job upserts.

    Args:
        session_factory: Factory for job store sessions.
        content_source: Source used when a request carries no text.
        default_priority: Priority used when a request omits one.
        settings_provider: Provider for the bulk rebuild threshold.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        content_source: ContentSource,
        default_priority: int = 5,
        settings_provider: SettingsProvider | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._content_source = content_source
        self._default_priority = default_priority
        self._settings_provider = settings_provider

    async def _resolve_text(self, request: EnqueueRequest) -> str:
        known_table = request.source_table in CONTENT_TYPES

        if known_table and not is_valid_field(request.source_table, request.source_field):
            raise EnqueueValidationError(
                f"{request.source_field!r} is not an embeddable field of "
                f"{request.source_table}",
                UNKNOWN_FIELD,
            )

        if request.content_text is not None:
            return request.content_text

        if not known_table:
            raise EnqueueValidationError(
                f"Unsupported content type {request.source_table!r}; "
                "supply content_text explicitly",
                UNSUPPORTED_CONTENT_TYPE,
            )

        record = await self._content_source.fetch(
            request.organization_id, request.source_table, request.source_id
        )
        if record is None:
            raise EnqueueValidationError(
                f"{request.source_table}/{request.source_id} not found",
                SOURCE_NOT_FOUND,
            )
        return record.text_for(request.source_field)

    async def enqueue(self, request: EnqueueRequest) -> EnqueueResult:
        """Create, update or skip the job for one target.

        Args:
            request: Validated enqueue request.

        Returns:
            EnqueueResult describing what was written.

        Raises:
            EnqueueValidationError: If the content cannot be resolved or is
                empty.
            TransientJobError: If the job store is unavailable (STORE_ERROR).
        """
        text = await self._resolve_text(request)
        if not normalize_text(text):
            raise EnqueueValidationError(
                f"{request.source_table}/{request.source_id} has no embeddable text",
                EMPTY_CONTENT,
            )

        target = _Target(
            source_table=request.source_table,
            source_id=request.source_id,
            source_field=request.source_field,
            content_hash=compute_content_hash(text),
        )
        return await self._upsert(
            organization_id=request.organization_id,
            target=target,
            priority=request.priority,
            content_text=request.content_text,
            force=request.force,
        )

    async def _upsert(
        self,
        organization_id: str,
        target: _Target,
        priority: int | None,
        content_text: str | None,
        force: bool,
    ) -> EnqueueResult:
        for attempt in range(1, _UPSERT_ATTEMPTS + 1):
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        result = await self._decide_and_write(
                            session, organization_id, target, priority, content_text, force
                        )
            except (IntegrityError, _GuardLost) as e:
                if attempt < _UPSERT_ATTEMPTS:
                    logger.info(
                        "embedding_enqueue_conflict_retry",
                        organization_id=organization_id,
                        source_table=target.source_table,
                        source_id=target.source_id,
                        error_type=type(e).__name__,
                    )
                    continue
                raise TransientJobError(
                    f"Concurrent enqueue for {target.source_table}/{target.source_id} "
                    "did not settle",
                    STORE_ERROR,
                ) from e
            except STORE_ERRORS as e:
                logger.error(
                    "embedding_enqueue_store_error",
                    organization_id=organization_id,
                    source_table=target.source_table,
                    source_id=target.source_id,
                    error=str(e),
                )
                raise TransientJobError(f"Job store unavailable: {e}", STORE_ERROR) from e

            logger.info(
                "embedding_job_enqueued",
                organization_id=organization_id,
                source_table=target.source_table,
                source_field=target.source_field,
                source_id=target.source_id,
                outcome=result.outcome.value,
                reason=result.reason,
                job_id=str(result.job_id) if result.job_id else None,
            )
            return result

        raise TransientJobError("Unexpected enqueue retry loop exit", STORE_ERROR)

    async def _decide_and_write(
        self,
        session: AsyncSession,
        organization_id: str,
        target: _Target,
        priority: int | None,
        content_text: str | None,
        force: bool,
    ) -> EnqueueResult:
        key = (organization_id, target.source_table, target.source_field, target.source_id)
        content_hash = target.content_hash

        active_job = await find_active_job(session, *key)
        if active_job is not None:
            if active_job.content_hash == content_hash and (not force or active_job.force):
                return EnqueueResult(
                    job_id=active_job.id,
                    outcome=EnqueueOutcome.skipped,
                    content_hash=content_hash,
                    reason="job_already_queued",
                )
            updated = await refresh_active_job(
                session,
                active_job.id,
                observed_hash=active_job.content_hash,
                content_hash=content_hash,
                priority=priority if priority is not None else active_job.priority,
                content_text=content_text,
                force=force,
            )
            if not updated:
                raise _GuardLost()
            return EnqueueResult(
                job_id=active_job.id,
                outcome=EnqueueOutcome.updated,
                content_hash=content_hash,
                reason="job_refreshed",
            )

        if not force:
            active_hash = await get_active_hash(
                session,
                organization_id,
                target.source_table,
                target.source_id,
                target.source_field,
            )
            if active_hash == content_hash:
                return EnqueueResult(
                    outcome=EnqueueOutcome.skipped,
                    content_hash=content_hash,
                    reason="content_unchanged",
                )

        failed_job = await find_failed_job(session, *key)
        if failed_job is not None:
            reset = await reset_failed_job(
                session,
                failed_job.id,
                content_hash=content_hash,
                priority=priority if priority is not None else failed_job.priority,
                content_text=content_text,
                force=force,
            )
            if not reset:
                raise _GuardLost()
            return EnqueueResult(
                job_id=failed_job.id,
                outcome=EnqueueOutcome.updated,
                content_hash=content_hash,
                reason="failed_job_reset",
            )

        job = await insert_job(
            session,
            *key,
            content_hash=content_hash,
            priority=priority if priority is not None else self._default_priority,
            content_text=content_text,
            force=force,
        )
        return EnqueueResult(
            job_id=job.id,
            outcome=EnqueueOutcome.created,
            content_hash=content_hash,
            reason="job_created",
        )

    async def _collect_targets(
        self,
        organization_id: str,
        source_table: str,
        per_field: bool,
    ) -> tuple[list[_Target], dict[tuple[str, str], str]]:
        records: Sequence[BaseContent] = await self._content_source.list_records(
            organization_id, source_table
        )
        fields = CONTENT_TYPES[source_table].embeddable_fields if per_field else (DOCUMENT_FIELD,)

        targets = []
        for record in records:
            for field in fields:
                text = record.text_for(field)
                if not normalize_text(text):
                    continue
                targets.append(
                    _Target(
                        source_table=source_table,
                        source_id=record.id,
                        source_field=field,
                        content_hash=compute_content_hash(text),
                    )
                )

        async with self._session_factory() as session:
            hash_map = await get_active_hash_map(session, organization_id, source_table)

        return targets, hash_map

    async def bulk_enqueue(
        self,
        organization_id: str,
        content_types: Sequence[str],
        priority: int | None = None,
        per_field: bool = False,
        allow_full_rebuild: bool = True,
        settings: QueueSettings | None = None,
    ) -> BulkEnqueueResult:
        """Enqueue every changed record of the given content types.

        When the share of targets whose hash differs from the active
        embedding is below the rebuild threshold only those targets are
        enqueued. At or above it, and if ``allow_full_rebuild`` is set,
        every target is enqueued with ``force`` so the whole set is
        re-embedded.

        Args:
            organization_id: Organization to scan.
            content_types: Content types to scan.
            priority: Priority for every job (default: configured default).
            per_field: One target per embeddable field instead of one
                composite ``document`` target per record.
            allow_full_rebuild: Permit the full rebuild branch.
            settings: Settings snapshot; loaded from the provider if omitted.

        Returns:
            BulkEnqueueResult with the diff statistics and outcome counts.
        """
        if settings is None:
            settings = (
                await self._settings_provider.load()
                if self._settings_provider is not None
                else QueueSettings()
            )

        result = BulkEnqueueResult(
            organization_id=organization_id,
            content_types=list(content_types),
            threshold_percent=settings.diff_rebuild_threshold_percent,
        )

        all_targets: list[_Target] = []
        differing: list[_Target] = []
        for source_table in content_types:
            if source_table not in CONTENT_TYPES:
                result.errors.append(
                    {
                        "source_table": source_table,
                        "code": UNSUPPORTED_CONTENT_TYPE,
                        "error": f"Unsupported content type {source_table!r}",
                    }
                )
                continue
            try:
                targets, hash_map = await self._collect_targets(
                    organization_id, source_table, per_field
                )
            except (EmbedsyncError, *STORE_ERRORS) as e:
                logger.error(
                    "bulk_enqueue_scan_failed",
                    organization_id=organization_id,
                    source_table=source_table,
                    error=str(e),
                )
                result.errors.append(
                    {
                        "source_table": source_table,
                        "code": getattr(e, "code", STORE_ERROR),
                        "error": str(e),
                    }
                )
                continue

            all_targets.extend(targets)
            differing.extend(
                target
                for target in targets
                if hash_map.get((target.source_id, target.source_field)) != target.content_hash
            )

        result.total_targets = len(all_targets)
        result.diff_count = len(differing)
        if all_targets:
            result.diff_rate_percent = round(len(differing) / len(all_targets) * 100, 2)

        result.is_full_rebuild = (
            allow_full_rebuild
            and bool(all_targets)
            and result.diff_rate_percent >= settings.diff_rebuild_threshold_percent
        )
        to_enqueue = all_targets if result.is_full_rebuild else differing
        result.skipped = len(all_targets) - len(to_enqueue)

        for target in to_enqueue:
            try:
                outcome = await self._upsert(
                    organization_id=organization_id,
                    target=target,
                    priority=priority,
                    content_text=None,
                    force=result.is_full_rebuild,
                )
            except EmbedsyncError as e:
                result.errors.append(
                    {
                        "source_table": target.source_table,
                        "source_id": target.source_id,
                        "source_field": target.source_field,
                        "code": e.code,
                        "error": str(e),
                    }
                )
                continue

            if outcome.outcome == EnqueueOutcome.created:
                result.created += 1
            elif outcome.outcome == EnqueueOutcome.updated:
                result.updated += 1
            else:
                result.skipped += 1

        logger.info(
            "bulk_enqueue_completed",
            organization_id=organization_id,
            content_types=list(content_types),
            total_targets=result.total_targets,
            diff_count=result.diff_count,
            diff_rate_percent=result.diff_rate_percent,
            threshold_percent=result.threshold_percent,
            is_full_rebuild=result.is_full_rebuild,
            created=result.created,
            updated=result.updated,
            skipped=result.skipped,
            error_count=len(result.errors),
        )
        return result
