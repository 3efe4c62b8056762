"""Integration tests for the diff-aware enqueuer.

Tests cover:
- Job creation, idempotent re-enqueue and in-place refresh
- Skipping content whose hash matches the active embedding
- Force flag handling
- Resetting failed jobs when new content arrives
- Request validation before anything is written
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from embedsync.database.models.job import JobStatus
from embedsync.database.queries.embedding import replace_active_embedding
from embedsync.database.queries.job import claim_jobs, fail_job, get_job, list_jobs
from embedsync.errors import (
    EMPTY_CONTENT,
    SOURCE_NOT_FOUND,
    UNKNOWN_FIELD,
    UNSUPPORTED_CONTENT_TYPE,
    EnqueueValidationError,
)
from embedsync.hashing import compute_content_hash
from embedsync.queue.enqueuer import Enqueuer, EnqueueOutcome, EnqueueRequest
from embedsync.sources import Post, StaticContentSource

ORG = "org-1"


def _request(**overrides) -> EnqueueRequest:
    data = {
        "organization_id": ORG,
        "source_table": "posts",
        "source_id": "p1",
    }
    data.update(overrides)
    return EnqueueRequest(**data)


async def _store_embedding(session_factory, content_hash: str, source_field: str = "document") -> None:
    async with session_factory() as session:
        async with session.begin():
            await replace_active_embedding(
                session,
                organization_id=ORG,
                source_table="posts",
                source_id="p1",
                source_field=source_field,
                chunks=[("text", [1.0, 0.0])],
                content_hash=content_hash,
                embedding_model="model-a",
            )


async def _all_jobs(session_factory: async_sessionmaker[AsyncSession]):
    async with session_factory() as session:
        jobs, _ = await list_jobs(session)
    return jobs


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_creates_job_from_content_source(
        self, enqueuer: Enqueuer, content_source: StaticContentSource, session_factory
    ) -> None:
        content_source.put(Post(id="p1", organization_id=ORG, title="Hello", content="World"))

        result = await enqueuer.enqueue(_request(priority=8))

        assert result.outcome == EnqueueOutcome.created
        assert result.reason == "job_created"
        assert result.content_hash == compute_content_hash("Hello\n\nWorld")
        async with session_factory() as session:
            job = await get_job(session, result.job_id)
        assert job.priority == 8
        assert job.status == JobStatus.pending
        assert job.content_text is None

    @pytest.mark.asyncio
    async def test_default_priority(self, session_factory, content_source) -> None:
        enqueuer = Enqueuer(session_factory, content_source, default_priority=4)

        result = await enqueuer.enqueue(_request(content_text="Hello"))

        async with session_factory() as session:
            assert (await get_job(session, result.job_id)).priority == 4

    @pytest.mark.asyncio
    async def test_same_content_twice_is_idempotent(self, enqueuer: Enqueuer, session_factory) -> None:
        first = await enqueuer.enqueue(_request(content_text="Hello"))
        second = await enqueuer.enqueue(_request(content_text="Hello"))

        assert second.outcome == EnqueueOutcome.skipped
        assert second.reason == "job_already_queued"
        assert second.job_id == first.job_id
        assert len(await _all_jobs(session_factory)) == 1

    @pytest.mark.asyncio
    async def test_changed_content_refreshes_pending_job(
        self, enqueuer: Enqueuer, session_factory
    ) -> None:
        first = await enqueuer.enqueue(_request(content_text="Hello", priority=2))
        second = await enqueuer.enqueue(_request(content_text="Hello world"))

        assert second.outcome == EnqueueOutcome.updated
        assert second.reason == "job_refreshed"
        assert second.job_id == first.job_id
        [job] = await _all_jobs(session_factory)
        assert job.content_hash == compute_content_hash("Hello world")
        assert job.content_text == "Hello world"
        # Priority is kept when the new request does not name one
        assert job.priority == 2

    @pytest.mark.asyncio
    async def test_unchanged_content_is_skipped(self, enqueuer: Enqueuer, session_factory) -> None:
        await _store_embedding(session_factory, compute_content_hash("Hello"))

        result = await enqueuer.enqueue(_request(content_text="  Hello \n"))

        assert result.outcome == EnqueueOutcome.skipped
        assert result.reason == "content_unchanged"
        assert result.job_id is None
        assert await _all_jobs(session_factory) == []

    @pytest.mark.asyncio
    async def test_force_enqueues_unchanged_content(self, enqueuer: Enqueuer, session_factory) -> None:
        await _store_embedding(session_factory, compute_content_hash("Hello"))

        result = await enqueuer.enqueue(_request(content_text="Hello", force=True))

        assert result.outcome == EnqueueOutcome.created
        [job] = await _all_jobs(session_factory)
        assert job.force is True

    @pytest.mark.asyncio
    async def test_force_upgrades_queued_job(self, enqueuer: Enqueuer, session_factory) -> None:
        await enqueuer.enqueue(_request(content_text="Hello"))

        result = await enqueuer.enqueue(_request(content_text="Hello", force=True))

        assert result.outcome == EnqueueOutcome.updated
        [job] = await _all_jobs(session_factory)
        assert job.force is True

    @pytest.mark.asyncio
    async def test_new_content_resets_failed_job(self, enqueuer: Enqueuer, session_factory) -> None:
        created = await enqueuer.enqueue(_request(content_text="Hello"))
        async with session_factory() as session:
            async with session.begin():
                await claim_jobs(session, "tok", limit=1)
                await fail_job(
                    session,
                    created.job_id,
                    "tok",
                    status=JobStatus.failed,
                    attempts=3,
                    error_code="GENERATOR_ERROR",
                    last_error="GENERATOR_ERROR: down",
                )

        result = await enqueuer.enqueue(_request(content_text="Hello again"))

        assert result.outcome == EnqueueOutcome.updated
        assert result.reason == "failed_job_reset"
        assert result.job_id == created.job_id
        [job] = await _all_jobs(session_factory)
        assert job.status == JobStatus.pending
        assert job.content_hash == compute_content_hash("Hello again")

    @pytest.mark.asyncio
    async def test_fields_are_separate_targets(self, enqueuer: Enqueuer, session_factory) -> None:
        await enqueuer.enqueue(_request(source_field="title", content_text="Hello"))
        await enqueuer.enqueue(_request(source_field="content", content_text="Hello"))

        assert len(await _all_jobs(session_factory)) == 2

    @pytest.mark.asyncio
    async def test_unknown_table_with_snapshot_is_accepted(self, enqueuer: Enqueuer) -> None:
        result = await enqueuer.enqueue(_request(source_table="widgets", content_text="A widget"))
        assert result.outcome == EnqueueOutcome.created


class TestEnqueueValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides,code",
        [
            ({"content_text": "   "}, EMPTY_CONTENT),
            ({"source_field": "author", "content_text": "x"}, UNKNOWN_FIELD),
            ({"source_table": "widgets"}, UNSUPPORTED_CONTENT_TYPE),
            ({}, SOURCE_NOT_FOUND),
        ],
    )
    async def test_rejected_before_write(
        self, enqueuer: Enqueuer, session_factory, overrides: dict, code: str
    ) -> None:
        with pytest.raises(EnqueueValidationError) as exc_info:
            await enqueuer.enqueue(_request(**overrides))

        assert exc_info.value.code == code
        assert await _all_jobs(session_factory) == []

    @pytest.mark.asyncio
    async def test_record_without_text(
        self, enqueuer: Enqueuer, content_source: StaticContentSource
    ) -> None:
        content_source.put(Post(id="p1", organization_id=ORG))

        with pytest.raises(EnqueueValidationError) as exc_info:
            await enqueuer.enqueue(_request())

        assert exc_info.value.code == EMPTY_CONTENT

    @pytest.mark.parametrize(
        "overrides",
        [{"organization_id": " "}, {"source_id": ""}, {"priority": 0}, {"priority": 11}],
    )
    def test_request_model_validation(self, overrides: dict) -> None:
        with pytest.raises(ValidationError):
            _request(**overrides)
