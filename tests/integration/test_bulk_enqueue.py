"""Integration tests for bulk, diff-driven enqueueing."""

from __future__ import annotations

import pytest

from embedsync.database.queries.embedding import replace_active_embedding
from embedsync.database.queries.job import list_jobs
from embedsync.errors import UNSUPPORTED_CONTENT_TYPE
from embedsync.queue.enqueuer import Enqueuer
from embedsync.settings import QueueSettings, SettingsProvider
from embedsync.sources import Faq, Post, StaticContentSource

ORG = "org-1"


async def _embed(session_factory, record, field: str = "document") -> None:
    async with session_factory() as session:
        async with session.begin():
            await replace_active_embedding(
                session,
                organization_id=record.organization_id,
                source_table=record.source_table,
                source_id=record.id,
                source_field=field,
                chunks=[("text", [1.0, 0.0])],
                content_hash=record.hash_for(field),
                embedding_model="model-a",
            )


@pytest.fixture
def posts(content_source: StaticContentSource) -> list[Post]:
    records = [
        Post(id=f"p{i}", organization_id=ORG, title=f"Post {i}", content=f"Body {i}")
        for i in range(10)
    ]
    for record in records:
        content_source.put(record)
    return records


async def _jobs(session_factory):
    async with session_factory() as session:
        jobs, _ = await list_jobs(session, limit=500)
    return jobs


@pytest.mark.asyncio
async def test_only_changed_records_enqueued(
    enqueuer: Enqueuer, session_factory, posts: list[Post]
) -> None:
    for record in posts[:8]:
        await _embed(session_factory, record)

    result = await enqueuer.bulk_enqueue(ORG, ["posts"], settings=QueueSettings())

    assert result.total_targets == 10
    assert result.diff_count == 2
    assert result.diff_rate_percent == 20.0
    assert result.is_full_rebuild is False
    assert result.created == 2
    assert result.skipped == 8
    assert sorted(job.source_id for job in await _jobs(session_factory)) == ["p8", "p9"]


@pytest.mark.asyncio
async def test_rebuild_when_threshold_reached(
    enqueuer: Enqueuer, session_factory, posts: list[Post]
) -> None:
    for record in posts[:6]:
        await _embed(session_factory, record)

    result = await enqueuer.bulk_enqueue(
        ORG, ["posts"], settings=QueueSettings(diff_rebuild_threshold_percent=40.0)
    )

    assert result.diff_rate_percent == 40.0
    assert result.is_full_rebuild is True
    assert result.created == 10
    assert result.skipped == 0
    jobs = await _jobs(session_factory)
    assert len(jobs) == 10
    assert all(job.force for job in jobs)


@pytest.mark.asyncio
async def test_rebuild_can_be_disabled(
    enqueuer: Enqueuer, session_factory, posts: list[Post]
) -> None:
    result = await enqueuer.bulk_enqueue(ORG, ["posts"], allow_full_rebuild=False)

    assert result.diff_rate_percent == 100.0
    assert result.is_full_rebuild is False
    assert result.created == 10


@pytest.mark.asyncio
async def test_threshold_read_from_settings_provider(
    enqueuer: Enqueuer,
    settings_provider: SettingsProvider,
    session_factory,
    posts: list[Post],
) -> None:
    for record in posts[:9]:
        await _embed(session_factory, record)
    await settings_provider.update(diff_rebuild_threshold_percent=5.0)

    result = await enqueuer.bulk_enqueue(ORG, ["posts"])

    assert result.threshold_percent == 5.0
    assert result.is_full_rebuild is True


@pytest.mark.asyncio
async def test_per_field_targets(
    enqueuer: Enqueuer, content_source: StaticContentSource, session_factory
) -> None:
    faq = Faq(id="f1", organization_id=ORG, question="Why?", answer="Because.")
    content_source.put(faq)
    await _embed(session_factory, faq, field="question")

    result = await enqueuer.bulk_enqueue(
        ORG, ["faqs"], per_field=True, allow_full_rebuild=False
    )

    assert result.total_targets == 2
    assert result.diff_count == 1
    [job] = await _jobs(session_factory)
    assert job.source_field == "answer"


@pytest.mark.asyncio
async def test_unknown_type_reported(enqueuer: Enqueuer, posts: list[Post]) -> None:
    result = await enqueuer.bulk_enqueue(ORG, ["posts", "widgets"], allow_full_rebuild=False)

    assert result.total_targets == 10
    assert result.errors == [
        {
            "source_table": "widgets",
            "code": UNSUPPORTED_CONTENT_TYPE,
            "error": "Unsupported content type 'widgets'",
        }
    ]


@pytest.mark.asyncio
async def test_empty_records_excluded(
    enqueuer: Enqueuer, content_source: StaticContentSource
) -> None:
    content_source.put(Post(id="empty", organization_id=ORG))
    content_source.put(Post(id="full", organization_id=ORG, title="Title"))

    result = await enqueuer.bulk_enqueue(ORG, ["posts"], allow_full_rebuild=False)

    assert result.total_targets == 1
    assert result.created == 1


@pytest.mark.asyncio
async def test_repeat_bulk_enqueue_is_idempotent(
    enqueuer: Enqueuer, session_factory, posts: list[Post]
) -> None:
    await enqueuer.bulk_enqueue(ORG, ["posts"], allow_full_rebuild=False)
    second = await enqueuer.bulk_enqueue(ORG, ["posts"], allow_full_rebuild=False)

    assert second.created == 0
    assert second.skipped == 10
    assert len(await _jobs(session_factory)) == 10
