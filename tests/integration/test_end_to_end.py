"""End-to-end scenario: a record is saved, embedded, edited and re-embedded."""

from __future__ import annotations

import pytest

from embedsync.database.models.job import JobStatus
from embedsync.database.queries.embedding import get_active_hash, list_embeddings
from embedsync.hashing import compute_content_hash
from embedsync.queue.enqueuer import EnqueueOutcome, EnqueueRequest
from embedsync.queue.service import EmbeddingQueueService
from embedsync.sources import Post


@pytest.mark.asyncio
async def test_edit_cycle(queue_service: EmbeddingQueueService, content_source, session_factory) -> None:
    request = EnqueueRequest(organization_id="org-1", source_table="posts", source_id="p1")

    # First save
    content_source.put(Post(id="p1", organization_id="org-1", title="hello"))
    first = await queue_service.enqueue(request)
    drained = await queue_service.drain()
    assert first.outcome == EnqueueOutcome.created
    assert drained.processed_count == 1

    # Saving again without changes does nothing
    unchanged = await queue_service.enqueue(request)
    assert unchanged.outcome == EnqueueOutcome.skipped
    assert unchanged.reason == "content_unchanged"
    assert unchanged.job_id is None

    # Edit
    content_source.put(Post(id="p1", organization_id="org-1", title="hello world"))
    second = await queue_service.enqueue(request)
    assert second.outcome == EnqueueOutcome.created
    assert second.job_id != first.job_id
    drained = await queue_service.drain()
    assert drained.processed_count == 1

    async with session_factory() as session:
        active_hash = await get_active_hash(session, "org-1", "posts", "p1", "document")
        active, _ = await list_embeddings(session, source_id="p1")
        inactive, _ = await list_embeddings(session, source_id="p1", is_active=False)
    assert active_hash == compute_content_hash("hello world")
    assert [row.chunk_text for row in active] == ["hello world"]
    assert [row.chunk_text for row in inactive] == ["hello"]

    jobs = await queue_service.list_jobs(organization_id="org-1")
    assert jobs.total == 2
    assert {job.status for job in jobs.items} == {JobStatus.completed}

    metrics = await queue_service.get_metrics("org-1")
    assert metrics.completed == 2
    assert metrics.success_rate == 100.0
