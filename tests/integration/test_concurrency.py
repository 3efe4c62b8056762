"""Integration tests for concurrent drains.

Several drains against the same job table, each with its own claim token,
must never process the same job twice.
"""

from __future__ import annotations

import asyncio
from collections import Counter

import pytest

from embedsync.database.models.job import JobStatus
from embedsync.database.queries.job import list_jobs
from embedsync.queue.enqueuer import Enqueuer, EnqueueRequest
from embedsync.queue.retry import RetryPolicy
from embedsync.queue.worker import DrainOptions, DrainWorker
from embedsync.sources import Post, StaticContentSource

JOB_COUNT = 12


@pytest.mark.asyncio
async def test_parallel_drains_claim_each_job_once(
    session_factory,
    enqueuer: Enqueuer,
    content_source: StaticContentSource,
    generator,
    settings_provider,
) -> None:
    for i in range(JOB_COUNT):
        content_source.put(Post(id=f"p{i}", organization_id="org-1", title=f"Post number {i}"))
        await enqueuer.enqueue(
            EnqueueRequest(organization_id="org-1", source_table="posts", source_id=f"p{i}")
        )
    generator.delay = 0.01

    workers = [
        DrainWorker(
            session_factory,
            generator=generator,
            content_source=content_source,
            settings_provider=settings_provider,
            retry_policy=RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0),
            worker_id=f"worker-{n}",
        )
        for n in range(4)
    ]

    results = await asyncio.gather(*(w.drain(DrainOptions(batch_size=5)) for w in workers))

    assert sum(r.claimed_count for r in results) == JOB_COUNT
    assert sum(r.processed_count for r in results) == JOB_COUNT
    assert Counter(generator.calls).most_common(1)[0][1] == 1
    async with session_factory() as session:
        jobs, total = await list_jobs(session, status_filter=JobStatus.completed, limit=100)
    assert total == JOB_COUNT


@pytest.mark.asyncio
async def test_concurrent_enqueues_keep_one_active_job(
    session_factory,
    enqueuer: Enqueuer,
    content_source: StaticContentSource,
) -> None:
    content_source.put(Post(id="p1", organization_id="org-1", title="Hello"))
    request = EnqueueRequest(organization_id="org-1", source_table="posts", source_id="p1")

    results = await asyncio.gather(*(enqueuer.enqueue(request) for _ in range(5)))

    assert len({r.job_id for r in results}) == 1
    async with session_factory() as session:
        _, total = await list_jobs(session, source_id="p1")
    assert total == 1


@pytest.mark.asyncio
async def test_live_drain_keeps_waiting_claims(
    session_factory,
    enqueuer: Enqueuer,
    content_source: StaticContentSource,
    generator,
    settings_provider,
) -> None:
    # Jobs queued behind a single slot wait longer than the timeout; a second
    # drain sweeping meanwhile must not treat them as abandoned.
    for i in range(6):
        content_source.put(Post(id=f"p{i}", organization_id="org-1", title=f"Post {i}"))
        await enqueuer.enqueue(
            EnqueueRequest(organization_id="org-1", source_table="posts", source_id=f"p{i}")
        )
    await settings_provider.update(max_concurrent_jobs=1, job_timeout_ms=400)
    generator.delay = 0.15

    def make_worker(name: str) -> DrainWorker:
        return DrainWorker(
            session_factory,
            generator=generator,
            content_source=content_source,
            settings_provider=settings_provider,
            retry_policy=RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0),
            worker_id=name,
        )

    async def late_drain():
        await asyncio.sleep(0.5)
        return await make_worker("worker-b").drain(DrainOptions(batch_size=6))

    first, second = await asyncio.gather(
        make_worker("worker-a").drain(DrainOptions(batch_size=6)),
        late_drain(),
    )

    assert first.claimed_count == 6
    assert first.processed_count == 6
    assert second.reclaimed_count == 0
    assert second.claimed_count == 0
    assert set(Counter(generator.calls).values()) == {1}
    async with session_factory() as session:
        jobs, total = await list_jobs(session, limit=100)
    assert total == 6
    assert all(job.status == JobStatus.completed for job in jobs)
    assert all(job.attempts == 0 for job in jobs)
