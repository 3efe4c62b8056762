"""Pytest fixtures for integration tests.

Provides async database fixtures backed by a file SQLite database per test
(aiosqlite). The production store is PostgreSQL with pgvector; the queue's
claim and guard statements are plain SQL that SQLite executes with the same
semantics, so the drain and enqueue logic is exercised end to end here.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from embedsync.config import EmbedsyncConfig
from embedsync.database.models import Base, EmbeddingJob
from embedsync.queue.enqueuer import Enqueuer
from embedsync.queue.retry import RetryPolicy
from embedsync.queue.run_log import DrainRunRecorder
from embedsync.queue.service import EmbeddingQueueService
from embedsync.queue.worker import DrainWorker
from embedsync.settings import SettingsProvider
from embedsync.sources import StaticContentSource
from embedsync.web.app import create_app


class FakeGenerator:
    """Deterministic EmbeddingGenerator used in place of a provider.

    Vectors are derived from the text length so different content gives a
    different vector. Queued exceptions are raised by successive calls
    before any vector is produced.
    """

    def __init__(self, model_name: str = "fake-embed-v1", dimensions: int = 4) -> None:
        self.model_name = model_name
        self.dimensions = dimensions
        self.calls: list[str] = []
        self.errors: list[Exception] = []
        self.delay = 0.0

    async def generate(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            raise self.errors.pop(0)
        return [float(len(text) % 97) + i for i in range(self.dimensions)]


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Create a file-backed SQLite async engine with all queue tables.

    A file (rather than ``:memory:``) lets concurrent drains use separate
    connections to the same database.
    """
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'embedsync.db'}",
        poolclass=NullPool,
        echo=False,
    )

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def content_source() -> StaticContentSource:
    return StaticContentSource()


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def settings_provider(session_factory: async_sessionmaker[AsyncSession]) -> SettingsProvider:
    return SettingsProvider(session_factory)


@pytest.fixture
def enqueuer(
    session_factory: async_sessionmaker[AsyncSession],
    content_source: StaticContentSource,
    settings_provider: SettingsProvider,
) -> Enqueuer:
    return Enqueuer(session_factory, content_source, settings_provider=settings_provider)


@pytest.fixture
def worker(
    session_factory: async_sessionmaker[AsyncSession],
    generator: FakeGenerator,
    content_source: StaticContentSource,
    settings_provider: SettingsProvider,
) -> DrainWorker:
    """Drain worker whose retries are immediately eligible again."""
    return DrainWorker(
        session_factory,
        generator=generator,
        content_source=content_source,
        settings_provider=settings_provider,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0),
        worker_id="test-worker",
        batch_size=10,
        chunk_size=200,
        chunk_overlap=20,
        poll_interval=0.01,
    )


@pytest_asyncio.fixture
async def queue_service(
    session_factory: async_sessionmaker[AsyncSession],
    enqueuer: Enqueuer,
    worker: DrainWorker,
    settings_provider: SettingsProvider,
) -> AsyncGenerator[EmbeddingQueueService, None]:
    recorder = DrainRunRecorder(session_factory, worker_id="test-worker")
    worker.recorder = recorder
    service = EmbeddingQueueService(
        session_factory,
        enqueuer=enqueuer,
        worker=worker,
        settings_provider=settings_provider,
        recorder=recorder,
    )
    yield service
    await service.aclose()


@pytest_asyncio.fixture
async def async_client(
    queue_service: EmbeddingQueueService,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against an app wired to the test queue service."""
    app = create_app(EmbedsyncConfig(), queue_service=queue_service)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def set_job_fields(session_factory: async_sessionmaker[AsyncSession]):
    """Return a helper that overwrites job columns, bypassing the queue's guards."""

    async def _set(job_id, **values) -> None:
        async with session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(EmbeddingJob)
                    .where(EmbeddingJob.id == job_id)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )

    return _set
