"""Database layer for embedsync.

This module handles database connections, session management, and provides
the SQLAlchemy async engine configuration for PostgreSQL with pgvector.

Public API:
    get_engine: Create an AsyncEngine from DatabaseConfig.
    get_session_factory: Create an async_sessionmaker from an engine.
    Base: SQLAlchemy declarative base for all models.
"""

from embedsync.database.connection import get_engine, get_session_factory
from embedsync.database.models import (
    Base,
    DrainRun,
    DrainRunStatus,
    Embedding,
    EmbeddingJob,
    JobStatus,
    QueueSetting,
    TimestampMixin,
)

__all__ = [
    "get_engine",
    "get_session_factory",
    "Base",
    "TimestampMixin",
    "EmbeddingJob",
    "JobStatus",
    "Embedding",
    "DrainRun",
    "DrainRunStatus",
    "QueueSetting",
]
