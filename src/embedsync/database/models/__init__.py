"""SQLAlchemy ORM models for embedsync.

This module defines the job store, embedding store, drain-run audit, and
runtime settings tables.

All models use SQLAlchemy 2.0 declarative style with Mapped[] type annotations.
"""

from embedsync.database.models.base import Base, TimestampMixin
from embedsync.database.models.drain_run import DrainRun, DrainRunStatus
from embedsync.database.models.embedding import Embedding
from embedsync.database.models.job import (
    NON_TERMINAL_STATUSES,
    TERMINAL_STATUSES,
    EmbeddingJob,
    JobStatus,
)
from embedsync.database.models.setting import QueueSetting

__all__ = [
    "Base",
    "TimestampMixin",
    "EmbeddingJob",
    "JobStatus",
    "NON_TERMINAL_STATUSES",
    "TERMINAL_STATUSES",
    "Embedding",
    "DrainRun",
    "DrainRunStatus",
    "QueueSetting",
]
