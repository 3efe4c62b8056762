"""Database query functions for embedsync.

This module provides async query functions for all database entities:
- Job lookup, atomic claiming and guarded status transitions
- Active embedding hashes and embedding supersession
- Drain run audit records
- Runtime queue settings
"""

from embedsync.database.queries.drain_run import (
    create_drain_run,
    finish_drain_run,
    list_drain_runs,
)
from embedsync.database.queries.embedding import (
    get_active_hash,
    get_active_hash_map,
    get_embedding_stats,
    list_embeddings,
    replace_active_embedding,
)
from embedsync.database.queries.job import (
    claim_jobs,
    complete_job,
    fail_job,
    find_active_job,
    find_failed_job,
    find_stale_jobs,
    get_job,
    get_job_metrics,
    insert_job,
    list_jobs,
    refresh_active_job,
    release_job,
    reset_failed_job,
)
from embedsync.database.queries.setting import get_settings_map, upsert_setting

__all__ = [
    "create_drain_run",
    "finish_drain_run",
    "list_drain_runs",
    "get_active_hash",
    "get_active_hash_map",
    "get_embedding_stats",
    "list_embeddings",
    "replace_active_embedding",
    "claim_jobs",
    "complete_job",
    "fail_job",
    "find_active_job",
    "find_failed_job",
    "find_stale_jobs",
    "get_job",
    "get_job_metrics",
    "insert_job",
    "list_jobs",
    "refresh_active_job",
    "release_job",
    "reset_failed_job",
    "get_settings_map",
    "upsert_setting",
]
