"""Embedding job queue for embedsync.

Components:
    - Enqueuer: diff-aware, idempotent job upserts (single and bulk).
    - DrainWorker: atomic claiming, concurrent processing, retry and sweep.
    - RetryPolicy: attempts-bounded exponential backoff.
    - DrainRunRecorder: fire-and-forget drain audit records.
    - EmbeddingQueueService: structured facade for the API and CLI.
"""

from embedsync.queue.enqueuer import (
    BulkEnqueueResult,
    EnqueueOutcome,
    Enqueuer,
    EnqueueRequest,
    EnqueueResult,
)
from embedsync.queue.retry import RetryDecision, RetryPolicy
from embedsync.queue.run_log import DrainRunRecorder
from embedsync.queue.service import EmbeddingQueueService
from embedsync.queue.state_machine import (
    VALID_TRANSITIONS,
    InvalidTransitionError,
    validate_transition,
)
from embedsync.queue.worker import (
    DiffStrategy,
    DrainOptions,
    DrainResult,
    DrainWorker,
    SweepResult,
)

__all__ = [
    "BulkEnqueueResult",
    "EnqueueOutcome",
    "Enqueuer",
    "EnqueueRequest",
    "EnqueueResult",
    "RetryDecision",
    "RetryPolicy",
    "DrainRunRecorder",
    "EmbeddingQueueService",
    "VALID_TRANSITIONS",
    "InvalidTransitionError",
    "validate_transition",
    "DiffStrategy",
    "DrainOptions",
    "DrainResult",
    "DrainWorker",
    "SweepResult",
]
