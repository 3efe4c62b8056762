"""Embedding job state machine.

The lifecycle is ``pending -> processing -> {completed | failed}``. A
processing job may also return to ``pending`` (transient failure with retry
budget left, content replaced mid-flight, or an abandoned claim swept back).
``failed -> pending`` is the only way out of a terminal state and happens
through an explicit retry or a re-enqueue with new content.

The drain worker applies these transitions as guarded SQL updates; the
table here is the authoritative definition they follow, and the check used
for operator-initiated transitions.
"""

from __future__ import annotations

from embedsync.database.models.job import JobStatus
from embedsync.errors import EmbedsyncError


class InvalidTransitionError(EmbedsyncError):
    """Raised when an invalid state transition is attempted.

    Attributes:
        current: The current job status.
        target: The attempted target status.
        job_id: The ID of the job that failed to transition.
    """

    default_code = "INVALID_TRANSITION"

    def __init__(self, current: JobStatus, target: JobStatus, job_id: str | None = None):
        self.current = current
        self.target = target
        self.job_id = job_id
        msg = f"Invalid transition from {current.value} to {target.value}"
        if job_id:
            msg += f" for job {job_id}"
        super().__init__(msg)


# Authoritative state machine definition
VALID_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.pending: {JobStatus.processing},
    JobStatus.processing: {JobStatus.completed, JobStatus.failed, JobStatus.pending},
    JobStatus.completed: set(),  # Terminal state - a new job is created instead
    JobStatus.failed: {JobStatus.pending},
}


def validate_transition(current: JobStatus, target: JobStatus) -> bool:
    """Validate if a state transition is allowed.

    Args:
        current: Current job status.
        target: Target job status.

    Returns:
        True if the transition is valid according to VALID_TRANSITIONS.
    """
    return target in VALID_TRANSITIONS.get(current, set())


def ensure_transition(current: JobStatus, target: JobStatus, job_id: str | None = None) -> None:
    """Raise InvalidTransitionError unless ``current -> target`` is allowed."""
    if not validate_transition(current, target):
        raise InvalidTransitionError(current, target, job_id)
