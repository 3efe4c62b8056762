"""Retry policy for failed embedding jobs.

Transient failures consume one attempt and are rescheduled with exponential
backoff until ``max_attempts`` is reached, at which point the job is
terminally failed. Permanent failures are terminal immediately and leave the
attempt counter untouched.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from pydantic import BaseModel, Field

from embedsync.database.models.job import JobStatus
from embedsync.errors import EmbedsyncError, PermanentJobError


class RetryDecision(BaseModel):
    """Decision on what to do with a failed job.

    Attributes:
        should_retry: Whether the job goes back to pending.
        status: Status to write.
        attempts: Attempts value to write.
        max_attempts: Configured attempt limit.
        delay_seconds: Backoff before the job is eligible again.
        error_code: Code persisted to ``error_code``.
        last_error: Diagnostic persisted to ``last_error``.
        reason: Human-readable explanation of the decision.
    """

    should_retry: bool = Field(default=False)
    status: JobStatus
    attempts: int
    max_attempts: int
    delay_seconds: float = Field(default=0.0)
    error_code: str
    last_error: str
    reason: str = Field(default="")

    def scheduled_at(self, now: datetime) -> datetime:
        """Return the next eligibility time relative to ``now``."""
        return now + timedelta(seconds=self.delay_seconds)


class RetryPolicy:
    """Attempts-bounded retry with capped exponential backoff.

    The delay after the n-th failed attempt is
    ``min(base_delay * 2**(n - 1), max_delay)``.

    Attributes:
        max_attempts: Attempts allowed before a job is terminal.
        base_delay: Delay in seconds after the first failure.
        max_delay: Maximum delay cap in seconds.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 5.0,
        max_delay: float = 300.0,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay

    def backoff(self, attempts: int) -> float:
        """Delay in seconds after ``attempts`` failed attempts."""
        if attempts < 1:
            return 0.0
        return min(self.base_delay * (2 ** (attempts - 1)), self.max_delay)

    def decide(self, attempts: int, error: EmbedsyncError) -> RetryDecision:
        """Decide the outcome of a failure.

        Args:
            attempts: Attempts already consumed before this failure.
            error: Classified failure.

        Returns:
            RetryDecision with the status, attempts and delay to persist.
        """
        common = {
            "max_attempts": self.max_attempts,
            "error_code": error.code,
            "last_error": error.describe(),
        }

        if isinstance(error, PermanentJobError):
            return RetryDecision(
                should_retry=False,
                status=JobStatus.failed,
                attempts=attempts,
                reason=f"Permanent failure ({error.code})",
                **common,
            )

        new_attempts = attempts + 1
        if new_attempts >= self.max_attempts:
            return RetryDecision(
                should_retry=False,
                status=JobStatus.failed,
                attempts=new_attempts,
                reason=f"Max attempts exhausted ({new_attempts}/{self.max_attempts})",
                **common,
            )

        delay = self.backoff(new_attempts)
        return RetryDecision(
            should_retry=True,
            status=JobStatus.pending,
            attempts=new_attempts,
            delay_seconds=delay,
            reason=f"Attempt {new_attempts}/{self.max_attempts} failed, retry after {delay:.1f}s",
            **common,
        )
