"""Unit tests for the embedding job state machine and retry policy."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from embedsync.database.models.job import JobStatus
from embedsync.errors import (
    CLAIM_TIMEOUT,
    EMPTY_CONTENT,
    GENERATOR_ERROR,
    GENERATOR_TIMEOUT,
    INVALID_CONTENT,
    STORE_ERROR,
    UNEXPECTED_ERROR,
    GeneratorError,
    PermanentJobError,
    TransientJobError,
)
from embedsync.queue.retry import RetryPolicy
from embedsync.queue.state_machine import (
    VALID_TRANSITIONS,
    InvalidTransitionError,
    ensure_transition,
    validate_transition,
)
from embedsync.queue.worker import classify_error


class TestValidTransitions:
    """Test the VALID_TRANSITIONS mapping and validation."""

    def test_every_status_defined(self) -> None:
        assert set(VALID_TRANSITIONS) == set(JobStatus)

    @pytest.mark.parametrize(
        "current,target,expected",
        [
            (JobStatus.pending, JobStatus.processing, True),
            (JobStatus.processing, JobStatus.completed, True),
            (JobStatus.processing, JobStatus.failed, True),
            (JobStatus.processing, JobStatus.pending, True),
            (JobStatus.failed, JobStatus.pending, True),
            (JobStatus.pending, JobStatus.completed, False),
            (JobStatus.completed, JobStatus.pending, False),
            (JobStatus.completed, JobStatus.processing, False),
            (JobStatus.failed, JobStatus.processing, False),
        ],
    )
    def test_validate_transition(
        self, current: JobStatus, target: JobStatus, expected: bool
    ) -> None:
        assert validate_transition(current, target) is expected

    def test_ensure_transition_raises(self) -> None:
        with pytest.raises(InvalidTransitionError) as exc_info:
            ensure_transition(JobStatus.completed, JobStatus.pending, "job-1")

        assert exc_info.value.code == "INVALID_TRANSITION"
        assert "completed to pending for job job-1" in str(exc_info.value)


class TestRetryPolicy:
    def test_backoff_doubles_and_caps(self) -> None:
        policy = RetryPolicy(max_attempts=10, base_delay=5.0, max_delay=30.0)
        assert [policy.backoff(n) for n in range(0, 6)] == [0.0, 5.0, 10.0, 20.0, 30.0, 30.0]

    def test_transient_failure_schedules_retry(self) -> None:
        policy = RetryPolicy(max_attempts=3, base_delay=5.0)
        decision = policy.decide(0, TransientJobError("provider down"))

        assert decision.should_retry is True
        assert decision.status == JobStatus.pending
        assert decision.attempts == 1
        assert decision.delay_seconds == 5.0
        assert decision.error_code == GENERATOR_ERROR
        assert decision.last_error == "GENERATOR_ERROR: provider down"

        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert decision.scheduled_at(now) == now + timedelta(seconds=5)

    def test_last_attempt_fails_terminally(self) -> None:
        decision = RetryPolicy(max_attempts=3).decide(2, TransientJobError("still down"))

        assert decision.should_retry is False
        assert decision.status == JobStatus.failed
        assert decision.attempts == 3

    def test_permanent_failure_keeps_attempts(self) -> None:
        decision = RetryPolicy(max_attempts=3).decide(
            1, PermanentJobError("nothing to embed", EMPTY_CONTENT)
        )

        assert decision.should_retry is False
        assert decision.status == JobStatus.failed
        assert decision.attempts == 1
        assert decision.error_code == EMPTY_CONTENT

    def test_max_attempts_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


class TestClassifyError:
    def test_generator_errors_follow_retryable_flag(self) -> None:
        transient = classify_error(GeneratorError("503", retryable=True))
        permanent = classify_error(GeneratorError("400", retryable=False))

        assert isinstance(transient, TransientJobError)
        assert transient.code == GENERATOR_ERROR
        assert isinstance(permanent, PermanentJobError)
        assert permanent.code == INVALID_CONTENT

    def test_timeout_is_transient(self) -> None:
        error = classify_error(asyncio.TimeoutError())
        assert isinstance(error, TransientJobError)
        assert error.code == GENERATOR_TIMEOUT

    def test_store_error_is_transient(self) -> None:
        error = classify_error(OperationalError("UPDATE", {}, Exception("locked")))
        assert error.code == STORE_ERROR

    def test_refused_connection_is_store_error(self) -> None:
        error = classify_error(ConnectionRefusedError(111, "Connect call failed"))
        assert isinstance(error, TransientJobError)
        assert error.code == STORE_ERROR

    def test_unknown_exception(self) -> None:
        error = classify_error(KeyError("boom"))
        assert isinstance(error, TransientJobError)
        assert error.code == UNEXPECTED_ERROR

    def test_taxonomy_errors_pass_through(self) -> None:
        original = TransientJobError("swept", CLAIM_TIMEOUT)
        assert classify_error(original) is original
