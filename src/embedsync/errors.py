"""Error taxonomy for embedsync.

Failures are classified by how the drain worker must react to them:

- ``TransientJobError``: retried through the attempts-bounded loop.
- ``PermanentJobError``: terminal immediately, no retry budget consumed.
- ``EnqueueValidationError``: rejected before anything is written.

Each error carries a short machine-readable ``code`` that is persisted to
``embedding_jobs.error_code`` so operators can filter failures that need
a fix and re-enqueue from failures that resolve themselves.
"""

from __future__ import annotations

# Permanent codes
SOURCE_NOT_FOUND = "SOURCE_NOT_FOUND"
EMPTY_CONTENT = "EMPTY_CONTENT"
UNKNOWN_FIELD = "UNKNOWN_FIELD"
INVALID_CONTENT = "INVALID_CONTENT"
UNSUPPORTED_CONTENT_TYPE = "UNSUPPORTED_CONTENT_TYPE"

# Transient codes
GENERATOR_TIMEOUT = "GENERATOR_TIMEOUT"
GENERATOR_ERROR = "GENERATOR_ERROR"
STORE_ERROR = "STORE_ERROR"
CLAIM_TIMEOUT = "CLAIM_TIMEOUT"
UNEXPECTED_ERROR = "UNEXPECTED_ERROR"

# Enqueue validation codes
INVALID_REQUEST = "INVALID_REQUEST"

# Operator action codes
JOB_NOT_FOUND = "JOB_NOT_FOUND"
JOB_CONFLICT = "JOB_CONFLICT"


class EmbedsyncError(Exception):
    """Base exception for embedsync errors.

    Attributes:
        code: Machine-readable error code.
    """

    default_code = UNEXPECTED_ERROR

    def __init__(self, message: str, code: str | None = None) -> None:
        self.code = code or self.default_code
        super().__init__(message)

    def describe(self) -> str:
        """Return ``CODE: message`` as stored in ``last_error``."""
        return f"{self.code}: {self}"


class TransientJobError(EmbedsyncError):
    """A failure expected to resolve on a later attempt."""

    default_code = GENERATOR_ERROR


class PermanentJobError(EmbedsyncError):
    """A failure that will not resolve without a content or code fix."""

    default_code = INVALID_CONTENT


class EnqueueValidationError(EmbedsyncError):
    """Raised when an enqueue request is rejected before persistence."""

    default_code = INVALID_REQUEST


class UnsupportedContentType(PermanentJobError):
    """Raised when no content adapter is registered for a source table."""

    default_code = UNSUPPORTED_CONTENT_TYPE

    def __init__(self, source_table: str) -> None:
        self.source_table = source_table
        super().__init__(f"No content adapter registered for {source_table!r}")


class GeneratorError(EmbedsyncError):
    """Raised by embedding generator clients.

    Attributes:
        retryable: Whether the request may succeed if repeated.
        provider: Name of the provider that failed.
    """

    default_code = GENERATOR_ERROR

    def __init__(self, message: str, retryable: bool = True, provider: str | None = None) -> None:
        self.retryable = retryable
        self.provider = provider
        super().__init__(message, GENERATOR_ERROR if retryable else INVALID_CONTENT)


class JobNotFoundError(EmbedsyncError):
    """Raised when an operator action names a job that does not exist."""

    default_code = JOB_NOT_FOUND

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")
