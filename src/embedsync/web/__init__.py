"""HTTP interface for embedsync.

FastAPI application exposing enqueue, drain, bulk enqueue, job and
embedding listings, metrics and runtime settings.
"""

from __future__ import annotations

from embedsync.web.app import create_app
from embedsync.web.middleware import RequestLoggingMiddleware

__all__ = [
    "create_app",
    "RequestLoggingMiddleware",
]
