"""Request logging middleware for embedsync.

Every request gets a correlation id (taken from ``X-Correlation-ID`` or
``X-Request-ID`` when the caller sends one) that is attached to all log
events emitted while the request is handled, including those from the
enqueuer and any drain it triggers. The id is echoed back in the
``X-Correlation-ID`` response header.

Health probes are logged at debug level so liveness polling does not drown
out queue activity.
"""

from __future__ import annotations

import time
import uuid
from typing import TYPE_CHECKING

import structlog
from starlette.middleware.base import BaseHTTPMiddleware

from embedsync.logging import get_logger, set_correlation_id

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from starlette.requests import Request
    from starlette.responses import Response

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"
_INBOUND_HEADERS = (CORRELATION_HEADER, "X-Request-ID")
_QUIET_PREFIX = "/health"


def _correlation_id_for(request: Request) -> str:
    for header in _INBOUND_HEADERS:
        value = request.headers.get(header)
        if value:
            return value
    return str(uuid.uuid4())


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request with its duration and binds a correlation id."""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        """Process request with logging.

        Args:
            request: Incoming HTTP request
            call_next: Next middleware or route handler

        Returns:
            HTTP response from downstream handlers, with the correlation id
            header set
        """
        correlation_id = _correlation_id_for(request)
        set_correlation_id(correlation_id)

        path = request.url.path
        log = logger.debug if path.startswith(_QUIET_PREFIX) else logger.info
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request_failed",
                method=request.method,
                path=path,
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
                error=str(exc),
                exc_info=True,
            )
            raise
        finally:
            set_correlation_id(None)
            structlog.contextvars.clear_contextvars()

        log(
            "request_completed",
            method=request.method,
            path=path,
            query=str(request.url.query) or None,
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
            correlation_id=correlation_id,
        )
        response.headers[CORRELATION_HEADER] = correlation_id
        return response
