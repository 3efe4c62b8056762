"""FastAPI route definitions for embedsync."""

from __future__ import annotations

from embedsync.web.routes.embeddings import (
    BulkEnqueueBody,
    create_embeddings_router,
    get_queue_service,
)
from embedsync.web.routes.health import (
    HealthResponse,
    ReadinessResponse,
    create_health_router,
)
from embedsync.web.routes.settings import (
    SettingsResponse,
    SettingsUpdate,
    create_settings_router,
)

__all__ = [
    "BulkEnqueueBody",
    "create_embeddings_router",
    "get_queue_service",
    "HealthResponse",
    "ReadinessResponse",
    "create_health_router",
    "SettingsResponse",
    "SettingsUpdate",
    "create_settings_router",
]
