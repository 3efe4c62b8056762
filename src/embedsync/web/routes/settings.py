"""Runtime queue settings endpoints for embedsync."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from embedsync.queue.service import EmbeddingQueueService
from embedsync.settings import QueueSettings
from embedsync.web.routes.embeddings import get_queue_service


class SettingsUpdate(BaseModel):
    """Partial update of the runtime settings."""

    max_concurrent_jobs: int | None = Field(default=None, ge=1, le=100)
    job_timeout_ms: int | None = Field(default=None, ge=1, le=3_600_000)
    diff_rebuild_threshold_percent: float | None = Field(default=None, ge=0.0, le=100.0)


class SettingsResponse(BaseModel):
    success: bool = True
    error: str | None = None
    settings: QueueSettings


def create_settings_router() -> APIRouter:
    """Create the settings router (GET/PUT /embeddings/settings)."""
    router = APIRouter(prefix="/embeddings/settings", tags=["settings"])

    @router.get("", response_model=SettingsResponse)
    async def get_settings_endpoint(
        service: EmbeddingQueueService = Depends(get_queue_service),
    ) -> SettingsResponse:
        return SettingsResponse(settings=await service.get_settings())

    @router.put("", response_model=SettingsResponse)
    async def update_settings_endpoint(
        body: SettingsUpdate,
        service: EmbeddingQueueService = Depends(get_queue_service),
    ) -> SettingsResponse:
        changes = body.model_dump(exclude_none=True)
        if not changes:
            return SettingsResponse(settings=await service.get_settings())
        status, settings = await service.update_settings(**changes)
        return SettingsResponse(success=status.success, error=status.error, settings=settings)

    return router
