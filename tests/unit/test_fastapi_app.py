"""Unit tests for FastAPI application setup.

Tests cover:
- Application factory creates FastAPI instance
- CORS middleware is configured correctly
- Request logging middleware is active
- Health endpoints return expected responses
- Readiness endpoint verifies database connectivity
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import OperationalError

from embedsync import __version__
from embedsync.config import EmbedsyncConfig, WebConfig
from embedsync.web.app import create_app
from embedsync.web.middleware import RequestLoggingMiddleware


def _client(app: FastAPI) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


class TestCreateApp:
    """Test application factory function."""

    def test_returns_fastapi_instance(self) -> None:
        app = create_app()
        assert isinstance(app, FastAPI)

    def test_app_metadata(self) -> None:
        app = create_app()
        assert app.title == "embedsync"
        assert app.version == __version__

    def test_app_stores_config_in_state(self) -> None:
        config = EmbedsyncConfig()
        app = create_app(config)
        assert app.state.config is config

    def test_injected_queue_service_provides_session_factory(self) -> None:
        """The health router reads the injected service's session factory."""
        service = MagicMock()
        app = create_app(queue_service=service)

        assert app.state.queue_service is service
        assert app.state.session_factory is service.session_factory


class TestCorsMiddleware:
    """Test CORS middleware configuration."""

    def test_cors_uses_config_origins(self) -> None:
        origins = ["https://dashboard.example.com"]
        app = create_app(EmbedsyncConfig(web=WebConfig(cors_origins=origins)))

        cors = [m for m in app.user_middleware if m.cls == CORSMiddleware]
        assert len(cors) == 1
        assert cors[0].kwargs["allow_origins"] == origins
        assert cors[0].kwargs["allow_credentials"] is True


class TestRequestLoggingMiddleware:
    def test_logging_middleware_is_registered(self) -> None:
        app = create_app()
        assert any(m.cls == RequestLoggingMiddleware for m in app.user_middleware)


class TestReadinessEndpoint:
    """Test readiness check endpoint with database verification."""

    @pytest.fixture
    def app_with_healthy_db(self) -> FastAPI:
        app = create_app()

        result = MagicMock()
        result.scalar_one.return_value = 4
        mock_session = AsyncMock()
        mock_session.execute = AsyncMock(return_value=result)

        mock_session_factory = MagicMock()
        mock_session_factory.return_value.__aenter__ = AsyncMock(return_value=mock_session)
        mock_session_factory.return_value.__aexit__ = AsyncMock(return_value=None)

        app.state.session_factory = mock_session_factory
        return app

    @pytest.fixture
    def app_with_unhealthy_db(self) -> FastAPI:
        app = create_app()

        mock_session_factory = MagicMock()
        mock_session_factory.return_value.__aenter__ = AsyncMock(
            side_effect=OperationalError("SELECT 1", {}, Exception("connection refused"))
        )
        mock_session_factory.return_value.__aexit__ = AsyncMock(return_value=None)

        app.state.session_factory = mock_session_factory
        return app

    @pytest.mark.asyncio
    async def test_readiness_when_db_healthy(self, app_with_healthy_db: FastAPI) -> None:
        async with _client(app_with_healthy_db) as client:
            response = await client.get("/health/ready")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "database": "connected", "pending_jobs": 4}

    @pytest.mark.asyncio
    async def test_readiness_when_db_fails(self, app_with_unhealthy_db: FastAPI) -> None:
        async with _client(app_with_unhealthy_db) as client:
            response = await client.get("/health/ready")

        # Still returns 200 but with unhealthy status
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "unhealthy"
        assert data["database"] == "disconnected"


class TestRouterRegistration:
    def test_routes_exist(self) -> None:
        app = create_app()
        routes = {route.path for route in app.routes}

        assert "/health/" in routes
        assert "/health/ready" in routes
        assert "/embeddings/enqueue" in routes
        assert "/embeddings/drain" in routes
        assert "/embeddings/jobs/{job_id}/retry" in routes
        assert "/embeddings/settings" in routes
