"""FastAPI application factory for embedsync.

The application exposes the embedding queue to the surrounding CRUD
application and to operators:
- CORS middleware for the dashboard origin
- Request logging middleware with correlation IDs
- Lifespan-managed database engine, embedding generator and queue service
- Health, queue and settings routers

Example usage:
    >>> from embedsync.config import EmbedsyncConfig
    >>> from embedsync.web.app import create_app
    >>>
    >>> app = create_app(EmbedsyncConfig())
    >>>
    >>> import uvicorn
    >>> uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from __future__ import annotations

from contextlib import AsyncExitStack, asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from embedsync import __version__
from embedsync.config import EmbedsyncConfig
from embedsync.database.connection import get_engine, get_session_factory
from embedsync.generation.service import open_embedding_service
from embedsync.logging import get_logger
from embedsync.queue.service import EmbeddingQueueService
from embedsync.sources import SqlContentSource
from embedsync.web.middleware import RequestLoggingMiddleware
from embedsync.web.routes.embeddings import create_embeddings_router
from embedsync.web.routes.health import create_health_router
from embedsync.web.routes.settings import create_settings_router

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the queue service on startup and tear it down on shutdown.

    If a queue service was injected through ``create_app`` it is used as
    is and left for the caller to close.

    Args:
        app: FastAPI application instance

    Yields:
        None after startup, cleans up on context exit
    """
    if getattr(app.state, "queue_service", None) is not None:
        yield
        return

    config: EmbedsyncConfig = app.state.config
    logger.info("app_startup_begin", host=config.web.host, port=config.web.port)

    engine = get_engine(config.database)
    session_factory = get_session_factory(engine)

    async with AsyncExitStack() as stack:
        generator = await stack.enter_async_context(open_embedding_service(config.generator))
        service = EmbeddingQueueService.from_config(
            config,
            session_factory=session_factory,
            generator=generator,
            content_source=SqlContentSource(session_factory),
        )

        app.state.engine = engine
        app.state.session_factory = session_factory
        app.state.queue_service = service

        logger.info(
            "queue_service_initialized",
            provider=config.generator.provider,
            worker_id=config.queue.worker_id,
        )

        try:
            yield
        finally:
            logger.info("app_shutdown_begin")
            await service.aclose()
            app.state.queue_service = None

    await engine.dispose()
    logger.info("database_pool_disposed")


def create_app(
    config: EmbedsyncConfig | None = None,
    queue_service: EmbeddingQueueService | None = None,
) -> FastAPI:
    """Create and configure a FastAPI application.

    Args:
        config: Optional EmbedsyncConfig. If None, creates default config.
        queue_service: Pre-built queue service (tests, embedding in another
            application). Its session factory is used for health checks.

    Returns:
        Configured FastAPI application instance.
    """
    if config is None:
        config = EmbedsyncConfig()

    app = FastAPI(
        title="embedsync",
        version=__version__,
        description="Embedding job queue and diff-driven drain engine",
        lifespan=lifespan,
    )

    app.state.config = config
    app.state.queue_service = queue_service
    if queue_service is not None:
        app.state.session_factory = queue_service.session_factory

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.web.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(create_health_router())
    app.include_router(create_settings_router())
    app.include_router(create_embeddings_router())

    logger.info(
        "app_created",
        cors_origins=config.web.cors_origins,
        version=__version__,
    )

    return app
