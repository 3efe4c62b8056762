"""Main CLI entry point for embedsync.

This module provides the Typer application: the web server, one-shot and
polling drains, enqueue commands, and job/settings inspection.

Usage:
    embedsync serve --port 8000
    embedsync enqueue org-1 posts p1 --priority 8
    embedsync bulk-enqueue org-1 --type posts --type faqs
    embedsync drain --batch-size 25
    embedsync worker
    embedsync jobs list --status failed
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Optional

import typer
from rich.console import Console

from embedsync.cli import jobs as jobs_cli
from embedsync.cli import queue as queue_cli
from embedsync.cli import settings as settings_cli
from embedsync.config import EmbedsyncConfig, load_config
from embedsync.database.connection import get_engine, get_session_factory
from embedsync.generation.service import open_embedding_service
from embedsync.logging import setup_logging
from embedsync.queue.enqueuer import Enqueuer
from embedsync.queue.service import EmbeddingQueueService
from embedsync.settings import SettingsProvider
from embedsync.sources import SqlContentSource

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

app = typer.Typer(
    name="embedsync",
    help="embedsync: embedding job queue and drain engine",
    no_args_is_help=True,
)

app.command("enqueue")(queue_cli.enqueue)
app.command("bulk-enqueue")(queue_cli.bulk_enqueue)
app.command("drain")(queue_cli.drain)
app.command("sweep")(queue_cli.sweep)
app.command("worker")(queue_cli.worker)
app.command("retry")(queue_cli.retry)
app.command("metrics")(jobs_cli.metrics)
app.add_typer(jobs_cli.app, name="jobs", help="Inspect embedding jobs")
app.add_typer(settings_cli.app, name="settings", help="View and change runtime settings")

console = Console()


class AppContext:
    """Application context shared across CLI commands.

    Attributes:
        config: Loaded embedsync configuration
        engine: Async SQLAlchemy engine
        session_factory: Factory for creating database sessions
    """

    def __init__(self, config: EmbedsyncConfig):
        self.config = config
        self.engine = get_engine(config.database)
        self.session_factory = get_session_factory(self.engine)

    def settings_provider(self) -> SettingsProvider:
        return SettingsProvider(self.session_factory)

    def enqueuer(self) -> Enqueuer:
        """Build an Enqueuer reading content from the CRUD tables."""
        return Enqueuer(
            self.session_factory,
            SqlContentSource(self.session_factory),
            default_priority=self.config.queue.default_priority,
            settings_provider=self.settings_provider(),
        )

    @asynccontextmanager
    async def queue_service(self) -> AsyncIterator[EmbeddingQueueService]:
        """Open the generator clients and yield a full queue service.

        The engine is disposed on exit because each command runs its own
        event loop.
        """
        try:
            async with open_embedding_service(self.config.generator) as generator:
                service = EmbeddingQueueService.from_config(
                    self.config,
                    session_factory=self.session_factory,
                    generator=generator,
                    content_source=SqlContentSource(self.session_factory),
                )
                try:
                    yield service
                finally:
                    await service.aclose()
        finally:
            await self.engine.dispose()


# Global context holder
_app_context: AppContext | None = None


def get_app_context() -> AppContext:
    """Get the shared application context.

    Raises:
        RuntimeError: If context has not been initialized
    """
    if _app_context is None:
        raise RuntimeError("Application context not initialized. Call initialize_context first.")
    return _app_context


def initialize_context(config: EmbedsyncConfig) -> AppContext:
    """Initialize the global application context."""
    global _app_context
    _app_context = AppContext(config)
    return _app_context


@app.command()
def serve(
    host: Annotated[
        Optional[str],
        typer.Option("--host", "-h", help="Host to bind to (default: web.host)"),
    ] = None,
    port: Annotated[
        Optional[int],
        typer.Option("--port", "-p", help="Port to bind to (default: web.port)"),
    ] = None,
) -> None:
    """Start the embedsync HTTP API."""
    import uvicorn

    from embedsync.web.app import create_app

    config = get_app_context().config
    host = host or config.web.host
    port = port or config.web.port

    console.print("[bold cyan]Starting embedsync API[/bold cyan]")
    console.print(f"[dim]Host:[/dim] {host}")
    console.print(f"[dim]Port:[/dim] {port}")
    console.print()

    uvicorn.run(create_app(config), host=host, port=port, log_level="info")


@app.callback()
def main_callback(
    config_path: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="Path to configuration file (TOML format)",
            exists=True,
            dir_okay=False,
            readable=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Load configuration, configure logging and initialize the context."""
    try:
        config = load_config(config_path)
    except Exception as e:
        console.print(f"[red]Error loading configuration:[/red] {e}")
        raise typer.Exit(code=1)

    if verbose:
        config.logging.level = "DEBUG"
    setup_logging(config.logging)

    try:
        initialize_context(config)
    except Exception as e:
        console.print(f"[red]Error initializing application:[/red] {e}")
        raise typer.Exit(code=1)

    if verbose:
        console.print("[dim]Debug logging enabled[/dim]")


if __name__ == "__main__":
    app()
