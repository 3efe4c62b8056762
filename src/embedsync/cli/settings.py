"""Runtime settings CLI commands."""

from __future__ import annotations

import asyncio
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from embedsync.settings import QueueSettings

app = typer.Typer(help="Runtime settings commands")
console = Console()


def _print_settings(settings: QueueSettings) -> None:
    table = Table(title="Queue settings")
    table.add_column("Key", style="cyan")
    table.add_column("Value", justify="right")
    table.add_column("Default", style="dim", justify="right")
    for key, field in QueueSettings.model_fields.items():
        table.add_row(key, str(getattr(settings, key)), str(field.default))
    console.print(table)


@app.command()
def show() -> None:
    """Show the settings the next drain will use."""
    from embedsync.main import get_app_context

    ctx = get_app_context()

    async def _load():
        try:
            return await ctx.settings_provider().load()
        finally:
            await ctx.engine.dispose()

    _print_settings(asyncio.run(_load()))


@app.command("set")
def set_(
    max_concurrent_jobs: Annotated[
        Optional[int], typer.Option("--max-concurrent-jobs", help="Jobs processed in parallel (1-100)")
    ] = None,
    job_timeout_ms: Annotated[
        Optional[int], typer.Option("--job-timeout-ms", help="Per-job timeout in milliseconds")
    ] = None,
    diff_rebuild_threshold_percent: Annotated[
        Optional[float],
        typer.Option("--rebuild-threshold", help="Diff rate (0-100) that triggers a full rebuild"),
    ] = None,
) -> None:
    """Change one or more runtime settings."""
    from embedsync.main import get_app_context

    ctx = get_app_context()

    changes = {
        key: value
        for key, value in {
            "max_concurrent_jobs": max_concurrent_jobs,
            "job_timeout_ms": job_timeout_ms,
            "diff_rebuild_threshold_percent": diff_rebuild_threshold_percent,
        }.items()
        if value is not None
    }
    if not changes:
        console.print("[yellow]Nothing to change[/yellow]")
        raise typer.Exit(code=1)

    async def _update():
        try:
            return await ctx.settings_provider().update(**changes)
        finally:
            await ctx.engine.dispose()

    try:
        settings = asyncio.run(_update())
    except ValueError as e:
        console.print(f"[red]Invalid setting:[/red] {e}")
        raise typer.Exit(code=1)

    console.print("[green]Settings updated[/green]")
    _print_settings(settings)
