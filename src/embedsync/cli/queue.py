"""Queue CLI commands.

This module provides the commands that write to the queue: enqueueing single
targets or whole content types, one-shot drains, the long-running worker,
claim sweeps, and manual retries of failed jobs.
"""

from __future__ import annotations

import asyncio
import json
import signal
from typing import Annotated, Optional
from uuid import UUID

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from embedsync.errors import EmbedsyncError
from embedsync.queue.enqueuer import EnqueueOutcome, EnqueueRequest
from embedsync.queue.worker import DiffStrategy, DrainOptions

console = Console()


def _fail(message: str, error: object) -> None:
    console.print(f"[red]{message}:[/red] {error}")
    raise typer.Exit(code=1)


def _print_json(data: object) -> None:
    console.print(json.dumps(data, indent=2), soft_wrap=True, markup=False, highlight=False)


def enqueue(
    organization_id: Annotated[str, typer.Argument(help="Organization id")],
    source_table: Annotated[str, typer.Argument(help="Content type (posts, faqs, ...)")],
    source_id: Annotated[str, typer.Argument(help="Record id")],
    field: Annotated[
        str,
        typer.Option("--field", help="Field to embed, or 'document' for the whole record"),
    ] = "document",
    text: Annotated[
        Optional[str],
        typer.Option("--text", "-t", help="Content to embed instead of reading the record"),
    ] = None,
    priority: Annotated[
        Optional[int],
        typer.Option("--priority", "-p", min=1, max=10, help="Priority 1-10 (higher first)"),
    ] = None,
    force: Annotated[
        bool,
        typer.Option("--force", help="Re-embed even if content is unchanged"),
    ] = False,
) -> None:
    """Enqueue one record (or one field of it) for embedding."""
    from embedsync.main import get_app_context

    ctx = get_app_context()

    try:
        request = EnqueueRequest(
            organization_id=organization_id,
            source_table=source_table,
            source_id=source_id,
            source_field=field,
            content_text=text,
            priority=priority,
            force=force,
        )
    except ValueError as e:
        _fail("Invalid request", e)

    async def _enqueue():
        try:
            return await ctx.enqueuer().enqueue(request)
        finally:
            await ctx.engine.dispose()

    try:
        result = asyncio.run(_enqueue())
    except EmbedsyncError as e:
        _fail("Enqueue rejected", e.describe())

    colour = "yellow" if result.outcome is EnqueueOutcome.skipped else "green"
    console.print(
        Panel(
            f"[bold]Outcome:[/bold] [{colour}]{result.outcome.value}[/{colour}]\n"
            f"[bold]Reason:[/bold] {result.reason}\n"
            f"[bold]Job:[/bold] {result.job_id or '-'}\n"
            f"[bold]Content hash:[/bold] {result.content_hash}",
            title="Enqueue",
            border_style=colour,
        )
    )


def bulk_enqueue(
    organization_id: Annotated[str, typer.Argument(help="Organization id")],
    content_types: Annotated[
        list[str],
        typer.Option("--type", "-t", help="Content type to diff (repeatable)"),
    ],
    priority: Annotated[
        Optional[int],
        typer.Option("--priority", "-p", min=1, max=10, help="Priority for new jobs"),
    ] = None,
    per_field: Annotated[
        bool,
        typer.Option("--per-field", help="Enqueue each embeddable field separately"),
    ] = False,
    no_rebuild: Annotated[
        bool,
        typer.Option("--no-rebuild", help="Never escalate to a full rebuild"),
    ] = False,
) -> None:
    """Diff whole content types against stored embeddings and enqueue changes."""
    from embedsync.main import get_app_context

    ctx = get_app_context()

    async def _bulk():
        try:
            return await ctx.enqueuer().bulk_enqueue(
                organization_id,
                content_types,
                priority=priority,
                per_field=per_field,
                allow_full_rebuild=not no_rebuild,
            )
        finally:
            await ctx.engine.dispose()

    try:
        result = asyncio.run(_bulk())
    except EmbedsyncError as e:
        _fail("Bulk enqueue failed", e.describe())

    table = Table(title=f"Bulk enqueue for {organization_id}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Total targets", str(result.total_targets))
    table.add_row("Changed", str(result.diff_count))
    table.add_row("Diff rate", f"{result.diff_rate_percent:.1f}% (threshold {result.threshold_percent:.1f}%)")
    table.add_row("Full rebuild", "yes" if result.is_full_rebuild else "no")
    table.add_row("Created", str(result.created))
    table.add_row("Updated", str(result.updated))
    table.add_row("Skipped", str(result.skipped))
    console.print(table)
    for error in result.errors:
        console.print(f"[yellow]Warning:[/yellow] {error}")


def _drain_options(
    batch_size: int | None,
    organization_id: str | None,
    priority_min: int | None,
    priority_max: int | None,
    force: bool,
) -> DrainOptions:
    try:
        return DrainOptions(
            batch_size=batch_size,
            organization_id=organization_id,
            priority_min=priority_min,
            priority_max=priority_max,
            diff_strategy=DiffStrategy.force if force else DiffStrategy.content_hash,
        )
    except ValueError as e:
        _fail("Invalid drain options", e)


BatchSizeOption = Annotated[
    Optional[int],
    typer.Option("--batch-size", "-b", min=1, help="Jobs claimed per drain"),
]
OrganizationOption = Annotated[
    Optional[str],
    typer.Option("--org", "-o", help="Only claim jobs of this organization"),
]
PriorityMinOption = Annotated[
    Optional[int],
    typer.Option("--priority-min", min=1, max=10, help="Lowest priority to claim"),
]
PriorityMaxOption = Annotated[
    Optional[int],
    typer.Option("--priority-max", min=1, max=10, help="Highest priority to claim"),
]
ForceOption = Annotated[
    bool,
    typer.Option("--force", help="Regenerate even when the stored hash matches"),
]


def drain(
    batch_size: BatchSizeOption = None,
    organization_id: OrganizationOption = None,
    priority_min: PriorityMinOption = None,
    priority_max: PriorityMaxOption = None,
    force: ForceOption = False,
    format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format (table or json)"),
    ] = "table",
) -> None:
    """Claim and process one batch of pending jobs."""
    from embedsync.main import get_app_context

    ctx = get_app_context()
    options = _drain_options(batch_size, organization_id, priority_min, priority_max, force)

    async def _drain():
        async with ctx.queue_service() as service:
            return await service.drain(options)

    try:
        response = asyncio.run(_drain())
    except (EmbedsyncError, ValueError) as e:
        _fail("Drain failed", e)

    if format == "json":
        _print_json(response.model_dump(mode="json"))
        if not response.success:
            raise typer.Exit(code=1)
        return

    if not response.success:
        _fail(f"Drain failed ({response.error_code})", response.error)

    table = Table(title=f"Drain {response.run_id}")
    table.add_column("Counter", style="cyan")
    table.add_column("Jobs", justify="right")
    for name in "claimed", "processed", "skipped", "retried", "failed", "requeued", "reclaimed":
        table.add_row(name, str(getattr(response, f"{name}_count")))
    table.add_row("duration_ms", str(response.duration_ms))
    console.print(table)


def sweep() -> None:
    """Release processing claims older than the job timeout."""
    from embedsync.main import get_app_context

    ctx = get_app_context()

    async def _sweep():
        async with ctx.queue_service() as service:
            return await service.sweep()

    try:
        response = asyncio.run(_sweep())
    except (EmbedsyncError, ValueError) as e:
        _fail("Sweep failed", e)

    if not response.success:
        _fail(f"Sweep failed ({response.error_code})", response.error)

    console.print(
        f"[green]Sweep complete:[/green] {response.reclaimed_count} reclaimed, "
        f"{response.requeued_count} requeued, {response.failed_count} failed"
    )


def worker(
    batch_size: BatchSizeOption = None,
    organization_id: OrganizationOption = None,
    priority_min: PriorityMinOption = None,
    priority_max: PriorityMaxOption = None,
    force: ForceOption = False,
) -> None:
    """Drain continuously until interrupted."""
    from embedsync.main import get_app_context

    ctx = get_app_context()
    options = _drain_options(batch_size, organization_id, priority_min, priority_max, force)

    async def _run():
        async with ctx.queue_service() as service:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, service.worker.stop)
            await service.worker.run_forever(options)

    console.print(
        f"[bold cyan]Worker {ctx.config.queue.worker_id} started[/bold cyan] "
        f"[dim](poll every {ctx.config.queue.poll_interval_seconds}s, Ctrl+C to stop)[/dim]"
    )
    try:
        asyncio.run(_run())
    except (EmbedsyncError, ValueError) as e:
        _fail("Worker stopped", e)
    console.print("[green]Worker stopped[/green]")


def retry(
    job_id: Annotated[str, typer.Argument(help="UUID of a failed job")],
) -> None:
    """Return a failed job to pending with a fresh attempt budget."""
    from embedsync.main import get_app_context

    ctx = get_app_context()

    try:
        job_uuid = UUID(job_id)
    except ValueError:
        _fail("Invalid job UUID", job_id)

    async def _retry():
        async with ctx.queue_service() as service:
            return await service.retry_job(job_uuid)

    try:
        response = asyncio.run(_retry())
    except (EmbedsyncError, ValueError) as e:
        _fail("Retry failed", e)

    if not response.success:
        _fail(f"Retry rejected ({response.error_code})", response.error)

    console.print(f"[green]Job {response.job.id} is pending again[/green]")
