"""Job inspection CLI commands.

This module provides read-only commands for listing jobs, showing a single
job, and printing queue metrics.
"""

from __future__ import annotations

import asyncio
import json
from typing import Annotated, Optional
from uuid import UUID

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from embedsync.database.models.job import JobStatus
from embedsync.database.queries.embedding import get_embedding_stats
from embedsync.database.queries.job import get_job, get_job_metrics, list_jobs
from embedsync.queue.schemas import JobResponse, MetricsResponse

app = typer.Typer(help="Job inspection commands")
console = Console()

_STATUS_STYLES = {
    JobStatus.pending: "yellow",
    JobStatus.processing: "cyan",
    JobStatus.completed: "green",
    JobStatus.failed: "red",
}


def _print_json(data: object) -> None:
    console.print(json.dumps(data, indent=2), soft_wrap=True, markup=False, highlight=False)


@app.command("list")
def list_(
    organization_id: Annotated[
        Optional[str], typer.Option("--org", "-o", help="Organization id")
    ] = None,
    source_table: Annotated[
        Optional[str], typer.Option("--table", help="Content type")
    ] = None,
    status: Annotated[
        Optional[str],
        typer.Option("--status", "-s", help="Filter by status (pending, processing, completed, failed)"),
    ] = None,
    limit: Annotated[int, typer.Option("--limit", "-n", min=1, max=500)] = 50,
    offset: Annotated[int, typer.Option("--offset", min=0)] = 0,
    format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format (table or json)"),
    ] = "table",
) -> None:
    """List embedding jobs, highest priority first."""
    from embedsync.main import get_app_context

    ctx = get_app_context()

    status_filter = None
    if status:
        try:
            status_filter = JobStatus[status.lower()]
        except KeyError:
            console.print(f"[red]Invalid status:[/red] {status}")
            console.print(f"Valid statuses: {', '.join(s.value for s in JobStatus)}")
            raise typer.Exit(code=1)

    async def _list_jobs():
        try:
            async with ctx.session_factory() as session:
                return await list_jobs(
                    session,
                    organization_id=organization_id,
                    source_table=source_table,
                    status_filter=status_filter,
                    limit=limit,
                    offset=offset,
                )
        finally:
            await ctx.engine.dispose()

    try:
        jobs, total = asyncio.run(_list_jobs())
    except Exception as e:
        console.print(f"[red]Error listing jobs:[/red] {e}")
        raise typer.Exit(code=1)

    if format == "json":
        payload = {
            "total": total,
            "items": [JobResponse.model_validate(job).model_dump(mode="json") for job in jobs],
        }
        _print_json(payload)
        return

    if not jobs:
        console.print("[yellow]No jobs found[/yellow]")
        return

    table = Table(title=f"Embedding jobs ({len(jobs)} of {total})")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Target")
    table.add_column("Status")
    table.add_column("Priority", justify="right")
    table.add_column("Attempts", justify="right")
    table.add_column("Error")

    for job in jobs:
        style = _STATUS_STYLES.get(job.status, "white")
        table.add_row(
            str(job.id)[:8],
            f"{job.source_table}/{job.source_id}#{job.source_field}",
            f"[{style}]{job.status.value}[/{style}]",
            str(job.priority),
            str(job.attempts),
            job.error_code or "",
        )

    console.print(table)


@app.command()
def show(
    job_id: Annotated[str, typer.Argument(help="Job UUID")],
) -> None:
    """Show one job in full."""
    from embedsync.main import get_app_context

    ctx = get_app_context()

    try:
        job_uuid = UUID(job_id)
    except ValueError:
        console.print(f"[red]Invalid job UUID:[/red] {job_id}")
        raise typer.Exit(code=1)

    async def _get_job():
        try:
            async with ctx.session_factory() as session:
                return await get_job(session, job_uuid)
        finally:
            await ctx.engine.dispose()

    job = asyncio.run(_get_job())
    if job is None:
        console.print(f"[red]Job {job_id} not found[/red]")
        raise typer.Exit(code=1)

    style = _STATUS_STYLES.get(job.status, "white")
    console.print(
        Panel(
            f"[bold]Organization:[/bold] {job.organization_id}\n"
            f"[bold]Target:[/bold] {job.source_table}/{job.source_id}#{job.source_field}\n"
            f"[bold]Status:[/bold] [{style}]{job.status.value}[/{style}]\n"
            f"[bold]Priority:[/bold] {job.priority}\n"
            f"[bold]Attempts:[/bold] {job.attempts}\n"
            f"[bold]Content hash:[/bold] {job.content_hash}\n"
            f"[bold]Scheduled:[/bold] {job.scheduled_at}\n"
            f"[bold]Claimed by:[/bold] {job.claimed_by or '-'}\n"
            f"[bold]Error:[/bold] {job.error_code or '-'} {job.last_error or ''}",
            title=f"Job {job.id}",
            border_style=style,
        )
    )


def metrics(
    organization_id: Annotated[
        Optional[str], typer.Option("--org", "-o", help="Organization id")
    ] = None,
    format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format (table or json)"),
    ] = "table",
) -> None:
    """Print job counts, success rate and embedding totals."""
    from embedsync.main import get_app_context

    ctx = get_app_context()

    async def _metrics():
        try:
            async with ctx.session_factory() as session:
                job_metrics = await get_job_metrics(session, organization_id)
                embedding_stats = await get_embedding_stats(session, organization_id)
        finally:
            await ctx.engine.dispose()
        return MetricsResponse(organization_id=organization_id, **job_metrics, **embedding_stats)

    try:
        result = asyncio.run(_metrics())
    except Exception as e:
        console.print(f"[red]Error loading metrics:[/red] {e}")
        raise typer.Exit(code=1)

    if format == "json":
        _print_json(result.model_dump(mode="json"))
        return

    table = Table(title=f"Queue metrics ({organization_id or 'all organizations'})")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Total jobs", str(result.total))
    for status in JobStatus:
        table.add_row(f"  {status.value}", str(getattr(result, status.value)))
    table.add_row("Success rate", f"{result.success_rate:.1f}%")
    table.add_row("Avg processing", f"{result.avg_processing_minutes:.2f} min")
    table.add_row("Active embeddings", str(result.active_embeddings))
    table.add_row("Active chunks", str(result.active_chunks))
    for model, count in sorted(result.embeddings_by_model.items()):
        table.add_row(f"  {model}", str(count))
    console.print(table)
