"""CLI commands for job, queue and system status."""

import asyncio
import json
from typing import Any, Dict, List, Optional

import click
from rich.columns import Columns
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ...core.cache import ContentCache
from ...core.jobs import JobStatus
from ...core.queue import TaskQueue
from ...database.connection import get_database_manager
from ...foundation.config import get_config_manager
from ...foundation.errors import handle_error
from ...foundation.metrics import get_metrics_collector
from ...models.records import JobRecord
from ...services.assets import dedup_stats
from .clone import build_orchestrator, closing_database, job_summary_table

console = Console()

FORMAT_OPTION = click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    show_default=True,
    help="Output format"
)


class StatusGroup(click.Group):
    """Treats ``status JOB_ID`` as ``status job JOB_ID``."""

    def resolve_command(self, ctx, args):
        if args and args[0] not in self.commands and not args[0].startswith("-"):
            args = ["job", *args]
        return super().resolve_command(ctx, args)


@click.group(cls=StatusGroup, invoke_without_command=True)
@click.option("--limit", type=int, default=20, show_default=True, help="Number of jobs to show")
@click.option(
    "--status",
    "status_filter",
    type=click.Choice([s.value for s in JobStatus]),
    help="Only show jobs with this status"
)
@FORMAT_OPTION
@click.pass_context
def status(ctx, limit, status_filter, output_format):
    """Show jobs, the work queue and system metrics.

    Examples:

        # Recent jobs
        sitemirror status

        # One job with its verification report
        sitemirror status 3f2c9a...

        # Work queue and system metrics
        sitemirror status queue
        sitemirror status system
    """
    if ctx.invoked_subcommand is not None:
        return
    quiet = ctx.obj.get('quiet', False)

    try:
        records = asyncio.run(closing_database(_list_jobs(status_filter, limit)))
    except Exception as e:
        handle_error(e)
        raise click.ClickException(f"Failed to list jobs: {e}")

    if output_format == "json":
        click.echo(json.dumps([record.to_contract() for record in records], indent=2))
    else:
        _display_jobs(records, quiet)


@status.command()
@click.argument("job_id")
@click.option("--errors", "max_errors", type=int, default=10, show_default=True, help="Errors to list")
@FORMAT_OPTION
@click.pass_context
def job(ctx, job_id, max_errors, output_format):
    """Show one job with its verification report."""
    quiet = ctx.obj.get('quiet', False)

    try:
        record = asyncio.run(closing_database(_get_job(job_id)))
    except Exception as e:
        handle_error(e)
        raise click.ClickException(f"Failed to get job status: {e}")
    if record is None:
        raise click.ClickException(f"Job {job_id} not found")

    if output_format == "json":
        click.echo(json.dumps(record.to_contract(), indent=2))
    elif quiet:
        click.echo(record.status)
    else:
        _display_job(record, max_errors)


@status.command()
@click.option("--job", "job_id", help="Only count tasks of this job")
@click.option("--purge", is_flag=True, help="Delete finished tasks past their retention first")
@FORMAT_OPTION
@click.pass_context
def queue(ctx, job_id, purge, output_format):
    """Show distributed queue statistics."""
    quiet = ctx.obj.get('quiet', False)

    try:
        data = asyncio.run(closing_database(_get_queue_status(job_id, purge)))
    except Exception as e:
        handle_error(e)
        raise click.ClickException(f"Failed to get queue status: {e}")

    if output_format == "json":
        click.echo(json.dumps(data, indent=2, default=str))
        return
    stats = data["stats"]
    if quiet:
        click.echo(f"waiting={stats['waiting']} active={stats['active']} "
                   f"completed={stats['completed']} failed={stats['failed']}")
        return

    table = Table(title=f"Queue Statistics{' for ' + job_id if job_id else ''}")
    table.add_column("State", style="cyan")
    table.add_column("Tasks", style="green", justify="right")
    for state in ("waiting", "active", "completed", "failed"):
        table.add_row(state.title(), str(stats[state]))
    console.print(table)
    if purge:
        console.print(f"[dim]Purged {data['purged']} finished tasks[/dim]")


@status.command()
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json", "prometheus"]),
    default="table",
    show_default=True,
    help="Output format"
)
@click.pass_context
def system(ctx, output_format):
    """Show process metrics, cache and asset statistics."""
    quiet = ctx.obj.get('quiet', False)

    if output_format == "prometheus":
        click.echo(get_metrics_collector().export_metrics(format="prometheus"))
        return

    try:
        data = asyncio.run(closing_database(_get_system_status()))
    except Exception as e:
        handle_error(e)
        raise click.ClickException(f"Failed to get system status: {e}")

    if output_format == "json":
        click.echo(json.dumps(data, indent=2, default=str))
    else:
        _display_system(data, quiet)


# Helper functions

async def _list_jobs(status_filter: Optional[str], limit: int) -> List[JobRecord]:
    orchestrator = build_orchestrator()
    await orchestrator.initialize()
    return await orchestrator.list_jobs(
        status=JobStatus(status_filter) if status_filter else None,
        limit=limit,
    )


async def _get_job(job_id: str) -> Optional[JobRecord]:
    orchestrator = build_orchestrator()
    await orchestrator.initialize()
    return await orchestrator.get_job(job_id)


async def _get_queue_status(job_id: Optional[str], purge: bool) -> Dict[str, Any]:
    db_manager = get_database_manager()
    await db_manager.initialize()
    task_queue = TaskQueue(db_manager, get_config_manager())
    purged = await task_queue.purge_completed() if purge else 0
    return {"stats": await task_queue.stats(job_id), "purged": purged}


async def _get_system_status() -> Dict[str, Any]:
    db_manager = get_database_manager()
    await db_manager.initialize()
    cache = ContentCache(db_manager, get_config_manager())
    metrics = get_metrics_collector().export_metrics(format="dict")
    return {
        "metrics": metrics,
        "cache": await cache.stats(),
        "assets": await dedup_stats(db_manager),
    }


def _status_markup(status_value: str) -> str:
    styles = {
        "completed": "green",
        "failed": "red",
        "cancelled": "yellow",
        "paused": "yellow",
        "pending": "dim",
    }
    style = styles.get(status_value, "blue")
    return f"[{style}]{status_value}[/{style}]"


def _display_jobs(records: List[JobRecord], quiet: bool) -> None:
    if quiet:
        for record in records:
            click.echo(f"{record.id} {record.status}")
        return
    if not records:
        console.print("[yellow]No jobs found.[/yellow]")
        return

    table = Table(title="Clone Jobs")
    table.add_column("Job ID", style="cyan")
    table.add_column("URL", style="green")
    table.add_column("Status")
    table.add_column("Pages", justify="right")
    table.add_column("Assets", justify="right")
    table.add_column("Score", justify="right")
    table.add_column("Created", style="blue")

    for record in records:
        pages = f"{record.pages_cloned + record.pages_cached}"
        if record.pages_failed:
            pages += f" [red](-{record.pages_failed})[/red]"
        score = f"{record.verification.score:.1f}" if record.verification else "-"
        table.add_row(
            record.id,
            record.url,
            _status_markup(record.status),
            pages,
            str(record.assets_captured),
            score,
            record.created_at.isoformat(timespec="seconds") if record.created_at else "",
        )
    console.print(table)


def _display_job(record: JobRecord, max_errors: int) -> None:
    console.print(job_summary_table(record))

    report = record.verification
    if report is not None:
        table = Table(title="Verification")
        table.add_column("Component", style="cyan")
        table.add_column("Score", style="green", justify="right")
        table.add_column("Weight", justify="right")
        for name, value in report.component_scores.items():
            weight = report.weights.get(name)
            table.add_row(
                name.title(),
                f"{value * 100:.1f}",
                f"{weight:.2f}" if weight is not None else "-",
            )
        console.print(table)
        console.print(report.summary)

    if record.errors:
        errors = Table(title=f"Errors ({len(record.errors)})")
        errors.add_column("Kind", style="red")
        errors.add_column("URL", style="cyan")
        errors.add_column("Message")
        for error in record.errors[:max_errors]:
            errors.add_row(error.get("kind", ""), error.get("url") or "", error.get("message", ""))
        console.print(errors)
        if len(record.errors) > max_errors:
            console.print(f"[dim]... {len(record.errors) - max_errors} more[/dim]")


def _display_system(data: Dict[str, Any], quiet: bool) -> None:
    cache = data["cache"]
    assets = data["assets"]
    system_metrics = data["metrics"].get("system", {})

    if quiet:
        click.echo(f"cache_entries={cache['entries']} assets={assets['unique_files']}")
        return

    console.print(Panel.fit("[bold green]sitemirror system status[/bold green]", border_style="green"))

    panels = []
    if "error" in system_metrics:
        process_content = f"[red]Error: {system_metrics['error']}[/red]"
    else:
        process_content = (
            f"[green]CPU:[/green] {system_metrics.get('cpu_percent', 0):.1f}%\n"
            f"[green]Memory:[/green] {system_metrics.get('memory_usage_mb', 0):.1f} MB\n"
            f"[green]Threads:[/green] {system_metrics.get('threads', 0)}"
        )
    panels.append(Panel(process_content, title="Process", border_style="blue"))

    panels.append(Panel(
        f"[green]Entries:[/green] {cache['entries']}\n"
        f"[green]Size:[/green] {cache['total_bytes'] / (1024 * 1024):.1f} MB\n"
        f"[green]Indexed URLs:[/green] {cache['indexed_urls']}",
        title="Content Cache",
        border_style="yellow",
    ))
    panels.append(Panel(
        f"[green]Unique files:[/green] {assets['unique_files']}\n"
        f"[green]References:[/green] {assets['total_references']}\n"
        f"[green]Saved:[/green] {assets['saved_bytes'] / (1024 * 1024):.1f} MB "
        f"({assets['dedup_ratio']:.0%})",
        title="Assets",
        border_style="cyan",
    ))
    console.print(Columns(panels, equal=True))

    business = data["metrics"].get("business", {})
    if any(business.values()):
        table = Table(title="Counters (this process)")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green", justify="right")
        for name, value in business.items():
            formatted = f"{value:.2f}" if isinstance(value, float) and not value.is_integer() else f"{value:g}"
            table.add_row(name.replace("_", " ").title(), formatted)
        console.print(table)
