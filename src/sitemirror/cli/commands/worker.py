"""CLI command that runs distributed queue workers."""

import asyncio
import signal
from typing import List, Optional

import click
from rich.console import Console

from ...core.cache import ContentCache
from ...core.queue import TaskQueue
from ...database.connection import get_database_manager
from ...foundation.config import get_config_manager
from ...foundation.errors import ErrorContext, MirrorError, handle_error
from ...foundation.logging import get_logger
from ...services.worker import QueueWorker, default_worker_id
from .clone import closing_database

console = Console()
logger = get_logger(__name__)


@click.command()
@click.option("--workers", "-n", type=int, default=1, show_default=True, help="Workers in this process")
@click.option("--worker-id", help="Prefix for worker ids (default: host-pid-random)")
@click.option("--max-tasks", type=int, help="Stop each worker after this many tasks")
@click.option("--poll-interval", type=float, help="Seconds to wait when the queue is empty")
@click.pass_context
def worker(ctx, workers, worker_id, max_tasks, poll_interval):
    """Run queue workers for distributed clone jobs.

    Workers lease page and asset tasks from the shared database, fetch
    them with their own browser sessions and report the results. Stop
    with Ctrl+C; leased tasks are finished first.

    Examples:

        sitemirror worker --workers 4
    """
    verbose = ctx.obj.get('verbose', 0)
    quiet = ctx.obj.get('quiet', False)
    if workers < 1:
        raise click.BadParameter("must be at least 1", param_hint="--workers")

    try:
        processed = asyncio.run(closing_database(
            _run_workers(workers, worker_id, max_tasks, poll_interval, quiet)
        ))
    except MirrorError as e:
        handle_error(e, ErrorContext(operation="cli_worker"))
        if verbose:
            console.print_exception()
        raise click.ClickException(e.message)

    if not quiet:
        console.print(f"[green]Workers stopped after {processed} tasks[/green]")


async def _run_workers(
    count: int,
    worker_id: Optional[str],
    max_tasks: Optional[int],
    poll_interval: Optional[float],
    quiet: bool,
) -> int:
    config_manager = get_config_manager()
    db_manager = get_database_manager()
    await db_manager.initialize()

    task_queue = TaskQueue(db_manager, config_manager)
    await task_queue.purge_completed()
    cache = ContentCache(db_manager, config_manager)
    await cache.cleanup_expired()

    prefix = worker_id or default_worker_id()
    pool: List[QueueWorker] = [
        QueueWorker(
            queue=task_queue,
            cache=cache,
            config_manager=config_manager,
            db_manager=db_manager,
            worker_id=f"{prefix}-{index}" if count > 1 else prefix,
            poll_interval=poll_interval,
        )
        for index in range(count)
    ]

    loop = asyncio.get_running_loop()

    def stop_all() -> None:
        if not quiet:
            console.print("\n[yellow]Stopping workers...[/yellow]")
        for queue_worker in pool:
            queue_worker.stop()
        loop.remove_signal_handler(signal.SIGINT)

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_all)
        except NotImplementedError:
            logger.debug(f"Cannot install a handler for {signum}; workers stop on KeyboardInterrupt")

    if not quiet:
        console.print(f"[blue]Started {count} worker(s)[/blue] ({prefix}); press Ctrl+C to stop")
    results = await asyncio.gather(*(queue_worker.run(max_tasks) for queue_worker in pool))
    return sum(results)
