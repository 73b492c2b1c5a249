"""Main CLI entry point for sitemirror."""

from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.traceback import install

from ..foundation.config import get_config_manager
from ..foundation.errors import MirrorError
from ..foundation.logging import setup_logging
from ..version import __version__
from .commands import cancel, clone, config, pause, resume, status, worker

# Install rich traceback handler
install(show_locals=True)

console = Console()


def setup_cli_logging(verbose: int) -> None:
    """Setup logging based on verbosity level.

    Args:
        verbose: Verbosity level (0-2)
    """
    level_map = {
        0: "WARNING",
        1: "INFO",
        2: "DEBUG",
    }
    setup_logging(level=level_map.get(verbose, "DEBUG"))


def handle_cli_error(error: Exception, debug: bool = False) -> int:
    """Print an error the way the CLI reports them and return an exit code.

    Args:
        error: Exception that occurred
        debug: Whether to show the full traceback

    Returns:
        Exit code
    """
    if isinstance(error, MirrorError):
        console.print(f"[red]Error:[/red] {error.message}")
        if error.details:
            console.print(f"Details: {error.details}")
        return 1
    if isinstance(error, click.ClickException):
        error.show()
        return error.exit_code
    if debug:
        console.print_exception()
    else:
        console.print(f"[red]Unexpected error:[/red] {error}")
        console.print("Use --verbose for more details")
    return 1


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(dir_okay=False),
    help="Configuration file path"
)
@click.option(
    "--verbose",
    "-v",
    count=True,
    help="Increase verbosity (use -v, -vv)"
)
@click.option(
    "--quiet",
    "-q",
    is_flag=True,
    help="Suppress output except errors"
)
@click.option(
    "--no-color",
    is_flag=True,
    help="Disable colored output"
)
@click.version_option(version=__version__, prog_name="sitemirror")
@click.pass_context
def cli(ctx, config, verbose, quiet, no_color):
    """sitemirror - capture live websites into offline mirrors.

    Examples:

        # Mirror a site two levels deep
        sitemirror clone https://example.com --max-depth 2

        # Continue a paused job
        sitemirror resume 3f2c9a...

        # Run two queue workers for distributed jobs
        sitemirror worker --workers 2

        # List recent jobs
        sitemirror status
    """
    ctx.ensure_object(dict)

    if quiet:
        verbose = 0

    # Configuration first so the log file setting is honoured
    config_manager = get_config_manager()
    if config:
        config_manager.config_path = Path(config)
    config_manager.load_hierarchical()

    setup_cli_logging(verbose)

    ctx.obj['verbose'] = verbose
    ctx.obj['quiet'] = quiet
    ctx.obj['no_color'] = no_color
    ctx.obj['config_path'] = config

    if no_color:
        console.no_color = True


cli.add_command(clone)
cli.add_command(resume)
cli.add_command(pause)
cli.add_command(cancel)
cli.add_command(status)
cli.add_command(worker)
cli.add_command(config)

