"""Main entry point for the sitemirror application."""

import sys
from typing import Optional

import click

from .cli.main import cli, console, handle_cli_error


def main(args: Optional[list] = None) -> int:
    """Run the CLI and translate failures into exit codes.

    Args:
        args: Command line arguments (defaults to sys.argv)

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    if args is None:
        args = sys.argv[1:]
    try:
        result = cli.main(args=args, standalone_mode=False)
        return result if isinstance(result, int) else 0
    except click.exceptions.Exit as e:
        return e.exit_code
    except (KeyboardInterrupt, click.Abort):
        console.print("\n[yellow]Operation cancelled by user.[/yellow]")
        return 130
    except Exception as e:
        debug = any(arg == "--verbose" or arg.startswith("-v") for arg in args)
        return handle_cli_error(e, debug)


if __name__ == "__main__":
    sys.exit(main())
