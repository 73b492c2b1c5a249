"""CLI command for managing configuration."""

import json
from pathlib import Path
from typing import Any, Dict

import click
import yaml
from rich.console import Console
from rich.table import Table
from rich.tree import Tree

from ...foundation.config import get_config_manager
from ...foundation.errors import ConfigurationError, handle_error

console = Console()

BOOLEAN_WORDS = ("true", "false", "yes", "no", "on", "off")


@click.group()
@click.pass_context
def config(ctx):
    """Manage sitemirror configuration.

    Settings are read from the system file, the user file
    (~/.sitemirror/config.yaml), the file given with --config and
    SITEMIRROR_* environment variables, in that order.

    Examples:

        # Show current configuration
        sitemirror config show

        # Get a specific setting
        sitemirror config get crawl.max_depth

        # Change a setting and save it
        sitemirror config set crawl.concurrency 8 --persistent

        # Write a default configuration file
        sitemirror config init
    """
    ctx.ensure_object(dict)


@config.command()
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["yaml", "json", "table"]),
    default="table",
    show_default=True,
    help="Output format"
)
@click.option(
    "--section",
    help="Show only specific configuration section"
)
def show(output_format, section):
    """Show current configuration."""
    try:
        config_manager = get_config_manager()
        if section:
            config_data = config_manager.get_section(section)
            if config_data is None:
                raise click.ClickException(f"Configuration section '{section}' not found")
        else:
            config_data = config_manager.get_all_settings()
    except ConfigurationError as e:
        handle_error(e)
        raise click.ClickException(f"Failed to show configuration: {e.message}")

    if output_format == "json":
        click.echo(json.dumps(config_data, indent=2, default=str))
    elif output_format == "yaml":
        click.echo(yaml.safe_dump(config_data, default_flow_style=False))
    elif section:
        _show_config_section(section, config_data)
    else:
        _show_config_tree(config_data)


@config.command()
@click.argument("key")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["yaml", "json", "raw"]),
    default="raw",
    show_default=True,
    help="Output format"
)
def get(key, output_format):
    """Get a specific configuration value."""
    value = get_config_manager().get_setting(key)
    if value is None:
        raise click.ClickException(f"Configuration key '{key}' not found")

    if output_format == "json":
        click.echo(json.dumps(value, indent=2, default=str))
    elif output_format == "yaml":
        click.echo(yaml.safe_dump({key: value}, default_flow_style=False))
    elif isinstance(value, (dict, list)):
        click.echo(json.dumps(value, default=str))
    else:
        click.echo(str(value))


@config.command(name="set")
@click.argument("key")
@click.argument("value")
@click.option(
    "--type",
    "value_type",
    type=click.Choice(["auto", "string", "int", "float", "bool", "json"]),
    default="auto",
    show_default=True,
    help="Value type"
)
@click.option(
    "--persistent",
    is_flag=True,
    help="Save to configuration file"
)
@click.pass_context
def set_value(ctx, key, value, value_type, persistent):
    """Set a configuration value."""
    quiet = ctx.obj.get('quiet', False)
    config_manager = get_config_manager()

    if value_type == "auto":
        value_type = _detect_type(config_manager.get_setting(key), value)
    try:
        converted = _convert_value(value, value_type)
    except ValueError as e:
        raise click.BadParameter(f"{value!r} is not a valid {value_type}: {e}", param_hint="VALUE")

    try:
        config_manager.set_setting(key, converted)
        result = config_manager.validate_config()
        if not result["valid"]:
            raise click.ClickException("; ".join(result["errors"]))
        saved_to = None
        if persistent or ctx.obj.get('config_path'):
            saved_to = config_manager.save_to_file()
    except (ConfigurationError, OSError) as e:
        handle_error(e)
        raise click.ClickException(f"Failed to set configuration: {e}")

    if quiet:
        click.echo("OK")
        return
    console.print(f"[green]Set {key} = {converted!r}[/green]")
    if saved_to is not None:
        console.print(f"[green]Configuration saved to[/green] {saved_to}")


@config.command()
@click.option(
    "--path",
    "config_path",
    type=click.Path(dir_okay=False),
    help="Configuration file path (default: ~/.sitemirror/config.yaml)"
)
@click.option(
    "--force",
    is_flag=True,
    help="Overwrite existing configuration file"
)
@click.pass_context
def init(ctx, config_path, force):
    """Write a configuration file with every default setting."""
    quiet = ctx.obj.get('quiet', False)
    config_manager = get_config_manager()
    config_file = Path(config_path).expanduser() if config_path else config_manager.get_default_config_path()

    if config_file.exists() and not force:
        raise click.ClickException(
            f"Configuration file already exists: {config_file}. Use --force to overwrite."
        )
    try:
        created = config_manager.create_default_config(config_file)
    except OSError as e:
        handle_error(e)
        raise click.ClickException(f"Failed to initialize configuration: {e}")

    if quiet:
        click.echo(str(created))
    else:
        console.print(f"[green]Default configuration created:[/green] {created}")
        console.print("Edit the file or use 'sitemirror config set' to change settings.")


@config.command()
@click.option(
    "--path",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    help="Configuration file to validate instead of the active configuration"
)
@click.pass_context
def validate(ctx, config_path):
    """Validate configuration."""
    quiet = ctx.obj.get('quiet', False)
    config_manager = get_config_manager()

    try:
        if config_path:
            config_manager.load_from_file(config_path)
        result = config_manager.validate_config()
    except ConfigurationError as e:
        result = {"valid": False, "errors": [e.message], "warnings": []}

    if quiet:
        click.echo("OK" if result["valid"] else "INVALID")
    elif result["valid"]:
        console.print("[green]Configuration is valid.[/green]")
    else:
        console.print("[red]Configuration validation failed:[/red]")
        for error in result["errors"]:
            console.print(f"  - {error}")
    if not quiet:
        for warning in result.get("warnings", []):
            console.print(f"[yellow]Warning:[/yellow] {warning}")

    if not result["valid"]:
        ctx.exit(1)


@config.command()
@click.pass_context
def path(ctx):
    """Show configuration file paths."""
    quiet = ctx.obj.get('quiet', False)
    config_manager = get_config_manager()
    current = config_manager.config_path or config_manager.get_default_config_path()

    if quiet:
        click.echo(str(current))
        return

    table = Table(title="Configuration Paths")
    table.add_column("Type", style="cyan")
    table.add_column("Path", style="green")
    table.add_column("Exists", style="yellow")
    table.add_row("Current", str(current), "Yes" if current.exists() else "No")
    for label, candidate in (
        ("Default", config_manager.get_default_config_path()),
        ("System", config_manager.get_system_config_path()),
    ):
        table.add_row(label, str(candidate), "Yes" if candidate.exists() else "No")
    console.print(table)


# Helper functions

def _detect_type(current: Any, value: str) -> str:
    """Pick a type for ``value``: the existing setting's type, else whatever the text looks like."""
    if isinstance(current, bool):
        return "bool"
    if isinstance(current, int):
        return "int"
    if isinstance(current, float):
        return "float"
    if isinstance(current, (list, dict)):
        return "json"
    if current is not None:
        return "string"

    if value.lower() in BOOLEAN_WORDS:
        return "bool"
    for candidate, parse in (("int", int), ("float", float)):
        try:
            parse(value)
            return candidate
        except ValueError:
            continue
    return "string"


def _convert_value(value: str, value_type: str) -> Any:
    """Convert string value to appropriate type."""
    if value_type == "int":
        return int(value)
    if value_type == "float":
        return float(value)
    if value_type == "bool":
        lowered = value.lower()
        if lowered not in BOOLEAN_WORDS + ("1", "0"):
            raise ValueError("expected true/false")
        return lowered in ("true", "yes", "on", "1")
    if value_type == "json":
        return json.loads(value)
    return value


def _show_config_tree(config_data: Dict[str, Any]) -> None:
    """Show configuration as a tree structure."""
    tree = Tree("Configuration")

    def add_dict_to_tree(parent_node, data):
        for key, value in data.items():
            if isinstance(value, dict):
                add_dict_to_tree(parent_node.add(f"[bold cyan]{key}[/bold cyan]"), value)
            elif isinstance(value, str):
                parent_node.add(f'{key}: "{value}"')
            elif isinstance(value, bool):
                parent_node.add(f"{key}: [green]{value}[/green]")
            elif isinstance(value, (int, float)):
                parent_node.add(f"{key}: [yellow]{value}[/yellow]")
            else:
                parent_node.add(f"{key}: {value}")

    add_dict_to_tree(tree, config_data)
    console.print(tree)


def _show_config_section(section_name: str, config_data: Dict[str, Any]) -> None:
    """Show a specific configuration section as a table."""
    table = Table(title=f"Configuration Section: {section_name}")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")
    table.add_column("Type", style="yellow")

    def add_dict_to_table(data, prefix=""):
        for key, value in data.items():
            full_key = f"{prefix}.{key}" if prefix else key
            if isinstance(value, dict):
                add_dict_to_table(value, full_key)
            else:
                value_str = json.dumps(value) if isinstance(value, list) else str(value)
                table.add_row(full_key, value_str, type(value).__name__)

    add_dict_to_table(config_data)
    console.print(table)
