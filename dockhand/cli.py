#!/usr/bin/env python3
"""Dockhand CLI - Install and supervise container-packaged extensions."""
import asyncio
from datetime import timedelta
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from dockhand import __version__
from dockhand.cli_catalog_commands import register_catalog_commands
from dockhand.cli_support import (
    load_config,
    make_engine,
    parse_options,
    print_success,
    run_session,
    setup_file_logging,
)
from dockhand.core.actions import ActionKind
from dockhand.core.logger import get_logger, set_verbose
from dockhand.core.manager import ExtensionManager

app = typer.Typer(
    name="dockhand",
    help="""Dockhand - Extensions as containers, installed and kept up to date

Quick start:
  dockhand catalog list           # Browse available extensions
  dockhand install <name>         # Pull, create and start an extension
  dockhand status                 # What is installed and running
  dockhand serve                  # Run the manager with daily updates
""",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)

ConfigOption = typer.Option(None, "--config", "-c", help="Path to dockhand.yml")


def format_uptime(uptime: Optional[timedelta]) -> str:
    if uptime is None:
        return "-"
    minutes = int(uptime.total_seconds()) // 60
    days, minutes = divmod(minutes, 24 * 60)
    hours, minutes = divmod(minutes, 60)
    if days:
        return f"{days}d {hours}h {minutes}m"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug output"),
    version: bool = typer.Option(False, "--version", help="Show version and exit"),
):
    if version:
        console.print(f"dockhand {__version__}")
        raise typer.Exit()
    set_verbose(verbose)
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@app.command()
def serve(
    config: Optional[str] = ConfigOption,
    log_file: Optional[str] = typer.Option(None, "--log-file", help="Log file (default /var/log/dockhand/dockhand.log)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug output"),
):
    """Run the manager: load the catalog, process actions and update daily.

    Exits with code 66 after pulling a newer image of Dockhand itself, so a
    supervisor can relaunch it.
    """
    cfg = load_config(config)
    log_path = setup_file_logging(log_file, verbose)
    console.print(f"[dim]Logging to {log_path}[/dim]")

    manager = ExtensionManager(cfg, engine=make_engine(cfg), status_sink=_print_status)
    code = asyncio.run(manager.serve())
    if code:
        raise typer.Exit(code)


def _print_status(message: str, is_error: bool) -> None:
    style = "red" if is_error else "cyan"
    console.print(f"[{style}]{message}[/{style}]")


@app.command()
def status(
    name: Optional[str] = typer.Argument(None, help="Extension to show in detail"),
    config: Optional[str] = ConfigOption,
):
    """Show installed extensions, or one extension in detail."""
    cfg = load_config(config)

    def show(manager: ExtensionManager) -> bool:
        if name:
            return _show_extension(manager, name)

        installed = manager.installed_extensions()
        if not installed:
            console.print("[yellow]No extensions installed[/yellow]")
            return True

        table = Table(title="Installed extensions")
        table.add_column("Name", style="cyan")
        table.add_column("State")
        table.add_column("Tag", style="dim")
        table.add_column("Uptime", justify="right")
        for ext in sorted(installed):
            ext_status = manager.get_status(ext)
            table.add_row(ext, ext_status.state.value, ext_status.tag or "-", format_uptime(ext_status.uptime))
        console.print(table)
        return True

    raise typer.Exit(run_session(cfg, console, show, quiet=True))


def _show_extension(manager: ExtensionManager, name: str) -> bool:
    details = manager.get_details(name)
    if details is None:
        console.print(f"[red]Error:[/red] {name} is not in the extension catalog")
        return False

    ext_status = manager.get_status(name)
    console.print(f"[bold]{details['display_name'] or name}[/bold] ({name})")
    for key in ("author", "packager", "description"):
        if details.get(key):
            console.print(f"  {key.capitalize()}: {details[key]}")
    console.print(f"  State: {ext_status.state.value}")
    if ext_status.tag:
        console.print(f"  Tag: {ext_status.tag}")
    if ext_status.uptime is not None:
        console.print(f"  Uptime: {format_uptime(ext_status.uptime)}")

    action_set = manager.get_actions(name)
    if action_set.actions:
        console.print(f"  Actions: {', '.join(a.title for a in action_set.actions)}")
    if action_set.options:
        for field in action_set.options.env_fields():
            console.print(f"  [dim]--env {field.key}={field.default}  ({field.title})[/dim]")
        for field in action_set.options.device_fields():
            console.print(f"  [dim]--device {field.default}  ({field.title})[/dim]")
        for field in action_set.options.bind_fields():
            console.print(f"  [dim]--bind HOST_PATH:{field.key}  ({field.title})[/dim]")
    return True


def _queue(cfg, action: ActionKind, name: str, **kwargs) -> None:
    code = run_session(cfg, console, lambda manager: manager.perform_action(action, name, **kwargs))
    if code:
        raise typer.Exit(code)
    print_success(console, f"{action.title} of {name} done")


@app.command()
def install(
    name: str = typer.Argument(..., help="Extension name"),
    env: Optional[List[str]] = typer.Option(None, "--env", "-e", help="Environment variable (KEY=VALUE).", metavar="KEY=VALUE"),
    device: Optional[List[str]] = typer.Option(None, "--device", "-d", help="Device mapping (HOST[:CONTAINER]).", metavar="HOST[:CONTAINER]"),
    bind: Optional[List[str]] = typer.Option(None, "--bind", "-b", help="Bind mount (HOST:CONTAINER).", metavar="HOST:CONTAINER"),
    config: Optional[str] = ConfigOption,
):
    """Pull, create and start an extension."""
    cfg = load_config(config)
    _queue(cfg, ActionKind.INSTALL, name, options=parse_options(env, device, bind))


@app.command()
def update(
    name: str = typer.Argument(..., help="Extension name"),
    config: Optional[str] = ConfigOption,
):
    """Re-pull and recreate an extension, keeping its options."""
    _queue(load_config(config), ActionKind.UPDATE, name)


@app.command("update-all")
def update_all(config: Optional[str] = ConfigOption):
    """Refresh the catalog and update every installed extension."""
    cfg = load_config(config)
    code = run_session(cfg, console, lambda manager: manager.update_all())
    if code:
        raise typer.Exit(code)
    print_success(console, "Update sweep done")


@app.command()
def uninstall(
    name: str = typer.Argument(..., help="Extension name"),
    config: Optional[str] = ConfigOption,
):
    """Stop and remove an extension and its image."""
    _queue(load_config(config), ActionKind.UNINSTALL, name)


@app.command()
def start(
    name: str = typer.Argument(..., help="Extension name"),
    config: Optional[str] = ConfigOption,
):
    """Start an installed extension."""
    _queue(load_config(config), ActionKind.START, name)


@app.command()
def stop(
    name: str = typer.Argument(..., help="Extension name"),
    config: Optional[str] = ConfigOption,
):
    """Stop a running extension."""
    _queue(load_config(config), ActionKind.STOP, name)


@app.command()
def restart(
    name: str = typer.Argument(..., help="Extension name"),
    config: Optional[str] = ConfigOption,
):
    """Restart a running extension."""
    _queue(load_config(config), ActionKind.RESTART, name)


@app.command()
def logs(
    output: Path = typer.Option(Path("dockhand-logs.tar.gz"), "--output", "-o", help="Archive to write"),
    config: Optional[str] = ConfigOption,
):
    """Capture the logs of all extensions into a gzip tar archive."""
    cfg = load_config(config)
    code = run_session(cfg, console, lambda manager: manager.collect_logs(output), quiet=True)
    if code:
        raise typer.Exit(code)
    print_success(console, f"Logs written to {output}")


register_catalog_commands(app, console)

if __name__ == "__main__":
    app()
