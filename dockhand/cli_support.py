"""Shared utilities for Dockhand CLI modules."""
from __future__ import annotations

import asyncio
import inspect
import os
from pathlib import Path
from typing import Any, Callable, List, Optional

import typer
from rich.console import Console

from dockhand.core.config import DockhandConfig, set_config
from dockhand.core.manager import ExtensionManager
from dockhand.engine.client import ContainerEngine, DockerEngine
from dockhand.engine.config_builder import ExtensionOptions

# Default config search paths (ordered by proximity to current run)
CONFIG_PATHS = [
    "./dockhand.yml",
    str(Path.home() / ".config" / "dockhand" / "dockhand.yml"),
    "/etc/dockhand/dockhand.yml",
]


def find_config(config_path: Optional[str] = None) -> Optional[str]:
    """Locate the active Dockhand configuration file, if any."""
    if config_path:
        return config_path

    if env_config := os.environ.get("DOCKHAND_CONFIG"):
        return env_config

    for path in CONFIG_PATHS:
        if Path(path).exists():
            return path

    return None


def load_config(config_path: Optional[str] = None) -> DockhandConfig:
    """Load file config, apply ``DOCKHAND_*`` overrides and make it global."""
    config_file = find_config(config_path)
    base = DockhandConfig.from_file(Path(config_file)) if config_file else DockhandConfig()
    config = DockhandConfig.from_env(base)
    set_config(config)
    return config


def setup_file_logging(log_file: Optional[str] = None, verbose: bool = False) -> Path:
    """Set up file logging for CLI commands."""
    from dockhand.core.logger import setup_file_logging as _setup_file_logging
    return _setup_file_logging(log_file=log_file, verbose=verbose)


def make_engine(config: DockhandConfig) -> ContainerEngine:
    return DockerEngine(config.engine_url, config.engine_timeout)


def parse_options(
    env: Optional[List[str]] = None,
    devices: Optional[List[str]] = None,
    binds: Optional[List[str]] = None,
) -> Optional[ExtensionOptions]:
    """Turn repeated ``--env/--device/--bind`` flags into install options.

    Returns:
        ExtensionOptions, or None when no flag was given
    """
    options = ExtensionOptions()

    for item in env or []:
        if "=" not in item:
            raise typer.BadParameter("Environment variables must be KEY=VALUE", param_hint="env")
        key, value = item.split("=", 1)
        options.env[key] = value

    for item in devices or []:
        host, _, container = item.partition(":")
        options.devices[host] = container or host

    for item in binds or []:
        host, sep, container = item.partition(":")
        if not sep or not host or not container:
            raise typer.BadParameter("Binds must be HOST_PATH:CONTAINER_PATH", param_hint="bind")
        options.binds[host] = container

    return None if options.is_empty() else options


class StatusPrinter:
    """Status sink printing to the console; remembers whether an error was shown."""

    def __init__(self, console: Console, quiet: bool = False):
        self.console = console
        self.quiet = quiet
        self.failed = False

    def __call__(self, message: str, is_error: bool) -> None:
        if is_error:
            self.failed = True
            print_error(self.console, message)
        elif not self.quiet:
            self.console.print(f"[dim]{message}[/dim]")


def run_session(
    config: DockhandConfig,
    console: Console,
    action: Optional[Callable[[ExtensionManager], Any]] = None,
    quiet: bool = False,
) -> int:
    """Start a manager, run ``action`` against it and wait for the queue to drain.

    The catalog is loaded (as during ``serve``) before ``action`` runs.

    Returns:
        0 on success, 1 if any error was reported
    """
    printer = StatusPrinter(console, quiet=quiet)

    async def _run() -> int:
        manager = ExtensionManager(config, engine=make_engine(config), status_sink=printer)
        if not await manager.startup():
            return 1
        await manager.queue.wait_idle()

        if action is not None:
            result = action(manager)
            if inspect.isawaitable(result):
                result = await result
            if result is False:
                printer.failed = True
            await manager.queue.wait_idle()

        manager.save_state()
        return 1 if printer.failed else 0

    return asyncio.run(_run())


def print_success(console: Console, message: str, prefix: str = "✓") -> None:
    console.print(f"[green]{prefix}[/green] {message}")


def print_error(console: Console, message: str, prefix: str = "✗") -> None:
    console.print(f"[red]{prefix}[/red] {message}")
