"""Extension catalog browsing commands."""
from __future__ import annotations

import json
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from dockhand.cli_support import load_config, run_session
from dockhand.core.manager import ExtensionManager

CatalogTyper = typer.Typer(help="Browse the extension catalog")


def register_catalog_commands(root: typer.Typer, console: Console) -> None:
    """Attach catalog commands to the main CLI."""

    @CatalogTyper.command("list")
    def list_command(
        category: Optional[str] = typer.Option(None, "--category", help="Only show this category"),
        format: str = typer.Option("table", "--format", "-f", help="Output format: table|json"),
        config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to dockhand.yml"),
    ):
        """List catalog extensions by category."""
        cfg = load_config(config)

        def show(manager: ExtensionManager) -> bool:
            catalog = manager.catalog
            if not catalog.loaded:
                console.print("[red]Error:[/red] Extension catalog not loaded")
                return False

            sections = []
            for index, title in enumerate(catalog.categories()):
                if category and title.lower() != category.lower():
                    continue
                sections.append((title, catalog.extensions_by_category(index)))

            if category and not sections:
                console.print(f"[yellow]No category named '{category}'[/yellow]")
                console.print(f"[dim]Available: {', '.join(catalog.categories())}[/dim]")
                return False

            if format == "json":
                payload = {
                    "version": catalog.version,
                    "categories": {
                        title: [entry.name for entry in entries] for title, entries in sections
                    },
                }
                console.print(json.dumps(payload, indent=2))
                return True

            table = Table(title=f"Extension catalog (v{catalog.version})")
            table.add_column("Category", style="magenta")
            table.add_column("Extension", style="cyan")
            table.add_column("Name", style="dim")
            table.add_column("State")
            for title, entries in sections:
                for entry in entries:
                    table.add_row(title, entry.title, entry.name, manager.get_status(entry.name).state.value)
                    title = ""
            console.print(table)
            return True

        raise typer.Exit(run_session(cfg, console, show, quiet=True))

    @CatalogTyper.command("info")
    def info_command(
        name: str = typer.Argument(..., help="Extension name"),
        config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to dockhand.yml"),
    ):
        """Show a catalog entry: image, tags and install options."""
        cfg = load_config(config)

        def show(manager: ExtensionManager) -> bool:
            descriptor = manager.catalog.lookup(name)
            if descriptor is None:
                console.print(f"[red]Error:[/red] {name} is not in the extension catalog")
                return False

            console.print(f"[bold cyan]{descriptor.title}[/bold cyan] ({descriptor.name})")
            if descriptor.description:
                console.print(f"  {descriptor.description}")
            if descriptor.author:
                console.print(f"  [dim]Author:[/dim] {descriptor.author}")
            if descriptor.packager:
                console.print(f"  [dim]Packager:[/dim] {descriptor.packager}")

            image = descriptor.image
            if image is None:
                return True

            console.print(f"  [dim]Image:[/dim] {image.repo}")
            for arch, tag in sorted(image.tags.items()):
                console.print(f"    {arch}: {tag}")

            options = image.options
            if options:
                table = Table(title="Install options")
                table.add_column("Kind", style="magenta")
                table.add_column("Key", style="cyan")
                table.add_column("Default")
                table.add_column("Description", style="dim")
                for field in options.env_fields():
                    table.add_row("env", field.key, field.default, field.title)
                for field in options.device_fields():
                    table.add_row("device", field.key, field.default, field.title)
                for field in options.bind_fields():
                    table.add_row("bind", field.key, "-", field.title)
                console.print(table)
            return True

        raise typer.Exit(run_session(cfg, console, show, quiet=True))

    root.add_typer(CatalogTyper, name="catalog")
