"""Shared console utilities for CLI commands."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

import typer
from rich.console import Console
from rich.table import Table

if TYPE_CHECKING:
    from loom.config.models import LoomConfig

# Shared console instance for all CLI commands
console = Console()


def config_from_context(ctx: typer.Context) -> LoomConfig:
    """Load the config selected by the global ``--config`` option."""
    from loom.config import ConfigError, load_config

    config_path: Path | None = (ctx.obj or {}).get("config_path")
    try:
        return load_config(config_path)
    except (FileNotFoundError, ConfigError) as e:
        error(str(e))
        raise typer.Exit(1) from None


def error(msg: str) -> None:
    """Print an error message in red."""
    console.print(f"[red]{msg}[/red]")


def warning(msg: str) -> None:
    """Print a warning message in yellow."""
    console.print(f"[yellow]{msg}[/yellow]")


def success(msg: str) -> None:
    """Print a success message in green."""
    console.print(f"[green]{msg}[/green]")


def info(msg: str) -> None:
    """Print an info message in cyan."""
    console.print(f"[cyan]{msg}[/cyan]")


def dim(msg: str) -> None:
    """Print a dimmed message."""
    console.print(f"[dim]{msg}[/dim]")


def create_table(
    title: str,
    columns: list[tuple[str, str | dict]],
) -> Table:
    """Create a styled table with consistent formatting.

    Args:
        title: Table title.
        columns: List of (name, style) or (name, kwargs_dict) tuples.

    Returns:
        Configured Rich Table.
    """
    table = Table(title=title)
    for name, style_or_kwargs in columns:
        if isinstance(style_or_kwargs, dict):
            table.add_column(name, **style_or_kwargs)
        else:
            table.add_column(name, style=style_or_kwargs)
    return table


def confirm_or_cancel(prompt: str, force: bool) -> bool:
    """Return True if the user confirms (or force is set). Print cancel on decline."""
    if force:
        return True
    confirmed = typer.confirm(prompt)
    if not confirmed:
        dim("Cancelled")
    return confirmed


def format_time(dt: datetime) -> str:
    return dt.astimezone().strftime("%Y-%m-%d %H:%M")


def truncate(text: str, max_length: int) -> str:
    text = " ".join(text.split())
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."
