"""Configuration management commands."""

from pathlib import Path
from typing import Annotated

import typer

from loom.cli.console import console, create_table, error, success


def register(app: typer.Typer) -> None:
    """Register the config and paths commands."""

    @app.command()
    def config(
        ctx: typer.Context,
        action: Annotated[
            str | None,
            typer.Argument(help="Action: show, validate"),
        ] = None,
        path: Annotated[
            Path | None,
            typer.Option(
                "--path",
                "-p",
                help="Path to config file (default: $LOOM_HOME/config.toml)",
            ),
        ] = None,
    ) -> None:
        """Manage configuration."""
        if action is None:
            typer.echo(ctx.get_help())
            raise typer.Exit(0)

        from rich.syntax import Syntax

        from loom.config import ConfigError, load_config
        from loom.config.paths import get_config_path

        expanded_path = path.expanduser() if path else get_config_path()

        if action == "show":
            if not expanded_path.exists():
                error(f"Config file not found: {expanded_path}")
                console.print("Built-in defaults are in effect")
                raise typer.Exit(1)

            content = expanded_path.read_text()
            syntax = Syntax(content, "toml", theme="monokai", line_numbers=True)
            console.print(f"[bold]Config file: {expanded_path}[/bold]\n")
            console.print(syntax)

        elif action == "validate":
            try:
                config_obj = load_config(expanded_path)
            except FileNotFoundError as e:
                error(str(e))
                raise typer.Exit(1) from None
            except ConfigError as e:
                error("Configuration validation failed:")
                console.print()
                console.print(str(e), markup=False)
                raise typer.Exit(1) from None

            table = create_table(
                "Configuration Summary",
                [("Setting", "cyan"), ("Value", "green")],
            )
            table.add_row("Projects", str(config_obj.projects_path))
            table.add_row("Default model", config_obj.sessions.default_model)
            table.add_row(
                "Auto-save",
                f"every {config_obj.sessions.auto_save_interval:g}s"
                if config_obj.sessions.auto_save
                else "[dim]disabled[/dim]",
            )
            table.add_row(
                "Context window",
                f"{config_obj.compaction.max_tokens} tokens "
                f"(compact at {config_obj.compaction.threshold_ratio:.0%})",
            )
            table.add_row(
                "Reserved tokens", str(config_obj.compaction.reserved_tokens)
            )

            success("Configuration is valid!")
            console.print()
            console.print(table)

        else:
            error(f"Unknown action: {action}")
            console.print("Valid actions: show, validate")
            raise typer.Exit(1)

    @app.command()
    def paths() -> None:
        """Show where Loom keeps its files."""
        from loom.config.paths import (
            get_config_path,
            get_logs_path,
            get_loom_home,
            get_projects_path,
        )

        table = create_table("Loom Paths", [("Name", "cyan"), ("Path", "")])
        table.add_row("Home", str(get_loom_home()))
        table.add_row("Config", str(get_config_path()))
        table.add_row("Projects", str(get_projects_path()))
        table.add_row("Logs", str(get_logs_path()))
        console.print(table)
