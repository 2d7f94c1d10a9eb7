"""Main CLI application."""

from pathlib import Path
from typing import Annotated

import typer

from loom.cli.commands import config, sessions

app = typer.Typer(
    name="loom",
    help="Loom - persistent conversation sessions",
    no_args_is_help=True,
)


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-c",
            help="Path to configuration file",
        ),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option(
            "--log-level",
            help="Log level (DEBUG, INFO, WARNING, ERROR); defaults to LOOM_LOG_LEVEL or WARNING",
        ),
    ] = None,
) -> None:
    """Manage persistent conversation sessions."""
    import os

    from loom.logging import configure_logging

    level = log_level or os.environ.get("LOOM_LOG_LEVEL") or "WARNING"
    configure_logging(level=level, use_rich=True)
    ctx.obj = {"config_path": config_path}


config.register(app)
sessions.register(app)


if __name__ == "__main__":
    app()
