"""CLI command modules."""

from loom.cli.commands import config, sessions

__all__ = ["config", "sessions"]
