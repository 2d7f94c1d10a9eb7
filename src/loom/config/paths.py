"""Centralized path management for Loom.

All state (config, sessions, logs) is stored under a single base directory.
The base directory can be overridden with the LOOM_HOME environment variable.

Default locations:
- Linux/macOS: ~/.loom
- Windows: %USERPROFILE%\\.loom
"""

import os
from functools import lru_cache
from pathlib import Path

ENV_VAR = "LOOM_HOME"


@lru_cache(maxsize=1)
def get_loom_home() -> Path:
    """Get the base directory for all Loom data.

    Resolution order:
    1. LOOM_HOME environment variable (if set)
    2. Platform default (~/.loom)

    Returns:
        Path to the Loom home directory.
    """
    if env_home := os.environ.get(ENV_VAR):
        return Path(env_home).expanduser().resolve()

    return Path.home() / ".loom"


def get_config_path() -> Path:
    """Get the default config file path."""
    return get_loom_home() / "config.toml"


def get_projects_path() -> Path:
    """Get the session storage root (one directory per project)."""
    return get_loom_home() / "projects"


def get_logs_path() -> Path:
    """Get the logs directory path."""
    return get_loom_home() / "logs"
