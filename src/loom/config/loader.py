"""Configuration loading from TOML files."""

import tomllib
from pathlib import Path

from pydantic import ValidationError

from loom.config.models import ConfigError, LoomConfig
from loom.config.paths import get_config_path


def _get_default_config_paths() -> list[Path]:
    """Get ordered list of default config file locations."""
    return [
        Path("loom.toml"),  # Current directory
        get_config_path(),  # ~/.loom/config.toml (or LOOM_HOME)
        Path("/etc/loom/config.toml"),  # System-wide
    ]


def find_config_path() -> Path | None:
    for default_path in _get_default_config_paths():
        expanded = default_path.expanduser()
        if expanded.exists():
            return expanded
    return None


def load_config(path: Path | None = None) -> LoomConfig:
    """Load configuration from a TOML file.

    Args:
        path: Explicit path to config file. If None, searches default
            locations and falls back to defaults when none exists.

    Returns:
        Validated LoomConfig instance.

    Raises:
        FileNotFoundError: If an explicit path does not exist.
        ConfigError: If the file is not valid TOML or fails validation.
    """
    if path is not None:
        config_path = Path(path).expanduser()
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        config_path = find_config_path()
        if config_path is None:
            return get_default_config()

    try:
        with config_path.open("rb") as f:
            raw_config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {config_path}: {e}") from e

    try:
        return LoomConfig.model_validate(raw_config)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {config_path}:\n{e}") from e


def get_default_config() -> LoomConfig:
    """Get the built-in default configuration."""
    return LoomConfig()
