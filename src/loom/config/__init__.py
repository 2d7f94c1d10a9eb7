"""Configuration module."""

from loom.config.loader import find_config_path, get_default_config, load_config
from loom.config.models import (
    CompactionConfig,
    ConfigError,
    LoomConfig,
    SessionConfig,
    TokenConfig,
)
from loom.config.paths import (
    get_config_path,
    get_logs_path,
    get_loom_home,
    get_projects_path,
)

__all__ = [
    "CompactionConfig",
    "ConfigError",
    "LoomConfig",
    "SessionConfig",
    "TokenConfig",
    "find_config_path",
    "get_config_path",
    "get_default_config",
    "get_logs_path",
    "get_loom_home",
    "get_projects_path",
    "load_config",
]
