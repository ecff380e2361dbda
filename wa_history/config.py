"""Configuration management for wa-history.

Loads settings from ~/.config/wa-history/config.yaml with sensible defaults.
All settings are optional - defaults work out of the box.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

LOG = logging.getLogger(__name__)

# ============================================================================
# DEFAULTS
# ============================================================================

DEFAULT_CONFIG = {
    # SQLite history file (shared by all accounts)
    "db_path": "~/.wa-history/whatsapp-history.sqlite",

    # Export defaults (overridden by CLI flags)
    "export": {
        "format": "json",                            # json | csv | jsonl
        "output": "./whatsapp-history-export.json",
    },

    "logging": {
        "level": "WARNING",
    },
}

# Config file locations (first found wins)
CONFIG_PATHS = [
    Path.home() / ".config/wa-history/config.yaml",
    Path.home() / ".config/wa-history/config.yml",
    Path.home() / ".wa-history.yaml",
    Path("./wa-history.yaml"),
]


# ============================================================================
# CONFIG LOADING
# ============================================================================

_config_cache: dict | None = None


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge override into base, returning new dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def find_config_file() -> Path | None:
    """Find the first existing config file."""
    for path in CONFIG_PATHS:
        if path.exists():
            return path
    return None


def load_config(reload: bool = False) -> dict:
    """Load configuration with defaults.

    Returns merged config: defaults + user overrides.
    Config is cached after first load.
    """
    global _config_cache

    if _config_cache is not None and not reload:
        return _config_cache

    config = DEFAULT_CONFIG.copy()

    config_file = find_config_file()
    if config_file:
        try:
            user_config = yaml.safe_load(config_file.read_text()) or {}
            config = _deep_merge(config, user_config)
        except (OSError, yaml.YAMLError) as e:
            LOG.warning("Could not load config from %s: %s", config_file, e)

    _config_cache = config
    return config


def get(key: str, default: Any = None) -> Any:
    """Get a config value by dot-separated key.

    Example:
        get("export.format")  # Returns "json"
        get("db_path")        # Returns the SQLite path
    """
    config = load_config()
    value = config
    for part in key.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        else:
            return default
    return value


# ============================================================================
# CLI HELPER
# ============================================================================

def init_config(force: bool = False) -> Path:
    """Create example config file in default location."""
    config_path = CONFIG_PATHS[0]

    if config_path.exists() and not force:
        raise FileExistsError(f"Config already exists: {config_path}")

    config_path.parent.mkdir(parents=True, exist_ok=True)

    example = """# wa-history configuration
# All settings are optional - defaults work out of the box.

# SQLite file holding the message history of every account
db_path: ~/.wa-history/whatsapp-history.sqlite

# Export defaults (CLI flags win)
export:
  format: json                   # json, csv or jsonl
  output: ./whatsapp-history-export.json

# Log level for diagnostics on stderr (DEBUG, INFO, WARNING, ERROR)
logging:
  level: WARNING
"""

    config_path.write_text(example)
    return config_path


def show_config() -> None:
    """Print current configuration."""
    config = load_config()
    config_file = find_config_file()

    print("=" * 60)
    print("wa-history configuration")
    print("=" * 60)

    if config_file:
        print(f"Config file: {config_file}")
    else:
        print("Config file: (using defaults)")

    print()
    print(yaml.dump(config, default_flow_style=False, sort_keys=False))
