"""XDG-compliant path helpers for boardsync data storage."""

from __future__ import annotations

import os
from pathlib import Path

from platformdirs import user_config_dir, user_data_dir

APP_NAME = "boardsync"


def get_data_dir() -> Path:
    """Get the data directory (database, exported logs)."""
    override = os.environ.get("BOARDSYNC_DATA_DIR")
    if override:
        return Path(override)
    return Path(user_data_dir(APP_NAME))


def get_config_dir() -> Path:
    """Get the config directory (config.toml)."""
    override = os.environ.get("BOARDSYNC_CONFIG_DIR")
    if override:
        return Path(override)
    return Path(user_config_dir(APP_NAME))


def get_database_path() -> Path:
    """Get the path to the SQLite database."""
    return get_data_dir() / "boardsync.db"


def get_config_path() -> Path:
    """Get the path to the main config file."""
    return get_config_dir() / "config.toml"


def get_log_path() -> Path:
    """Get the path to the exported log file."""
    return get_data_dir() / "boardsync.log"


def ensure_directories() -> None:
    """Create all necessary directories if they don't exist."""
    get_data_dir().mkdir(parents=True, exist_ok=True)
    get_config_dir().mkdir(parents=True, exist_ok=True)
