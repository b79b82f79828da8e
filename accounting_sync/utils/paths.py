"""
Path utilities for configuration directory resolution.

Provides consistent path resolution for the accounting-sync configuration
directory across the CLI, config loader and daemon.
"""

from __future__ import annotations

import os
from pathlib import Path

# Default configuration directory
DEFAULT_CONFIG_DIR = Path.home() / ".accounting-sync"

# Environment variable for overriding config directory
CONFIG_DIR_ENV_VAR = "ACCOUNTING_SYNC_CONFIG_DIR"

# Default SQLite database file name inside the config directory
DEFAULT_DATABASE_FILE = "sync.db"


def resolve_config_dir(config_dir: Path | str | None = None) -> Path:
    """
    Resolve the configuration directory path.

    Priority:
        1. Explicit config_dir parameter (if provided)
        2. ACCOUNTING_SYNC_CONFIG_DIR environment variable
        3. Default directory (~/.accounting-sync)

    Args:
        config_dir: Optional explicit configuration directory path.

    Returns:
        Resolved Path to the configuration directory
    """
    if config_dir is not None:
        return Path(config_dir).expanduser().resolve()

    env_dir = os.environ.get(CONFIG_DIR_ENV_VAR)
    if env_dir:
        return Path(env_dir).expanduser().resolve()

    return DEFAULT_CONFIG_DIR.expanduser().resolve()


def default_database_path(config_dir: Path | str | None = None) -> Path:
    """Return the default sync database location inside the config directory."""
    return resolve_config_dir(config_dir) / DEFAULT_DATABASE_FILE
