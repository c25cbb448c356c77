"""
Path utilities for configuration directory resolution.

Provides consistent path resolution for the contact-rollup configuration
directory and the files kept inside it.
"""

from __future__ import annotations

import os
from pathlib import Path

# Default configuration directory
DEFAULT_CONFIG_DIR = Path.home() / ".contact-rollup"

# Environment variable for overriding config directory
CONFIG_DIR_ENV_VAR = "CONTACT_ROLLUP_CONFIG_DIR"

# SQLite store holding the rollup config row and run history
DEFAULT_DATABASE_FILE = "rollup.db"


def resolve_config_dir(config_dir: Path | str | None = None) -> Path:
    """
    Resolve the configuration directory path.

    Priority:
        1. Explicit config_dir parameter (if provided)
        2. CONTACT_ROLLUP_CONFIG_DIR environment variable
        3. Default directory (~/.contact-rollup)

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


def resolve_database_path(
    config_dir: Path, database_path: str | None = None
) -> Path:
    """
    Resolve the SQLite database location.

    Args:
        config_dir: Resolved configuration directory
        database_path: Optional explicit path from the settings file.
                      Relative paths are taken relative to config_dir.

    Returns:
        Path to the database file
    """
    if database_path:
        path = Path(database_path).expanduser()
        return path if path.is_absolute() else config_dir / path
    return config_dir / DEFAULT_DATABASE_FILE
