"""
contact_rollup.config - Configuration management module

Contains the settings file loader, runtime tunables and the stored
rollup config types.
"""

from contact_rollup.config.loader import ConfigError, ConfigLoader
from contact_rollup.config.rollup_config import (
    ConfigSnapshot,
    RollupConfig,
    RollupConfigError,
    RollupConfigInput,
    RunSummary,
)
from contact_rollup.config.tunables import RollupTunables

__all__ = [
    "ConfigError",
    "ConfigLoader",
    "ConfigSnapshot",
    "RollupConfig",
    "RollupConfigError",
    "RollupConfigInput",
    "RollupTunables",
    "RunSummary",
]
