"""
Configuration loader module for the contact rollup.

Provides YAML-based settings file loading with support for:
- Loading configuration from default or custom paths
- Graceful handling of missing configuration files
- Validation of settings keys, tunables and the accounts mapping
"""

import logging
from pathlib import Path
from typing import Any

import yaml

from contact_rollup.utils.paths import resolve_config_dir

# Default configuration file name
DEFAULT_CONFIG_FILE = "config.yaml"

# Fields allowed on each entry of the accounts mapping
ACCOUNT_STRING_FIELDS = (
    "dealer",
    "provider",
    "location_id",
    "token",
    "token_env",
    "api_key",
    "api_key_env",
)

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


class ConfigLoader:
    """
    YAML settings file loader.

    Attributes:
        config_dir: Directory containing the configuration file
        config_file: Name of the configuration file

    Usage:
        loader = ConfigLoader()
        settings = loader.load_and_validate()

        # Load from specific file
        settings = loader.load_from_file("/path/to/config.yaml")
    """

    def __init__(
        self, config_dir: Path | None = None, config_file: str = DEFAULT_CONFIG_FILE
    ):
        """
        Initialize the configuration loader.

        Args:
            config_dir: Directory containing the configuration file.
                       Defaults to ~/.contact-rollup/ or $CONTACT_ROLLUP_CONFIG_DIR
            config_file: Name of the configuration file (default: config.yaml)
        """
        self.config_dir = resolve_config_dir(config_dir)
        self.config_file = config_file

    def _get_config_path(self) -> Path:
        return self.config_dir / self.config_file

    def load(self) -> dict[str, Any]:
        """
        Load configuration from the default configuration file.

        Returns:
            Dictionary containing configuration values, or empty dict if file
            doesn't exist

        Raises:
            ConfigError: If the configuration file exists but cannot be parsed
        """
        return self.load_from_file(self._get_config_path())

    def load_from_file(self, path: Path | str) -> dict[str, Any]:
        """
        Load configuration from a specific file.

        Returns an empty dict if the file doesn't exist, allowing
        graceful operation with defaults.

        Args:
            path: Path to the configuration file

        Returns:
            Dictionary containing configuration values, or empty dict if file
            doesn't exist

        Raises:
            ConfigError: If the configuration file exists but cannot be parsed
        """
        path = Path(path)

        if not path.exists():
            logger.debug(f"Configuration file not found: {path}")
            return {}

        try:
            with open(path, encoding="utf-8") as f:
                config = yaml.safe_load(f)

            # Handle empty files
            if config is None:
                logger.debug(f"Configuration file is empty: {path}")
                return {}

            if not isinstance(config, dict):
                raise ConfigError(
                    f"Configuration file must contain a YAML dictionary, "
                    f"got {type(config).__name__}"
                )

            logger.debug(f"Loaded configuration from {path}")
            return config

        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML configuration file: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file: {e}") from e

    def validate(self, config: dict[str, Any]) -> None:
        """
        Validate configuration structure and values.

        Unknown keys are ignored. Range clamping of tunables happens later,
        so only types are checked here.

        Args:
            config: Configuration dictionary to validate

        Raises:
            ConfigError: If configuration is invalid
        """
        if not isinstance(config, dict):
            raise ConfigError(
                f"Configuration must be a dictionary, got {type(config).__name__}"
            )

        valid_keys: dict[str, type[Any] | tuple[type[Any], ...]] = {
            # CLI options
            "verbose": bool,
            # Logging options
            "log_dir": str,
            "log_retention_count": int,
            # Storage
            "database_path": str,
            # Tunables
            "source_account_concurrency": int,
            "target_upsert_concurrency": int,
            "target_delete_concurrency": int,
            "max_source_contacts_per_account": int,
            "max_upserts_per_run": int,
            "max_deletes_per_run": int,
            "max_target_contacts_for_wipe": int,
            "incremental_lookback_hours": int,
            # Rollup target detection
            "rollup_target_name_markers": list,
            "rollup_target_key_markers": list,
            # Account directory
            "accounts": dict,
        }

        for key, value in config.items():
            if key not in valid_keys:
                continue
            expected_type = valid_keys[key]
            # bool is a subclass of int; reject it for numeric settings
            if expected_type is int and isinstance(value, bool):
                raise ConfigError(f"Invalid type for '{key}': expected int, got bool")
            if not isinstance(value, expected_type):
                type_name = expected_type.__name__  # type: ignore[union-attr]
                raise ConfigError(
                    f"Invalid type for '{key}': expected {type_name}, "
                    f"got {type(value).__name__}"
                )

        if "log_retention_count" in config and config["log_retention_count"] < 0:
            raise ConfigError(
                f"log_retention_count must be >= 0, got {config['log_retention_count']}"
            )

        for key in ("rollup_target_name_markers", "rollup_target_key_markers"):
            for marker in config.get(key, []):
                if not isinstance(marker, str) or not marker.strip():
                    raise ConfigError(f"{key} entries must be non-empty strings")

        if "accounts" in config:
            self._validate_accounts(config["accounts"])

    def _validate_accounts(self, accounts: dict[str, Any]) -> None:
        for account_key, entry in accounts.items():
            if not isinstance(account_key, str) or not account_key.strip():
                raise ConfigError("Account keys must be non-empty strings")
            if not isinstance(entry, dict):
                raise ConfigError(
                    f"Account '{account_key}' must be a mapping, "
                    f"got {type(entry).__name__}"
                )
            if not entry.get("provider"):
                raise ConfigError(f"Account '{account_key}' is missing 'provider'")

            for field_name in ACCOUNT_STRING_FIELDS:
                if field_name in entry and not isinstance(entry[field_name], str):
                    raise ConfigError(
                        f"Invalid type for 'accounts.{account_key}.{field_name}': "
                        f"expected str, got {type(entry[field_name]).__name__}"
                    )

            capabilities = entry.get("capabilities")
            if capabilities is not None and (
                not isinstance(capabilities, list)
                or not all(isinstance(c, str) for c in capabilities)
            ):
                raise ConfigError(
                    f"'accounts.{account_key}.capabilities' must be a list of strings"
                )

    def load_and_validate(self) -> dict[str, Any]:
        """
        Load configuration and validate it.

        Returns:
            Validated configuration dictionary

        Raises:
            ConfigError: If configuration cannot be loaded or is invalid
        """
        config = self.load()
        if config:
            self.validate(config)
        return config
