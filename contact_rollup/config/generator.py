"""
Settings file generator for the contact rollup.

Provides functionality to generate a default configuration file with
documentation and examples for every available option.
"""

import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def generate_default_config() -> str:
    """
    Generate default YAML configuration with all options documented.

    Every option is commented out, so the generated file loads as an empty
    mapping until the operator edits it.

    Returns:
        String containing YAML configuration with comments
    """
    return """# Contact Rollup Configuration
# ============================
#
# Settings for contact-rollup. Environment variables named
# CONTACT_ROLLUP_<OPTION IN UPPER CASE> override the tunables below.
#
# To use this configuration:
#   1. Save as ~/.contact-rollup/config.yaml (or custom location)
#   2. Uncomment and modify options as needed
#   3. Add your accounts and run `contact-rollup config show`

# Logging Options
# ---------------

# Enable verbose output with detailed logging
# Default: false
# verbose: true

# Directory for daily log files
# Default: <install dir>/logs
# log_dir: ~/.contact-rollup/logs

# Number of log files to keep
# Default: 10 (0 disables cleanup)
# log_retention_count: 10


# Storage
# -------

# SQLite file holding the rollup config, its history and run history.
# Relative paths are resolved against the configuration directory.
# Default: rollup.db
# database_path: rollup.db


# Concurrency (each clamped to 1-10)
# -----------

# Source accounts fetched in parallel
# source_account_concurrency: 3

# Contacts upserted into the target in parallel
# target_upsert_concurrency: 4

# Contacts deleted from the target in parallel during a wipe
# target_delete_concurrency: 4


# Run Limits
# ----------

# Hard cap on contacts read from one source account (100-250000)
# max_source_contacts_per_account: 50000

# Contacts written to the target per sync run (100-250000)
# max_upserts_per_run: 10000

# Contacts deleted per wipe run (1-250000)
# max_deletes_per_run: 50000

# Target contacts fetched when planning a wipe (100-500000)
# max_target_contacts_for_wipe: 150000

# Incremental syncs only consider contacts created within this window (1-336)
# incremental_lookback_hours: 48


# Rollup Target Detection
# -----------------------
#
# Accounts matching these markers are offered as rollup targets and are
# never used as sources. Name markers match the dealer name
# (case-insensitive); key markers match the account key stripped to
# lowercase letters and digits.
# rollup_target_name_markers:
#   - rollup
# rollup_target_key_markers:
#   - rollup


# Accounts
# --------
#
# accounts:
#   north-store:
#     dealer: North Store
#     provider: ghl
#     location_id: abc123
#     token_env: NORTH_STORE_GHL_TOKEN
#   south-store:
#     dealer: South Store
#     provider: klaviyo
#     api_key_env: SOUTH_STORE_KLAVIYO_KEY
#   group-rollup:
#     dealer: Group Rollup
#     provider: ghl
#     location_id: xyz789
#     token_env: GROUP_ROLLUP_GHL_TOKEN
#     capabilities: [contacts]
"""


def save_config_file(
    config_path: Path, overwrite: bool = False
) -> tuple[bool, str | None]:
    """
    Save default configuration file to specified path.

    Creates parent directories if they don't exist and saves
    the configuration with owner-only permissions.

    Args:
        config_path: Path where the config file should be saved
        overwrite: If True, overwrite existing file. If False, fail if file exists.

    Returns:
        Tuple of (success, error_message); error_message is None on success
    """
    try:
        config_path = config_path.expanduser().resolve()

        if config_path.exists() and not overwrite:
            return (
                False,
                f"Configuration file already exists: {config_path}\n"
                "Use --force to overwrite.",
            )

        config_path.parent.mkdir(parents=True, mode=0o700, exist_ok=True)
        config_path.write_text(generate_default_config(), encoding="utf-8")

        # Account tokens may live in this file
        config_path.chmod(0o600)

        logger.info(f"Created configuration file: {config_path}")
        return (True, None)

    except OSError as e:
        error_msg = f"Failed to create configuration file: {e}"
        logger.error(error_msg)
        return (False, error_msg)
