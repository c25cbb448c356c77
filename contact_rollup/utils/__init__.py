"""
contact_rollup.utils - Utility module

Path resolution and contact hygiene helpers.
"""

from contact_rollup.utils.normalization import (
    is_deliverable_email,
    is_dialable_phone,
    normalize_email,
    normalize_phone,
)
from contact_rollup.utils.paths import (
    DEFAULT_CONFIG_DIR,
    resolve_config_dir,
    resolve_database_path,
)

__all__ = [
    "normalize_email",
    "normalize_phone",
    "is_deliverable_email",
    "is_dialable_phone",
    "resolve_config_dir",
    "resolve_database_path",
    "DEFAULT_CONFIG_DIR",
]
