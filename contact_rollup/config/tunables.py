"""
Run tunables: concurrency limits, caps and the incremental window.

Each tunable has a default and a safe range. Values come from, in order of
precedence, a CONTACT_ROLLUP_* environment variable, the settings file, then
the default. Every value is clamped to its range; unparseable values fall
back to the default.
"""

from __future__ import annotations

import logging
import math
import os
from collections.abc import Mapping
from dataclasses import dataclass, fields
from typing import Any, Optional

ENV_PREFIX = "CONTACT_ROLLUP_"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TunableSpec:
    """Default and inclusive range of one tunable."""

    default: int
    minimum: int
    maximum: int

    def clamp(self, value: int) -> int:
        return max(self.minimum, min(self.maximum, value))


TUNABLE_SPECS: dict[str, TunableSpec] = {
    "source_account_concurrency": TunableSpec(3, 1, 10),
    "target_upsert_concurrency": TunableSpec(4, 1, 10),
    "target_delete_concurrency": TunableSpec(4, 1, 10),
    "max_source_contacts_per_account": TunableSpec(50_000, 100, 250_000),
    "max_upserts_per_run": TunableSpec(10_000, 100, 250_000),
    "max_deletes_per_run": TunableSpec(50_000, 1, 250_000),
    "max_target_contacts_for_wipe": TunableSpec(150_000, 100, 500_000),
    "incremental_lookback_hours": TunableSpec(48, 1, 24 * 14),
}


def parse_int(value: Any) -> Optional[int]:
    """
    Parse a finite number, flooring fractions.

    Returns None for missing, boolean or unparseable values.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(str(value).strip())
    except ValueError:
        return None
    if not math.isfinite(number):
        return None
    return math.floor(number)


def clamp_setting(name: str, value: Any) -> int:
    """Parse and clamp a value for the named tunable, or return its default."""
    spec = TUNABLE_SPECS[name]
    parsed = parse_int(value)
    if parsed is None:
        return spec.default
    return spec.clamp(parsed)


def env_var_name(name: str) -> str:
    return f"{ENV_PREFIX}{name.upper()}"


@dataclass(frozen=True)
class RollupTunables:
    """Resolved tunables for one engine instance."""

    source_account_concurrency: int = 3
    target_upsert_concurrency: int = 4
    target_delete_concurrency: int = 4
    max_source_contacts_per_account: int = 50_000
    max_upserts_per_run: int = 10_000
    max_deletes_per_run: int = 50_000
    max_target_contacts_for_wipe: int = 150_000
    incremental_lookback_hours: int = 48

    @classmethod
    def from_sources(
        cls,
        settings: Optional[Mapping[str, Any]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> RollupTunables:
        """
        Resolve tunables from environment variables and settings.

        Args:
            settings: Settings file mapping (snake_case keys)
            environ: Environment mapping; defaults to os.environ

        Returns:
            RollupTunables with every value clamped
        """
        settings = settings or {}
        environ = os.environ if environ is None else environ

        values: dict[str, int] = {}
        for item in fields(cls):
            name = item.name
            env_value = environ.get(env_var_name(name))
            raw: Any = env_value if env_value not in (None, "") else settings.get(name)
            values[name] = clamp_setting(name, raw)
            if raw is not None and parse_int(raw) is None:
                logger.warning(
                    f"Ignoring unparseable value {raw!r} for {name}, "
                    f"using default {values[name]}"
                )

        return cls(**values)

    def resolve_max_upserts(self, requested: Any = None) -> int:
        """Per-call override, clamped to the same range as the tunable."""
        if parse_int(requested) is None:
            return self.max_upserts_per_run
        return clamp_setting("max_upserts_per_run", requested)

    def resolve_max_deletes(self, requested: Any = None) -> int:
        if parse_int(requested) is None:
            return self.max_deletes_per_run
        return clamp_setting("max_deletes_per_run", requested)

    def to_dict(self) -> dict[str, int]:
        return {item.name: getattr(self, item.name) for item in fields(self)}


def resolve_source_account_limit(requested: Any = None) -> Optional[int]:
    """A positive source limit, or None when no limit was requested."""
    parsed = parse_int(requested)
    if parsed is None:
        return None
    return max(1, parsed)
