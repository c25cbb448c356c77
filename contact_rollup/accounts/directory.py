"""
Account directory.

Maps account keys from the settings file to provider adapters and
credentials, and decides which accounts look like rollup targets.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Optional

from contact_rollup.api.base import ContactSource, Credentials
from contact_rollup.api.registry import AdapterRegistry, is_known_provider
from contact_rollup.config.rollup_config import AccountOption, sort_account_options

CONTACTS_CAPABILITY = "contacts"

DEFAULT_NAME_MARKERS = ("rollup",)
DEFAULT_KEY_MARKERS = ("rollup",)

_NON_ALNUM = re.compile(r"[^a-z0-9]")

logger = logging.getLogger(__name__)


class AccountResolutionError(Exception):
    """Raised when an account cannot be turned into an adapter and credentials."""

    pass


@dataclass(frozen=True)
class AccountEntry:
    """
    One account from the settings file.

    Tokens may be given inline or by naming an environment variable;
    environment variables are read at resolve time.
    """

    key: str
    provider: str
    dealer: str = ""
    location_id: str = ""
    token: str = ""
    token_env: str = ""
    api_key: str = ""
    api_key_env: str = ""
    capabilities: tuple[str, ...] = (CONTACTS_CAPABILITY,)

    @classmethod
    def from_dict(cls, key: str, data: Mapping[str, Any]) -> AccountEntry:
        capabilities = data.get("capabilities")
        return cls(
            key=key,
            provider=str(data.get("provider") or "").strip().lower(),
            dealer=str(data.get("dealer") or "").strip(),
            location_id=str(data.get("location_id") or "").strip(),
            token=str(data.get("token") or ""),
            token_env=str(data.get("token_env") or ""),
            api_key=str(data.get("api_key") or ""),
            api_key_env=str(data.get("api_key_env") or ""),
            capabilities=(
                tuple(str(c).strip().lower() for c in capabilities)
                if capabilities is not None
                else (CONTACTS_CAPABILITY,)
            ),
        )

    @property
    def display_name(self) -> str:
        return self.dealer or self.key

    def secret(self, environ: Mapping[str, str]) -> str:
        """Token or API key, preferring inline values over env references."""
        for inline, env_name in ((self.token, self.token_env), (self.api_key, self.api_key_env)):
            if inline.strip():
                return inline.strip()
            if env_name and environ.get(env_name, "").strip():
                return environ[env_name].strip()
        return ""


@dataclass(frozen=True)
class ResolvedAccount:
    """An account ready for API calls."""

    key: str
    adapter: ContactSource
    credentials: Credentials


def is_rollup_target_like(
    key: str,
    dealer: Optional[str],
    name_markers: Sequence[str] = DEFAULT_NAME_MARKERS,
    key_markers: Sequence[str] = DEFAULT_KEY_MARKERS,
) -> bool:
    """
    Check whether an account looks like a rollup target.

    True if the dealer name contains a name marker (case-insensitive), or
    the key, stripped to lowercase letters and digits, contains a key
    marker.
    """
    dealer_text = (dealer or "").lower()
    for marker in name_markers:
        if marker.strip() and marker.strip().lower() in dealer_text:
            return True

    compact_key = _NON_ALNUM.sub("", key.lower())
    for marker in key_markers:
        compact_marker = _NON_ALNUM.sub("", marker.lower())
        if compact_marker and compact_marker in compact_key:
            return True
    return False


@dataclass
class AccountDirectory:
    """
    Known accounts and how to reach them.

    Usage:
        directory = AccountDirectory.from_settings(settings, registry)
        source = directory.resolve("north-store")
        page = await source.adapter.list_contacts(source.credentials, None, 100)
    """

    entries: dict[str, AccountEntry] = field(default_factory=dict)
    registry: Optional[AdapterRegistry] = None
    name_markers: tuple[str, ...] = DEFAULT_NAME_MARKERS
    key_markers: tuple[str, ...] = DEFAULT_KEY_MARKERS
    environ: Optional[Mapping[str, str]] = None

    @classmethod
    def from_settings(
        cls,
        settings: Mapping[str, Any],
        registry: Optional[AdapterRegistry] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> AccountDirectory:
        """
        Build a directory from a validated settings mapping.

        Args:
            settings: Settings file contents (uses accounts and marker keys)
            registry: Adapter registry; required only for resolve()
            environ: Environment for *_env lookups; defaults to os.environ
        """
        accounts = settings.get("accounts") or {}
        entries = {
            str(key).strip(): AccountEntry.from_dict(str(key).strip(), data or {})
            for key, data in accounts.items()
        }
        return cls(
            entries=entries,
            registry=registry,
            name_markers=tuple(
                settings.get("rollup_target_name_markers") or DEFAULT_NAME_MARKERS
            ),
            key_markers=tuple(
                settings.get("rollup_target_key_markers") or DEFAULT_KEY_MARKERS
            ),
            environ=environ,
        )

    def is_rollup_target_like(self, key: str) -> bool:
        entry = self.entries.get(key)
        dealer = entry.display_name if entry else key
        return is_rollup_target_like(key, dealer, self.name_markers, self.key_markers)

    def options(self) -> list[AccountOption]:
        """Every known account, sorted by dealer name."""
        return sort_account_options(
            AccountOption(
                key=entry.key,
                dealer=entry.display_name,
                rollup_target=self.is_rollup_target_like(entry.key),
            )
            for entry in self.entries.values()
        )

    def resolve(
        self, key: str, require_capability: str = CONTACTS_CAPABILITY
    ) -> ResolvedAccount:
        """
        Resolve an account to an adapter and credentials.

        Args:
            key: Account key
            require_capability: Capability the account must advertise

        Returns:
            ResolvedAccount

        Raises:
            AccountResolutionError: Unknown account, missing capability,
                                    unknown provider or missing credentials
        """
        entry = self.entries.get(key)
        if entry is None:
            raise AccountResolutionError(f"Account '{key}' is not configured")

        if require_capability and require_capability not in entry.capabilities:
            raise AccountResolutionError(
                f"Account '{key}' does not have the '{require_capability}' capability"
            )

        known = (
            self.registry.has(entry.provider)
            if self.registry is not None
            else is_known_provider(entry.provider)
        )
        if not known:
            raise AccountResolutionError(
                f"Account '{key}' uses unknown provider '{entry.provider}'"
            )

        environ = os.environ if self.environ is None else self.environ
        secret = entry.secret(environ)
        if not secret:
            raise AccountResolutionError(f"Account '{key}' has no credentials configured")

        if self.registry is None:
            raise AccountResolutionError("No adapter registry available")
        try:
            adapter = self.registry.get(entry.provider)
        except KeyError as e:
            raise AccountResolutionError(
                f"Account '{key}' uses unknown provider '{entry.provider}'"
            ) from e

        logger.debug(f"Resolved account {key} ({adapter.provider})")
        return ResolvedAccount(
            key=key,
            adapter=adapter,
            credentials=Credentials(token=secret, location_id=entry.location_id),
        )
