"""
Provider name to adapter factory mapping.
"""

from __future__ import annotations

from collections.abc import Callable

import httpx

from contact_rollup.api.base import ContactSource
from contact_rollup.api.ghl import GHLContactSource
from contact_rollup.api.klaviyo import KlaviyoContactSource

AdapterFactory = Callable[[httpx.AsyncClient], ContactSource]

PROVIDERS: dict[str, AdapterFactory] = {
    "ghl": lambda client: GHLContactSource(http_client=client),
    "klaviyo": lambda client: KlaviyoContactSource(http_client=client),
}


def normalize_provider(provider: str | None) -> str:
    return (provider or "").strip().lower()


def is_known_provider(provider: str | None) -> bool:
    return normalize_provider(provider) in PROVIDERS


class AdapterRegistry:
    """
    Creates one adapter per provider, all sharing a single HTTP client.

    Usage:
        async with httpx.AsyncClient() as client:
            registry = AdapterRegistry(client)
            adapter = registry.get("ghl")
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        factories: dict[str, AdapterFactory] | None = None,
    ):
        self.http_client = http_client
        self._factories = dict(PROVIDERS if factories is None else factories)
        self._adapters: dict[str, ContactSource] = {}

    def get(self, provider: str) -> ContactSource:
        """
        Get the adapter for a provider.

        Raises:
            KeyError: If no adapter is registered for the provider
        """
        key = normalize_provider(provider)
        if key not in self._adapters:
            if key not in self._factories:
                raise KeyError(f"Unknown contact provider: {provider!r}")
            self._adapters[key] = self._factories[key](self.http_client)
        return self._adapters[key]

    def has(self, provider: str) -> bool:
        return normalize_provider(provider) in self._factories

    def providers(self) -> list[str]:
        return sorted(self._factories)

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            await adapter.aclose()
        self._adapters.clear()
