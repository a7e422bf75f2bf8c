"""Domain adapter registry.

Maps a domain identifier to its ``DomainAdapter``. Adapters are registered
explicitly at startup; nothing is looked up by import path.
"""

from __future__ import annotations

import logging

from panelscan.adapters.base import DomainAdapter
from panelscan.errors import ConfigError

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """Registry that maps domain ids to their adapter implementations."""

    def __init__(self) -> None:
        self._adapters: dict[str, DomainAdapter] = {}

    def register(self, adapter: DomainAdapter) -> None:
        """Register an adapter for its declared ``domain``.

        Raises
        ------
        ValueError
            If an adapter for the same domain is already registered.
        """
        if adapter.domain in self._adapters:
            raise ValueError(f"Adapter for domain '{adapter.domain}' is already registered")
        self._adapters[adapter.domain] = adapter
        logger.debug("Registered adapter for domain '%s'", adapter.domain)

    def get(self, domain: str) -> DomainAdapter:
        """Return the adapter for *domain*.

        Raises
        ------
        ConfigError
            If no adapter is registered for the domain.
        """
        try:
            return self._adapters[domain]
        except KeyError:
            raise ConfigError(f"No adapter registered for domain '{domain}'", domain=domain) from None

    def list_domains(self) -> list[str]:
        return list(self._adapters.keys())


def default_registry(base_url: str = "https://enka.network/") -> AdapterRegistry:
    """Registry with the built-in ``gs``, ``sr`` and ``zzz`` adapters."""
    from panelscan.adapters.games import GenshinAdapter, StarRailAdapter, ZenlessAdapter

    registry = AdapterRegistry()
    for adapter_cls in (GenshinAdapter, StarRailAdapter, ZenlessAdapter):
        registry.register(adapter_cls(base_url))
    return registry
