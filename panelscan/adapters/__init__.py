"""Per-domain adapters and their registry."""

from panelscan.adapters.base import DomainAdapter
from panelscan.adapters.games import GenshinAdapter, StarRailAdapter, ZenlessAdapter
from panelscan.adapters.registry import AdapterRegistry, default_registry

__all__ = [
    "AdapterRegistry",
    "DomainAdapter",
    "GenshinAdapter",
    "StarRailAdapter",
    "ZenlessAdapter",
    "default_registry",
]
