"""Proxy pool: node validation, local listeners, health and broadcast."""

from panelscan.proxy.broadcast import ProxyBroadcast
from panelscan.proxy.nodes import node_key, validate_node
from panelscan.proxy.pool import CoreLauncher, LaunchedCore, ProxyPoolSupervisor, V2rayLauncher
from panelscan.proxy.source import ProbeResult, ProxySource, StaticProxySource, probe_proxy
from panelscan.proxy.types import NodeHealth, ProxyNode, ProxyPoolStatus

__all__ = [
    "CoreLauncher",
    "LaunchedCore",
    "NodeHealth",
    "ProbeResult",
    "ProxyBroadcast",
    "ProxyNode",
    "ProxyPoolStatus",
    "ProxyPoolSupervisor",
    "ProxySource",
    "StaticProxySource",
    "V2rayLauncher",
    "node_key",
    "probe_proxy",
    "validate_node",
]
