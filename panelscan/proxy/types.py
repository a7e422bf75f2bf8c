"""Proxy data models for the proxy pool supervisor."""

from __future__ import annotations

from dataclasses import dataclass, field

NODE_TYPES = ("vmess", "vless", "trojan", "shadowsocks")


@dataclass(frozen=True)
class ProxyNode:
    """A validated outbound proxy node descriptor. Immutable once built."""

    type: str  # vmess, vless, trojan, shadowsocks
    host: str
    port: int
    tag: str = ""

    # Credentials
    id: str = ""
    alter_id: int = 0
    security: str = "auto"
    encryption: str = "none"
    flow: str = ""
    password: str = ""
    method: str = ""

    # Transport
    network: str = "tcp"
    tls: str = ""
    sni: str = ""
    allow_insecure: bool = False
    ws_path: str = ""
    ws_host: str = ""
    grpc_service_name: str = ""

    @property
    def display_name(self) -> str:
        return self.tag or f"{self.type}:{self.host}:{self.port}"


@dataclass
class NodeHealth:
    """Health and usage tracking for one materialized node."""

    tag: str
    proxy_url: str
    port: int
    healthy: bool = True
    success_count: int = 0
    failure_count: int = 0
    consecutive_failures: int = 0
    probe_failures: int = 0
    disabled_until: float = 0.0
    last_error: str | None = None

    def is_usable(self, now: float) -> bool:
        return self.healthy and self.disabled_until <= now

    def to_dict(self) -> dict:
        return {
            "proxy_url": self.proxy_url,
            "port": self.port,
            "healthy": self.healthy,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "consecutive_failures": self.consecutive_failures,
            "probe_failures": self.probe_failures,
            "disabled_until": self.disabled_until or None,
            "last_error": self.last_error,
        }


@dataclass
class ProxyPoolStatus:
    """Point-in-time view of the pool; mutated only by the supervisor."""

    enabled: bool
    usable_count: int = 0
    nodes: dict[str, dict] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "usable": self.usable_count,
            "nodes": self.nodes,
        }
