"""Proxy node descriptor validation.

Descriptors arrive as plain mappings (from a subscription parser or a config
file). ``validate_node`` turns one into an immutable :class:`ProxyNode` or
raises :class:`InvalidNodeDescriptor` naming the first violated field.
No network action happens here.
"""

from __future__ import annotations

from typing import Any, Mapping

from panelscan.errors import InvalidNodeDescriptor
from panelscan.proxy.types import NODE_TYPES, ProxyNode

_TYPE_ALIASES = {"ss": "shadowsocks"}


def _text(descriptor: Mapping[str, Any], *keys: str, default: str = "") -> str:
    for key in keys:
        value = descriptor.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return default


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def validate_node(descriptor: Mapping[str, Any]) -> ProxyNode:
    """Validate a raw node descriptor.

    Required fields: ``type``, ``host`` and a positive ``port`` for every
    node; ``id`` for vmess/vless; ``password`` for trojan; ``method`` and
    ``password`` for shadowsocks. Trojan nodes always use TLS.

    Raises:
        InvalidNodeDescriptor: with ``field`` set to the violated field.
    """
    node_type = _text(descriptor, "type").lower()
    node_type = _TYPE_ALIASES.get(node_type, node_type)
    if node_type not in NODE_TYPES:
        raise InvalidNodeDescriptor("type", f"invalid node: unsupported type {node_type!r}")

    host = _text(descriptor, "host")
    if not host:
        raise InvalidNodeDescriptor("host")

    port = _int(descriptor.get("port"))
    if port <= 0 or port > 65535:
        raise InvalidNodeDescriptor("port")

    node_id = _text(descriptor, "id")
    password = _text(descriptor, "password")
    method = _text(descriptor, "method")

    if node_type in ("vmess", "vless") and not node_id:
        raise InvalidNodeDescriptor("id")
    if node_type == "trojan" and not password:
        raise InvalidNodeDescriptor("password")
    if node_type == "shadowsocks":
        if not method:
            raise InvalidNodeDescriptor("method")
        if not password:
            raise InvalidNodeDescriptor("password")

    tls = _text(descriptor, "tls").lower()
    if node_type == "trojan":
        tls = "tls"

    return ProxyNode(
        type=node_type,
        host=host,
        port=port,
        tag=_text(descriptor, "tag"),
        id=node_id,
        alter_id=_int(descriptor.get("alter_id", descriptor.get("alterId"))),
        security=_text(descriptor, "security", default="auto"),
        encryption=_text(descriptor, "encryption", default="none"),
        flow=_text(descriptor, "flow"),
        password=password,
        method=method,
        network=_text(descriptor, "network", "net", default="tcp").lower(),
        tls="tls" if tls == "tls" else "",
        sni=_text(descriptor, "sni"),
        allow_insecure=bool(descriptor.get("allow_insecure", descriptor.get("allowInsecure", False))),
        ws_path=_text(descriptor, "ws_path", "wsPath"),
        ws_host=_text(descriptor, "ws_host", "wsHost"),
        grpc_service_name=_text(descriptor, "grpc_service_name", "grpcServiceName"),
    )


def node_key(node: ProxyNode | Mapping[str, Any]) -> str:
    """Dedupe key ``type|host|port|secret`` where secret is id, password or method."""
    if isinstance(node, ProxyNode):
        secret = node.id or node.password or node.method
        return f"{node.type}|{node.host}|{node.port}|{secret}"
    node_type = _text(node, "type").lower()
    node_type = _TYPE_ALIASES.get(node_type, node_type)
    secret = _text(node, "id") or _text(node, "password") or _text(node, "method")
    return f"{node_type}|{_text(node, 'host')}|{_int(node.get('port'))}|{secret}"
