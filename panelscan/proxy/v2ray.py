"""Local HTTP forward-proxy configuration for the v2ray core.

Each node gets its own core process: one unauthenticated HTTP inbound on
127.0.0.1 routed to the node outbound, plus a ``freedom`` outbound tagged
``direct`` for anything the rule does not match.
"""

from __future__ import annotations

import secrets

from panelscan.proxy.types import ProxyNode


def _stream_settings(node: ProxyNode, *, force_tls: bool = False) -> dict:
    network = node.network or "tcp"
    security = "tls" if force_tls or node.tls == "tls" else "none"
    stream: dict = {"network": network, "security": security}

    if security == "tls":
        tls_settings: dict = {}
        if node.sni:
            tls_settings["serverName"] = node.sni
        if node.allow_insecure:
            tls_settings["allowInsecure"] = True
        stream["tlsSettings"] = tls_settings

    if network == "ws":
        ws: dict = {"path": node.ws_path or "/"}
        if node.ws_host:
            ws["headers"] = {"Host": node.ws_host}
        stream["wsSettings"] = ws

    if network == "grpc":
        grpc: dict = {}
        if node.grpc_service_name:
            grpc["serviceName"] = node.grpc_service_name
        stream["grpcSettings"] = grpc

    return stream


def build_outbound(node: ProxyNode, tag: str = "proxy") -> dict:
    """Build the v2ray outbound object for a validated node."""
    if node.type == "vmess":
        user = {"id": node.id, "alterId": node.alter_id, "security": node.security or "auto"}
        return {
            "protocol": "vmess",
            "tag": tag,
            "settings": {"vnext": [{"address": node.host, "port": node.port, "users": [user]}]},
            "streamSettings": _stream_settings(node),
        }

    if node.type == "vless":
        user = {"id": node.id, "encryption": node.encryption or "none"}
        if node.flow:
            user["flow"] = node.flow
        return {
            "protocol": "vless",
            "tag": tag,
            "settings": {"vnext": [{"address": node.host, "port": node.port, "users": [user]}]},
            "streamSettings": _stream_settings(node),
        }

    if node.type == "trojan":
        return {
            "protocol": "trojan",
            "tag": tag,
            "settings": {"servers": [{"address": node.host, "port": node.port, "password": node.password}]},
            "streamSettings": _stream_settings(node, force_tls=True),
        }

    # shadowsocks carries no stream settings
    return {
        "protocol": "shadowsocks",
        "tag": tag,
        "settings": {
            "servers": [
                {
                    "address": node.host,
                    "port": node.port,
                    "method": node.method,
                    "password": node.password,
                }
            ]
        },
    }


def build_http_proxy_config(
    node: ProxyNode,
    port: int,
    *,
    listen: str = "127.0.0.1",
    log_level: str = "warning",
) -> dict:
    """Build a complete core config exposing ``node`` as http://listen:port."""
    in_tag = f"http-in-{secrets.token_hex(6)}"
    out_tag = f"proxy-{secrets.token_hex(6)}"
    return {
        "log": {"loglevel": log_level},
        "inbounds": [
            {
                "tag": in_tag,
                "listen": listen,
                "port": port,
                "protocol": "http",
                "settings": {"timeout": 0},
            }
        ],
        "outbounds": [
            build_outbound(node, tag=out_tag),
            {"protocol": "freedom", "tag": "direct", "settings": {}},
        ],
        "routing": {
            "domainStrategy": "AsIs",
            "rules": [{"type": "field", "inboundTag": [in_tag], "outboundTag": out_tag}],
        },
    }
