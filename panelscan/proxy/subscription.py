"""Proxy subscription fetching and parsing.

A subscription body is one of:

* share links, one per line (``vmess://``, ``vless://``, ``trojan://``,
  ``ss://``), optionally wrapped in a single base64 blob;
* a Clash YAML document with a ``proxies`` list.

Parsers return plain descriptor dicts; validation happens when the pool
registers them (see :func:`panelscan.proxy.nodes.validate_node`).
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import json
import logging
import re
from pathlib import Path
from urllib.parse import parse_qs, unquote, urlsplit

import httpx
import yaml

from panelscan.errors import SubscriptionError
from panelscan.proxy.nodes import node_key

logger = logging.getLogger(__name__)

_SHARE_LINK_RE = re.compile(r"^(vmess|vless|trojan|ss|ssr|hysteria2|tuic)://", re.IGNORECASE)
_CLASH_RE = re.compile(r"^\s*(proxies|proxy-groups|proxy-providers)\s*:", re.MULTILINE)
_BASE64_RE = re.compile(r"^[A-Za-z0-9+/=_-]+$")

_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


# ---------------------------------------------------------------------------
# Decoding helpers
# ---------------------------------------------------------------------------


def _b64decode(text: str) -> str | None:
    s = text.strip().replace("-", "+").replace("_", "/")
    s += "=" * (-len(s) % 4)
    try:
        out = base64.b64decode(s).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None
    return out if out.strip() else None


def _looks_like_base64(text: str) -> bool:
    return len(text) >= 32 and "\n" not in text and "\r" not in text and bool(_BASE64_RE.match(text))


def decode_subscription_text(raw: str) -> str:
    """Strip a BOM and unwrap a whole-body base64 blob of share links."""
    text = raw.lstrip("\ufeff").strip()
    if not text or _SHARE_LINK_RE.match(text) or _CLASH_RE.search(text):
        return text
    if _looks_like_base64(text):
        decoded = _b64decode(text)
        if decoded and "://" in decoded:
            return decoded
    return text


def _split_tag(uri: str) -> tuple[str, str]:
    base, sep, fragment = uri.partition("#")
    return base, unquote(fragment) if sep else ""


def _to_port(value: object) -> int:
    try:
        return int(str(value).strip())
    except ValueError:
        return 0


# ---------------------------------------------------------------------------
# Share-link parsers
# ---------------------------------------------------------------------------


def parse_vmess(uri: str) -> dict | None:
    base, tag = _split_tag(uri)
    decoded = _b64decode(base[len("vmess://"):])
    if not decoded:
        return None
    try:
        obj = json.loads(decoded)
    except json.JSONDecodeError:
        return None
    if not isinstance(obj, dict):
        return None

    host = str(obj.get("add") or obj.get("host") or "").strip()
    port = _to_port(obj.get("port") or 0)
    node_id = str(obj.get("id") or "").strip()
    if not host or port <= 0 or not node_id:
        return None

    network = str(obj.get("net") or "tcp").strip() or "tcp"
    node = {
        "type": "vmess",
        "tag": tag or str(obj.get("ps") or "").strip(),
        "host": host,
        "port": port,
        "id": node_id,
        "alter_id": _to_port(obj.get("aid") or 0),
        "security": str(obj.get("scy") or obj.get("security") or "auto").strip() or "auto",
        "network": network,
        "tls": str(obj.get("tls") or "").strip().lower(),
        "sni": str(obj.get("sni") or obj.get("servername") or "").strip(),
    }
    if network == "ws":
        node["ws_host"] = str(obj.get("host") or "").strip()
        node["ws_path"] = str(obj.get("path") or "").strip()
    elif network == "grpc":
        node["grpc_service_name"] = str(obj.get("path") or "").strip()
    return node


def parse_vless_or_trojan(uri: str, scheme: str) -> dict | None:
    base, tag = _split_tag(uri)
    try:
        parts = urlsplit(base)
        host = (parts.hostname or "").strip()
        port = parts.port or 0
    except ValueError:
        return None
    if not host or port <= 0:
        return None

    params = {k: v[0] for k, v in parse_qs(parts.query).items() if v}
    network = (params.get("type") or params.get("network") or "tcp").strip() or "tcp"
    security = (params.get("security") or "").strip().lower()
    user = unquote(parts.username or "").strip()

    node: dict = {
        "tag": tag,
        "host": host,
        "port": port,
        "network": network,
        "sni": (params.get("sni") or params.get("servername") or "").strip(),
    }
    if network == "ws":
        node["ws_host"] = (params.get("host") or "").strip()
        node["ws_path"] = (params.get("path") or "").strip()
    elif network == "grpc":
        node["grpc_service_name"] = (params.get("serviceName") or params.get("service") or "").strip()

    if scheme == "vless":
        if not user:
            return None
        node.update(
            type="vless",
            id=user,
            encryption=(params.get("encryption") or "none").strip() or "none",
            flow=(params.get("flow") or "").strip(),
            tls="tls" if security == "tls" else "",
        )
        return node

    if not user:
        return None
    node.update(type="trojan", password=user, tls="tls")
    return node


def parse_shadowsocks(uri: str) -> dict | None:
    """Parse ``ss://base64(method:pass@host:port)`` or the plain form."""
    base, tag = _split_tag(uri)
    rest = base[len("ss://"):]
    if not rest:
        return None

    decoded = rest
    if "@" not in rest:
        attempt = _b64decode(rest)
        if attempt and "@" in attempt:
            decoded = attempt

    userinfo, sep, hostport = decoded.rpartition("@")
    if not sep or not userinfo or not hostport:
        return None
    if ":" not in userinfo:
        # SIP002: base64 user info, plain host
        attempt = _b64decode(userinfo)
        if attempt and ":" in attempt:
            userinfo = attempt
    method, _, password = userinfo.partition(":")
    method, password = method.strip(), password.strip()
    if not method or not password:
        return None

    hostport = hostport.split("/", 1)[0].split("?", 1)[0].strip()
    if hostport.startswith("["):
        close = hostport.find("]")
        if close <= 0:
            return None
        host = hostport[1:close]
        port = _to_port(hostport[close + 1:].lstrip(":") or 0)
    else:
        host, _, port_text = hostport.rpartition(":")
        port = _to_port(port_text or 0)
    if not host or port <= 0:
        return None

    return {
        "type": "shadowsocks",
        "tag": tag,
        "host": host.strip(),
        "port": port,
        "method": method,
        "password": password,
    }


# ---------------------------------------------------------------------------
# Clash YAML
# ---------------------------------------------------------------------------


def node_from_clash_proxy(proxy: object) -> dict | None:
    if not isinstance(proxy, dict):
        return None
    node_type = str(proxy.get("type") or "").strip().lower()
    server = str(proxy.get("server") or "").strip()
    port = _to_port(proxy.get("port") or 0)
    if not node_type or not server or port <= 0:
        return None

    ws_opts = proxy.get("ws-opts") or {}
    grpc_opts = proxy.get("grpc-opts") or {}
    node: dict = {
        "type": "shadowsocks" if node_type == "ss" else node_type,
        "tag": str(proxy.get("name") or "").strip(),
        "host": server,
        "port": port,
        "network": str(proxy.get("network") or "tcp").strip() or "tcp",
        "tls": "tls" if proxy.get("tls") else "",
        "sni": str(proxy.get("sni") or proxy.get("servername") or "").strip(),
        "allow_insecure": bool(proxy.get("skip-cert-verify", False)),
        "ws_host": str((ws_opts.get("headers") or {}).get("Host") or "").strip(),
        "ws_path": str(ws_opts.get("path") or "").strip(),
        "grpc_service_name": str(grpc_opts.get("grpc-service-name") or "").strip(),
    }

    if node_type == "vmess":
        node.update(
            id=str(proxy.get("uuid") or "").strip(),
            alter_id=_to_port(proxy.get("alterId") or 0),
            security=str(proxy.get("cipher") or "auto").strip() or "auto",
        )
    elif node_type == "vless":
        node.update(
            id=str(proxy.get("uuid") or "").strip(),
            encryption=str(proxy.get("encryption") or "none").strip() or "none",
            flow=str(proxy.get("flow") or "").strip(),
        )
    elif node_type == "trojan":
        node["password"] = str(proxy.get("password") or "").strip()
    elif node_type == "ss":
        node.update(
            method=str(proxy.get("cipher") or "").strip(),
            password=str(proxy.get("password") or "").strip(),
        )
    return node


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def dedupe_nodes(nodes: list[dict]) -> list[dict]:
    seen: set[str] = set()
    out: list[dict] = []
    for node in nodes:
        key = node_key(node)
        if key in seen:
            continue
        seen.add(key)
        out.append(node)
    return out


def parse_subscription_text(text: str) -> list[dict]:
    """Parse a subscription body into de-duplicated node descriptors.

    Unsupported schemes (ssr, hysteria2, tuic) and malformed lines are
    skipped. A Clash document that fails to parse yields an empty list.
    """
    raw = decode_subscription_text(text)
    if not raw:
        return []

    if _CLASH_RE.search(raw):
        try:
            doc = yaml.safe_load(raw) or {}
        except yaml.YAMLError as exc:
            logger.warning("Clash YAML parse failed: %s", exc)
            return []
        proxies = doc.get("proxies") if isinstance(doc, dict) else None
        nodes = [node_from_clash_proxy(p) for p in (proxies or [])]
        return dedupe_nodes([n for n in nodes if n])

    out: list[dict] = []
    for line in raw.splitlines():
        line = line.strip()
        node: dict | None = None
        if line.startswith("vmess://"):
            node = parse_vmess(line)
        elif line.startswith("vless://"):
            node = parse_vless_or_trojan(line, "vless")
        elif line.startswith("trojan://"):
            node = parse_vless_or_trojan(line, "trojan")
        elif line.startswith("ss://"):
            node = parse_shadowsocks(line)
        if node:
            out.append(node)
    return dedupe_nodes(out)


async def fetch_subscription_text(
    client: httpx.AsyncClient,
    url: str,
    *,
    max_attempts: int = 6,
) -> str:
    """GET a subscription body, retrying 5xx and transport errors.

    Backoff between attempts is ``min(8s, 0.5s * 2**(attempt-1))``.
    """
    last_exc: Exception | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            response = await client.get(url, headers={"User-Agent": _USER_AGENT, "Accept": "*/*"})
            if response.status_code < 400:
                return response.text
            if response.status_code < 500:
                raise SubscriptionError(f"Subscription HTTP {response.status_code}", url=url)
            last_exc = SubscriptionError(f"Subscription HTTP {response.status_code}", url=url)
        except httpx.HTTPError as exc:
            last_exc = exc

        if attempt < max_attempts:
            await asyncio.sleep(min(8.0, 0.5 * 2 ** (attempt - 1)))

    raise SubscriptionError(f"Subscription fetch failed: {last_exc}", url=url)


def cache_path_for(cache_dir: str | Path, url: str) -> Path:
    digest = hashlib.sha1(url.strip().encode("utf-8")).hexdigest()
    return Path(cache_dir) / f"{digest}.txt"


async def load_subscription_nodes(
    urls: list[str],
    *,
    cache_dir: str | Path,
    timeout_seconds: float = 15.0,
    use_cache_on_fail: bool = True,
    transport: httpx.AsyncBaseTransport | None = None,
) -> list[dict]:
    """Fetch and parse every subscription URL.

    Successful bodies are cached on disk keyed by the SHA-1 of the URL; a
    failed fetch falls back to that cache. Raises SubscriptionError only when
    nothing was loaded and at least one URL failed.
    """
    all_nodes: list[dict] = []
    failures = 0

    async with httpx.AsyncClient(
        timeout=httpx.Timeout(timeout_seconds),
        follow_redirects=True,
        transport=transport,
    ) as client:
        for url in urls:
            cache_path = cache_path_for(cache_dir, url)
            cached = None
            if use_cache_on_fail and cache_path.exists():
                cached = cache_path.read_text(encoding="utf-8") or None
            try:
                text = await fetch_subscription_text(client, url, max_attempts=1 if cached else 6)
            except SubscriptionError as exc:
                failures += 1
                if not cached:
                    logger.warning("Subscription fetch failed: %s (%s)", url, exc.message)
                    continue
                logger.warning("Subscription fetch failed, using cache: %s (%s)", url, exc.message)
                text = cached
            else:
                if text.strip():
                    cache_path.parent.mkdir(parents=True, exist_ok=True)
                    cache_path.write_text(text, encoding="utf-8")

            all_nodes.extend(parse_subscription_text(text))

    nodes = dedupe_nodes(all_nodes)
    if not nodes and failures:
        raise SubscriptionError(f"All subscriptions failed ({failures}/{len(urls)})")
    logger.info("Loaded %d proxy nodes from %d subscriptions", len(nodes), len(urls))
    return nodes
