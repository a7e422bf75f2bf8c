"""Per-domain scan policy models, YAML loader and precedence resolver.

The YAML file holds a ``defaults`` block applied to every domain and a
``domains`` mapping with per-domain overrides::

    defaults:
      delay_ms: 20000
      daily_gate: {enabled: true, threshold: {gs: 300, sr: 280}}
    domains:
      gs:
        uid_start: 100000001
        uid_end: 199999999

``resolve_domain_config`` merges the layers. Precedence, highest first:
explicit overrides > per-domain block > defaults.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from panelscan.errors import ConfigError

logger = logging.getLogger(__name__)


class RescanConfig(BaseModel):
    """Re-fetch previously successful UIDs once they age past ``after_sec``."""

    enabled: bool = False
    after_sec: int = Field(default=7 * 24 * 3600, ge=0)
    first: int = Field(default=0, ge=0)


class DailyGateConfig(BaseModel):
    """Daily completion gate; threshold is a number or a per-domain map."""

    enabled: bool = True
    threshold: float | dict[str, float] | None = None

    def threshold_for(self, domain: str) -> float | None:
        if isinstance(self.threshold, dict):
            value = self.threshold.get(domain)
            return float(value) if value is not None else None
        return self.threshold


class CircuitBreakerConfig(BaseModel):
    """Consecutive-failure breaker used when fetching without proxies."""

    max_consecutive_fails: int = Field(default=5, ge=0)
    break_on_429: bool = True


class DomainScanConfig(BaseModel):
    """Fully resolved scan configuration for one domain."""

    uids: list[int] | None = None
    uid_start: int | None = Field(default=None, ge=1)
    uid_end: int | None = Field(default=None, ge=1)
    count: int | None = Field(default=None, ge=1)
    delay_ms: int = Field(default=20_000, ge=0)
    jitter_ms: int = Field(default=2_000, ge=0)
    concurrency: int = Field(default=1, ge=1, le=50)
    max_count: int = Field(default=20, ge=1)
    retry_first: int = Field(default=0, ge=0)
    rr_step: int | None = Field(default=None, ge=1)
    rescan: RescanConfig = RescanConfig()
    daily_gate: DailyGateConfig = DailyGateConfig()
    proxy_required: bool = False
    circuit_breaker: CircuitBreakerConfig = CircuitBreakerConfig()


class ScanPolicies(BaseModel):
    """Raw file contents: defaults plus per-domain blocks (unmerged)."""

    defaults: dict[str, Any] = {}
    domains: dict[str, dict[str, Any]] = {}


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def load_scan_policies(yaml_path: str) -> ScanPolicies:
    """Parse the scan policy YAML file.

    A missing file yields empty policies (built-in defaults apply). A file
    that exists but cannot be parsed raises ConfigError.
    """
    path = Path(yaml_path)

    if not path.exists():
        logger.warning("Scan policy file not found at %s, using built-in defaults", yaml_path)
        return ScanPolicies()

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse scan policy YAML at {yaml_path}: {exc}") from exc

    if raw is None:
        return ScanPolicies()
    if not isinstance(raw, dict):
        raise ConfigError(f"Scan policy YAML at {yaml_path} must be a mapping")

    try:
        return ScanPolicies.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid scan policy file {yaml_path}: {exc}") from exc


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if value is None:
            continue
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def resolve_domain_config(
    domain: str,
    policies: ScanPolicies,
    overrides: dict[str, Any] | None = None,
) -> DomainScanConfig:
    """Merge defaults, the domain block and explicit overrides.

    Pure function: the caller reads the environment (or CLI) and passes
    the resulting mapping as ``overrides``. ``None`` values in any layer
    never mask a lower layer.

    Raises:
        ConfigError: if the merged result fails validation.
    """
    merged = _deep_merge({}, policies.defaults)
    merged = _deep_merge(merged, policies.domains.get(domain, {}))
    merged = _deep_merge(merged, overrides or {})
    try:
        return DomainScanConfig.model_validate(merged)
    except ValidationError as exc:
        raise ConfigError(f"Invalid scan config for domain '{domain}': {exc}", domain=domain) from exc


_ENV_FIELDS: dict[str, str] = {
    "UID_START": "uid_start",
    "UID_END": "uid_end",
    "COUNT": "count",
    "DELAY_MS": "delay_ms",
    "JITTER_MS": "jitter_ms",
    "CONCURRENCY": "concurrency",
    "MAX_COUNT": "max_count",
    "RETRY_FIRST": "retry_first",
    "RR_STEP": "rr_step",
}


def overrides_from_env(environ: dict[str, str], domain: str, prefix: str = "PANELSCAN_") -> dict[str, Any]:
    """Collect scan overrides from an environment mapping.

    Both ``<prefix><NAME>`` and the domain-scoped ``<prefix><DOMAIN>_<NAME>``
    are read; the domain-scoped variable wins.
    """
    out: dict[str, Any] = {}
    scoped = f"{prefix}{domain.upper()}_"
    for env_name, field in _ENV_FIELDS.items():
        for key in (f"{prefix}{env_name}", f"{scoped}{env_name}"):
            raw = environ.get(key, "").strip()
            if raw:
                try:
                    out[field] = int(raw)
                except ValueError as exc:
                    raise ConfigError(f"{key} must be an integer, got {raw!r}") from exc
    uids = environ.get(f"{scoped}UIDS", "").strip()
    if uids:
        out["uids"] = _parse_uid_list(uids)
    return out


def _parse_uid_list(raw: str) -> list[int]:
    out: list[int] = []
    for part in raw.replace(";", ",").split(","):
        part = part.strip()
        if part.isdigit():
            out.append(int(part))
    return out


# ---------------------------------------------------------------------------
# UID selection
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UidSelection:
    """How a domain's UIDs are chosen for one tick.

    ``list``: walk the explicit ``uids``. ``range``: cursor over
    [start, end]. ``window``: fixed ``count`` ids from ``start``.
    """

    mode: Literal["list", "range", "window"]
    uids: tuple[int, ...] = ()
    start: int = 0
    end: int = 0
    count: int = 0


def select_uids(domain: str, config: DomainScanConfig) -> UidSelection:
    """Decide the UID selection mode; the explicit list wins over a range."""
    if config.uids:
        if config.uid_start is not None or config.uid_end is not None:
            logger.warning(
                "Explicit uid list configured together with a range; the range is ignored",
                extra={"domain": domain},
            )
        return UidSelection(mode="list", uids=tuple(config.uids))

    if config.uid_start is not None and config.uid_end is not None:
        if config.uid_end < config.uid_start:
            raise ConfigError(
                f"uid_end ({config.uid_end}) is below uid_start ({config.uid_start})",
                domain=domain,
            )
        return UidSelection(mode="range", start=config.uid_start, end=config.uid_end)

    if config.uid_start is not None:
        count = min(config.count or 1, config.max_count)
        return UidSelection(mode="window", start=config.uid_start, count=count)

    raise ConfigError(f"No uids or uid_start configured for domain '{domain}'", domain=domain)
