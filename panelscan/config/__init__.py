"""Configuration: process settings and per-domain scan policies."""

from panelscan.config.scan_policies import (
    CircuitBreakerConfig,
    DailyGateConfig,
    DomainScanConfig,
    RescanConfig,
    ScanPolicies,
    UidSelection,
    load_scan_policies,
    overrides_from_env,
    resolve_domain_config,
    select_uids,
)
from panelscan.config.settings import PanelScanSettings

__all__ = [
    "CircuitBreakerConfig",
    "DailyGateConfig",
    "DomainScanConfig",
    "PanelScanSettings",
    "RescanConfig",
    "ScanPolicies",
    "UidSelection",
    "load_scan_policies",
    "overrides_from_env",
    "resolve_domain_config",
    "select_uids",
]
