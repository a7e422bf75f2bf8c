"""Pydantic Settings for the scanner process.

All environment variables use the PANELSCAN_ prefix.
Example: PANELSCAN_STATUS_PORT=4567, PANELSCAN_DB_PATH=data/scan.sqlite
"""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings


class PanelScanSettings(BaseSettings):
    """Process-level configuration validated from environment variables."""

    # Service
    log_level: str = "INFO"
    status_host: str = "127.0.0.1"
    status_port: int | None = Field(default=None, ge=1, le=65535)
    scan_config_path: str = "config/scan.yaml"
    domains: list[str] = ["gs", "sr", "zzz"]
    force: bool = False
    mode: Literal["continuous", "cycle"] = "continuous"
    tick_interval_seconds: float = Field(default=5.0, ge=0)
    idle_seconds: float = Field(default=300.0, ge=0)
    max_workers: int = Field(default=50, ge=1, le=50)

    # Outputs and collaborators
    samples_dir: str = "data/samples"
    summary_dir: str = "data/presets"
    roster_dir: str = "data/meta"
    preset_command: list[str] = []

    # Progress store
    db_path: str = "data/scan.sqlite"
    retry_max_fail_count: int = Field(default=8, ge=1)

    # Upstream
    upstream_base_url: str = "https://enka.network/"
    upstream_timeout_seconds: float = Field(default=15.0, gt=0)
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    )

    # Proxy pool
    proxy_enabled: bool = False
    proxy_required: bool = False
    proxy_urls: list[str] = []
    proxy_subscription_urls: list[str] = []
    proxy_subscription_cache_dir: str = "data/proxy/subscription-cache"
    proxy_subscription_timeout_seconds: float = Field(default=15.0, gt=0)
    proxy_core_path: str = "bin/v2ray/v2ray"
    proxy_run_dir: str = "data/proxy/run"
    proxy_core_log_level: str = "warning"
    proxy_base_port: int = Field(default=17890, ge=1024, le=65535)
    proxy_pool_size: int = Field(default=3, ge=1, le=50)
    proxy_startup_seconds: float = Field(default=0.7, ge=0)
    proxy_test_url: str = "https://enka.network/api/uid/100000001"
    proxy_test_timeout_seconds: float = Field(default=8.0, gt=0)
    proxy_health_check_interval_seconds: int = Field(default=60, ge=5)
    proxy_health_fail_threshold: int = Field(default=2, ge=1, le=10)
    proxy_max_consecutive_fails: int = Field(default=10, ge=1, le=200)
    proxy_disable_seconds: int = Field(default=60, ge=1)
    proxy_wait_seconds: float = Field(default=30.0, ge=0)

    # Shutdown
    graceful_shutdown_seconds: int = Field(default=30, ge=0)

    model_config = {"env_prefix": "PANELSCAN_"}
