"""Process entry point with startup and shutdown management.

Startup: load settings and per-domain scan config, initialize the progress
store, bring up the proxy source (subscription-backed pool or a static list),
wire the batch runner, scanner and manager, optionally serve the status API.
Shutdown: SIGINT/SIGTERM set the stop event; workers stop admitting work,
scanner loops drain, the status server exits, proxy listeners close.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import sys
from typing import Iterator, Mapping

import uvicorn
from fastapi import FastAPI

from panelscan import __version__
from panelscan.adapters.registry import default_registry
from panelscan.config.scan_policies import (
    DomainScanConfig,
    load_scan_policies,
    overrides_from_env,
    resolve_domain_config,
)
from panelscan.config.settings import PanelScanSettings
from panelscan.errors import PanelScanError, SubscriptionError, register_error_handlers
from panelscan.fetch.client import ClientPool
from panelscan.gate.daily_gate import DailyGate
from panelscan.logging_config import configure_logging
from panelscan.proxy.pool import ProxyPoolSupervisor, V2rayLauncher
from panelscan.proxy.source import ProxySource, StaticProxySource
from panelscan.proxy.subscription import load_subscription_nodes
from panelscan.resilience.adaptive import ConcurrencyController
from panelscan.routers.status import create_status_router
from panelscan.runtime.status import RuntimeStatus
from panelscan.services.batch import BatchRunner
from panelscan.services.collaborators import (
    CommandPresetGenerator,
    JsonlSampleSink,
    JsonRosterProvider,
    SummaryScoreReader,
)
from panelscan.services.scanner import DomainScanner
from panelscan.services.scanner_manager import ScannerManager
from panelscan.store.progress import CrawlProgressStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Wiring helpers
# ---------------------------------------------------------------------------


def load_domain_configs(
    settings: PanelScanSettings,
    environ: Mapping[str, str] | None = None,
) -> dict[str, DomainScanConfig]:
    """Resolve every configured domain: env overrides > domain block > defaults."""
    environ = os.environ if environ is None else environ
    policies = load_scan_policies(settings.scan_config_path)
    configs: dict[str, DomainScanConfig] = {}
    for domain in (d.strip().lower() for d in settings.domains):
        if not domain:
            continue
        config = resolve_domain_config(domain, policies, overrides_from_env(dict(environ), domain))
        if settings.proxy_required and not config.proxy_required:
            config = config.model_copy(update={"proxy_required": True})
        configs[domain] = config
    return configs


async def build_proxy_source(settings: PanelScanSettings) -> ProxySource | None:
    """Static proxy list, subscription-backed pool, or None for direct fetching."""
    if settings.proxy_urls:
        source = StaticProxySource(
            settings.proxy_urls,
            max_consecutive_fails=settings.proxy_max_consecutive_fails,
            disable_seconds=settings.proxy_disable_seconds,
        )
        logger.info("Using %d static proxies", len(source.usable_urls()))
        return source
    if not settings.proxy_enabled:
        return None

    try:
        descriptors = await load_subscription_nodes(
            settings.proxy_subscription_urls,
            cache_dir=settings.proxy_subscription_cache_dir,
            timeout_seconds=settings.proxy_subscription_timeout_seconds,
        )
    except SubscriptionError as exc:
        if settings.proxy_required:
            raise
        logger.warning("Subscriptions unavailable, fetching directly: %s", exc.message)
        return None

    supervisor = ProxyPoolSupervisor(
        V2rayLauncher(settings.proxy_core_path, settings.proxy_run_dir, settings.proxy_core_log_level),
        pool_size=settings.proxy_pool_size,
        base_port=settings.proxy_base_port,
        test_url=settings.proxy_test_url,
        test_timeout_seconds=settings.proxy_test_timeout_seconds,
        startup_seconds=settings.proxy_startup_seconds,
        health_check_interval_seconds=settings.proxy_health_check_interval_seconds,
        health_fail_threshold=settings.proxy_health_fail_threshold,
        max_consecutive_fails=settings.proxy_max_consecutive_fails,
        disable_seconds=settings.proxy_disable_seconds,
    )
    await supervisor.register_nodes(descriptors)
    supervisor.start_health_checks()
    return supervisor


def install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))


# ---------------------------------------------------------------------------
# Status API
# ---------------------------------------------------------------------------


def create_app(runtime_status: RuntimeStatus, scanner_manager: ScannerManager | None = None) -> FastAPI:
    """Create the read-only status application."""
    app = FastAPI(title="panelscan status", version=__version__)
    register_error_handlers(app)
    app.include_router(create_status_router(runtime_status=runtime_status, scanner_manager=scanner_manager))
    return app


class StatusServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the scanner process."""

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield

    def install_signal_handlers(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------


async def run(settings: PanelScanSettings | None = None) -> int:
    settings = settings or PanelScanSettings()
    configure_logging(settings.log_level)

    registry = default_registry(settings.upstream_base_url)
    configs = load_domain_configs(settings)
    for domain in configs:
        registry.get(domain)
    domains = list(configs)
    logger.info("Starting panelscan %s for domains %s (mode=%s)", __version__, domains, settings.mode)

    store = CrawlProgressStore(settings.db_path, max_fail_count=settings.retry_max_fail_count)
    await store.initialize()

    stop_event = asyncio.Event()
    install_signal_handlers(stop_event)

    controller = ConcurrencyController()
    runtime_status = RuntimeStatus(controller, domains)
    proxy_source = await build_proxy_source(settings)
    runtime_status.set_proxy_pool(proxy_source)

    clients = ClientPool(timeout_seconds=settings.upstream_timeout_seconds, user_agent=settings.user_agent)
    sink = JsonlSampleSink(settings.samples_dir)
    presets = CommandPresetGenerator(settings.preset_command, settings.summary_dir)
    gate = DailyGate(
        store,
        {d: c.daily_gate for d, c in configs.items()},
        SummaryScoreReader(),
        JsonRosterProvider(settings.roster_dir),
    )
    runner = BatchRunner(
        store=store,
        registry=registry,
        clients=clients,
        controller=controller,
        runtime_status=runtime_status,
        sample_sink=sink,
        proxy_source=proxy_source,
        stop_event=stop_event,
        max_workers=settings.max_workers,
        proxy_wait_seconds=settings.proxy_wait_seconds,
    )
    scanner = DomainScanner(runner, store, configs, gate)
    manager = ScannerManager(
        scanner,
        runtime_status,
        sample_sink=sink,
        set_shared_pacing=runner.use_shared_pacing,
        preset_generator=presets,
        gate=gate,
        tick_interval_seconds=settings.tick_interval_seconds,
        idle_seconds=settings.idle_seconds,
        stop_event=stop_event,
    )

    server: StatusServer | None = None
    server_task: asyncio.Task | None = None
    if settings.status_port:
        server = StatusServer(
            uvicorn.Config(
                create_app(runtime_status, manager),
                host=settings.status_host,
                port=settings.status_port,
                log_level="warning",
            )
        )
        server_task = asyncio.create_task(server.serve(), name="status-server")
        logger.info("Status API on http://%s:%d", settings.status_host, settings.status_port)

    try:
        if settings.mode == "cycle":
            dispatched = await manager.run_cycle(domains, force=settings.force)
            logger.info("Cycle finished: %s", dispatched)
        else:
            for domain in domains:
                manager.start(domain)
            await stop_event.wait()
    finally:
        logger.info("Shutting down panelscan")
        stop_event.set()
        await manager.stop_all(timeout=settings.graceful_shutdown_seconds)
        if server is not None and server_task is not None:
            server.should_exit = True
            await server_task
        await clients.aclose()
        if isinstance(proxy_source, ProxyPoolSupervisor):
            await proxy_source.close()
        logger.info("panelscan shut down")
    return 0


def main() -> None:
    try:
        code = asyncio.run(run())
    except PanelScanError as exc:
        logger.error("Fatal: %s", exc.message, extra={"error_reason": str(exc.details or "")})
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
