"""Proxy pool supervisor.

Validates node descriptors, materializes each accepted node as a local HTTP
forward proxy (one v2ray core process per node), probes it, and publishes
the usable set through a :class:`ProxyBroadcast`. A background health loop
re-probes running nodes, stops those that keep failing and refills the pool
from the remaining candidates.

Ports are handed out sequentially from ``base_port``; ports released by
stopped nodes are reused first.
"""

from __future__ import annotations

import asyncio
import contextlib
import heapq
import json
import logging
import os
import signal
import socket
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping

from panelscan.errors import InvalidNodeDescriptor, ListenerBindError
from panelscan.proxy.broadcast import ProxyBroadcast
from panelscan.proxy.nodes import validate_node
from panelscan.proxy.source import ProbeResult, ProxySource, probe_proxy
from panelscan.proxy.types import NodeHealth, ProxyNode, ProxyPoolStatus
from panelscan.proxy.v2ray import build_http_proxy_config

logger = logging.getLogger(__name__)

Prober = Callable[[str, str, float], Awaitable[ProbeResult]]


# ---------------------------------------------------------------------------
# Core launchers
# ---------------------------------------------------------------------------


@dataclass
class LaunchedCore:
    """Handle to one running local proxy core."""

    port: int
    config_path: Path | None = None
    process: asyncio.subprocess.Process | None = None


class CoreLauncher(ABC):
    """Starts and stops the process behind one local listener."""

    @abstractmethod
    async def launch(self, node: ProxyNode, port: int) -> LaunchedCore: ...

    @abstractmethod
    async def terminate(self, core: LaunchedCore) -> None: ...

    async def reclaim(self, port: int) -> bool:
        """Stop a stale listener on ``port`` left by a previous run of ours."""
        return False


class V2rayLauncher(CoreLauncher):
    """Runs ``v2ray run -config <file>`` per node.

    Config files and pid files live in ``run_dir``. Only processes recorded
    there are ever reclaimed.
    """

    def __init__(self, core_path: str, run_dir: str, log_level: str = "warning") -> None:
        self._core_path = core_path
        self._run_dir = Path(run_dir)
        self._log_level = log_level

    def _pid_path(self, port: int) -> Path:
        return self._run_dir / f"core.{port}.pid"

    async def launch(self, node: ProxyNode, port: int) -> LaunchedCore:
        self._run_dir.mkdir(parents=True, exist_ok=True)
        config_path = self._run_dir / f"v2ray.{os.getpid()}.{port}.json"
        config = build_http_proxy_config(node, port, log_level=self._log_level)
        config_path.write_text(json.dumps(config, indent=2), encoding="utf-8")

        process = await asyncio.create_subprocess_exec(
            self._core_path,
            "run",
            "-config",
            str(config_path),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        self._pid_path(port).write_text(str(process.pid), encoding="utf-8")
        return LaunchedCore(port=port, config_path=config_path, process=process)

    async def terminate(self, core: LaunchedCore) -> None:
        process = core.process
        if process is not None and process.returncode is None:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
        if core.config_path is not None:
            core.config_path.unlink(missing_ok=True)
        self._pid_path(core.port).unlink(missing_ok=True)

    async def reclaim(self, port: int) -> bool:
        pid_path = self._pid_path(port)
        if not pid_path.exists():
            return False
        try:
            pid = int(pid_path.read_text(encoding="utf-8").strip())
        except ValueError:
            pid_path.unlink(missing_ok=True)
            return False

        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            logger.info("Stale pid file for port %d (pid %d already gone)", port, pid)
        except PermissionError:
            logger.warning("Cannot reclaim port %d: pid %d is not ours", port, pid)
            return False
        pid_path.unlink(missing_ok=True)
        await asyncio.sleep(0.3)
        return True


def port_in_use(port: int, host: str = "127.0.0.1") -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return True
    return False


# ---------------------------------------------------------------------------
# Supervisor
# ---------------------------------------------------------------------------


@dataclass
class _RunningNode:
    node_id: str
    node: ProxyNode
    core: LaunchedCore
    health: NodeHealth


class ProxyPoolSupervisor(ProxySource):
    """Owns candidate nodes, their local listeners and their health."""

    def __init__(
        self,
        launcher: CoreLauncher,
        *,
        pool_size: int = 3,
        base_port: int = 17890,
        test_url: str = "https://enka.network/api/uid/100000001",
        test_timeout_seconds: float = 8.0,
        startup_seconds: float = 0.7,
        health_check_interval_seconds: float = 60.0,
        health_fail_threshold: int = 2,
        max_consecutive_fails: int = 10,
        disable_seconds: float = 60.0,
        broadcast: ProxyBroadcast | None = None,
        prober: Prober = probe_proxy,
    ) -> None:
        super().__init__(
            broadcast,
            max_consecutive_fails=max_consecutive_fails,
            disable_seconds=disable_seconds,
        )
        self._launcher = launcher
        self._pool_size = pool_size
        self._base_port = base_port
        self._test_url = test_url
        self._test_timeout_seconds = test_timeout_seconds
        self._startup_seconds = startup_seconds
        self._health_check_interval_seconds = health_check_interval_seconds
        self._health_fail_threshold = health_fail_threshold
        self._prober = prober

        self._candidates: dict[str, ProxyNode] = {}
        self._running: dict[str, _RunningNode] = {}
        self._excluded: set[str] = set()
        self._next_port = base_port
        self._free_ports: list[int] = []
        self._blocked_ports: set[int] = set()
        self._health_check_task: asyncio.Task[None] | None = None
        self._lock = asyncio.Lock()
        self._closed = False

    async def __aenter__(self) -> ProxyPoolSupervisor:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register_node(self, descriptor: Mapping[str, Any]) -> str:
        """Validate and register one node; start it if the pool has room.

        Raises ``InvalidNodeDescriptor`` before any network action when a
        required field is missing. A node that fails to start is excluded
        from rotation without raising.
        """
        node = validate_node(descriptor)
        node_id = self._unique_id(node.display_name)
        self._candidates[node_id] = node

        if len(self._running) < self._pool_size:
            async with self._lock:
                await self._start_node(node_id)
            await self._publish()
        return node_id

    async def register_nodes(self, descriptors: list[Mapping[str, Any]]) -> list[str]:
        """Register many descriptors; invalid ones are logged and skipped."""
        node_ids = []
        for descriptor in descriptors:
            try:
                node_ids.append(await self.register_node(descriptor))
            except InvalidNodeDescriptor as exc:
                logger.warning("Rejected proxy node: %s", exc.message, extra={"error_reason": exc.field})
        logger.info(
            "Proxy pool initialized: %d candidates, %d running",
            len(self._candidates),
            len(self._running),
        )
        return node_ids

    async def rebuild(self, descriptors: list[Mapping[str, Any]]) -> list[str]:
        """Drop every node and register ``descriptors`` from scratch."""
        async with self._lock:
            await self._stop_all()
            self._candidates.clear()
            self._excluded.clear()
            self._health.clear()
        await self._publish()
        return await self.register_nodes(descriptors)

    def _unique_id(self, base: str) -> str:
        node_id = base
        suffix = 2
        while node_id in self._candidates:
            node_id = f"{base}#{suffix}"
            suffix += 1
        return node_id

    # ------------------------------------------------------------------
    # Materialization
    # ------------------------------------------------------------------

    def _allocate_port(self) -> int:
        if self._free_ports:
            return heapq.heappop(self._free_ports)
        while self._next_port in self._blocked_ports:
            self._next_port += 1
        port = self._next_port
        self._next_port += 1
        return port

    def _release_port(self, port: int) -> None:
        if port not in self._blocked_ports:
            heapq.heappush(self._free_ports, port)

    async def _ensure_port_free(self, port: int) -> None:
        """Bind check with one reclaim-and-retry; raises ListenerBindError."""
        if not port_in_use(port):
            return
        reclaimed = await self._launcher.reclaim(port)
        if reclaimed and not port_in_use(port):
            logger.info("Reclaimed stale local listener on port %d", port)
            return
        self._blocked_ports.add(port)
        raise ListenerBindError(f"Local port {port} is in use", port=port)

    async def _start_node(self, node_id: str) -> bool:
        node = self._candidates[node_id]
        port = self._allocate_port()

        try:
            await self._ensure_port_free(port)
        except ListenerBindError as exc:
            logger.warning("Excluding proxy node %s: %s", node_id, exc.message)
            self._excluded.add(node_id)
            return False

        try:
            core = await self._launcher.launch(node, port)
        except OSError as exc:
            logger.warning("Failed to launch proxy core for %s: %s", node_id, exc)
            self._excluded.add(node_id)
            self._release_port(port)
            return False

        proxy_url = f"http://127.0.0.1:{port}"
        try:
            await asyncio.sleep(self._startup_seconds)
            result = await self._prober(proxy_url, self._test_url, self._test_timeout_seconds)
        except BaseException:
            # not yet in _running, so close() would never reach this core
            await self._launcher.terminate(core)
            self._release_port(port)
            raise
        if not result.ok:
            logger.warning(
                "Proxy node %s failed its start-up probe",
                node_id,
                extra={"proxy_used": proxy_url, "error_reason": result.error},
            )
            await self._launcher.terminate(core)
            self._excluded.add(node_id)
            self._release_port(port)
            return False

        health = NodeHealth(tag=node_id, proxy_url=proxy_url, port=port)
        self._running[node_id] = _RunningNode(node_id=node_id, node=node, core=core, health=health)
        self._health[proxy_url] = health
        logger.info(
            "Proxy node %s ready on port %d",
            node_id,
            port,
            extra={"proxy_used": proxy_url, "duration_ms": result.elapsed_ms},
        )
        return True

    async def _stop_node(self, node_id: str) -> None:
        running = self._running.pop(node_id, None)
        if running is None:
            return
        self._health.pop(running.health.proxy_url, None)
        try:
            await self._launcher.terminate(running.core)
        finally:
            self._release_port(running.core.port)

    async def _stop_all(self) -> None:
        for node_id in list(self._running):
            await self._stop_node(node_id)

    async def _refill(self) -> None:
        for node_id in list(self._candidates):
            if len(self._running) >= self._pool_size or self._closed:
                break
            if node_id in self._running or node_id in self._excluded:
                continue
            await self._start_node(node_id)

    async def _publish(self) -> None:
        urls = [r.health.proxy_url for r in self._running.values() if r.health.healthy]
        await self.broadcast.publish(urls)

    # ------------------------------------------------------------------
    # Background health checks
    # ------------------------------------------------------------------

    def start_health_checks(self) -> None:
        if self._health_check_task is None or self._health_check_task.done():
            self._health_check_task = asyncio.create_task(self.health_check_loop())

    async def health_check_loop(self) -> None:
        """Re-probe running nodes every ``health_check_interval_seconds``."""
        while not self._closed:
            await asyncio.sleep(self._health_check_interval_seconds)
            await self.run_health_checks()

    async def run_health_checks(self) -> None:
        """One round: probe, evict nodes past the threshold, then refill."""
        async with self._lock:
            for node_id, running in list(self._running.items()):
                result = await self._prober(
                    running.health.proxy_url, self._test_url, self._test_timeout_seconds
                )
                if result.ok:
                    running.health.probe_failures = 0
                    continue
                running.health.probe_failures += 1
                running.health.last_error = result.error
                if running.health.probe_failures >= self._health_fail_threshold:
                    logger.warning(
                        "Proxy node %s removed after %d failed probes",
                        node_id,
                        running.health.probe_failures,
                        extra={"proxy_used": running.health.proxy_url, "error_reason": result.error},
                    )
                    await self._stop_node(node_id)
                    self._excluded.add(node_id)
            await self._refill()
        await self._publish()

    # ------------------------------------------------------------------
    # Status / shutdown
    # ------------------------------------------------------------------

    def status(self) -> ProxyPoolStatus:
        status = super().status()
        status.enabled = not self._closed
        return status

    @property
    def running_count(self) -> int:
        return len(self._running)

    async def close(self) -> None:
        """Stop the health loop and every local listener."""
        self._closed = True
        if self._health_check_task is not None:
            self._health_check_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._health_check_task
            self._health_check_task = None
        async with self._lock:
            await self._stop_all()
        await self._publish()
        logger.info("Proxy pool closed")
