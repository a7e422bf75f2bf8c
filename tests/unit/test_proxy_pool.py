"""Unit tests for the proxy pool supervisor, its broadcast and static sources."""

from __future__ import annotations

import asyncio
import socket

import pytest

from panelscan.errors import InvalidNodeDescriptor
from panelscan.proxy.broadcast import ProxyBroadcast
from panelscan.proxy.pool import CoreLauncher, LaunchedCore, ProxyPoolSupervisor, port_in_use
from panelscan.proxy.source import ProbeResult, StaticProxySource
from panelscan.proxy.types import ProxyNode


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeLauncher(CoreLauncher):
    """Records launches instead of starting processes."""

    def __init__(self, *, fail_hosts: set[str] | None = None, reclaim_result: bool = False) -> None:
        self.launched: list[tuple[str, int]] = []
        self.terminated: list[int] = []
        self.reclaimed: list[int] = []
        self._fail_hosts = fail_hosts or set()
        self._reclaim_result = reclaim_result

    async def launch(self, node: ProxyNode, port: int) -> LaunchedCore:
        if node.host in self._fail_hosts:
            raise OSError(f"cannot start core for {node.host}")
        self.launched.append((node.host, port))
        return LaunchedCore(port=port)

    async def terminate(self, core: LaunchedCore) -> None:
        self.terminated.append(core.port)

    async def reclaim(self, port: int) -> bool:
        self.reclaimed.append(port)
        return self._reclaim_result


class ScriptedProber:
    """Prober that fails the next N probes of a given proxy URL."""

    def __init__(self) -> None:
        self.failures: dict[str, int] = {}
        self.calls: list[str] = []

    async def __call__(self, proxy_url: str, test_url: str, timeout: float) -> ProbeResult:
        self.calls.append(proxy_url)
        pending = self.failures.get(proxy_url, 0)
        if pending > 0:
            self.failures[proxy_url] = pending - 1
            return ProbeResult(ok=False, error="timeout")
        return ProbeResult(ok=True, status=200, elapsed_ms=1.0)


def _node(host: str) -> dict:
    return {"type": "vmess", "host": host, "port": 443, "id": "11111111-2222-3333-4444-555555555555"}


def _free_base_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _pool(launcher=None, prober=None, **kwargs) -> ProxyPoolSupervisor:
    kwargs.setdefault("base_port", _free_base_port())
    kwargs.setdefault("startup_seconds", 0)
    return ProxyPoolSupervisor(launcher or FakeLauncher(), prober=prober or ScriptedProber(), **kwargs)


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegistration:
    @pytest.mark.asyncio
    async def test_nodes_get_sequential_ports_and_are_published(self):
        launcher = FakeLauncher()
        pool = _pool(launcher, pool_size=3)
        base = pool._base_port

        await pool.register_nodes([_node("a"), _node("b")])

        assert launcher.launched == [("a", base), ("b", base + 1)]
        assert pool.broadcast.current() == (f"http://127.0.0.1:{base}", f"http://127.0.0.1:{base + 1}")
        assert pool.status().usable_count == 2
        await pool.close()

    @pytest.mark.asyncio
    async def test_invalid_descriptor_raises_before_launch(self):
        launcher = FakeLauncher()
        pool = _pool(launcher)
        with pytest.raises(InvalidNodeDescriptor):
            await pool.register_node({"type": "vmess", "host": "a", "port": 443})
        assert launcher.launched == []

    @pytest.mark.asyncio
    async def test_register_nodes_skips_invalid(self):
        pool = _pool(pool_size=5)
        ids = await pool.register_nodes([_node("a"), {"type": "trojan", "host": "b", "port": 443}, _node("c")])
        assert len(ids) == 2
        assert pool.running_count == 2
        await pool.close()

    @pytest.mark.asyncio
    async def test_pool_size_caps_running_nodes(self):
        launcher = FakeLauncher()
        pool = _pool(launcher, pool_size=2)
        await pool.register_nodes([_node("a"), _node("b"), _node("c")])
        assert pool.running_count == 2
        assert [h for h, _ in launcher.launched] == ["a", "b"]
        await pool.close()

    @pytest.mark.asyncio
    async def test_duplicate_display_names_get_suffix(self):
        pool = _pool(pool_size=3)
        first = await pool.register_node(_node("a"))
        second = await pool.register_node(_node("a"))
        assert first != second
        assert second.startswith(first)
        await pool.close()


# ---------------------------------------------------------------------------
# Start-up failures
# ---------------------------------------------------------------------------


class TestStartupFailures:
    @pytest.mark.asyncio
    async def test_failed_probe_excludes_node_and_frees_port(self):
        prober = ScriptedProber()
        launcher = FakeLauncher()
        pool = _pool(launcher, prober, pool_size=2)
        base = pool._base_port
        prober.failures[f"http://127.0.0.1:{base}"] = 1

        await pool.register_nodes([_node("bad"), _node("good")])

        assert launcher.terminated == [base]
        # the freed port is handed out again
        assert ("good", base) in launcher.launched
        assert pool.running_count == 1
        await pool.close()

    @pytest.mark.asyncio
    async def test_startup_check_error_terminates_launched_core(self):
        async def broken_prober(proxy_url: str, test_url: str, timeout: float) -> ProbeResult:
            raise RuntimeError("health check crashed")

        launcher = FakeLauncher()
        pool = _pool(launcher, broken_prober, pool_size=1)
        base = pool._base_port

        with pytest.raises(RuntimeError):
            await pool.register_node(_node("a"))

        assert launcher.terminated == [base]
        assert pool.running_count == 0
        await pool.close()
        assert launcher.terminated == [base]

    @pytest.mark.asyncio
    async def test_launch_error_excludes_node(self):
        pool = _pool(FakeLauncher(fail_hosts={"a"}), pool_size=2)
        await pool.register_nodes([_node("a"), _node("b")])
        assert pool.running_count == 1
        await pool.close()

    @pytest.mark.asyncio
    async def test_busy_port_is_skipped_when_not_reclaimable(self):
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen(1)
        busy = blocker.getsockname()[1]
        try:
            launcher = FakeLauncher(reclaim_result=False)
            pool = _pool(launcher, base_port=busy, pool_size=2)

            await pool.register_nodes([_node("a"), _node("b")])

            assert launcher.reclaimed == [busy]
            assert all(port != busy for _, port in launcher.launched)
            assert pool.running_count == 1
            await pool.close()
        finally:
            blocker.close()

    def test_port_in_use(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            sock.listen(1)
            assert port_in_use(sock.getsockname()[1]) is True


# ---------------------------------------------------------------------------
# Health checks
# ---------------------------------------------------------------------------


class TestHealthChecks:
    @pytest.mark.asyncio
    async def test_node_evicted_after_threshold_and_pool_refilled(self):
        prober = ScriptedProber()
        launcher = FakeLauncher()
        pool = _pool(launcher, prober, pool_size=1, health_fail_threshold=2)
        base = pool._base_port
        await pool.register_nodes([_node("a"), _node("b")])
        url = f"http://127.0.0.1:{base}"
        assert pool.broadcast.current() == (url,)

        prober.failures[url] = 2
        await pool.run_health_checks()
        assert pool.running_count == 1
        assert [n["probe_failures"] for n in pool.status().nodes.values()] == [1]

        await pool.run_health_checks()

        # "a" is stopped and "b" takes over the released port
        assert launcher.terminated == [base]
        assert launcher.launched == [("a", base), ("b", base)]
        assert pool.broadcast.current() == (url,)
        assert list(pool.status().nodes) == ["vmess:b:443"]
        await pool.close()

    @pytest.mark.asyncio
    async def test_successful_probe_resets_failures(self):
        prober = ScriptedProber()
        pool = _pool(prober=prober, pool_size=1, health_fail_threshold=2)
        await pool.register_nodes([_node("a")])
        url = pool.broadcast.current()[0]

        prober.failures[url] = 1
        await pool.run_health_checks()
        await pool.run_health_checks()
        prober.failures[url] = 1
        await pool.run_health_checks()

        assert pool.running_count == 1
        await pool.close()


# ---------------------------------------------------------------------------
# Outcome feedback and shutdown
# ---------------------------------------------------------------------------


class TestFeedback:
    @pytest.mark.asyncio
    async def test_rate_limit_disables_immediately(self):
        pool = _pool(pool_size=1)
        await pool.register_nodes([_node("a")])
        url = pool.broadcast.current()[0]

        disabled = pool.mark_failure(url, rate_limited=True, cooldown_seconds=300)

        assert disabled is True
        assert pool.usable_urls() == []
        assert pool.is_usable(url) is False
        await pool.close()

    @pytest.mark.asyncio
    async def test_transport_failures_disable_after_threshold(self):
        pool = _pool(pool_size=1, max_consecutive_fails=3)
        await pool.register_nodes([_node("a")])
        url = pool.broadcast.current()[0]

        assert pool.mark_failure(url) is False
        assert pool.mark_failure(url) is False
        assert pool.mark_failure(url) is True
        await pool.close()

    @pytest.mark.asyncio
    async def test_close_stops_everything(self):
        launcher = FakeLauncher()
        pool = _pool(launcher, pool_size=2)
        await pool.register_nodes([_node("a"), _node("b")])
        pool.start_health_checks()

        await pool.close()

        assert sorted(launcher.terminated) == sorted(port for _, port in launcher.launched)
        assert pool.broadcast.current() == ()
        assert pool.status().enabled is False

    @pytest.mark.asyncio
    async def test_context_manager_closes(self):
        launcher = FakeLauncher()
        async with _pool(launcher, pool_size=1) as pool:
            await pool.register_nodes([_node("a")])
            port = pool.broadcast.current()[0].rsplit(":", 1)[1]
        assert launcher.terminated == [int(port)]
        assert pool.broadcast.current() == ()

    @pytest.mark.asyncio
    async def test_rebuild_replaces_nodes(self):
        launcher = FakeLauncher()
        pool = _pool(launcher, pool_size=2)
        await pool.register_nodes([_node("a")])

        await pool.rebuild([_node("x"), _node("y")])

        assert pool.running_count == 2
        assert [h for h, _ in launcher.launched][-2:] == ["x", "y"]
        await pool.close()


class TestStaticSource:
    def test_urls_normalized_and_tagged(self):
        source = StaticProxySource(["127.0.0.1:8080", "http://p2:3128", " "])
        assert source.broadcast.current() == ("http://127.0.0.1:8080", "http://p2:3128")
        assert set(source.status().nodes) == {"static-1", "static-2"}

    def test_success_resets_consecutive_failures(self):
        source = StaticProxySource(["http://p1:1"], max_consecutive_fails=2)
        source.mark_failure("http://p1:1")
        source.mark_success("http://p1:1")
        assert source.mark_failure("http://p1:1") is False

    def test_unknown_url_ignored(self):
        source = StaticProxySource(["http://p1:1"])
        assert source.mark_failure("http://other:1") is False


class TestBroadcast:
    @pytest.mark.asyncio
    async def test_publish_bumps_version(self):
        broadcast = ProxyBroadcast()
        assert broadcast.version == 0
        await broadcast.publish(["http://a"])
        assert broadcast.version == 1
        assert broadcast.current() == ("http://a",)

    @pytest.mark.asyncio
    async def test_unchanged_publish_is_noop(self):
        broadcast = ProxyBroadcast(["http://a"])
        await broadcast.publish(["http://a"])
        assert broadcast.version == 1

    @pytest.mark.asyncio
    async def test_waiter_sees_new_list(self):
        broadcast = ProxyBroadcast()
        waiter = asyncio.create_task(broadcast.wait_for_change(0, timeout=2))
        await asyncio.sleep(0)
        await broadcast.publish(["http://a", "http://b"])
        version, urls = await waiter
        assert version == 1
        assert urls == ("http://a", "http://b")

    @pytest.mark.asyncio
    async def test_wait_times_out_with_current_value(self):
        broadcast = ProxyBroadcast(["http://a"])
        version, urls = await broadcast.wait_for_change(1, timeout=0.01)
        assert (version, urls) == (1, ("http://a",))
