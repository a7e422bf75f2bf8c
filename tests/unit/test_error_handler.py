"""Unit tests for the error hierarchy and FastAPI exception handlers."""

from __future__ import annotations

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from panelscan.errors import (
    ConfigError,
    FetchError,
    InvalidNodeDescriptor,
    ListenerBindError,
    NetworkError,
    NoUsableProxiesError,
    NotFoundError,
    PanelScanError,
    ParseError,
    RateLimitedError,
    StoreIOError,
    SubscriptionError,
    register_error_handlers,
)


# ---------------------------------------------------------------------------
# Test app fixture
# ---------------------------------------------------------------------------


def _make_app() -> FastAPI:
    """Build a minimal FastAPI app with error handlers registered."""
    app = FastAPI()
    register_error_handlers(app)

    @app.get("/raise-base")
    async def _raise_base():
        raise PanelScanError()

    @app.get("/raise-config")
    async def _raise_config():
        raise ConfigError("uid_end below uid_start", domain="gs")

    @app.get("/raise-proxy")
    async def _raise_proxy():
        raise NoUsableProxiesError()

    @app.get("/raise-store")
    async def _raise_store():
        raise StoreIOError()

    @app.get("/raise-unhandled")
    async def _raise_unhandled():
        raise RuntimeError("boom")

    return app


@pytest.fixture
def client() -> TestClient:
    return TestClient(_make_app(), raise_server_exceptions=False)


# ---------------------------------------------------------------------------
# Hierarchy
# ---------------------------------------------------------------------------


class TestHierarchy:
    @pytest.mark.parametrize(
        "exc_cls",
        [
            ConfigError, InvalidNodeDescriptor, ListenerBindError, NoUsableProxiesError,
            SubscriptionError, StoreIOError, FetchError,
        ],
    )
    def test_all_extend_base(self, exc_cls):
        assert issubclass(exc_cls, PanelScanError)

    def test_default_message(self):
        assert str(NoUsableProxiesError()) == "No usable proxies available"

    def test_details_kept(self):
        exc = ConfigError("bad", domain="gs")
        assert exc.details == {"domain": "gs"}

    def test_invalid_node_names_field(self):
        exc = InvalidNodeDescriptor("port")
        assert exc.field == "port"
        assert "port" in exc.message


class TestFetchOutcomes:
    def test_retryable_flags(self):
        assert RateLimitedError().retryable is True
        assert NetworkError().retryable is True
        assert NotFoundError().retryable is False
        assert ParseError().retryable is False

    def test_event_kinds(self):
        assert RateLimitedError().event_kind == "http429"
        assert NotFoundError().event_kind == "permanent"
        assert ParseError().event_kind == "invalidJson"
        assert NetworkError(kind="timeout").event_kind == "timeout"

    def test_rate_limited_defaults_to_429(self):
        exc = RateLimitedError(retry_after=12)
        assert exc.status == 429
        assert exc.retry_after == 12


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


class TestHandlers:
    def test_base_error_envelope(self, client):
        resp = client.get("/raise-base")
        assert resp.status_code == 500
        assert resp.json() == {"success": False, "data": None, "error": "Internal error", "meta": None}

    def test_details_become_meta(self, client):
        resp = client.get("/raise-config")
        assert resp.status_code == 422
        body = resp.json()
        assert body["error"] == "uid_end below uid_start"
        assert body["meta"] == {"domain": "gs"}

    def test_proxy_error_is_503(self, client):
        assert client.get("/raise-proxy").status_code == 503

    def test_store_error_is_500(self, client):
        body = client.get("/raise-store").json()
        assert body["error"] == "Progress store I/O failed"

    def test_unhandled_error_is_generic(self, client):
        resp = client.get("/raise-unhandled")
        assert resp.status_code == 500
        assert resp.json()["error"] == "Internal server error"
        assert "boom" not in resp.text
