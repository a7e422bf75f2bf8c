"""Property tests for JSON envelope consistency.

Validates that error responses conform to the { success, data, error, meta }
envelope schema, with the status code taken from the raised error class.
"""

from __future__ import annotations

from fastapi import FastAPI
from fastapi.testclient import TestClient
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from panelscan.errors import (
    ConfigError,
    ListenerBindError,
    NoUsableProxiesError,
    PanelScanError,
    StoreIOError,
    SubscriptionError,
    register_error_handlers,
)
from panelscan.models.responses import ApiResponse


# ---------------------------------------------------------------------------
# Minimal test app
# ---------------------------------------------------------------------------

_ERROR_CLASSES: dict[str, type[PanelScanError]] = {
    cls.__name__: cls
    for cls in (PanelScanError, ConfigError, ListenerBindError, NoUsableProxiesError, SubscriptionError, StoreIOError)
}


def _create_test_app() -> FastAPI:
    """Create a minimal FastAPI app with error handlers registered."""
    app = FastAPI()
    register_error_handlers(app)

    @app.get("/raise/{name}")
    async def raise_error(name: str, message: str = "", domain: str = "") -> None:
        raise _ERROR_CLASSES[name](message or None, domain=domain or None)

    @app.get("/ok")
    async def ok_endpoint() -> dict:
        return ApiResponse(success=True, data={"msg": "ok"}).model_dump()

    return app


_client = TestClient(_create_test_app(), raise_server_exceptions=False)


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

error_names = st.sampled_from(sorted(_ERROR_CLASSES))
messages = st.text(min_size=1, max_size=60, alphabet="abcdefghijklmnopqrstuvwxyz0123456789 _-")
domain_ids = st.sampled_from(["", "gs", "sr", "zzz"])


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------


@settings(max_examples=100, deadline=None, suppress_health_check=[HealthCheck.too_slow])
@given(name=error_names, message=messages, domain=domain_ids)
def test_error_envelope_shape(name: str, message: str, domain: str) -> None:
    resp = _client.get(f"/raise/{name}", params={"message": message, "domain": domain})
    body = resp.json()
    cls = _ERROR_CLASSES[name]

    assert resp.status_code == cls.status_code
    assert set(body) == {"success", "data", "error", "meta"}
    assert body["success"] is False
    assert body["data"] is None
    assert body["error"] == message
    if domain:
        assert body["meta"] == {"domain": domain}
    else:
        assert body["meta"] is None


@settings(max_examples=100, deadline=None, suppress_health_check=[HealthCheck.too_slow])
@given(name=error_names)
def test_default_message_when_none_given(name: str) -> None:
    body = _client.get(f"/raise/{name}").json()
    assert body["error"] == _ERROR_CLASSES[name].message


def test_success_envelope_shape() -> None:
    body = _client.get("/ok").json()
    assert body == {"success": True, "data": {"msg": "ok"}, "error": None, "meta": None}
