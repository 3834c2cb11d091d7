import json

import pytest
import requests

from backend.client import BackendClient, BackendError
from backend.settings import BackendSettings


class FakeResponse:

    def __init__(self, status_code=200, body=None, text=None):
        self.status_code = status_code
        self._body = body
        self.text = text if text is not None else ("" if body is None else json.dumps(body))
        self.content = self.text.encode()

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


class FakeSession:

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def settings():
    return BackendSettings(url="https://demo.example.co/", anon_key="anon", access_token="jwt", timeout=3)


def test_select_builds_postgrest_params(settings):
    session = FakeSession(FakeResponse(body=[{"id": "o-1"}]))
    client = BackendClient(settings, session=session)

    rows = (
        client.table("orders")
        .select("*, restaurant:restaurants(*)")
        .eq("restaurant_id", "r-1")
        .in_("payment_status", ["paid", "captured"])
        .order("created_at", ascending=False)
        .limit(10)
        .fetch()
    )

    assert rows == [{"id": "o-1"}]
    method, url, kwargs = session.calls[0]
    assert method == "GET"
    assert url == "https://demo.example.co/rest/v1/orders"
    assert kwargs["params"] == [
        ("select", "*,restaurant:restaurants(*)"),
        ("restaurant_id", "eq.r-1"),
        ("payment_status", "in.(paid,captured)"),
        ("order", "created_at.desc"),
        ("limit", "10"),
    ]
    assert kwargs["headers"]["apikey"] == "anon"
    assert kwargs["headers"]["Authorization"] == "Bearer jwt"
    assert kwargs["timeout"] == 3


def test_none_and_bool_filters(settings):
    session = FakeSession(FakeResponse(body=[]))
    BackendClient(settings, session=session).table("t").eq("record_id", None).eq("is_active", True).fetch()
    params = session.calls[0][2]["params"]
    assert ("record_id", "is.null") in params
    assert ("is_active", "eq.true") in params


def test_update_sends_patch_with_filters(settings):
    session = FakeSession(FakeResponse(body=[{"id": "o-1", "status": "ready"}]))
    client = BackendClient(settings, session=session)

    client.table("orders").eq("id", "o-1").update({"status": "ready"})

    method, _, kwargs = session.calls[0]
    assert method == "PATCH"
    assert kwargs["params"] == [("id", "eq.o-1")]
    assert kwargs["json"] == {"status": "ready"}
    assert kwargs["headers"]["Prefer"] == "return=representation"


def test_upsert_uses_on_conflict(settings):
    session = FakeSession(FakeResponse(status_code=201, body=[{"key": "k"}]))
    BackendClient(settings, session=session).table("cfg").upsert({"key": "k"}, on_conflict="key")

    _, _, kwargs = session.calls[0]
    assert kwargs["params"] == [("on_conflict", "key")]
    assert kwargs["headers"]["Prefer"].startswith("resolution=merge-duplicates")


def test_rpc_posts_params(settings):
    session = FakeSession(FakeResponse(body="new-order-id"))
    result = BackendClient(settings, session=session).rpc("reroute_order_rpc", {"p_order_id": "o-1"})

    method, url, kwargs = session.calls[0]
    assert (method, url) == ("POST", "https://demo.example.co/rest/v1/rpc/reroute_order_rpc")
    assert kwargs["json"] == {"p_order_id": "o-1"}
    assert result == "new-order-id"


def test_no_content_returns_none(settings):
    session = FakeSession(FakeResponse(status_code=204))
    assert BackendClient(settings, session=session).rpc("enqueue_order_refund") is None


def test_error_body_becomes_backend_error(settings):
    body = {"message": "permission denied", "code": "42501", "details": "rls"}
    session = FakeSession(FakeResponse(status_code=403, body=body))

    with pytest.raises(BackendError) as caught:
        BackendClient(settings, session=session).table("orders").fetch()

    assert caught.value.status_code == 403
    assert caught.value.code == "42501"
    assert "permission denied" in caught.value.message


def test_network_failure_becomes_backend_error(settings):
    session = FakeSession(requests.ConnectionError("dns"))
    with pytest.raises(BackendError):
        BackendClient(settings, session=session).rpc("anything")


def test_single_requires_exactly_one_row(settings):
    session = FakeSession(FakeResponse(body=[]), FakeResponse(body=[{"id": 1}, {"id": 2}]))
    client = BackendClient(settings, session=session)

    with pytest.raises(BackendError):
        client.table("orders").single()
    with pytest.raises(BackendError):
        client.table("orders").maybe_single()


def test_settings_validation():
    with pytest.raises(ValueError):
        BackendSettings(url="", anon_key="k").validate()
    with pytest.raises(ValueError):
        BackendSettings(url="https://x", anon_key="k", timeout=0).validate()


def test_settings_from_env(monkeypatch):
    from backend.settings import settings_from_env

    monkeypatch.setenv("BACKEND_URL", "http://localhost:54321")
    monkeypatch.setenv("BACKEND_ANON_KEY", "anon")
    monkeypatch.setenv("REALTIME_HEARTBEAT_SECONDS", "15")
    monkeypatch.delenv("BACKEND_ACCESS_TOKEN", raising=False)

    settings = settings_from_env()
    assert settings.realtime_url == "ws://localhost:54321/realtime/v1/websocket"
    assert settings.heartbeat_seconds == 15
    assert settings.access_token is None
