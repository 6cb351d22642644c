"""Tests for modechat.server: HTTP surface."""

import json
import logging

import pytest
from fastapi.testclient import TestClient

from fakes import FakeProvider, make_orchestrator
from modechat.errors import UpstreamError
from modechat.prompts import fallback_text
from modechat.providers import LiteLLMProvider
from modechat.server import app, get_orchestrator
from modechat.streaming import EventKind, EventParser


@pytest.fixture
def client(orchestrator, monkeypatch):
    # sse-starlette keeps a process-wide exit event bound to the first loop
    import sse_starlette.sse as sse

    if hasattr(sse, "AppStatus"):
        monkeypatch.setattr(sse.AppStatus, "should_exit_event", None, raising=False)
    with TestClient(app) as c:
        yield c


def _use_provider(provider):
    orch = make_orchestrator(provider)
    app.dependency_overrides[get_orchestrator] = lambda: orch
    return orch


def _events(resp):
    return EventParser().feed(resp.text)


# ---------------------------------------------------------------------------
# /health and /
# ---------------------------------------------------------------------------

class TestServiceInfo:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    def test_root(self, client):
        data = client.get("/").json()
        assert data["name"] == "modechat"
        assert data["modes"] == ["medical", "therapy", "recipe", "dental"]


# ---------------------------------------------------------------------------
# POST /chat (JSON)
# ---------------------------------------------------------------------------

class TestSendJson:
    def test_reply(self, client):
        resp = client.post("/chat", json={"message": "I have a fever", "mode": "medical"})
        assert resp.status_code == 200
        data = resp.json()
        assert set(data) == {"mode", "answer", "disclaimer", "language", "direction"}
        assert data["disclaimer"] == "This is not medical advice and does not replace a doctor."
        assert data["direction"] == "ltr"

    def test_default_mode_is_medical(self, client):
        assert client.post("/chat", json={"message": "hi"}).json()["mode"] == "medical"

    def test_recipe(self, client):
        data = client.post("/chat", json={"message": "eggs and spinach", "mode": "recipe"}).json()
        assert "## Ingredients" in data["answer"]
        assert data["disclaimer"] == ""

    @pytest.mark.parametrize("body", [
        {"message": ""},
        {"message": "   "},
        {"message": "x" * 8001},
        {"message": "hi", "mode": "legal"},
        {"mode": "medical"},
    ])
    def test_invalid_input(self, client, body):
        resp = client.post("/chat", json=body)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INVALID_INPUT"

    def test_malformed_json(self, client):
        resp = client.post("/chat", content=b"{oops", headers={"Content-Type": "application/json"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INVALID_INPUT"

    def test_rate_limited(self, client, monkeypatch):
        monkeypatch.setenv("MODECHAT_SEND_LIMIT", "1")
        assert client.post("/chat", json={"message": "one"}).status_code == 200
        resp = client.post("/chat", json={"message": "two"})
        assert resp.status_code == 429
        error = resp.json()["error"]
        assert error["code"] == "RATE_LIMITED"
        assert int(resp.headers["Retry-After"]) == error["retry_after"] >= 1

    def test_forwarded_ip_is_used_for_limits(self, client, monkeypatch):
        monkeypatch.setenv("MODECHAT_IP_LIMIT", "1")
        assert client.post("/chat", json={"message": "a"}, headers={"X-Forwarded-For": "1.1.1.1, 10.0.0.1"}).status_code == 200
        assert client.post("/chat", json={"message": "b"}, headers={"X-Forwarded-For": "2.2.2.2"}).status_code == 200
        assert client.post("/chat", json={"message": "c"}, headers={"X-Real-IP": "1.1.1.1"}).status_code == 429

    def test_upstream_error(self, client):
        orch = _use_provider(FakeProvider(UpstreamError(400)))
        resp = client.post("/chat", json={"message": "hi", "mode": "therapy"})
        assert resp.status_code == 502
        error = resp.json()["error"]
        assert error["code"] == "LLM_ERROR"
        assert error["fallback"] == fallback_text("therapy")
        assert orch.store.all()[-1].content == fallback_text("therapy")

    def test_upstream_timeout(self, client, monkeypatch):
        monkeypatch.setenv("MODECHAT_TIMEOUT_S", "0.05")
        _use_provider(FakeProvider("late", delay=1.0))
        resp = client.post("/chat", json={"message": "hi"})
        assert resp.status_code == 504
        assert resp.json()["error"]["code"] == "LLM_TIMEOUT"

    def test_not_configured(self, client):
        _use_provider(LiteLLMProvider())
        resp = client.post("/chat", json={"message": "hi", "mode": "dental"})
        assert resp.status_code == 500
        error = resp.json()["error"]
        assert error["code"] == "LLM_NOT_CONFIGURED"
        assert error["fallback"] == fallback_text("dental")


# ---------------------------------------------------------------------------
# POST /chat (stream)
# ---------------------------------------------------------------------------

class TestSendStream:
    def test_stream_flag(self, client):
        resp = client.post("/chat", json={"message": "I feel low", "mode": "therapy", "stream": True})
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        events = _events(resp)
        assert events[0].kind is EventKind.META
        assert events[-1].kind is EventKind.DONE
        tokens = "".join(e.payload for e in events if e.kind is EventKind.TOKEN)
        assert tokens == events[-1].payload["answer"]

    def test_accept_header(self, client):
        resp = client.post("/chat", json={"message": "hi"}, headers={"Accept": "text/event-stream"})
        assert _events(resp)[-1].kind is EventKind.DONE

    def test_stream_error_event(self, client):
        _use_provider(FakeProvider(UpstreamError(401)))
        resp = client.post("/chat", json={"message": "hi", "stream": True})
        assert resp.status_code == 200
        assert [e.kind for e in _events(resp)] == [EventKind.META, EventKind.ERROR]

    def test_stream_rate_limit_is_plain_json(self, client, monkeypatch):
        monkeypatch.setenv("MODECHAT_SEND_LIMIT", "1")
        client.post("/chat", json={"message": "one", "stream": True})
        resp = client.post("/chat", json={"message": "two", "stream": True})
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "RATE_LIMITED"


# ---------------------------------------------------------------------------
# GET /chat
# ---------------------------------------------------------------------------

class TestListChat:
    def test_history(self, client):
        client.post("/chat", json={"message": "pasta", "mode": "recipe"})
        client.post("/chat", json={"message": "toothache", "mode": "dental"})
        messages = client.get("/chat").json()["messages"]
        assert len(messages) == 4
        assert set(messages[0]) == {"id", "role", "content", "mode", "createdAt"}
        assert [m["role"] for m in messages] == ["user", "assistant", "user", "assistant"]
        assert messages[0]["content"] == "pasta"

    def test_mode_filter(self, client):
        client.post("/chat", json={"message": "pasta", "mode": "recipe"})
        client.post("/chat", json={"message": "toothache", "mode": "dental"})
        messages = client.get("/chat", params={"mode": "dental"}).json()["messages"]
        assert {m["mode"] for m in messages} == {"dental"}

    def test_invalid_mode(self, client):
        resp = client.get("/chat", params={"mode": "legal"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INVALID_INPUT"

    def test_list_rate_limit(self, client, monkeypatch):
        monkeypatch.setenv("MODECHAT_LIST_LIMIT", "1")
        assert client.get("/chat").status_code == 200
        assert client.get("/chat").status_code == 429


# ---------------------------------------------------------------------------
# auth
# ---------------------------------------------------------------------------

class TestAuth:
    def test_missing_token(self, client, monkeypatch):
        monkeypatch.setenv("MODECHAT_AUTH_TOKEN", "secret-token")
        resp = client.post("/chat", json={"message": "hi"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "UNAUTHENTICATED"

    def test_wrong_token(self, client, monkeypatch):
        monkeypatch.setenv("MODECHAT_AUTH_TOKEN", "secret-token")
        resp = client.get("/chat", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401

    def test_bearer_and_api_key(self, client, monkeypatch):
        monkeypatch.setenv("MODECHAT_AUTH_TOKEN", "secret-token")
        assert client.get("/chat", headers={"Authorization": "Bearer secret-token"}).status_code == 200
        assert client.get("/chat", headers={"X-API-Key": "secret-token"}).status_code == 200

    def test_oversized_token(self, client, monkeypatch):
        monkeypatch.setenv("MODECHAT_AUTH_TOKEN", "secret-token")
        resp = client.get("/chat", headers={"Authorization": "Bearer " + "x" * 1001})
        assert resp.status_code == 400

    def test_users_file_isolates_history(self, client, monkeypatch, tmp_path):
        users = tmp_path / "users.json"
        users.write_text(json.dumps({
            "tok-alice": {"id": "alice", "name": "Alice"},
            "tok-bob": {"id": "bob", "name": "Bob"},
        }))
        monkeypatch.setenv("MODECHAT_USERS_FILE", str(users))
        alice = {"Authorization": "Bearer tok-alice"}
        bob = {"Authorization": "Bearer tok-bob"}

        client.post("/chat", json={"message": "alice here"}, headers=alice)
        assert client.get("/chat", headers=bob).json()["messages"] == []
        assert client.get("/chat", headers=alice).json()["messages"][0]["content"] == "alice here"

    def test_caller_name_is_logged(self, client, monkeypatch, tmp_path, caplog):
        users = tmp_path / "users.json"
        users.write_text(json.dumps({"tok-alice": {"id": "alice", "name": "Alice"}}))
        monkeypatch.setenv("MODECHAT_USERS_FILE", str(users))
        with caplog.at_level(logging.DEBUG, logger="modechat.auth"):
            resp = client.get("/chat", headers={"Authorization": "Bearer tok-alice"})
        assert resp.status_code == 200
        assert "Request from Alice (alice)" in caplog.text
