"""
Panel API tests.

Exercises the FastAPI app in-process with TestClient; the gateway and docker
are replaced with fakes.

Run with: python -m pytest tests/test_main_api.py -v
"""

import asyncio
import json

import pytest
from fastapi.testclient import TestClient

import docker_update
import main
from gateway_errors import GatewayRpcError
from release_discovery import ReleaseLookupError

SNAPSHOT = {
    "Name": "/openclaw-gateway",
    "Config": {"Image": "ghcr.io/openclaw/openclaw:2026.2.14"},
    "HostConfig": {"NetworkMode": "bridge"},
    "NetworkSettings": {"Networks": {"bridge": {}}},
}


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(main, "PANEL_API_TOKEN", "")
    monkeypatch.setattr(main, "get_gateway_status", lambda: "running")
    return TestClient(main.app)


@pytest.fixture
def docker_calls(monkeypatch):
    calls = []

    async def fake_run_command(command, args, timeout=30):
        calls.append([command] + list(args))
        if args[0] == "inspect":
            return {"ok": True, "code": 0, "stdout": json.dumps([SNAPSHOT]), "stderr": "", "message": ""}
        if args[0] == "run":
            return {"ok": True, "code": 0, "stdout": "helper-id", "stderr": "", "message": ""}
        return {"ok": True, "code": 0, "stdout": "", "stderr": "", "message": ""}

    monkeypatch.setattr(main, "run_command", fake_run_command)
    return calls


class TestHealthEndpoints:
    """Health and status endpoints."""

    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}

    def test_status(self, client):
        resp = client.get("/status")
        assert resp.status_code == 200
        data = resp.json()
        assert data["gateway_status"] == "running"
        assert data["gateway_url"].endswith("/ws")


class TestAuth:
    """PANEL_API_TOKEN enforcement."""

    def test_rejects_missing_token(self, client, monkeypatch):
        monkeypatch.setattr(main, "PANEL_API_TOKEN", "secret")
        assert client.get("/status").status_code == 401
        assert client.get("/status", params={"token": "wrong"}).status_code == 401

    def test_accepts_query_and_bearer(self, client, monkeypatch):
        monkeypatch.setattr(main, "PANEL_API_TOKEN", "secret")
        assert client.get("/status", params={"token": "secret"}).status_code == 200
        assert client.get("/status", headers={"Authorization": "Bearer secret"}).status_code == 200

    def test_health_is_open(self, client, monkeypatch):
        monkeypatch.setattr(main, "PANEL_API_TOKEN", "secret")
        assert client.get("/health").status_code == 200


class TestGatewayRpc:
    """RPC passthrough and error mapping."""

    def test_forwards_call(self, client, monkeypatch):
        seen = {}

        async def fake_call(config, method, params, **options):
            seen.update(method=method, params=params, options=options, url=config.url)
            return {"sessions": []}

        monkeypatch.setattr(main, "call_gateway_rpc", fake_call)

        resp = client.post("/gateway/rpc", json={"method": "sessions.list", "params": {"limit": 5}, "retries": 2})

        assert resp.status_code == 200
        assert resp.json() == {"ok": True, "payload": {"sessions": []}}
        assert seen["method"] == "sessions.list"
        assert seen["params"] == {"limit": 5}
        assert seen["options"]["retries"] == 2
        assert seen["options"]["expect_final"] is False

    @pytest.mark.parametrize("error_type,status_code", [
        ("auth", 401),
        ("timeout", 504),
        ("network", 502),
        ("remote", 502),
    ])
    def test_error_mapping(self, client, monkeypatch, error_type, status_code):
        async def failing_call(config, method, params, **options):
            raise GatewayRpcError("boom", error_type=error_type, method=method)

        monkeypatch.setattr(main, "call_gateway_rpc", failing_call)

        resp = client.post("/gateway/rpc", json={"method": "health"})

        assert resp.status_code == status_code
        assert resp.json()["detail"]["type"] == error_type

    def test_empty_method_rejected(self, client):
        assert client.post("/gateway/rpc", json={"method": ""}).status_code == 422


class TestUpdateEndpoints:
    """Image update routes."""

    def test_pull(self, client, docker_calls):
        resp = client.post("/update/pull", json={"tag": "v2026.2.15"})

        assert resp.status_code == 200
        assert resp.json()["ok"] is True
        assert docker_calls == [["docker", "pull", "ghcr.io/openclaw/openclaw:2026.2.15"]]

    def test_invalid_tag(self, client, docker_calls):
        resp = client.post("/update/upgrade", json={"tag": "not a tag"})

        assert resp.status_code == 400
        assert docker_calls == []

    def test_apply_targets_panel_container(self, client, docker_calls):
        resp = client.post("/update/apply", json={"tag": "0.1.1"})

        assert resp.status_code == 200
        data = resp.json()
        assert data["container_name"] == "openclaw-panel"
        assert data["requires_reconnect"] is True
        assert data["helper_container_id"] == "helper-id"
        assert docker_calls[0] == ["docker", "inspect", "openclaw-panel"]
        assert docker_calls[1] == ["docker", "pull", "ghcr.io/bianshumeng/openclaw-panel:0.1.1"]

    @pytest.mark.parametrize("path", ["/update/upgrade", "/update/rollback"])
    def test_panel_cannot_upgrade_in_process(self, client, docker_calls, path):
        resp = client.post(path, json={"tag": "0.1.1", "target": "panel"})

        assert resp.status_code == 400
        assert docker_calls == []

    def test_pull_panel_image(self, client, docker_calls):
        resp = client.post("/update/pull", json={"tag": "0.1.1", "target": "panel"})

        assert resp.status_code == 200
        assert docker_calls == [["docker", "pull", "ghcr.io/bianshumeng/openclaw-panel:0.1.1"]]

    def test_check_panel_target(self, client, docker_calls, monkeypatch):
        async def no_release(image_repo, **kwargs):
            raise ReleaseLookupError(f"no releases for {image_repo}")

        monkeypatch.setattr(docker_update, "fetch_latest_release", no_release)

        resp = client.get("/update/check", params={"target": "panel"})

        assert resp.status_code == 200
        data = resp.json()
        assert data["container_name"] == "openclaw-panel"
        assert data["warning"] == "no releases for ghcr.io/bianshumeng/openclaw-panel"
        assert docker_calls == [["docker", "inspect", "openclaw-panel"]]

    def test_check_with_missing_container(self, client, monkeypatch):
        async def no_container(command, args, timeout=30):
            return {"ok": False, "code": 1, "stdout": "", "stderr": "No such object", "message": ""}

        monkeypatch.setattr(main, "run_command", no_container)

        resp = client.get("/update/check")

        assert resp.status_code == 502
        assert "No such object" in resp.json()["detail"]


class FakeSubscription:
    def __init__(self):
        self.ready = asyncio.get_running_loop().create_future()
        self.close_calls = 0

    def close(self):
        self.close_calls += 1


class FakeSubscriber:
    """Each subscribe() consumes one script: an error, or frames plus an optional close."""

    def __init__(self, scripts):
        self.scripts = list(scripts)
        self.subscriptions = []

    def subscribe(self, on_event=None, on_error=None, on_close=None):
        script = self.scripts.pop(0)
        sub = FakeSubscription()
        self.subscriptions.append(sub)
        if "error" in script:
            on_error(script["error"])
            sub.ready.set_exception(script["error"])
            return sub
        sub.ready.set_result({"url": "ws://fake/ws"})
        for frame in script.get("frames", []):
            on_event(frame)
        if "close" in script:
            on_close(script["close"])
        return sub


def sse_event(item):
    return item.split("\n", 1)[0].removeprefix("event: ")


def sse_data(item):
    return json.loads(item.split("\n")[1].removeprefix("data: "))


class TestEventRelay:
    """SSE relay with reconnect backoff."""

    def collect(self, subscriber, count, sleeps, disconnected=None):
        async def never_disconnected():
            return False

        async def record_sleep(seconds):
            sleeps.append(seconds)

        async def scenario():
            stream = main.relay_gateway_events(
                subscriber.subscribe, disconnected or never_disconnected, record_sleep, heartbeat=0.01
            )
            items = []
            async for item in stream:
                items.append(item)
                if len(items) == count:
                    break
            await stream.aclose()
            return items

        return asyncio.run(scenario())

    def test_reconnect_delay_backoff(self):
        assert [main.reconnect_delay(n) for n in (0, 1, 2, 3, 10, 15)] == [1.0, 1.0, 2.0, 3.0, 10.0, 10.0]

    def test_error_then_events(self):
        error = GatewayRpcError("gateway closed (1006): no reason", error_type="network")
        subscriber = FakeSubscriber([
            {"error": error},
            {"frames": [{"type": "event", "event": "chat", "payload": {"text": "hi"}}], "close": {"code": 1000, "reason": "bye"}},
        ])
        sleeps = []

        items = self.collect(subscriber, 6, sleeps)

        assert [sse_event(i) for i in items] == [
            "gateway-error", "reconnect", "ready", "gateway", "gateway-close", "reconnect",
        ]
        assert sse_data(items[3])["payload"] == {"text": "hi"}
        assert sse_data(items[5]) == {"attempt": 1, "delay_ms": 1000}
        assert sleeps == [1.0]
        assert all(sub.close_calls == 1 for sub in subscriber.subscriptions)

    def test_backoff_grows_while_failing(self):
        error = GatewayRpcError("refused", error_type="network")
        subscriber = FakeSubscriber([{"error": error}] * 3)
        sleeps = []

        items = self.collect(subscriber, 6, sleeps)

        reconnects = [sse_data(i)["delay_ms"] for i in items if sse_event(i) == "reconnect"]
        assert reconnects == [1000, 2000, 3000]

    def test_heartbeat_and_disconnect(self):
        subscriber = FakeSubscriber([{"frames": []}])
        checks = iter([False, False, True])

        async def disconnected():
            return next(checks)

        items = self.collect(subscriber, 10, [], disconnected)

        assert sse_event(items[0]) == "ready"
        assert items[1] == ": heartbeat\n\n"
        assert len(items) == 2
        assert subscriber.subscriptions[0].close_calls == 1

    def test_event_name_picks_sse_event(self):
        subscriber = FakeSubscriber([
            {"frames": [{"type": "chat", "state": "delta"}, {"type": "terminal", "state": "final"}]},
        ])

        async def scenario():
            async def never_disconnected():
                return False

            stream = main.relay_gateway_events(
                subscriber.subscribe, never_disconnected, heartbeat=0.01, event_name=lambda event: event["type"]
            )
            items = [await stream.__anext__() for _ in range(3)]
            await stream.aclose()
            return items

        items = asyncio.run(scenario())

        assert [sse_event(i) for i in items] == ["ready", "chat", "terminal"]


class FakeChatService:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    async def _record(self, name, *args, **kwargs):
        self.calls.append((name, args, kwargs))
        if self.error is not None:
            raise self.error
        return {"called": name}

    def list_sessions(self):
        return self._record("list_sessions")

    def get_history(self, session_key, limit=200):
        return self._record("get_history", session_key, limit)

    def send_message(self, session_key, message="", **options):
        if not message.strip() and not options.get("attachments"):
            return self._fail(ValueError("message or attachments required"))
        return self._record("send_message", session_key, message, **options)

    def abort_run(self, session_key, run_id=""):
        return self._record("abort_run", session_key, run_id)

    def reset_session(self, session_key, reason="new"):
        return self._record("reset_session", session_key, reason)

    def create_session(self, key_prefix=""):
        return self._record("create_session", key_prefix)

    async def _fail(self, error):
        raise error


class TestChatEndpoints:
    """Chat routes delegate to the chat service."""

    @pytest.fixture
    def chat(self, monkeypatch):
        service = FakeChatService()
        monkeypatch.setattr(main, "build_chat_service", lambda: service)
        return service

    def test_sessions(self, client, chat):
        resp = client.get("/chat/sessions")

        assert resp.status_code == 200
        assert resp.json() == {"ok": True, "result": {"called": "list_sessions"}}

    def test_history_query(self, client, chat):
        resp = client.get("/chat/history", params={"session_key": "agent:main:a", "limit": 5})

        assert resp.status_code == 200
        assert chat.calls == [("get_history", ("agent:main:a", 5), {})]

    def test_history_requires_session_key(self, client, chat):
        assert client.get("/chat/history").status_code == 422
        assert client.get("/chat/history", params={"session_key": "a", "limit": 5000}).status_code == 422

    def test_send(self, client, chat):
        resp = client.post("/chat/send", json={"session_key": "agent:main:a", "message": "hi", "thinking": "low"})

        assert resp.status_code == 200
        name, args, options = chat.calls[0]
        assert (name, args) == ("send_message", ("agent:main:a", "hi"))
        assert options["thinking"] == "low"
        assert options["attachments"] == []

    def test_send_without_content_is_bad_request(self, client, chat):
        resp = client.post("/chat/send", json={"session_key": "agent:main:a"})

        assert resp.status_code == 400
        assert "message or attachments" in resp.json()["detail"]

    def test_abort_reset_new(self, client, chat):
        assert client.post("/chat/abort", json={"session_key": "s", "run_id": "r1"}).status_code == 200
        assert client.post("/chat/session/reset", json={"session_key": "s", "reason": "reset"}).status_code == 200
        assert client.post("/chat/session/new", json={"key_prefix": "ops"}).status_code == 200
        assert client.post("/chat/session/reset", json={"session_key": "s", "reason": "wipe"}).status_code == 422

        assert chat.calls == [
            ("abort_run", ("s", "r1"), {}),
            ("reset_session", ("s", "reset"), {}),
            ("create_session", ("ops",), {}),
        ]

    def test_gateway_errors_are_mapped(self, client, monkeypatch):
        service = FakeChatService(error=GatewayRpcError("gateway rpc timeout after 1000ms", error_type="timeout"))
        monkeypatch.setattr(main, "build_chat_service", lambda: service)

        resp = client.get("/chat/sessions")

        assert resp.status_code == 504
        assert resp.json()["detail"]["type"] == "timeout"

    def test_stream_rejects_blank_session(self, client, chat):
        assert client.get("/chat/stream", params={"session_key": "  "}).status_code == 400
