"""Integration tests for the HTTP and WebSocket API.

Uses httpx AsyncClient with ASGITransport for HTTP endpoints and
Starlette's TestClient for the /ws channel.  The backend is a FakeBackend.
"""

from __future__ import annotations

import json

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from starlette.testclient import TestClient

from conftest import FakeBackend, chunk
from localchat.api.controller import GenerationController
from localchat.api.errors import BackendUnavailable
from localchat.api.rest import create_app
from localchat.config import ChatConfig


def _sse_events(body: str) -> list[dict]:
    return [json.loads(line[6:]) for line in body.splitlines() if line.startswith("data: ")]


def _receive_until_terminal(ws) -> list[dict]:
    events = []
    while True:
        message = ws.receive_json()
        events.append(message)
        if message["type"] in ("result", "error"):
            return events


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def backend(hi_backend) -> FakeBackend:
    return hi_backend


@pytest.fixture
def controller(backend, settings) -> GenerationController:
    return GenerationController(backend, settings)


@pytest.fixture
def app(controller, backend, settings):
    """Create Starlette app with all routes."""
    return create_app(controller, backend, settings)


@pytest_asyncio.fixture
async def client(app):
    """Async HTTP client using httpx ASGITransport."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


# ---------------------------------------------------------------------------
# POST /chat/stream
# ---------------------------------------------------------------------------


class TestChatStream:
    @pytest.mark.asyncio
    async def test_stream(self, client):
        resp = await client.post("/chat/stream", json={"content": "Hi", "sessionId": "s1"})
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        events = _sse_events(resp.text)
        assert [e["type"] for e in events] == ["assistant_message", "assistant_message", "token_update", "result"]
        assert all(e["sessionId"] == "s1" for e in events)

    @pytest.mark.asyncio
    async def test_message_field(self, client):
        resp = await client.post("/chat/stream", json={"message": "Hi", "session_id": "s2"})
        assert _sse_events(resp.text)[-1] == {"type": "result", "sessionId": "s2"}

    @pytest.mark.asyncio
    async def test_empty_message(self, client):
        resp = await client.post("/chat/stream", json={"content": "", "sessionId": "s1"})
        assert _sse_events(resp.text) == [{
            "type": "error", "message": "Empty message", "errorType": "empty_message", "sessionId": "s1",
        }]

    @pytest.mark.asyncio
    async def test_backend_down(self, client, backend):
        backend.error = BackendUnavailable()
        resp = await client.post("/chat/stream", json={"content": "Hi"})
        events = _sse_events(resp.text)
        assert len(events) == 1
        assert events[0]["errorType"] == "ollama_unavailable"
        assert events[0]["sessionId"] == "default"

    @pytest.mark.asyncio
    async def test_invalid_json(self, client):
        resp = await client.post("/chat/stream", content=b"not json")
        assert resp.status_code == 400


# ---------------------------------------------------------------------------
# Session endpoints
# ---------------------------------------------------------------------------


class TestSessionEndpoints:
    @pytest.mark.asyncio
    async def test_history(self, client):
        await client.post("/chat/stream", json={"content": "Hi", "sessionId": "s1"})
        resp = await client.get("/chat/s1/history")
        assert resp.status_code == 200
        data = resp.json()
        assert data["generating"] is False
        assert data["history"] == [
            {"role": "user", "content": "Hi"},
            {"role": "assistant", "content": "Hello"},
        ]

    @pytest.mark.asyncio
    async def test_history_unknown(self, client):
        resp = await client.get("/chat/nope/history")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_stop_without_generation(self, client):
        resp = await client.post("/chat/s1/stop")
        assert resp.json() == {"stopped": False, "session_id": "s1"}

    @pytest.mark.asyncio
    async def test_stop_live_generation(self, client, controller):
        from localchat.api.models import ChatRequest

        controller.open(ChatRequest(content="Hi", session_id="s1"))
        resp = await client.post("/chat/s1/stop")
        assert resp.json()["stopped"] is True
        assert not controller.is_generating("s1")

    @pytest.mark.asyncio
    async def test_end_session(self, client, controller):
        await client.post("/chat/stream", json={"content": "Hi", "sessionId": "s1"})
        resp = await client.delete("/chat/s1")
        assert resp.json()["status"] == "ended"
        assert "s1" not in controller.sessions
        resp = await client.delete("/chat/s1")
        assert resp.json()["status"] == "not_found"


# ---------------------------------------------------------------------------
# Models, health, settings
# ---------------------------------------------------------------------------


class TestApiEndpoints:
    @pytest.mark.asyncio
    async def test_models(self, client):
        resp = await client.get("/api/models")
        assert resp.status_code == 200
        assert resp.json()["models"][0]["name"] == "llama3.2:3b"

    @pytest.mark.asyncio
    async def test_models_backend_down(self, client, backend):
        backend.error = BackendUnavailable()
        resp = await client.get("/api/models")
        assert resp.status_code == 503
        assert resp.json()["error"] == "Failed to fetch models"

    @pytest.mark.asyncio
    async def test_pull(self, client, backend):
        resp = await client.post("/api/models/pull", json={"name": "phi3"})
        events = _sse_events(resp.text)
        assert events[-1]["status"] == "success"
        assert events[1]["progress"] == 50.0
        assert backend.pulls == ["phi3"]

    @pytest.mark.asyncio
    async def test_pull_requires_name(self, client):
        resp = await client.post("/api/models/pull", json={})
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_health(self, client, backend):
        resp = await client.get("/api/health")
        assert resp.json()["status"] == "ok"
        backend.healthy = False
        resp = await client.get("/api/health")
        assert resp.json()["status"] == "ollama_unavailable"
        assert resp.json()["ollama"] is False

    @pytest.mark.asyncio
    async def test_settings(self, client):
        resp = await client.get("/api/settings")
        data = resp.json()
        assert data["model"]["temperature"] == 0.7
        assert data["system_prompt_enabled"] is False

    @pytest.mark.asyncio
    async def test_reload_config(self, client, controller, settings, tmp_path):
        (tmp_path / "settings.json").write_text(json.dumps({
            "model": {"name": "mistral"},
            "system": {"enableSystemPrompt": True},
        }))
        (tmp_path / "system-prompt.txt").write_text("Be brief.")

        resp = await client.post("/api/reload-config")

        assert resp.json()["success"] is True
        assert controller.config == ChatConfig.load(settings)
        assert controller.config.model.name == "mistral"
        assert controller.config.system_context == "Be brief."


# ---------------------------------------------------------------------------
# WS /ws
# ---------------------------------------------------------------------------


class TestWebSocket:
    def test_chat(self, app):
        with TestClient(app) as tc, tc.websocket_connect("/ws") as ws:
            ws.send_json({"type": "chat", "content": "Hi", "sessionId": "s1"})
            events = _receive_until_terminal(ws)
        assert [e["type"] for e in events] == ["assistant_message", "assistant_message", "token_update", "result"]
        assert "".join(e["content"] for e in events if e["type"] == "assistant_message") == "Hello"

    def test_empty_message(self, app):
        with TestClient(app) as tc, tc.websocket_connect("/ws") as ws:
            ws.send_json({"type": "chat", "content": " ", "sessionId": "s1"})
            assert ws.receive_json()["errorType"] == "empty_message"

    def test_invalid_messages(self, app):
        with TestClient(app) as tc, tc.websocket_connect("/ws") as ws:
            ws.send_text("not json")
            assert ws.receive_json()["errorType"] == "invalid_message"
            ws.send_json({"type": "dance"})
            assert ws.receive_json()["errorType"] == "invalid_message"

    def test_stop_generation(self, settings):
        backend = FakeBackend([chunk("Hel")], hang=True)
        controller = GenerationController(backend, settings)
        app = create_app(controller, backend, settings)

        with TestClient(app) as tc, tc.websocket_connect("/ws") as ws:
            ws.send_json({"type": "chat", "content": "Hi", "sessionId": "s1"})
            assert ws.receive_json()["content"] == "Hel"

            ws.send_json({"type": "stop_generation", "sessionId": "s1"})
            # The stopped generation sends nothing more; the next reply is for this message
            ws.send_json({"type": "chat", "content": "", "sessionId": "s1"})
            assert ws.receive_json()["errorType"] == "empty_message"

        assert not controller.is_generating("s1")
        assert [t.role for t in controller.history("s1")] == ["user"]

    def test_second_chat_rejected_while_generating(self, settings):
        backend = FakeBackend([chunk("Hel")], hang=True)
        controller = GenerationController(backend, settings)
        app = create_app(controller, backend, settings)

        with TestClient(app) as tc, tc.websocket_connect("/ws") as ws:
            ws.send_json({"type": "chat", "content": "Hi", "sessionId": "s1"})
            assert ws.receive_json()["content"] == "Hel"
            ws.send_json({"type": "chat", "content": "Again", "sessionId": "s1"})
            assert ws.receive_json()["errorType"] == "generation_in_progress"
            ws.send_json({"type": "stop_generation", "sessionId": "s1"})
