"""
API contract tests: status codes and response shape for every public route.

The chat route runs against a scripted upstream injected through the
``get_agent_controller`` dependency.  Uses ``client`` from conftest
(in-memory DB).
"""
from __future__ import annotations

import json

import pytest

from gateway.api.routes.chat import get_agent_controller
from gateway.core.agent_loop import AgentLoopController
from gateway.core.tools import build_default_registry
from gateway.main import app
from gateway.protocol import DONE_FRAME, CompletionChunkEvent, ErrorEvent, ReasoningEvent, parse_event
from gateway.services import history
from gateway.services.history import HistoryRecorder

from tests.fakes import FakeUpstream, text_script, tool_script


def _events(body: str) -> list:
    events: list = []
    for block in body.split("\n\n"):
        if not block.startswith("data: "):
            continue
        data = block[len("data: "):]
        events.append("DONE" if data == "[DONE]" else parse_event(json.loads(data)))
    return events


def _use_upstream(upstream: FakeUpstream, recorder: HistoryRecorder | None = None) -> None:
    app.dependency_overrides[get_agent_controller] = lambda: AgentLoopController(
        upstream,
        build_default_registry(timeout=5),
        history=recorder,
        max_iterations=5,
        multi_round=False,
        max_tool_attempts=2,
    )


class TestRootEndpoint:
    """GET / — service info."""

    @pytest.mark.anyio
    async def test_response_has_required_keys(self, client):
        response = await client.get("/")
        assert response.status_code == 200
        data = response.json()
        assert {"service", "version", "docs"} <= set(data)

    @pytest.mark.anyio
    async def test_security_headers(self, client):
        response = await client.get("/")
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"


class TestHealthEndpoint:
    """GET /health — basic liveness."""

    @pytest.mark.anyio
    async def test_ok(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert {"message", "service", "version"} <= set(data)

    @pytest.mark.anyio
    async def test_full(self, client):
        response = await client.get("/health/full")
        assert response.status_code == 200
        data = response.json()
        assert "calculate" in data["tools"]
        assert set(data["upstream"]) == {"configured", "model"}


class TestChatEndpoint:
    """POST /api/chat — SSE stream."""

    @pytest.mark.anyio
    async def test_tool_round_stream(self, client):
        _use_upstream(FakeUpstream(tool_script((0, "call_1", "calculate", {"expression": "12+7"}))))
        response = await client.post("/api/chat", json={"messages": [{"role": "user", "content": "12 plus 7"}]})
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache"
        assert response.headers["x-accel-buffering"] == "no"

        events = _events(response.text)
        assert isinstance(events[0], ReasoningEvent)
        answers = [e for e in events if isinstance(e, CompletionChunkEvent)]
        assert [a.text for a in answers] == ["✅ **Final Answer:**\n12+7 = 19\n"]
        assert answers[0].metadata.foldable is False
        assert events[-1] == "DONE"
        assert response.text.count(DONE_FRAME) == 1

    @pytest.mark.anyio
    async def test_upstream_error_is_reported_in_stream(self, client):
        script = [b'data: {"error": {"code": "bad_request", "message": "nope"}}\n\n']
        _use_upstream(FakeUpstream(script))
        response = await client.post("/api/chat", json={"messages": [{"role": "user", "content": "hello there"}]})
        assert response.status_code == 200
        events = _events(response.text)
        assert isinstance(events[-2], ErrorEvent)
        assert events[-2].error.message == "nope"
        assert events[-1] == "DONE"

    @pytest.mark.anyio
    async def test_unexpected_failure_still_terminates(self, client):
        class Broken(FakeUpstream):
            def build_payload(self, messages, tools):
                raise RuntimeError("payload builder exploded")

        _use_upstream(Broken())
        response = await client.post("/api/chat", json={"messages": [{"role": "user", "content": "hello there"}]})
        events = _events(response.text)
        [error] = [e for e in events if isinstance(e, ErrorEvent)]
        assert error.error.code == "internal_error"
        assert events[-1] == "DONE"
        assert response.text.count(DONE_FRAME) == 1

    @pytest.mark.anyio
    async def test_history_is_recorded(self, client):
        recorder = HistoryRecorder()
        _use_upstream(FakeUpstream(text_script("Hi", "!")), recorder)
        response = await client.post(
            "/api/chat",
            json={"messages": [{"role": "user", "content": "hello there"}], "userId": "web-1"},
        )
        assert response.status_code == 200
        await recorder.drain()

        response = await client.get("/api/users/web-1/history")
        assert response.status_code == 200
        data = response.json()
        assert [(h["role"], h["content"]) for h in data["history"]] == [
            ("user", "hello there"),
            ("assistant", "Hi!"),
        ]

    @pytest.mark.anyio
    @pytest.mark.parametrize(
        "body",
        [
            b"{not json",
            json.dumps({"messages": []}).encode(),
            json.dumps({"messages": [{"role": "robot", "content": "hi"}]}).encode(),
            json.dumps({"prompt": "hi"}).encode(),
            json.dumps({"messages": [{"role": "user", "content": "hi"}], "userId": "bad id!"}).encode(),
        ],
    )
    async def test_malformed_body_is_400(self, client, body: bytes):
        response = await client.post("/api/chat", content=body, headers={"Content-Type": "application/json"})
        assert response.status_code == 400
        data = response.json()
        assert data["error"] == "Malformed request body"
        assert "detail" in data


class TestUserEndpoints:
    """/api/users — history and preferences."""

    @pytest.mark.anyio
    async def test_unknown_user_is_404(self, client):
        assert (await client.get("/api/users/nobody/history")).status_code == 404
        assert (await client.get("/api/users/nobody/preferences")).status_code == 404
        assert (await client.delete("/api/users/nobody")).status_code == 404

    @pytest.mark.anyio
    async def test_preferences_round_trip(self, client, db_session):
        await history.add_history_entry(db_session, "pat", "user", "my favorite color is teal")

        response = await client.get("/api/users/pat/preferences")
        assert response.status_code == 200
        assert response.json()["preferences"] == {"favoriteColor": "teal"}

        response = await client.put("/api/users/pat/preferences", json={"preferences": {"language": "English"}})
        assert response.status_code == 200
        assert response.json()["preferences"] == {"favoriteColor": "teal", "language": "English"}

    @pytest.mark.anyio
    async def test_history_limit_and_delete(self, client, db_session):
        for i in range(4):
            await history.add_history_entry(db_session, "quinn", "user", f"m{i}")

        response = await client.get("/api/users/quinn/history", params={"limit": 2})
        assert [h["content"] for h in response.json()["history"]] == ["m2", "m3"]

        listing = await client.get("/api/users")
        assert "quinn" in listing.json()["users"]

        response = await client.delete("/api/users/quinn")
        assert response.status_code == 200
        assert response.json() == {"userId": "quinn", "deleted": True}
        assert (await client.get("/api/users/quinn/history")).status_code == 404
