"""Tests for the HTTP endpoints, with a fake upstream."""

import json
from collections.abc import AsyncIterator
from typing import Any

import pytest
from fastapi.testclient import TestClient

import messagebridge
from executor import ExecutionResult
from recovery import RecoveryOrchestrator, ResponseResolver
from tool_parser import ToolCallParser
from upstream import UpstreamError


def text_frames(*deltas: str) -> str:
    return "".join(
        "data: " + json.dumps({"type": "text-delta", "delta": d}) + "\n" for d in deltas
    )


class FakeUpstream:
    """Serves a canned body, or fails."""

    def __init__(self, body: str = "", chunk_size: int = 5, error: UpstreamError | None = None):
        self.body = body
        self.chunk_size = chunk_size
        self.error = error
        self.payloads: list[dict[str, Any]] = []

    async def stream(self, payload: dict[str, Any]) -> AsyncIterator[str]:
        self.payloads.append(payload)
        for i in range(0, len(self.body), self.chunk_size):
            yield self.body[i : i + self.chunk_size]
        if self.error is not None:
            raise self.error

    async def send(self, payload: dict[str, Any]) -> str:
        self.payloads.append(payload)
        if self.error is not None:
            raise self.error
        return self.body

    async def is_healthy(self) -> bool:
        return self.error is None


class FakeExecutor:
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    async def execute(self, tool_name: str, tool_input: dict[str, Any]) -> ExecutionResult:
        self.calls.append(tool_input)
        return ExecutionResult(output="README.md")


@pytest.fixture
def fake_executor(monkeypatch: pytest.MonkeyPatch) -> FakeExecutor:
    executor = FakeExecutor()
    resolver = ResponseResolver(ToolCallParser(), RecoveryOrchestrator(executor))
    monkeypatch.setattr(messagebridge, "resolver", resolver)
    monkeypatch.setattr(messagebridge, "stats", messagebridge.BridgeStats())
    return executor


@pytest.fixture
def client(fake_executor: FakeExecutor) -> TestClient:
    return TestClient(messagebridge.app)


def use_upstream(monkeypatch: pytest.MonkeyPatch, upstream: FakeUpstream) -> FakeUpstream:
    monkeypatch.setattr(messagebridge, "upstream_client", upstream)
    return upstream


def parse_sse(body: str) -> list[tuple[str, dict]]:
    events = []
    for raw in body.split("\n\n"):
        if not raw:
            continue
        event_line, data_line = raw.split("\n")
        events.append((event_line[len("event: ") :], json.loads(data_line[len("data: ") :])))
    return events


REQUEST = {
    "model": "claude-3-5-sonnet-20241022",
    "max_tokens": 1024,
    "messages": [{"role": "user", "content": "List the files here"}],
}


class TestMessagesNonStreaming:
    """Tests for POST /v1/messages without streaming."""

    def test_plain_text(self, client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test a plain upstream answer."""
        upstream = use_upstream(monkeypatch, FakeUpstream(text_frames("Hello", " there")))
        response = client.post("/v1/messages", json=REQUEST)

        assert response.status_code == 200
        data = response.json()
        assert data["type"] == "message"
        assert data["role"] == "assistant"
        assert data["model"] == REQUEST["model"]
        assert data["content"] == [{"type": "text", "text": "Hello there"}]
        assert data["stop_reason"] == "end_turn"
        assert data["id"].startswith("msg_")
        assert upstream.payloads[0]["model"] == "anthropic/claude-sonnet-4.5"

    def test_recovered_refusal(
        self, client: TestClient, monkeypatch: pytest.MonkeyPatch, fake_executor: FakeExecutor
    ) -> None:
        """Test that a refusal with a command is executed and reported."""
        use_upstream(
            monkeypatch,
            FakeUpstream(text_frames("I cannot execute that. Run: \n```bash\nls -la\n```")),
        )
        data = client.post("/v1/messages", json=REQUEST).json()

        assert fake_executor.calls == [{"command": "ls -la"}]
        assert [b["type"] for b in data["content"]] == ["text", "tool_use", "text"]
        assert data["content"][1]["name"] == "bash"
        assert "README.md" in data["content"][2]["text"]
        assert data["stop_reason"] == "tool_use"

    def test_upstream_failure(self, client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that an upstream failure is a 502 api_error."""
        use_upstream(monkeypatch, FakeUpstream(error=UpstreamError("backend down", status_code=500)))
        response = client.post("/v1/messages", json=REQUEST)

        assert response.status_code == 502
        assert response.json() == {
            "type": "error",
            "error": {"type": "api_error", "message": "backend down"},
        }
        assert messagebridge.stats.backend_errors == 1

    def test_invalid_json(self, client: TestClient) -> None:
        """Test a body that is not JSON."""
        response = client.post(
            "/v1/messages", content=b"{not json", headers={"content-type": "application/json"}
        )
        assert response.status_code == 400
        assert response.json()["error"]["type"] == "invalid_request_error"

    def test_system_with_non_text_blocks(
        self, client: TestClient, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test that non-text system blocks are dropped, not rejected."""
        upstream = use_upstream(monkeypatch, FakeUpstream(text_frames("ok")))
        body = {
            **REQUEST,
            "system": [
                {"type": "text", "text": "Be brief."},
                {"type": "document", "source": {"type": "text", "data": "..."}},
            ],
        }
        response = client.post("/v1/messages", json=body)

        assert response.status_code == 200
        system = upstream.payloads[0]["messages"][0]
        assert system["role"] == "system"
        assert system["parts"][0]["text"] == "Be brief."

    def test_missing_messages(self, client: TestClient) -> None:
        """Test a body without messages."""
        response = client.post("/v1/messages", json={"model": "claude"})
        assert response.status_code == 400
        assert response.json()["type"] == "error"


class TestMessagesStreaming:
    """Tests for POST /v1/messages with stream=true."""

    def test_text_stream(self, client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test the event sequence for a plain streamed answer."""
        use_upstream(monkeypatch, FakeUpstream(text_frames("Hel", "lo")))
        response = client.post("/v1/messages", json={**REQUEST, "stream": True})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache"

        events = parse_sse(response.text)
        assert [name for name, _ in events] == [
            "message_start",
            "content_block_start",
            "content_block_delta",
            "content_block_delta",
            "content_block_stop",
            "message_delta",
            "message_stop",
        ]
        text = "".join(d["delta"]["text"] for n, d in events if n == "content_block_delta")
        assert text == "Hello"
        assert messagebridge.stats.passthrough_requests == 1

    def test_recovery_stream(
        self, client: TestClient, monkeypatch: pytest.MonkeyPatch, fake_executor: FakeExecutor
    ) -> None:
        """Test recovered blocks after the streamed refusal text."""
        use_upstream(
            monkeypatch,
            FakeUpstream(text_frames("I cannot execute that. Run: \n```bash\nls -la\n```")),
        )
        events = parse_sse(client.post("/v1/messages", json={**REQUEST, "stream": True}).text)

        starts = [d for n, d in events if n == "content_block_start"]
        assert [s["index"] for s in starts] == [0, 1, 2, 3]
        assert [s["content_block"]["type"] for s in starts] == ["text", "text", "tool_use", "text"]
        assert next(d for n, d in events if n == "message_delta")["delta"]["stop_reason"] == "tool_use"
        assert fake_executor.calls == [{"command": "ls -la"}]
        assert messagebridge.stats.recovered_requests == 1

    def test_upstream_error_mid_stream(
        self, client: TestClient, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test that a mid-stream failure still closes the message."""
        use_upstream(
            monkeypatch,
            FakeUpstream(text_frames("partial"), error=UpstreamError("connection reset")),
        )
        events = parse_sse(client.post("/v1/messages", json={**REQUEST, "stream": True}).text)

        names = [name for name, _ in events]
        assert "error" in names
        assert names.index("error") < names.index("content_block_stop")
        assert names[-1] == "message_stop"
        assert messagebridge.stats.backend_errors == 1


class TestOtherEndpoints:
    """Tests for the auxiliary endpoints."""

    def test_count_tokens(self, client: TestClient) -> None:
        """Test the token estimate."""
        response = client.post(
            "/v1/messages/count_tokens",
            json={"model": "claude", "system": "abcd", "messages": [{"role": "user", "content": "efgh"}]},
        )
        assert response.status_code == 200
        assert response.json() == {"input_tokens": 2}

    def test_health(self, client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test health reporting for a reachable upstream."""
        use_upstream(monkeypatch, FakeUpstream())
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["upstream_healthy"] is True

    def test_stats_and_reset(self, client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test stats counting and reset."""
        use_upstream(monkeypatch, FakeUpstream(text_frames("hi")))
        client.post("/v1/messages", json=REQUEST)

        stats = client.get("/stats").json()["gateway_stats"]
        assert stats["total_requests"] == 1
        assert stats["passthrough"] == {"count": 1, "percent": 100.0}

        reset = client.post("/stats/reset").json()
        assert reset["status"] == "reset"
        assert reset["stats"]["total_requests"] == 0

    def test_config_hides_header_values(
        self, client: TestClient, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test that only header names are exposed."""
        monkeypatch.setattr(messagebridge.config, "upstream_headers", {"Authorization": "secret"})
        data = client.get("/config").json()
        assert data["upstream_headers"] == ["Authorization"]
        assert "secret" not in json.dumps(data)

    def test_classify_preview(self, client: TestClient) -> None:
        """Test the classification preview."""
        data = client.get(
            "/proxy/test-classify",
            params={"text": "I cannot execute that.\n```bash\nls -la\n```"},
        ).json()
        assert data["classification"]["is_refusal"] is True
        assert data["classification"]["suggested_command"] == "ls -la"
        assert data["tool_calls"] == []
        assert data["would_recover"] is messagebridge.config.recovery_enabled

    def test_classify_preview_tool_call(self, client: TestClient) -> None:
        """Test that parsed tool calls are shown and block recovery."""
        data = client.get(
            "/proxy/test-classify",
            params={"text": '<tool_call>{"name": "bash", "input": {"command": "ls"}}</tool_call>'},
        ).json()
        assert data["tool_calls"] == [{"name": "bash", "input": {"command": "ls"}}]
        assert data["would_recover"] is False
