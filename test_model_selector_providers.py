from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from models.selector import ModelSelector
from shared.models import ModelPolicy


class DummyResponse:
    def __init__(self, payload: dict):
        self._payload = payload

    def raise_for_status(self) -> None:
        return None

    def json(self) -> dict:
        return self._payload


class DummyClient:
    def __init__(self, payload: dict | None = None):
        self.calls: list[dict] = []
        self.payload = payload or {"content": [{"type": "text", "text": "{\"ok\": true}"}]}

    async def post(self, path, json=None, headers=None, timeout=None):
        self.calls.append(
            {
                "path": path,
                "json": json,
                "headers": headers or {},
                "timeout": timeout,
            }
        )
        return DummyResponse(self.payload)

    async def aclose(self) -> None:
        return None


def _policy(json_mode: bool = True) -> ModelPolicy:
    return ModelPolicy(
        model_name="claude-3-5-haiku-latest",
        json_mode=json_mode,
        max_retries=1,
        timeout_seconds=5.0,
    )


def test_model_selector_auto_detects_anthropic_provider(monkeypatch):
    monkeypatch.setenv("MODEL_PROVIDER", "auto")
    monkeypatch.setenv("MODEL_BASE_URL", "https://api.anthropic.com")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "test-key")
    selector = ModelSelector(ollama_url="http://localhost:11434")
    assert selector.provider == "anthropic"
    asyncio.run(selector.close())


def test_model_selector_defaults_to_ollama(monkeypatch):
    monkeypatch.setenv("MODEL_PROVIDER", "auto")
    monkeypatch.delenv("MODEL_BASE_URL", raising=False)
    selector = ModelSelector(ollama_url="http://localhost:11434")
    assert selector.provider == "ollama"
    assert selector.base_url == "http://localhost:11434"
    asyncio.run(selector.close())


def test_model_selector_anthropic_json_mode_roundtrip(monkeypatch):
    monkeypatch.setenv("MODEL_PROVIDER", "anthropic")
    monkeypatch.setenv("MODEL_BASE_URL", "https://api.anthropic.com")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "test-key")
    selector = ModelSelector(ollama_url="http://localhost:11434")
    fake_client = DummyClient()
    selector._client = fake_client

    out = asyncio.run(
        selector.generate(
            messages=[{"role": "system", "content": "You are a JSON engine."}],
            policy=_policy(),
        )
    )

    assert out == {"ok": True}
    assert len(fake_client.calls) == 1
    call = fake_client.calls[0]
    assert call["path"] == "/v1/messages"
    assert call["headers"].get("x-api-key") == "test-key"
    assert call["json"].get("model") == "claude-3-5-haiku-latest"
    assert "Return ONLY a valid JSON object." in str(call["json"].get("system", ""))
    # System-only prompts still send one user turn.
    assert call["json"]["messages"][0]["role"] == "user"


def test_model_selector_invalid_json_raises_value_error(monkeypatch):
    monkeypatch.setenv("MODEL_PROVIDER", "ollama")
    selector = ModelSelector(ollama_url="http://localhost:11434")
    selector._client = DummyClient({"message": {"content": "not json at all"}})

    with pytest.raises(ValueError):
        asyncio.run(selector.generate(messages=[{"role": "user", "content": "hi"}], policy=_policy()))


def test_model_selector_streams_openai_sse_deltas(monkeypatch):
    monkeypatch.setenv("MODEL_PROVIDER", "openai_compatible")
    monkeypatch.setenv("MODEL_BASE_URL", "https://api.example.com")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    selector = ModelSelector()
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        events = [
            {"choices": [{"delta": {"role": "assistant"}}]},
            {"choices": [{"delta": {"content": "It's "}}]},
            {"choices": [{"delta": {"content": "sunny."}}]},
        ]
        body = "".join(f"data: {json.dumps(event)}\n\n" for event in events) + "data: [DONE]\n\n"
        return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

    selector._client = httpx.AsyncClient(base_url=selector.base_url, transport=httpx.MockTransport(handler))

    async def collect():
        try:
            return [chunk async for chunk in selector.stream([{"role": "user", "content": "weather?"}], _policy(False))]
        finally:
            await selector.close()

    assert asyncio.run(collect()) == ["It's ", "sunny."]
    assert seen[0].url.path == "/v1/chat/completions"
    assert json.loads(seen[0].content)["stream"] is True


def test_model_selector_streams_ollama_json_lines(monkeypatch):
    monkeypatch.setenv("MODEL_PROVIDER", "ollama")
    monkeypatch.delenv("MODEL_BASE_URL", raising=False)
    selector = ModelSelector(ollama_url="http://ollama.local:11434")

    def handler(request: httpx.Request) -> httpx.Response:
        lines = [
            {"message": {"content": "Howdy"}, "done": False},
            {"message": {"content": ", partner"}, "done": False},
            {"message": {"content": ""}, "done": True},
        ]
        return httpx.Response(200, text="\n".join(json.dumps(line) for line in lines))

    selector._client = httpx.AsyncClient(base_url=selector.base_url, transport=httpx.MockTransport(handler))

    async def collect():
        try:
            return [chunk async for chunk in selector.stream([{"role": "user", "content": "hi"}], _policy(False))]
        finally:
            await selector.close()

    assert asyncio.run(collect()) == ["Howdy", ", partner"]


def test_model_selector_stream_surfaces_http_errors(monkeypatch):
    monkeypatch.setenv("MODEL_PROVIDER", "ollama")
    monkeypatch.delenv("MODEL_BASE_URL", raising=False)
    selector = ModelSelector(ollama_url="http://ollama.local:11434")
    selector._client = httpx.AsyncClient(
        base_url=selector.base_url,
        transport=httpx.MockTransport(lambda request: httpx.Response(503, text="overloaded")),
    )

    async def collect():
        try:
            return [chunk async for chunk in selector.stream([{"role": "user", "content": "hi"}], _policy(False))]
        finally:
            await selector.close()

    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(collect())
