"""platforms モジュールのテスト. HTTP は httpx.MockTransport で差し替える."""

import asyncio
import json

import httpx
import pytest

from surfaced import config
from surfaced.errors import ValidationError
from surfaced.platforms import (
    GeminiAdapter,
    OpenAIChatAdapter,
    PlatformRegistry,
    build_registry,
)


def _chat_adapter(handler, timeout=5.0):
    return OpenAIChatAdapter(
        "chatgpt", "sk-test", "gpt-4o-mini", "https://api.openai.com/v1",
        timeout=timeout, transport=httpx.MockTransport(handler),
    )


class TestOpenAIChatAdapter:
    """OpenAIChatAdapter のテスト."""

    def test_success(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "choices": [{"message": {"content": "1. Nike 2. Acme"}}],
            })

        reply = asyncio.run(_chat_adapter(handler).query("best tees?"))

        assert reply.ok
        assert reply.text == "1. Nike 2. Acme"
        assert reply.platform == "chatgpt"
        assert seen["url"] == "https://api.openai.com/v1/chat/completions"
        assert seen["auth"] == "Bearer sk-test"
        assert seen["body"]["messages"][-1] == {"role": "user", "content": "best tees?"}

    def test_http_error(self):
        reply = asyncio.run(
            _chat_adapter(lambda request: httpx.Response(500, text="boom")).query("q")
        )

        assert not reply.ok
        assert reply.error.code == "PLATFORM_UNAVAILABLE"
        assert reply.error.details["status"] == 500

    def test_unexpected_shape(self):
        """スキーマに合わない応答は PLATFORM_UNAVAILABLE になること."""
        reply = asyncio.run(
            _chat_adapter(lambda request: httpx.Response(200, json={"choices": []})).query("q")
        )
        assert not reply.ok
        assert reply.error.code == "PLATFORM_UNAVAILABLE"

    def test_not_json(self):
        reply = asyncio.run(
            _chat_adapter(lambda request: httpx.Response(200, text="<html>")).query("q")
        )
        assert not reply.ok

    def test_timeout(self):
        async def handler(request):
            await asyncio.sleep(1)
            return httpx.Response(200, json={"choices": [{"message": {"content": "late"}}]})

        reply = asyncio.run(_chat_adapter(handler, timeout=0.05).query("q"))

        assert not reply.ok
        assert "timed out" in str(reply.error)

    def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        reply = asyncio.run(_chat_adapter(handler).query("q"))
        assert reply.error.code == "PLATFORM_UNAVAILABLE"


class TestGeminiAdapter:
    """GeminiAdapter のテスト."""

    def test_success(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path.endswith("/models/gemini-2.0-flash:generateContent")
            assert request.headers["x-goog-api-key"] == "g-key"
            return httpx.Response(200, json={
                "candidates": [{"content": {"parts": [{"text": "Acme "}, {"text": "is good"}]}}],
            })

        adapter = GeminiAdapter("g-key", "gemini-2.0-flash", transport=httpx.MockTransport(handler))
        reply = asyncio.run(adapter.query("q"))

        assert reply.text == "Acme is good"

    def test_no_candidates(self):
        adapter = GeminiAdapter(
            "g-key", "gemini-2.0-flash",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"candidates": []})),
        )
        assert not asyncio.run(adapter.query("q")).ok


class TestPlatformRegistry:
    """PlatformRegistry / build_registry のテスト."""

    def test_fixed_order(self):
        adapters = [
            GeminiAdapter("k", "m"),
            OpenAIChatAdapter("claude", "k", "m", "https://openrouter.ai/api/v1"),
            OpenAIChatAdapter("chatgpt", "k", "m", "https://api.openai.com/v1"),
        ]
        assert PlatformRegistry(adapters).enabled == ["chatgpt", "gemini", "claude"]

    def test_unknown_platform(self):
        with pytest.raises(ValidationError):
            PlatformRegistry([]).get("chatgpt")

    def test_enabled_by_api_keys(self, monkeypatch):
        monkeypatch.setattr(config, "OPENAI_API_KEY", "sk")
        monkeypatch.setattr(config, "PERPLEXITY_API_KEY", "")
        monkeypatch.setattr(config, "GOOGLE_AI_API_KEY", "")
        monkeypatch.setattr(config, "OPENROUTER_API_KEY", "or")

        registry = build_registry()
        assert registry.enabled == ["chatgpt", "claude", "deepseek", "llama", "mistral", "qwen"]
        assert registry.get("claude").extra_headers == {"X-Title": "Surfaced"}

    def test_nothing_enabled(self, monkeypatch):
        for key in ("OPENAI_API_KEY", "PERPLEXITY_API_KEY", "GOOGLE_AI_API_KEY", "OPENROUTER_API_KEY"):
            monkeypatch.setattr(config, key, "")
        assert build_registry().enabled == []
