"""AI チャットプラットフォームへの問い合わせ.

各プラットフォームの API 差異はここで吸収し、オーケストレータからは
query(prompt) -> PlatformReply だけが見える。

  - OpenAI 互換 API: chatgpt / perplexity / OpenRouter 経由の各モデル
  - Gemini REST API: gemini

失敗（タイムアウト・HTTP エラー・想定外のレスポンス形）は例外を投げず、
error 付きの PlatformReply として返す。再試行はしない。
"""

from __future__ import annotations

import asyncio
import logging
import time

import httpx
from pydantic import BaseModel, Field
from pydantic import ValidationError as SchemaError

from surfaced import config
from surfaced.errors import PlatformUnavailableError, ValidationError
from surfaced.models import PLATFORM_ORDER, PlatformReply

logger = logging.getLogger(__name__)


# --- レスポンススキーマ ---


class _ChatMessage(BaseModel):
    content: str | None = None


class _ChatChoice(BaseModel):
    message: _ChatMessage


class ChatCompletionResponse(BaseModel):
    choices: list[_ChatChoice] = Field(min_length=1)

    @property
    def text(self) -> str:
        return self.choices[0].message.content or ""


class _GeminiPart(BaseModel):
    text: str = ""


class _GeminiContent(BaseModel):
    parts: list[_GeminiPart] = Field(default_factory=list)


class _GeminiCandidate(BaseModel):
    content: _GeminiContent


class GeminiResponse(BaseModel):
    candidates: list[_GeminiCandidate] = Field(min_length=1)

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.candidates[0].content.parts)


# --- アダプタ ---


class PlatformAdapter:
    """プラットフォーム 1 つ分のアダプタ. 状態を持たない."""

    def __init__(
        self,
        platform: str,
        api_key: str,
        model: str,
        timeout: float = config.PLATFORM_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.platform = platform
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self._transport = transport

    async def query(self, prompt: str) -> PlatformReply:
        started = time.perf_counter()
        try:
            text = await asyncio.wait_for(self._complete(prompt), timeout=self.timeout)
        except asyncio.TimeoutError:
            return self._failure(started, "timed out", timeout=self.timeout)
        except httpx.HTTPStatusError as e:
            return self._failure(started, f"HTTP {e.response.status_code}", status=e.response.status_code)
        except httpx.HTTPError as e:
            return self._failure(started, f"{type(e).__name__}: {e}")
        except (SchemaError, ValueError) as e:
            return self._failure(started, f"unexpected response shape: {e}")
        return PlatformReply(self.platform, text=text, duration_ms=_elapsed_ms(started))

    async def _complete(self, prompt: str) -> str:
        raise NotImplementedError

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout),
            transport=self._transport,
        )

    def _failure(self, started: float, reason: str, **details) -> PlatformReply:
        logger.warning("プラットフォーム応答失敗: platform=%s, reason=%s", self.platform, reason)
        return PlatformReply(
            self.platform,
            duration_ms=_elapsed_ms(started),
            error=PlatformUnavailableError(
                f"{self.platform} unavailable: {reason}", platform=self.platform, **details
            ),
        )


class OpenAIChatAdapter(PlatformAdapter):
    """OpenAI chat completions 互換 API."""

    def __init__(
        self,
        platform: str,
        api_key: str,
        model: str,
        base_url: str,
        extra_headers: dict[str, str] | None = None,
        **kwargs,
    ) -> None:
        super().__init__(platform, api_key, model, **kwargs)
        self.base_url = base_url.rstrip("/")
        self.extra_headers = extra_headers or {}

    async def _complete(self, prompt: str) -> str:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": config.SHOPPING_ASSISTANT_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "max_tokens": config.PLATFORM_MAX_TOKENS,
            "temperature": config.PLATFORM_TEMPERATURE,
        }
        headers = {"Authorization": f"Bearer {self.api_key}", **self.extra_headers}
        async with self._client() as client:
            resp = await client.post(f"{self.base_url}/chat/completions", json=payload, headers=headers)
            resp.raise_for_status()
            return ChatCompletionResponse.model_validate(resp.json()).text


class GeminiAdapter(PlatformAdapter):
    """Google Gemini generateContent API."""

    def __init__(self, api_key: str, model: str, base_url: str = config.GEMINI_BASE_URL, **kwargs) -> None:
        super().__init__("gemini", api_key, model, **kwargs)
        self.base_url = base_url.rstrip("/")

    async def _complete(self, prompt: str) -> str:
        payload = {
            "systemInstruction": {"parts": [{"text": config.SHOPPING_ASSISTANT_PROMPT}]},
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "maxOutputTokens": config.PLATFORM_MAX_TOKENS,
                "temperature": config.PLATFORM_TEMPERATURE,
            },
        }
        url = f"{self.base_url}/models/{self.model}:generateContent"
        async with self._client() as client:
            resp = await client.post(url, json=payload, headers={"x-goog-api-key": self.api_key})
            resp.raise_for_status()
            return GeminiResponse.model_validate(resp.json()).text


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


# --- レジストリ ---

_OPENROUTER_PLATFORMS = ("claude", "deepseek", "llama", "mistral", "qwen")


class PlatformRegistry:
    """有効なアダプタを固定順で保持する."""

    def __init__(self, adapters: list[PlatformAdapter]) -> None:
        order = {p: i for i, p in enumerate(PLATFORM_ORDER)}
        self._adapters = {
            a.platform: a
            for a in sorted(adapters, key=lambda a: order.get(a.platform, len(order)))
        }

    @property
    def enabled(self) -> list[str]:
        return list(self._adapters)

    def get(self, platform: str) -> PlatformAdapter:
        try:
            return self._adapters[platform]
        except KeyError:
            raise ValidationError(f"Platform not enabled: {platform}", platform=platform) from None

    async def query(self, platform: str, prompt: str) -> PlatformReply:
        return await self.get(platform).query(prompt)


def build_registry(transport: httpx.AsyncBaseTransport | None = None) -> PlatformRegistry:
    """API キーが設定されているプラットフォームだけを有効にする."""
    adapters: list[PlatformAdapter] = []
    models = config.PLATFORM_MODELS

    if config.OPENAI_API_KEY:
        adapters.append(OpenAIChatAdapter(
            "chatgpt", config.OPENAI_API_KEY, models["chatgpt"], config.OPENAI_BASE_URL,
            transport=transport,
        ))
    if config.PERPLEXITY_API_KEY:
        adapters.append(OpenAIChatAdapter(
            "perplexity", config.PERPLEXITY_API_KEY, models["perplexity"], config.PERPLEXITY_BASE_URL,
            transport=transport,
        ))
    if config.GOOGLE_AI_API_KEY:
        adapters.append(GeminiAdapter(config.GOOGLE_AI_API_KEY, models["gemini"], transport=transport))
    if config.OPENROUTER_API_KEY:
        for platform in _OPENROUTER_PLATFORMS:
            adapters.append(OpenAIChatAdapter(
                platform, config.OPENROUTER_API_KEY, models[platform], config.OPENROUTER_BASE_URL,
                extra_headers={"X-Title": "Surfaced"},
                transport=transport,
            ))

    registry = PlatformRegistry(adapters)
    logger.info("有効なプラットフォーム: %s", ", ".join(registry.enabled) or "(なし)")
    return registry
