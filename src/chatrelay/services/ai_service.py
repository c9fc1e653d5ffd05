from __future__ import annotations

import asyncio
import json
import time
from typing import Any

import aiohttp

from chatrelay.config import DEFAULT_AI_BASE_URL, Settings
from chatrelay.errors import ChatCompletionError


class AIService:
    """Client for an OpenAI-compatible ``/chat/completions`` endpoint."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.last_latency_ms: int | None = None

    async def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str,
        temperature: float = 0.7,
        max_tokens: int | None = None,
    ) -> str:
        started = time.perf_counter()
        try:
            output = await self._chat_completion(
                messages,
                model=model,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except ChatCompletionError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, json.JSONDecodeError, RuntimeError) as exc:
            raise ChatCompletionError(f"{exc.__class__.__name__}: {exc}") from exc
        finally:
            self.last_latency_ms = int((time.perf_counter() - started) * 1000)
        return output

    def endpoint(self) -> str:
        base = self.settings.ai_base_url.strip() or DEFAULT_AI_BASE_URL
        base = base.rstrip("/")
        if base.endswith("/chat/completions"):
            return base
        return f"{base}/chat/completions"

    async def _chat_completion(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str,
        temperature: float,
        max_tokens: int | None,
    ) -> str:
        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
        }
        if max_tokens:
            payload["max_tokens"] = max_tokens
        headers = {"Content-Type": "application/json"}
        api_key = self.settings.ai_api_key.strip()
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        timeout = aiohttp.ClientTimeout(total=self.settings.ai_timeout_sec)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(self.endpoint(), headers=headers, json=payload) as response:
                body = await response.text()
                if response.status >= 400:
                    raise ChatCompletionError(f"HTTP {response.status}: {body[:300]}")
                data = json.loads(body)
        return parse_completion(data)


def parse_completion(data: Any) -> str:
    if not isinstance(data, dict):
        raise ChatCompletionError("Malformed completion payload.")
    choices = data.get("choices") or []
    if not choices:
        raise ChatCompletionError("No choices in response.")
    message = choices[0].get("message") or {}
    content = message.get("content")
    if isinstance(content, str) and content.strip():
        return content.strip()
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                text = str(item.get("text") or item.get("content") or "").strip()
                if text:
                    parts.append(text)
        merged = "\n".join(parts).strip()
        if merged:
            return merged
    raise ChatCompletionError("Model returned empty content.")
