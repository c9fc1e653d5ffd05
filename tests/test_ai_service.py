from __future__ import annotations

import asyncio
from pathlib import Path

import aiohttp
import pytest

from fakes import make_settings

from chatrelay.config import Settings
from chatrelay.errors import ChatCompletionError
from chatrelay.services.ai_service import AIService, parse_completion


class StubAIService(AIService):
    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self.calls: list[dict] = []
        self.error: BaseException | None = None

    async def _chat_completion(self, messages, *, model: str, temperature: float, max_tokens) -> str:
        self.calls.append({"messages": messages, "model": model, "temperature": temperature})
        if self.error is not None:
            raise self.error
        return "ok"


def test_parse_completion_accepts_string_and_part_lists() -> None:
    assert parse_completion({"choices": [{"message": {"content": "  hi  "}}]}) == "hi"
    parts = {"choices": [{"message": {"content": [{"type": "text", "text": "a"}, {"text": "b"}, "skip"]}}]}
    assert parse_completion(parts) == "a\nb"


@pytest.mark.parametrize(
    "payload",
    [
        None,
        {},
        {"choices": []},
        {"choices": [{"message": {"content": "   "}}]},
        {"choices": [{"message": {"content": [{"type": "image"}]}}]},
    ],
)
def test_parse_completion_rejects_empty_payloads(payload) -> None:
    with pytest.raises(ChatCompletionError):
        parse_completion(payload)


def test_endpoint_normalizes_base_url(tmp_path: Path) -> None:
    assert AIService(make_settings(tmp_path, ai_base_url="https://api.example/v1/")).endpoint() == (
        "https://api.example/v1/chat/completions"
    )
    assert AIService(make_settings(tmp_path, ai_base_url="https://api.example/v1/chat/completions")).endpoint() == (
        "https://api.example/v1/chat/completions"
    )
    assert AIService(make_settings(tmp_path, ai_base_url="  ")).endpoint() == "http://127.0.0.1:8045/v1/chat/completions"


def test_complete_passes_model_and_records_latency(tmp_path: Path) -> None:
    ai = StubAIService(make_settings(tmp_path))
    reply = asyncio.run(ai.complete([{"role": "user", "content": "hi"}], model="m1", temperature=0.2))
    assert reply == "ok"
    assert ai.calls[0]["model"] == "m1"
    assert ai.calls[0]["temperature"] == 0.2
    assert ai.last_latency_ms is not None


@pytest.mark.parametrize(
    "error",
    [aiohttp.ClientConnectionError("refused"), asyncio.TimeoutError(), RuntimeError("boom")],
)
def test_complete_wraps_transport_errors(tmp_path: Path, error: BaseException) -> None:
    ai = StubAIService(make_settings(tmp_path))
    ai.error = error
    with pytest.raises(ChatCompletionError):
        asyncio.run(ai.complete([], model="m1"))
    assert ai.last_latency_ms is not None
