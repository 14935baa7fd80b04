"""Test fixtures for llmgw."""

from __future__ import annotations

from typing import Any, AsyncIterator

import pytest

from llmgw.core.config import Settings, set_settings
from llmgw.llm.pricing import StaticTokenPriceLookup, TokenPrice, set_token_price_lookup


class CharTokenizer:
    """Counts one token per character of message content (no tiktoken download)."""

    def count_tokens(self, messages: list[dict]) -> int:
        return sum(len(message.get("content") or "") for message in messages)


@pytest.fixture(autouse=True)
def char_tokenizer(monkeypatch):
    monkeypatch.setattr("llmgw.llm.compression.get_tokenizer", lambda provider: CharTokenizer())


@pytest.fixture(autouse=True)
def settings():
    """Default settings, independent of config/settings.yaml."""
    settings = Settings()
    set_settings(settings)
    yield settings
    set_settings(None)


@pytest.fixture(autouse=True)
def reset_prices():
    yield
    set_token_price_lookup(StaticTokenPriceLookup())


@pytest.fixture
def prices():
    lookup = StaticTokenPriceLookup({
        "gpt-4o": TokenPrice("gpt-4o", price_per_million_input=2.5, price_per_million_output=10.0),
        "claude-sonnet-4-5": TokenPrice("claude-sonnet-4-5", 3.0, 15.0),
    })
    set_token_price_lookup(lookup)
    return lookup


async def agen(items: list[Any], error: Exception | None = None) -> AsyncIterator[Any]:
    """Async generator over ``items``, optionally raising ``error`` at the end."""
    for item in items:
        yield item
    if error is not None:
        raise error


def openai_chunk(
    delta: dict | None = None,
    finish_reason: str | None = None,
    usage: dict | None = None,
    chunk_id: str = "chatcmpl-1",
    model: str = "gpt-4o",
) -> dict:
    chunk: dict[str, Any] = {
        "id": chunk_id,
        "object": "chat.completion.chunk",
        "created": 1700000000,
        "model": model,
        "choices": [] if delta is None and finish_reason is None else [
            {"index": 0, "delta": delta or {}, "finish_reason": finish_reason}
        ],
    }
    if usage is not None:
        chunk["usage"] = usage
    return chunk


def tool_call_delta(index: int, arguments: str, call_id: str | None = None, name: str | None = None) -> dict:
    delta: dict[str, Any] = {"index": index, "function": {"arguments": arguments}}
    if call_id:
        delta["id"] = call_id
        delta["type"] = "function"
    if name:
        delta["function"]["name"] = name
    return delta


def sse_payloads(frames: list[str]) -> list[Any]:
    """JSON payloads of ``data:`` lines, skipping ``[DONE]``."""
    import json

    payloads = []
    for frame in frames:
        for line in frame.splitlines():
            if line.startswith("data: ") and line != "data: [DONE]":
                payloads.append(json.loads(line[6:]))
    return payloads
