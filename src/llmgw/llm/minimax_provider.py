"""MiniMax chat completions adapters.

MiniMax speaks the OpenAI wire format with one addition: M2-family models
return their thinking as ``reasoning_details`` once ``reasoning_split`` is
enabled, both on complete messages and on stream deltas. Everything else is
inherited from the OpenAI adapters.
"""

from __future__ import annotations

import logging
from typing import AsyncIterator

from openai import AsyncOpenAI

from llmgw.llm.openai_provider import (
    OpenAIAdapterFactory,
    OpenAIRequestAdapter,
    OpenAIResponseAdapter,
    OpenAIStreamAdapter,
)

logger = logging.getLogger(__name__)

PROVIDER = "minimax"
REASONING_SPLIT_MODELS = "MiniMax-M2"


def reasoning_text(details: list[dict] | None) -> str:
    return "".join(
        detail["text"]
        for detail in details or []
        if isinstance(detail, dict) and isinstance(detail.get("text"), str)
    )


class MiniMaxRequestAdapter(OpenAIRequestAdapter):
    def __init__(self, request: dict):
        super().__init__(request, provider=PROVIDER)


class MiniMaxResponseAdapter(OpenAIResponseAdapter):
    def __init__(self, response: dict):
        super().__init__(response, provider=PROVIDER)

    def get_reasoning(self) -> str:
        message = self._first_message()
        if not message:
            return ""
        return reasoning_text(message.get("reasoning_details"))


class MiniMaxStreamAdapter(OpenAIStreamAdapter):
    def __init__(self):
        super().__init__(provider=PROVIDER)

    def _reasoning_delta(self, delta: dict) -> str:
        return reasoning_text(delta.get("reasoning_details"))

    def to_provider_response(self) -> dict:
        response = super().to_provider_response()
        message = response["choices"][0]["message"]
        reasoning = message.pop("reasoning_content", None)
        if reasoning:
            message["reasoning_details"] = [{"text": reasoning}]
        return response


def with_reasoning_split(request: dict) -> dict:
    """Force separated thinking output for M2-family models."""
    if REASONING_SPLIT_MODELS in request.get("model", ""):
        return {**request, "reasoning_split": True}
    return request


class MiniMaxAdapterFactory(OpenAIAdapterFactory):
    def __init__(self):
        super().__init__(PROVIDER)

    def create_request_adapter(self, request: dict) -> MiniMaxRequestAdapter:
        return MiniMaxRequestAdapter(request)

    def create_response_adapter(self, response: dict) -> MiniMaxResponseAdapter:
        return MiniMaxResponseAdapter(response)

    def create_stream_adapter(self) -> MiniMaxStreamAdapter:
        return MiniMaxStreamAdapter()

    async def execute(self, client: AsyncOpenAI, request: dict) -> dict:
        return await super().execute(client, with_reasoning_split(request))

    async def execute_stream(self, client: AsyncOpenAI, request: dict) -> AsyncIterator[dict]:
        async for chunk in super().execute_stream(client, with_reasoning_split(request)):
            yield chunk


minimax_provider = MiniMaxAdapterFactory()
