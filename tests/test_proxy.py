"""Tests for the provider-agnostic proxy handler."""

from __future__ import annotations

import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from llmgw.core.config import CompressionConfig, ProviderConfig, ProvidersConfig, Settings
from llmgw.core.interactions import Interaction, LoggingInteractionRecorder
from llmgw.core.optimization import OptimizationRule
from llmgw.core.policy import AllowAllPolicy, BlockedToolsPolicy
from llmgw.core.proxy import ProxyHandler
from llmgw.llm.anthropic_provider import anthropic_provider
from llmgw.llm.openai_provider import openai_provider
from llmgw.llm.types import ToonCompressionResult, UsageView
from tests.conftest import agen, openai_chunk, sse_payloads, tool_call_delta


class RecordingRecorder:
    def __init__(self):
        self.interactions: list[Interaction] = []

    async def record(self, interaction: Interaction) -> None:
        self.interactions.append(interaction)


class UpstreamError(Exception):
    def __init__(self, status_code: int, body: dict):
        super().__init__(f"Error code: {status_code}")
        self.status_code = status_code
        self.body = body


def completion(message: dict, finish_reason: str = "stop") -> dict:
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 1700000000,
        "model": "gpt-4o",
        "choices": [{"index": 0, "message": message, "logprobs": None, "finish_reason": finish_reason}],
        "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
    }


TOOL_CALL_MESSAGE = {
    "role": "assistant",
    "content": None,
    "tool_calls": [{"id": "call_1", "type": "function", "function": {"name": "delete_file", "arguments": '{"path": "/"}'}}],
}

STREAM_CHUNKS = [
    openai_chunk({"role": "assistant", "content": "On it. "}),
    openai_chunk({"tool_calls": [tool_call_delta(0, '{"path":', "call_1", "delete_file")]}),
    openai_chunk({"tool_calls": [tool_call_delta(0, '"/"}')]}),
    openai_chunk(finish_reason="tool_calls"),
    openai_chunk(usage={"prompt_tokens": 12, "completion_tokens": 7, "total_tokens": 19}),
]


@pytest.fixture
def recorder():
    return RecordingRecorder()


@pytest.fixture
def handler(settings, recorder):
    return ProxyHandler(settings, policy=AllowAllPolicy(), recorder=recorder, rules=[])


@pytest.fixture
def upstream():
    """Patch the OpenAI provider's client and upstream calls."""
    with patch.object(openai_provider, "create_client", MagicMock(return_value=MagicMock())) as create_client, \
            patch.object(openai_provider, "execute", AsyncMock()) as execute:
        yield MagicMock(create_client=create_client, execute=execute)


def chat_request(**extra) -> dict:
    return {"model": "gpt-4o", "messages": [{"role": "user", "content": "Hi"}], **extra}


class TestNonStreaming:
    async def test_passes_response_through(self, handler, recorder, upstream):
        response = completion({"role": "assistant", "content": "Hello"})
        upstream.execute.return_value = response

        result = await handler.handle("openai", chat_request(), {"Authorization": "Bearer sk-caller"}, agent_id="agent-1")
        await handler.drain()

        assert result.status_code == 200
        assert result.body == response
        assert result.stream is None
        assert upstream.create_client.call_args.args[0] == "sk-caller"

        [interaction] = recorder.interactions
        assert interaction.interaction_type == "openai:chatCompletions"
        assert interaction.agent_id == "agent-1"
        assert interaction.usage == UsageView(10, 5)
        assert interaction.response == response
        assert interaction.duration_ms is not None

    async def test_configured_key_is_fallback(self, recorder, upstream):
        settings = Settings(providers=ProvidersConfig(
            openai=ProviderConfig(base_url="https://proxy.example/v1", api_key="sk-config"),
        ))
        handler = ProxyHandler(settings, policy=AllowAllPolicy(), recorder=recorder, rules=[])
        upstream.execute.return_value = completion({"role": "assistant", "content": "ok"})

        await handler.handle("openai", chat_request(), {})

        assert upstream.create_client.call_args.args[0] == "sk-config"
        assert upstream.create_client.call_args.args[1].base_url == "https://proxy.example/v1"

    async def test_blocked_tool_call_is_refused(self, settings, recorder, upstream):
        handler = ProxyHandler(settings, policy=BlockedToolsPolicy(["delete_file"]), recorder=recorder, rules=[])
        upstream.execute.return_value = completion(TOOL_CALL_MESSAGE, finish_reason="tool_calls")

        result = await handler.handle("openai", chat_request(), {})
        await handler.drain()

        choice = result.body["choices"][0]
        assert choice["message"]["content"] == "Tool call 'delete_file' was blocked by policy."
        assert "tool_calls" not in choice["message"]
        assert choice["finish_reason"] == "stop"
        assert recorder.interactions[0].refused

    async def test_allowed_tool_call_passes(self, handler, upstream):
        response = completion(TOOL_CALL_MESSAGE, finish_reason="tool_calls")
        upstream.execute.return_value = response

        result = await handler.handle("openai", chat_request(), {})
        assert result.body == response

    async def test_upstream_error_is_normalized(self, handler, recorder, upstream):
        upstream.execute.side_effect = UpstreamError(
            401, {"error": {"message": "Incorrect API key provided", "type": "authentication_error"}},
        )

        result = await handler.handle("openai", chat_request(), {})
        await handler.drain()

        assert result.status_code == 401
        assert result.body == {"error": {"message": "Incorrect API key provided", "type": "authentication_error"}}
        assert recorder.interactions[0].error == "Incorrect API key provided"

    async def test_unexpected_error_is_500(self, handler, upstream):
        upstream.execute.side_effect = RuntimeError("connection reset")

        result = await handler.handle("openai", chat_request(), {})

        assert result.status_code == 500
        assert result.body == {"error": {"message": "connection reset", "type": "api_error"}}

    async def test_client_creation_failure_is_normalized(self, handler, upstream):
        upstream.create_client.side_effect = ValueError("Missing key inputs argument!")

        result = await handler.handle("openai", chat_request(), {})

        assert result.status_code == 500
        assert result.body == {"error": {"message": "Missing key inputs argument!", "type": "api_error"}}
        upstream.execute.assert_not_awaited()

    async def test_optimization_rule_switches_model(self, settings, recorder, upstream):
        rules = [OptimizationRule("content_length", "gpt-4o-mini", {"max_length": 100}, provider="openai")]
        handler = ProxyHandler(settings, policy=AllowAllPolicy(), recorder=recorder, rules=rules)
        upstream.execute.return_value = completion({"role": "assistant", "content": "ok"})

        await handler.handle("openai", chat_request(), {})
        await handler.drain()

        sent = upstream.execute.call_args.args[1]
        assert sent["model"] == "gpt-4o-mini"
        assert recorder.interactions[0].model == "gpt-4o-mini"
        assert recorder.interactions[0].request["model"] == "gpt-4o"

    async def test_rules_for_other_providers_are_ignored(self, settings, recorder, upstream):
        rules = [OptimizationRule("content_length", "claude-haiku-4-5", {"max_length": 100}, provider="anthropic")]
        handler = ProxyHandler(settings, policy=AllowAllPolicy(), recorder=recorder, rules=rules)
        upstream.execute.return_value = completion({"role": "assistant", "content": "ok"})

        await handler.handle("openai", chat_request(), {})
        assert upstream.execute.call_args.args[1]["model"] == "gpt-4o"

    async def test_toon_compression_when_enabled(self, recorder, upstream):
        settings = Settings(compression=CompressionConfig(toon_enabled=True))
        handler = ProxyHandler(settings, policy=AllowAllPolicy(), recorder=recorder, rules=[])
        upstream.execute.return_value = completion({"role": "assistant", "content": "ok"})
        messages = [
            {"role": "user", "content": "List users"},
            {"role": "assistant", "tool_calls": [
                {"id": "call_1", "type": "function", "function": {"name": "list_users", "arguments": "{}"}},
            ]},
            {"role": "tool", "tool_call_id": "call_1", "content": '[{"id": 1, "name": "Alice"}, {"id": 2, "name": "Bob"}]'},
        ]

        await handler.handle("openai", {"model": "gpt-4o", "messages": messages}, {})
        await handler.drain()

        sent = upstream.execute.call_args.args[1]
        assert sent["messages"][2]["content"] == "[2]{id,name}:\n  1,Alice\n  2,Bob"
        toon = recorder.interactions[0].toon
        assert toon.tokens_before > toon.tokens_after

    async def test_toon_compression_disabled_by_default(self, handler, recorder, upstream):
        upstream.execute.return_value = completion({"role": "assistant", "content": "ok"})
        await handler.handle("openai", chat_request(), {})
        await handler.drain()
        assert recorder.interactions[0].toon == ToonCompressionResult()

    async def test_unknown_provider(self, handler):
        with pytest.raises(ValueError, match="Unknown provider"):
            await handler.handle("bedrock", {}, {})


class TestStreaming:
    async def collect(self, handler, chunks, error=None, provider=openai_provider, body=None):
        with patch.object(provider, "create_client", MagicMock(return_value=MagicMock())), \
                patch.object(provider, "execute_stream", lambda client, request: agen(chunks, error)):
            result = await handler.handle(provider.provider, body or chat_request(stream=True), {})
            assert result.stream is not None
            frames = [frame async for frame in result.stream]
        await handler.drain()
        return result, frames

    async def test_allowed_tool_calls_are_replayed(self, handler, recorder):
        result, frames = await self.collect(handler, STREAM_CHUNKS)

        assert result.headers["Content-Type"] == "text/event-stream"
        payloads = sse_payloads(frames)
        assert payloads[0] == STREAM_CHUNKS[0]
        assert payloads[1:3] == STREAM_CHUNKS[1:3]
        assert payloads[3]["choices"][0]["finish_reason"] == "tool_calls"
        assert frames[-1].endswith("data: [DONE]\n\n")

        [interaction] = recorder.interactions
        assert interaction.usage == UsageView(12, 7)
        assert interaction.response["choices"][0]["message"]["tool_calls"][0]["function"]["arguments"] == '{"path":"/"}'
        assert interaction.time_to_first_token_ms is not None
        assert not interaction.refused

    async def test_blocked_tool_calls_become_refusal_text(self, settings, recorder):
        handler = ProxyHandler(settings, policy=BlockedToolsPolicy(["delete_file"]), recorder=recorder, rules=[])
        _, frames = await self.collect(handler, STREAM_CHUNKS)

        payloads = sse_payloads(frames)
        assert all("tool_calls" not in p["choices"][0]["delta"] for p in payloads)
        assert payloads[1]["choices"][0]["delta"]["content"] == "Tool call 'delete_file' was blocked by policy."
        assert payloads[-1]["choices"][0]["finish_reason"] == "stop"
        assert recorder.interactions[0].refused

    async def test_upstream_failure_mid_stream(self, handler, recorder):
        error = UpstreamError(529, {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})
        _, frames = await self.collect(handler, STREAM_CHUNKS[:1], error=error)

        payloads = sse_payloads(frames)
        assert payloads[0] == STREAM_CHUNKS[0]
        assert payloads[1] == {"error": {"message": "Overloaded", "type": "overloaded_error"}}
        assert frames[-1].endswith("data: [DONE]\n\n")
        assert recorder.interactions[0].error == "Overloaded"

    async def test_anthropic_refusal_uses_event_framing(self, settings, recorder):
        events = [
            {"type": "message_start", "message": {"id": "msg_1", "model": "claude-sonnet-4-5", "usage": {"input_tokens": 9}}},
            {"type": "content_block_start", "index": 0, "content_block": {"type": "tool_use", "id": "toolu_1", "name": "delete_file", "input": {}}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "input_json_delta", "partial_json": "{}"}},
            {"type": "content_block_stop", "index": 0},
            {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 4}},
            {"type": "message_stop"},
        ]
        handler = ProxyHandler(settings, policy=BlockedToolsPolicy(["delete_file"]), recorder=recorder, rules=[])
        body = {"model": "claude-sonnet-4-5", "max_tokens": 100, "messages": [], "stream": True}
        _, frames = await self.collect(handler, events, provider=anthropic_provider, body=body)

        types = [p["type"] for p in sse_payloads(frames)]
        assert types == [
            "message_start", "content_block_start", "content_block_delta", "content_block_stop",
            "message_delta", "message_stop",
        ]
        message_delta = sse_payloads(frames)[4]
        assert message_delta["delta"]["stop_reason"] == "end_turn"
        assert recorder.interactions[0].usage == UsageView(9, 4)


class TestBookkeeping:
    async def test_recorder_failure_is_contained(self, settings, upstream, caplog):
        failing = MagicMock(record=AsyncMock(side_effect=RuntimeError("db down")))
        handler = ProxyHandler(settings, policy=AllowAllPolicy(), recorder=failing, rules=[])
        upstream.execute.return_value = completion({"role": "assistant", "content": "ok"})

        with caplog.at_level(logging.ERROR):
            result = await handler.handle("openai", chat_request(), {})
            await handler.drain()

        assert result.status_code == 200
        assert "Failed to record" in caplog.text

    async def test_logging_recorder_estimates_cost(self, prices, caplog):
        interaction = Interaction(
            provider="openai",
            interaction_type="openai:chatCompletions",
            model="gpt-4o",
            request={},
            processed_request={},
            usage=UsageView(input_tokens=1_000_000, output_tokens=100_000),
        )
        with caplog.at_level(logging.INFO, logger="llmgw.core.interactions"):
            await LoggingInteractionRecorder().record(interaction)

        assert "cost=3.5" in caplog.text
