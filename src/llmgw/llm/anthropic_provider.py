"""Anthropic Messages API adapters."""

from __future__ import annotations

import logging
import time
from typing import Any, AsyncIterator, Mapping

from anthropic import AsyncAnthropic

from llmgw.core.config import get_settings
from llmgw.core.json_utils import join_text_parts, parse_arguments, parse_or_raw, try_parse_json
from llmgw.llm import sse
from llmgw.llm.compression import ToonCompressor
from llmgw.llm.errors import extract_error_message
from llmgw.llm.headers import bearer_token, get_header
from llmgw.llm.metrics import UPSTREAM_TIMEOUT
from llmgw.llm.types import (
    AccumulatedToolCall,
    ChunkProcessingResult,
    CommonMcpToolDefinition,
    CommonMessage,
    CommonToolCall,
    CommonToolResult,
    CreateClientOptions,
    StreamAccumulatorState,
    ToonCompressionResult,
    UsageView,
)

logger = logging.getLogger(__name__)

PROVIDER = "anthropic"
DEFAULT_MAX_TOKENS = 4096


def _blocks(message: dict) -> list[dict]:
    content = message.get("content")
    if isinstance(content, list):
        return [block for block in content if isinstance(block, dict)]
    return []


def _tool_result_blocks(message: dict) -> list[dict]:
    return [block for block in _blocks(message) if block.get("type") == "tool_result"]


def find_tool_name(messages: list[dict], tool_use_id: str) -> str | None:
    for message in reversed(messages):
        if message.get("role") != "assistant":
            continue
        for block in _blocks(message):
            if block.get("type") == "tool_use" and block.get("id") == tool_use_id:
                return block.get("name")
    return None


def _tool_result_content(block: dict) -> Any:
    content = block.get("content")
    if isinstance(content, list):
        content = join_text_parts(content)
    return parse_or_raw(content)


class AnthropicRequestAdapter:
    provider = PROVIDER

    def __init__(self, request: dict):
        self._original = request
        self._request = request
        self._model_override: str | None = None
        self._tool_result_updates: dict[str, str] = {}

    def get_model(self) -> str:
        return self._model_override or self._request.get("model", "")

    def is_streaming(self) -> bool:
        return self._request.get("stream") is True

    def get_messages(self) -> list[CommonMessage]:
        messages = self.get_provider_messages()
        result = []
        if self._request.get("system"):
            result.append(CommonMessage(role="system"))

        for message in messages:
            tool_results = _tool_result_blocks(message)
            if message.get("role") == "user" and tool_results:
                # Anthropic carries tool results inside user turns
                common = CommonMessage(role="tool", tool_calls=[])
                for block in tool_results:
                    name = find_tool_name(messages, block.get("tool_use_id"))
                    if name:
                        common.tool_calls.append(CommonToolResult(
                            id=block.get("tool_use_id", ""),
                            name=name,
                            content=_tool_result_content(block),
                            is_error=bool(block.get("is_error")),
                        ))
                if not common.tool_calls:
                    common.tool_calls = None
                result.append(common)
            else:
                result.append(CommonMessage(role=message.get("role", "user")))

        logger.debug("[Anthropic] converted %d messages to common format", len(result))
        return result

    def get_tool_results(self) -> list[CommonToolResult]:
        messages = self.get_provider_messages()
        return [
            CommonToolResult(
                id=block.get("tool_use_id", ""),
                name=find_tool_name(messages, block.get("tool_use_id")) or "unknown",
                content=_tool_result_content(block),
                is_error=bool(block.get("is_error")),
            )
            for message in messages
            if message.get("role") == "user"
            for block in _tool_result_blocks(message)
        ]

    def get_tools(self) -> list[CommonMcpToolDefinition]:
        return [
            CommonMcpToolDefinition(
                name=tool.get("name", ""),
                description=tool.get("description"),
                input_schema=tool.get("input_schema") or {},
            )
            for tool in self._request.get("tools") or []
            if isinstance(tool, dict) and tool.get("name")
        ]

    def has_tools(self) -> bool:
        return bool(self._request.get("tools"))

    def get_provider_messages(self) -> list[dict]:
        return self._request.get("messages") or []

    def get_original_request(self) -> dict:
        return self._original

    def set_model(self, model: str) -> None:
        self._model_override = model

    def update_tool_result(self, tool_call_id: str, new_content: str) -> None:
        self._tool_result_updates[tool_call_id] = new_content

    def apply_tool_result_updates(self, updates: Mapping[str, str]) -> None:
        self._tool_result_updates.update(updates)

    def _replace_tool_results(self, messages: list[dict], replace) -> list[dict]:
        """Rebuild user turns whose tool_result blocks ``replace`` changes."""
        result = []
        for message in messages:
            if message.get("role") == "user" and _tool_result_blocks(message):
                changed = False
                content = []
                for block in message["content"]:
                    if isinstance(block, dict) and block.get("type") == "tool_result":
                        new_block = replace(block)
                        if new_block is not block:
                            changed = True
                            block = new_block
                    content.append(block)
                if changed:
                    message = {**message, "content": content}
            result.append(message)
        return result

    async def apply_toon_compression(self, model: str) -> ToonCompressionResult:
        compressor = ToonCompressor(PROVIDER)

        def compress(block: dict) -> dict:
            content = block.get("content")
            if isinstance(content, list):
                content = join_text_parts(content)
            if not isinstance(content, str):
                return block
            compressed = compressor.compress(block.get("tool_use_id", ""), content)
            if compressed is content:
                return block
            return {**block, "content": compressed}

        self._request = {
            **self._request,
            "messages": self._replace_tool_results(self.get_provider_messages(), compress),
        }
        return await compressor.result(model)

    def to_provider_request(self) -> dict:
        result = dict(self._request)
        if self._tool_result_updates and "messages" in result:
            updates = self._tool_result_updates

            def update(block: dict) -> dict:
                if block.get("tool_use_id") in updates:
                    return {**block, "content": updates[block["tool_use_id"]]}
                return block

            result["messages"] = self._replace_tool_results(result["messages"], update)
        if self._model_override is not None:
            result["model"] = self._model_override
        return result


class AnthropicResponseAdapter:
    provider = PROVIDER

    def __init__(self, response: dict):
        self._response = response

    def _content(self) -> list[dict]:
        return _blocks(self._response)

    def get_id(self) -> str:
        return self._response.get("id", "")

    def get_model(self) -> str:
        return self._response.get("model", "")

    def get_text(self) -> str:
        return "".join(
            block.get("text") or ""
            for block in self._content()
            if block.get("type") == "text"
        )

    def get_tool_calls(self) -> list[CommonToolCall]:
        return [
            CommonToolCall(
                id=block.get("id", ""),
                name=block.get("name") or "unknown",
                arguments=parse_arguments(block.get("input")),
            )
            for block in self._content()
            if block.get("type") == "tool_use"
        ]

    def has_tool_calls(self) -> bool:
        return any(block.get("type") == "tool_use" for block in self._content())

    def get_usage(self) -> UsageView:
        usage = self._response.get("usage") or {}
        return UsageView(
            input_tokens=usage.get("input_tokens") or 0,
            output_tokens=usage.get("output_tokens") or 0,
        )

    def get_original_response(self) -> dict:
        return self._response

    def to_refusal_response(self, refusal_message: str, content_message: str) -> dict:
        return {
            **self._response,
            "content": [{"type": "text", "text": content_message}],
            "stop_reason": "end_turn",
        }


class AnthropicStreamAdapter:
    """Folds Messages API stream events.

    Text and thinking blocks are forwarded as they arrive. Tool-use block
    events are held so the proxy can decide whether to replay them. The
    closing ``message_delta``/``message_stop`` pair is re-emitted by
    ``format_end_sse`` once the proxy is done.
    """

    provider = PROVIDER

    def __init__(self):
        self.state = StreamAccumulatorState()
        self._block_types: dict[int, str] = {}
        self._tool_call_positions: dict[int, int] = {}
        self._input_tokens = 0
        self._thinking_signature = ""

    def process_chunk(self, chunk: dict) -> ChunkProcessingResult:
        if self.state.timing.first_chunk_time is None:
            self.state.timing.first_chunk_time = time.time()

        event_type = chunk.get("type")
        sse_data = None
        is_tool_call_chunk = False

        if event_type == "message_start":
            message = chunk.get("message") or {}
            self.state.response_id = message.get("id") or self.state.response_id
            self.state.model = message.get("model") or self.state.model
            # Input side only, output tokens arrive with message_delta
            self._input_tokens = (message.get("usage") or {}).get("input_tokens") or 0
            sse_data = sse.event_frame("message_start", chunk)

        elif event_type == "content_block_start":
            index = chunk.get("index", 0)
            block = chunk.get("content_block") or {}
            self._block_types[index] = block.get("type", "")
            if block.get("type") == "tool_use":
                self._tool_call_positions[index] = len(self.state.tool_calls)
                self.state.tool_calls.append(
                    AccumulatedToolCall(id=block.get("id", ""), name=block.get("name", ""))
                )
                self.state.raw_tool_call_events.append(chunk)
                is_tool_call_chunk = True
            else:
                if block.get("type") == "text" and block.get("text"):
                    self.state.text += block["text"]
                sse_data = sse.event_frame(event_type, chunk)

        elif event_type == "content_block_delta":
            index = chunk.get("index", 0)
            delta = chunk.get("delta") or {}
            delta_type = delta.get("type")
            if delta_type == "input_json_delta" and index in self._tool_call_positions:
                tool_call = self.state.tool_calls[self._tool_call_positions[index]]
                tool_call.arguments += delta.get("partial_json") or ""
                self.state.raw_tool_call_events.append(chunk)
                is_tool_call_chunk = True
            else:
                if delta_type == "text_delta":
                    self.state.text += delta.get("text") or ""
                elif delta_type == "thinking_delta":
                    self.state.reasoning += delta.get("thinking") or ""
                elif delta_type == "signature_delta":
                    self._thinking_signature += delta.get("signature") or ""
                sse_data = sse.event_frame(event_type, chunk)

        elif event_type == "content_block_stop":
            index = chunk.get("index", 0)
            if self._block_types.get(index) == "tool_use":
                self.state.raw_tool_call_events.append(chunk)
                is_tool_call_chunk = True
            else:
                sse_data = sse.event_frame(event_type, chunk)

        elif event_type == "message_delta":
            delta = chunk.get("delta") or {}
            if delta.get("stop_reason"):
                self.state.stop_reason = delta["stop_reason"]
            usage = chunk.get("usage")
            if usage:
                self.state.usage = UsageView(
                    input_tokens=usage.get("input_tokens") or self._input_tokens,
                    output_tokens=usage.get("output_tokens") or 0,
                )

        elif event_type == "ping":
            sse_data = sse.event_frame("ping", chunk)

        return ChunkProcessingResult(
            sse_data=sse_data,
            is_tool_call_chunk=is_tool_call_chunk,
            is_final=self.state.usage is not None,
        )

    def get_sse_headers(self) -> dict[str, str]:
        return sse.sse_headers()

    def _next_block_index(self) -> int:
        return max(self._block_types, default=-1) + 1

    def _text_block_index(self) -> int:
        for index, block_type in sorted(self._block_types.items(), reverse=True):
            if block_type == "text":
                return index
        return self._next_block_index()

    def format_text_delta_sse(self, text: str) -> str:
        return sse.event_frame("content_block_delta", {
            "type": "content_block_delta",
            "index": self._text_block_index(),
            "delta": {"type": "text_delta", "text": text},
        })

    def format_complete_text_sse(self, text: str) -> list[str]:
        index = self._next_block_index()
        self._block_types[index] = "text"
        return [
            sse.event_frame("content_block_start", {
                "type": "content_block_start",
                "index": index,
                "content_block": {"type": "text", "text": ""},
            }),
            sse.event_frame("content_block_delta", {
                "type": "content_block_delta",
                "index": index,
                "delta": {"type": "text_delta", "text": text},
            }),
            sse.event_frame("content_block_stop", {"type": "content_block_stop", "index": index}),
        ]

    def format_end_sse(self) -> str:
        usage = self.state.usage or UsageView(input_tokens=self._input_tokens)
        message_delta = {
            "type": "message_delta",
            "delta": {"stop_reason": self.state.stop_reason or "end_turn", "stop_sequence": None},
            "usage": {"output_tokens": usage.output_tokens},
        }
        return (
            sse.event_frame("message_delta", message_delta)
            + sse.event_frame("message_stop", {"type": "message_stop"})
        )

    def get_raw_tool_call_events(self) -> list[str]:
        return [sse.event_frame(event["type"], event) for event in self.state.raw_tool_call_events]

    def to_provider_response(self) -> dict:
        content: list[dict] = []
        if self.state.reasoning:
            content.append({
                "type": "thinking",
                "thinking": self.state.reasoning,
                "signature": self._thinking_signature,
            })
        if self.state.text:
            content.append({"type": "text", "text": self.state.text})
        for tool_call in self.state.tool_calls:
            parsed = try_parse_json(tool_call.arguments)
            content.append({
                "type": "tool_use",
                "id": tool_call.id,
                "name": tool_call.name,
                "input": parsed.value if parsed.ok and isinstance(parsed.value, dict) else {},
            })

        usage = self.state.usage or UsageView(input_tokens=self._input_tokens)
        return {
            "id": self.state.response_id,
            "type": "message",
            "role": "assistant",
            "model": self.state.model,
            "content": content,
            "stop_reason": self.state.stop_reason or "end_turn",
            "stop_sequence": None,
            "usage": {
                "input_tokens": usage.input_tokens,
                "output_tokens": usage.output_tokens,
            },
        }


def split_request(request: dict) -> tuple[str, list, int, dict]:
    body = dict(request)
    model = body.pop("model", "")
    messages = body.pop("messages", [])
    max_tokens = body.pop("max_tokens", DEFAULT_MAX_TOKENS)
    body.pop("stream", None)
    return model, messages, max_tokens, body


class AnthropicAdapterFactory:
    provider = PROVIDER
    interaction_type = "anthropic:messages"

    def create_request_adapter(self, request: dict) -> AnthropicRequestAdapter:
        return AnthropicRequestAdapter(request)

    def create_response_adapter(self, response: dict) -> AnthropicResponseAdapter:
        return AnthropicResponseAdapter(response)

    def create_stream_adapter(self) -> AnthropicStreamAdapter:
        return AnthropicStreamAdapter()

    def extract_api_key(self, headers: Mapping[str, str]) -> str | None:
        return get_header(headers, "x-api-key") or bearer_token(headers)

    def get_base_url(self) -> str | None:
        return get_settings().providers.anthropic.base_url

    def get_span_name(self) -> str:
        return "anthropic.messages"

    def create_client(self, api_key: str | None, options: CreateClientOptions | None = None) -> AsyncAnthropic:
        options = options or CreateClientOptions()
        base_url = options.base_url or self.get_base_url()
        logger.info(
            "[Anthropic] Creating client (has_api_key=%s, base_url=%s)", bool(api_key), base_url
        )
        return AsyncAnthropic(
            api_key=api_key or "",
            base_url=base_url,
            http_client=options.http_client,
            max_retries=0,
        )

    async def execute(self, client: AsyncAnthropic, request: dict) -> dict:
        model, messages, max_tokens, extra_body = split_request(request)
        logger.info(
            "[Anthropic] Executing messages request (model=%s, messages=%d, tools=%d)",
            model, len(messages), len(request.get("tools") or []),
        )
        response = await client.messages.create(
            model=model,
            messages=messages,
            max_tokens=max_tokens,
            extra_body=extra_body,
            timeout=UPSTREAM_TIMEOUT,
        )
        return response.to_dict()

    async def execute_stream(self, client: AsyncAnthropic, request: dict) -> AsyncIterator[dict]:
        model, messages, max_tokens, extra_body = split_request(request)
        logger.info("[Anthropic] Executing streaming messages request (model=%s)", model)
        stream = await client.messages.create(
            model=model,
            messages=messages,
            max_tokens=max_tokens,
            stream=True,
            extra_body=extra_body,
            timeout=UPSTREAM_TIMEOUT,
        )
        try:
            async for event in stream:
                yield event.to_dict()
        finally:
            await stream.close()

    def extract_error_message(self, error: Any) -> str:
        return extract_error_message(error)


anthropic_provider = AnthropicAdapterFactory()
