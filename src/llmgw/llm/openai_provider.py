"""OpenAI chat completions adapters.

The same classes serve every OpenAI-compatible upstream (OpenAI, vLLM,
Ollama); only the provider name, base URL and key placeholder differ.
"""

from __future__ import annotations

import logging
import time
from typing import Any, AsyncIterator, Mapping

from openai import AsyncOpenAI

from llmgw.core.config import get_settings
from llmgw.core.json_utils import parse_arguments, parse_or_raw
from llmgw.llm import sse
from llmgw.llm.compression import ToonCompressor
from llmgw.llm.errors import extract_error_message
from llmgw.llm.headers import bearer_token
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


def tool_call_name(tool_call: dict) -> str | None:
    if tool_call.get("type") == "custom":
        return (tool_call.get("custom") or {}).get("name")
    return (tool_call.get("function") or {}).get("name")


def find_tool_name(messages: list[dict], tool_call_id: str) -> str | None:
    """Name of the nearest preceding assistant tool call with this id."""
    for message in reversed(messages):
        if message.get("role") != "assistant" or not message.get("tool_calls"):
            continue
        for tool_call in message["tool_calls"]:
            if tool_call.get("id") == tool_call_id:
                return tool_call_name(tool_call)
    return None


def tool_definitions(tools: list[dict] | None) -> list[CommonMcpToolDefinition]:
    result = []
    for tool in tools or []:
        if tool.get("type") == "function" and tool.get("function"):
            func = tool["function"]
            result.append(CommonMcpToolDefinition(
                name=func.get("name", ""),
                description=func.get("description"),
                input_schema=func.get("parameters") or {},
            ))
        elif tool.get("type") == "custom" and tool.get("custom"):
            custom = tool["custom"]
            result.append(CommonMcpToolDefinition(
                name=custom.get("name", ""),
                description=custom.get("description"),
            ))
    return result


def common_tool_calls(tool_calls: list[dict] | None) -> list[CommonToolCall]:
    result = []
    for tool_call in tool_calls or []:
        if tool_call.get("type") == "custom" and tool_call.get("custom"):
            name = tool_call["custom"].get("name", "unknown")
            arguments = parse_arguments(tool_call["custom"].get("input"))
        elif tool_call.get("function"):
            name = tool_call["function"].get("name", "unknown")
            arguments = parse_arguments(tool_call["function"].get("arguments"))
        else:
            name, arguments = "unknown", {}
        result.append(CommonToolCall(id=tool_call.get("id", ""), name=name, arguments=arguments))
    return result


def apply_tool_message_updates(messages: list[dict], updates: Mapping[str, str]) -> list[dict]:
    """Copy of ``messages`` with the listed tool messages' content replaced."""
    if not updates:
        return messages
    applied = 0
    result = []
    for message in messages:
        if message.get("role") == "tool" and message.get("tool_call_id") in updates:
            message = {**message, "content": updates[message["tool_call_id"]]}
            applied += 1
        result.append(message)
    logger.debug("Applied %d of %d tool result updates", applied, len(updates))
    return result


class OpenAIRequestAdapter:
    """Canonical view and staged mutations over one chat completions request."""

    def __init__(self, request: dict, provider: str = "openai"):
        self.provider = provider
        self._original = request
        self._request = request
        self._model_override: str | None = None
        self._tool_result_updates: dict[str, str] = {}

    # -- read access -------------------------------------------------------

    def get_model(self) -> str:
        return self._model_override or self._request.get("model", "")

    def is_streaming(self) -> bool:
        return self._request.get("stream") is True

    def get_messages(self) -> list[CommonMessage]:
        messages = self.get_provider_messages()
        result = []
        for message in messages:
            common = CommonMessage(role=message.get("role", "user"))
            if message.get("role") == "tool":
                name = find_tool_name(messages, message.get("tool_call_id"))
                if name:
                    common.tool_calls = [CommonToolResult(
                        id=message.get("tool_call_id", ""),
                        name=name,
                        content=parse_or_raw(message.get("content")),
                    )]
            result.append(common)
        logger.debug("[%s] converted %d messages to common format", self.provider, len(result))
        return result

    def get_tool_results(self) -> list[CommonToolResult]:
        messages = self.get_provider_messages()
        return [
            CommonToolResult(
                id=message.get("tool_call_id", ""),
                name=find_tool_name(messages, message.get("tool_call_id")) or "unknown",
                content=parse_or_raw(message.get("content")),
            )
            for message in messages
            if message.get("role") == "tool"
        ]

    def get_tools(self) -> list[CommonMcpToolDefinition]:
        return tool_definitions(self._request.get("tools"))

    def has_tools(self) -> bool:
        return bool(self._request.get("tools"))

    def get_provider_messages(self) -> list[dict]:
        return self._request.get("messages") or []

    def get_original_request(self) -> dict:
        return self._original

    # -- staged mutations --------------------------------------------------

    def set_model(self, model: str) -> None:
        self._model_override = model

    def update_tool_result(self, tool_call_id: str, new_content: str) -> None:
        self._tool_result_updates[tool_call_id] = new_content

    def apply_tool_result_updates(self, updates: Mapping[str, str]) -> None:
        self._tool_result_updates.update(updates)

    async def apply_toon_compression(self, model: str) -> ToonCompressionResult:
        compressor = ToonCompressor(self.provider)
        messages = []
        for message in self.get_provider_messages():
            if message.get("role") == "tool" and isinstance(message.get("content"), str):
                compressed = compressor.compress(message.get("tool_call_id", ""), message["content"])
                if compressed is not message["content"]:
                    message = {**message, "content": compressed}
            messages.append(message)
        self._request = {**self._request, "messages": messages}
        return await compressor.result(model)

    def to_provider_request(self) -> dict:
        result = dict(self._request)
        if "messages" in result:
            result["messages"] = apply_tool_message_updates(
                result["messages"], self._tool_result_updates
            )
        if self._model_override is not None:
            result["model"] = self._model_override
        return result


class OpenAIResponseAdapter:
    """Canonical view over one complete chat completion."""

    def __init__(self, response: dict, provider: str = "openai"):
        self.provider = provider
        self._response = response

    def _first_message(self) -> dict | None:
        choices = self._response.get("choices") or []
        if not choices:
            return None
        return choices[0].get("message") or {}

    def get_id(self) -> str:
        return self._response.get("id", "")

    def get_model(self) -> str:
        return self._response.get("model", "")

    def get_text(self) -> str:
        message = self._first_message()
        if not message:
            return ""
        content = message.get("content")
        return content if isinstance(content, str) else ""

    def get_tool_calls(self) -> list[CommonToolCall]:
        message = self._first_message()
        if not message:
            return []
        return common_tool_calls(message.get("tool_calls"))

    def has_tool_calls(self) -> bool:
        message = self._first_message()
        return bool(message and message.get("tool_calls"))

    def get_usage(self) -> UsageView:
        usage = self._response.get("usage") or {}
        return UsageView(
            input_tokens=usage.get("prompt_tokens") or 0,
            output_tokens=usage.get("completion_tokens") or 0,
        )

    def get_original_response(self) -> dict:
        return self._response

    def to_refusal_response(self, refusal_message: str, content_message: str) -> dict:
        choices = self._response.get("choices") or [{"index": 0, "logprobs": None}]
        return {
            **self._response,
            "choices": [{
                **choices[0],
                "message": {"role": "assistant", "content": content_message, "refusal": None},
                "finish_reason": "stop",
            }],
        }


class OpenAIStreamAdapter:
    """Folds chat.completion.chunk events into SSE frames and one response."""

    def __init__(self, provider: str = "openai"):
        self.provider = provider
        self.state = StreamAccumulatorState()
        self._tool_call_positions: dict[int, int] = {}

    def _reasoning_delta(self, delta: dict) -> str:
        # vLLM and Ollama stream reasoning models' thinking separately
        for key in ("reasoning_content", "reasoning"):
            value = delta.get(key)
            if isinstance(value, str) and value:
                return value
        return ""

    def _accumulate_tool_calls(self, deltas: list[dict]) -> None:
        for tool_call_delta in deltas:
            index = tool_call_delta.get("index", 0)
            if index not in self._tool_call_positions:
                self._tool_call_positions[index] = len(self.state.tool_calls)
                self.state.tool_calls.append(AccumulatedToolCall())
            tool_call = self.state.tool_calls[self._tool_call_positions[index]]

            function = tool_call_delta.get("function") or {}
            if tool_call_delta.get("id"):
                tool_call.id = tool_call_delta["id"]
            if function.get("name"):
                tool_call.name = function["name"]
            if function.get("arguments"):
                tool_call.arguments += function["arguments"]

    def process_chunk(self, chunk: dict) -> ChunkProcessingResult:
        if self.state.timing.first_chunk_time is None:
            self.state.timing.first_chunk_time = time.time()

        self.state.response_id = chunk.get("id") or self.state.response_id
        self.state.model = chunk.get("model") or self.state.model
        if chunk.get("created") is not None:
            self.state.created = chunk["created"]

        # The usage chunk closes the stream (stream_options.include_usage)
        usage = chunk.get("usage")
        if usage:
            self.state.usage = UsageView(
                input_tokens=usage.get("prompt_tokens") or 0,
                output_tokens=usage.get("completion_tokens") or 0,
            )

        choices = chunk.get("choices") or []
        if not choices:
            return ChunkProcessingResult(is_final=self.state.usage is not None)

        choice = choices[0]
        delta = choice.get("delta") or {}
        sse_data = None
        is_tool_call_chunk = False

        if delta.get("content"):
            self.state.text += delta["content"]
            sse_data = sse.data_frame(chunk)

        if delta.get("refusal"):
            self.state.refusal += delta["refusal"]
            sse_data = sse_data or sse.data_frame(chunk)

        reasoning = self._reasoning_delta(delta)
        if reasoning:
            self.state.reasoning += reasoning
            sse_data = sse_data or sse.data_frame(chunk)

        if delta.get("tool_calls"):
            self._accumulate_tool_calls(delta["tool_calls"])
            self.state.raw_tool_call_events.append(chunk)
            is_tool_call_chunk = True

        if choice.get("finish_reason"):
            self.state.stop_reason = choice["finish_reason"]

        return ChunkProcessingResult(
            sse_data=sse_data,
            is_tool_call_chunk=is_tool_call_chunk,
            is_final=self.state.usage is not None,
        )

    def get_sse_headers(self) -> dict[str, str]:
        return sse.sse_headers()

    def _chunk(self, delta: dict, finish_reason: str | None = None) -> dict:
        return {
            "id": self.state.response_id or f"chatcmpl-{int(time.time() * 1000)}",
            "object": "chat.completion.chunk",
            "created": int(time.time()),
            "model": self.state.model,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }

    def format_text_delta_sse(self, text: str) -> str:
        return sse.data_frame(self._chunk({"content": text}))

    def format_complete_text_sse(self, text: str) -> list[str]:
        return [sse.data_frame(self._chunk({"role": "assistant", "content": text}))]

    def format_end_sse(self) -> str:
        final_chunk = self._chunk({}, finish_reason=self.state.stop_reason or "stop")
        return sse.data_frame(final_chunk) + sse.DONE_FRAME

    def get_raw_tool_call_events(self) -> list[str]:
        return [sse.data_frame(event) for event in self.state.raw_tool_call_events]

    def to_provider_response(self) -> dict:
        message: dict[str, Any] = {
            "role": "assistant",
            "content": self.state.text or "",
            "refusal": self.state.refusal or None,
        }
        if self.state.tool_calls:
            message["tool_calls"] = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {"name": tc.name, "arguments": tc.arguments},
                }
                for tc in self.state.tool_calls
            ]
        if self.state.reasoning:
            message["reasoning_content"] = self.state.reasoning

        usage = self.state.usage or UsageView()
        return {
            "id": self.state.response_id,
            "object": "chat.completion",
            "created": self.state.created if self.state.created is not None else int(time.time()),
            "model": self.state.model,
            "choices": [{
                "index": 0,
                "message": message,
                "logprobs": None,
                "finish_reason": self.state.stop_reason or "stop",
            }],
            "usage": {
                "prompt_tokens": usage.input_tokens,
                "completion_tokens": usage.output_tokens,
                "total_tokens": usage.input_tokens + usage.output_tokens,
            },
        }


def split_request(request: dict) -> tuple[str, list, dict]:
    """Separate model and messages from the rest of the body (sent as extra_body)."""
    body = dict(request)
    model = body.pop("model", "")
    messages = body.pop("messages", [])
    body.pop("stream", None)
    body.pop("stream_options", None)
    return model, messages, body


class OpenAIAdapterFactory:
    """Provider descriptor for OpenAI-compatible chat completions upstreams."""

    def __init__(self, provider: str = "openai", key_placeholder: str = ""):
        self.provider = provider
        self.interaction_type = f"{provider}:chatCompletions"
        # vLLM and Ollama accept any key, the SDK still wants one
        self._key_placeholder = key_placeholder

    def create_request_adapter(self, request: dict) -> OpenAIRequestAdapter:
        return OpenAIRequestAdapter(request, provider=self.provider)

    def create_response_adapter(self, response: dict) -> OpenAIResponseAdapter:
        return OpenAIResponseAdapter(response, provider=self.provider)

    def create_stream_adapter(self) -> OpenAIStreamAdapter:
        return OpenAIStreamAdapter(provider=self.provider)

    def extract_api_key(self, headers: Mapping[str, str]) -> str | None:
        return bearer_token(headers)

    def get_base_url(self) -> str | None:
        config = get_settings().providers.get(self.provider)
        return config.base_url if config else None

    def get_span_name(self) -> str:
        return f"{self.provider}.chat.completions"

    def create_client(self, api_key: str | None, options: CreateClientOptions | None = None) -> AsyncOpenAI:
        options = options or CreateClientOptions()
        base_url = options.base_url or self.get_base_url()
        logger.info(
            "[%s] Creating OpenAI-compatible client (has_api_key=%s, base_url=%s, instrumented=%s)",
            self.provider, bool(api_key), base_url, options.http_client is not None,
        )
        return AsyncOpenAI(
            api_key=api_key or self._key_placeholder,
            base_url=base_url,
            http_client=options.http_client,
            max_retries=0,
        )

    async def execute(self, client: AsyncOpenAI, request: dict) -> dict:
        model, messages, extra_body = split_request(request)
        logger.info(
            "[%s] Executing chat completion (model=%s, messages=%d, tools=%d)",
            self.provider, model, len(messages), len(request.get("tools") or []),
        )
        response = await client.chat.completions.create(
            model=model,
            messages=messages,
            stream=False,
            extra_body=extra_body,
        )
        return response.to_dict()

    async def execute_stream(self, client: AsyncOpenAI, request: dict) -> AsyncIterator[dict]:
        model, messages, extra_body = split_request(request)
        logger.info(
            "[%s] Executing streaming chat completion (model=%s, messages=%d)",
            self.provider, model, len(messages),
        )
        stream = await client.chat.completions.create(
            model=model,
            messages=messages,
            stream=True,
            stream_options={"include_usage": True},
            extra_body=extra_body,
        )
        try:
            async for chunk in stream:
                yield chunk.to_dict()
        finally:
            await stream.close()

    def extract_error_message(self, error: Any) -> str:
        return extract_error_message(error)


openai_provider = OpenAIAdapterFactory("openai")
vllm_provider = OpenAIAdapterFactory("vllm", key_placeholder="EMPTY")
ollama_provider = OpenAIAdapterFactory("ollama", key_placeholder="EMPTY")
