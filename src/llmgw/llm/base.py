"""Adapter contracts every LLM provider must implement.

A provider plugs into the proxy by supplying three adapters and a factory:

- ``RequestAdapter`` wraps one native request, exposes it in canonical form
  and stages mutations that ``to_provider_request()`` folds back in.
- ``ResponseAdapter`` wraps one complete native response.
- ``StreamAdapter`` folds native stream chunks into forwardable SSE text and
  one synthesized complete response.
- ``LLMProvider`` is the factory descriptor consumed by the proxy handler.
"""

from __future__ import annotations

from typing import Any, AsyncIterator, Mapping, Protocol

from llmgw.llm.types import (
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


class RequestAdapter(Protocol):
    provider: str

    def get_model(self) -> str: ...

    def is_streaming(self) -> bool: ...

    def get_messages(self) -> list[CommonMessage]: ...

    def get_tool_results(self) -> list[CommonToolResult]: ...

    def get_tools(self) -> list[CommonMcpToolDefinition]: ...

    def has_tools(self) -> bool: ...

    def get_provider_messages(self) -> list[Any]: ...

    def get_original_request(self) -> dict: ...

    def set_model(self, model: str) -> None: ...

    def update_tool_result(self, tool_call_id: str, new_content: str) -> None: ...

    def apply_tool_result_updates(self, updates: Mapping[str, str]) -> None: ...

    async def apply_toon_compression(self, model: str) -> ToonCompressionResult: ...

    def to_provider_request(self) -> dict: ...


class ResponseAdapter(Protocol):
    provider: str

    def get_id(self) -> str: ...

    def get_model(self) -> str: ...

    def get_text(self) -> str: ...

    def get_tool_calls(self) -> list[CommonToolCall]: ...

    def has_tool_calls(self) -> bool: ...

    def get_usage(self) -> UsageView: ...

    def get_original_response(self) -> dict: ...

    def to_refusal_response(self, refusal_message: str, content_message: str) -> dict: ...


class StreamAdapter(Protocol):
    provider: str
    state: StreamAccumulatorState

    def process_chunk(self, chunk: dict) -> ChunkProcessingResult: ...

    def get_sse_headers(self) -> dict[str, str]: ...

    def format_text_delta_sse(self, text: str) -> str: ...

    def format_complete_text_sse(self, text: str) -> list[str]: ...

    def format_end_sse(self) -> str: ...

    def get_raw_tool_call_events(self) -> list[str]: ...

    def to_provider_response(self) -> dict: ...


class LLMProvider(Protocol):
    """Factory descriptor the generic proxy handler works against."""

    provider: str
    interaction_type: str

    def create_request_adapter(self, request: dict) -> RequestAdapter: ...

    def create_response_adapter(self, response: dict) -> ResponseAdapter: ...

    def create_stream_adapter(self) -> StreamAdapter: ...

    def extract_api_key(self, headers: Mapping[str, str]) -> str | None: ...

    def get_base_url(self) -> str | None: ...

    def get_span_name(self) -> str: ...

    def create_client(self, api_key: str | None, options: CreateClientOptions | None = None) -> Any: ...

    async def execute(self, client: Any, request: dict) -> dict: ...

    def execute_stream(self, client: Any, request: dict) -> AsyncIterator[dict]: ...

    def extract_error_message(self, error: Any) -> str: ...
