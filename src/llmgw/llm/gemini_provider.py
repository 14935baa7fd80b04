"""Google Gemini generateContent adapters.

The native request handled here is the generateContent REST body plus the
``model`` and ``stream`` keys the web layer fills in from the route
(``/v1beta/models/{model}:generateContent``). Both are stripped before the
body goes upstream. Upstream calls go through the google-genai SDK, whose
responses are dumped back to REST field names, so adapters only ever see
the wire format.
"""

from __future__ import annotations

import logging
import time
from typing import Any, AsyncIterator, Mapping

from google import genai
from google.genai import types as genai_types

from llmgw.core.config import get_settings
from llmgw.core.json_utils import dumps_compact, parse_arguments, parse_or_raw, try_parse_json
from llmgw.llm import sse
from llmgw.llm.compression import ToonCompressor
from llmgw.llm.errors import extract_error_message
from llmgw.llm.headers import get_header
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

PROVIDER = "gemini"
API_VERSION = "v1beta"

# Keys of functionResponse.response that MCP-style tools put their text in
RESPONSE_TEXT_FIELDS = ("output", "result", "content")

# Top-level generateContent fields the SDK expects inside its config
CONFIG_FIELDS = ("systemInstruction", "tools", "toolConfig", "safetySettings", "cachedContent", "labels")

# Response fields the SDK adds that have no REST counterpart
SDK_ONLY_FIELDS = {"sdk_http_response", "automatic_function_calling_history", "parsed"}


def _parts(content: dict | None) -> list[dict]:
    parts = (content or {}).get("parts")
    if isinstance(parts, list):
        return [part for part in parts if isinstance(part, dict)]
    return []


def _function_responses(content: dict) -> list[dict]:
    return [part["functionResponse"] for part in _parts(content) if isinstance(part.get("functionResponse"), dict)]


def _result_id(function_response: dict) -> str:
    return function_response.get("id") or function_response.get("name", "")


def find_tool_name(contents: list[dict], function_response: dict) -> str | None:
    """Resolve by call id when present, otherwise trust the response's own name."""
    call_id = function_response.get("id")
    if call_id:
        for content in reversed(contents):
            if content.get("role") != "model":
                continue
            for part in _parts(content):
                call = part.get("functionCall")
                if isinstance(call, dict) and call.get("id") == call_id:
                    return call.get("name")
    return function_response.get("name")


def _response_content(function_response: dict) -> Any:
    response = function_response.get("response")
    if isinstance(response, dict):
        for key in RESPONSE_TEXT_FIELDS:
            if key in response and len(response) == 1:
                return parse_or_raw(response[key])
    return response


def _usage(metadata: dict | None) -> UsageView:
    metadata = metadata or {}
    return UsageView(
        input_tokens=metadata.get("promptTokenCount") or 0,
        output_tokens=(metadata.get("candidatesTokenCount") or 0) + (metadata.get("thoughtsTokenCount") or 0),
    )


class GeminiRequestAdapter:
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
        contents = self.get_provider_messages()
        result = []
        if self._request.get("systemInstruction"):
            result.append(CommonMessage(role="system"))

        for content in contents:
            function_responses = _function_responses(content)
            if function_responses:
                tool_calls = []
                for function_response in function_responses:
                    name = find_tool_name(contents, function_response)
                    if name:
                        tool_calls.append(CommonToolResult(
                            id=_result_id(function_response),
                            name=name,
                            content=_response_content(function_response),
                        ))
                result.append(CommonMessage(role="tool", tool_calls=tool_calls or None))
            elif content.get("role") == "model":
                result.append(CommonMessage(role="assistant"))
            else:
                result.append(CommonMessage(role=content.get("role", "user")))
        return result

    def get_tool_results(self) -> list[CommonToolResult]:
        contents = self.get_provider_messages()
        return [
            CommonToolResult(
                id=_result_id(function_response),
                name=find_tool_name(contents, function_response) or "unknown",
                content=_response_content(function_response),
            )
            for content in contents
            for function_response in _function_responses(content)
        ]

    def get_tools(self) -> list[CommonMcpToolDefinition]:
        result = []
        for tool in self._request.get("tools") or []:
            for declaration in (tool or {}).get("functionDeclarations") or []:
                result.append(CommonMcpToolDefinition(
                    name=declaration.get("name", ""),
                    description=declaration.get("description"),
                    input_schema=declaration.get("parameters") or declaration.get("parametersJsonSchema") or {},
                ))
        return result

    def has_tools(self) -> bool:
        return any((tool or {}).get("functionDeclarations") for tool in self._request.get("tools") or [])

    def get_provider_messages(self) -> list[dict]:
        return self._request.get("contents") or []

    def get_original_request(self) -> dict:
        return self._original

    def set_model(self, model: str) -> None:
        self._model_override = model

    def update_tool_result(self, tool_call_id: str, new_content: str) -> None:
        self._tool_result_updates[tool_call_id] = new_content

    def apply_tool_result_updates(self, updates: Mapping[str, str]) -> None:
        self._tool_result_updates.update(updates)

    def _replace_function_responses(self, contents: list[dict], replace) -> list[dict]:
        result = []
        for content in contents:
            if _function_responses(content):
                changed = False
                parts = []
                for part in content["parts"]:
                    if isinstance(part, dict) and isinstance(part.get("functionResponse"), dict):
                        new_response = replace(part["functionResponse"])
                        if new_response is not part["functionResponse"]:
                            part = {**part, "functionResponse": new_response}
                            changed = True
                    parts.append(part)
                if changed:
                    content = {**content, "parts": parts}
            result.append(content)
        return result

    async def apply_toon_compression(self, model: str) -> ToonCompressionResult:
        compressor = ToonCompressor(PROVIDER)

        def compress(function_response: dict) -> dict:
            response = function_response.get("response")
            if not isinstance(response, dict):
                return function_response
            new_response = dict(response)
            for key in RESPONSE_TEXT_FIELDS:
                value = response.get(key)
                if isinstance(value, str):
                    new_response[key] = compressor.compress(_result_id(function_response), value)
            if new_response == response:
                return function_response
            return {**function_response, "response": new_response}

        self._request = {
            **self._request,
            "contents": self._replace_function_responses(self.get_provider_messages(), compress),
        }
        return await compressor.result(model)

    def to_provider_request(self) -> dict:
        result = dict(self._request)
        if self._tool_result_updates and "contents" in result:
            updates = self._tool_result_updates

            def update(function_response: dict) -> dict:
                key = _result_id(function_response)
                if key not in updates:
                    return function_response
                parsed = try_parse_json(updates[key])
                if parsed.ok and isinstance(parsed.value, dict):
                    response = parsed.value
                else:
                    response = {"output": updates[key]}
                return {**function_response, "response": response}

            result["contents"] = self._replace_function_responses(result["contents"], update)
        if self._model_override is not None:
            result["model"] = self._model_override
        return result


class GeminiResponseAdapter:
    provider = PROVIDER

    def __init__(self, response: dict):
        self._response = response

    def _candidate(self) -> dict | None:
        candidates = self._response.get("candidates") or []
        return candidates[0] if candidates else None

    def _parts(self) -> list[dict]:
        candidate = self._candidate()
        return _parts(candidate.get("content")) if candidate else []

    def get_id(self) -> str:
        return self._response.get("responseId", "")

    def get_model(self) -> str:
        return self._response.get("modelVersion", "")

    def get_text(self) -> str:
        return "".join(
            part["text"]
            for part in self._parts()
            if isinstance(part.get("text"), str) and not part.get("thought")
        )

    def get_tool_calls(self) -> list[CommonToolCall]:
        result = []
        for part in self._parts():
            call = part.get("functionCall")
            if isinstance(call, dict):
                name = call.get("name") or "unknown"
                result.append(CommonToolCall(
                    id=call.get("id") or name,
                    name=name,
                    arguments=parse_arguments(call.get("args")),
                ))
        return result

    def has_tool_calls(self) -> bool:
        return any(isinstance(part.get("functionCall"), dict) for part in self._parts())

    def get_usage(self) -> UsageView:
        return _usage(self._response.get("usageMetadata"))

    def get_original_response(self) -> dict:
        return self._response

    def to_refusal_response(self, refusal_message: str, content_message: str) -> dict:
        candidate = self._candidate() or {"index": 0}
        return {
            **self._response,
            "candidates": [{
                **candidate,
                "content": {"role": "model", "parts": [{"text": content_message}]},
                "finishReason": "STOP",
            }],
        }


class GeminiStreamAdapter:
    """Folds streamGenerateContent chunks.

    Gemini delivers each functionCall whole, so a chunk's functionCall parts
    are split off and held while its remaining parts are forwarded.
    """

    provider = PROVIDER

    def __init__(self):
        self.state = StreamAccumulatorState()

    def process_chunk(self, chunk: dict) -> ChunkProcessingResult:
        if self.state.timing.first_chunk_time is None:
            self.state.timing.first_chunk_time = time.time()

        self.state.response_id = chunk.get("responseId") or self.state.response_id
        self.state.model = chunk.get("modelVersion") or self.state.model

        candidates = chunk.get("candidates") or []
        candidate = candidates[0] if candidates else {}
        if candidate.get("finishReason"):
            self.state.stop_reason = candidate["finishReason"]

        # Usage rides on every chunk; only the one with a finish reason is final
        if chunk.get("usageMetadata") and candidate.get("finishReason"):
            self.state.usage = _usage(chunk["usageMetadata"])

        sse_data = None
        is_tool_call_chunk = False
        forwarded_parts = []
        call_parts = []
        for part in _parts(candidate.get("content")):
            call = part.get("functionCall")
            if isinstance(call, dict):
                name = call.get("name", "")
                self.state.tool_calls.append(AccumulatedToolCall(
                    id=call.get("id") or name,
                    name=name,
                    arguments=dumps_compact(call.get("args") or {}),
                ))
                call_parts.append(part)
                continue
            if isinstance(part.get("text"), str):
                if part.get("thought"):
                    self.state.reasoning += part["text"]
                else:
                    self.state.text += part["text"]
            forwarded_parts.append(part)

        if call_parts:
            self.state.raw_tool_call_events.append(self._with_parts(chunk, candidate, call_parts))
            is_tool_call_chunk = True
        if forwarded_parts:
            if call_parts:
                sse_data = sse.data_frame(self._with_parts(chunk, candidate, forwarded_parts))
            else:
                sse_data = sse.data_frame(chunk)

        return ChunkProcessingResult(
            sse_data=sse_data,
            is_tool_call_chunk=is_tool_call_chunk,
            is_final=self.state.usage is not None,
        )

    @staticmethod
    def _with_parts(chunk: dict, candidate: dict, parts: list[dict]) -> dict:
        content = {**(candidate.get("content") or {}), "parts": parts}
        return {**chunk, "candidates": [{**candidate, "content": content}]}

    def get_sse_headers(self) -> dict[str, str]:
        return sse.sse_headers()

    def _chunk(self, parts: list[dict], finish_reason: str | None = None, usage: bool = False) -> dict:
        candidate: dict[str, Any] = {"content": {"role": "model", "parts": parts}, "index": 0}
        if finish_reason:
            candidate["finishReason"] = finish_reason
        chunk: dict[str, Any] = {"candidates": [candidate]}
        if usage:
            view = self.state.usage or UsageView()
            chunk["usageMetadata"] = {
                "promptTokenCount": view.input_tokens,
                "candidatesTokenCount": view.output_tokens,
                "totalTokenCount": view.input_tokens + view.output_tokens,
            }
        chunk["modelVersion"] = self.state.model
        chunk["responseId"] = self.state.response_id
        return chunk

    def format_text_delta_sse(self, text: str) -> str:
        return sse.data_frame(self._chunk([{"text": text}]))

    def format_complete_text_sse(self, text: str) -> list[str]:
        return [sse.data_frame(self._chunk([{"text": text}]))]

    def format_end_sse(self) -> str:
        return sse.data_frame(self._chunk([{"text": ""}], self.state.stop_reason or "STOP", usage=True))

    def get_raw_tool_call_events(self) -> list[str]:
        return [sse.data_frame(event) for event in self.state.raw_tool_call_events]

    def to_provider_response(self) -> dict:
        parts: list[dict] = []
        if self.state.reasoning:
            parts.append({"text": self.state.reasoning, "thought": True})
        if self.state.text:
            parts.append({"text": self.state.text})
        for tool_call in self.state.tool_calls:
            parsed = try_parse_json(tool_call.arguments)
            call: dict[str, Any] = {
                "name": tool_call.name,
                "args": parsed.value if parsed.ok and isinstance(parsed.value, dict) else {},
            }
            if tool_call.id and tool_call.id != tool_call.name:
                call["id"] = tool_call.id
            parts.append({"functionCall": call})
        return self._chunk(parts, self.state.stop_reason or "STOP", usage=True)


def split_request(request: dict) -> tuple[str, dict]:
    body = dict(request)
    model = body.pop("model", "")
    body.pop("stream", None)
    return model, body


def sdk_arguments(request: dict) -> tuple[str, list[genai_types.Content], genai_types.GenerateContentConfig]:
    """Split a REST body into the SDK's model, contents and config."""
    model, body = split_request(request)
    config = dict(body.get("generationConfig") or {})
    for field in CONFIG_FIELDS:
        if field in body:
            config[field] = body[field]
    # Tool calls go back to the caller; the SDK must not run them
    config["automaticFunctionCalling"] = {"disable": True}

    # JSON validation decodes base64 fields (inlineData, thoughtSignature) to bytes
    contents = [
        genai_types.Content.model_validate_json(dumps_compact(content))
        for content in body.get("contents") or []
    ]
    return model, contents, genai_types.GenerateContentConfig.model_validate_json(dumps_compact(config))


def to_wire(response: genai_types.GenerateContentResponse) -> dict:
    return response.model_dump(mode="json", by_alias=True, exclude_none=True, exclude=SDK_ONLY_FIELDS)


class GeminiAdapterFactory:
    provider = PROVIDER
    interaction_type = "gemini:generateContent"

    def create_request_adapter(self, request: dict) -> GeminiRequestAdapter:
        return GeminiRequestAdapter(request)

    def create_response_adapter(self, response: dict) -> GeminiResponseAdapter:
        return GeminiResponseAdapter(response)

    def create_stream_adapter(self) -> GeminiStreamAdapter:
        return GeminiStreamAdapter()

    def extract_api_key(self, headers: Mapping[str, str]) -> str | None:
        return get_header(headers, "x-goog-api-key")

    def get_base_url(self) -> str | None:
        return get_settings().providers.gemini.base_url

    def get_span_name(self) -> str:
        return "gemini.generateContent"

    def create_client(self, api_key: str | None, options: CreateClientOptions | None = None) -> genai.Client:
        options = options or CreateClientOptions()
        base_url = options.base_url or self.get_base_url()
        logger.info(
            "[Gemini] Creating client (has_api_key=%s, base_url=%s, instrumented=%s)",
            bool(api_key), base_url, options.http_client is not None,
        )
        return genai.Client(
            api_key=api_key,
            http_options=genai_types.HttpOptions(
                base_url=base_url,
                api_version=API_VERSION,
                httpx_async_client=options.http_client,
            ),
        )

    async def execute(self, client: genai.Client, request: dict) -> dict:
        model, contents, config = sdk_arguments(request)
        logger.info("[Gemini] Executing generateContent (model=%s, contents=%d)", model, len(contents))
        response = await client.aio.models.generate_content(model=model, contents=contents, config=config)
        return to_wire(response)

    async def execute_stream(self, client: genai.Client, request: dict) -> AsyncIterator[dict]:
        model, contents, config = sdk_arguments(request)
        logger.info("[Gemini] Executing streamGenerateContent (model=%s, contents=%d)", model, len(contents))
        stream = await client.aio.models.generate_content_stream(model=model, contents=contents, config=config)
        try:
            async for chunk in stream:
                yield to_wire(chunk)
        finally:
            await stream.aclose()

    def extract_error_message(self, error: Any) -> str:
        return extract_error_message(error)


gemini_provider = GeminiAdapterFactory()
