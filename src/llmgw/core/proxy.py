"""Provider-agnostic proxy handler.

One ``ProxyHandler.handle`` call serves one inbound request: it wraps the
body in the provider's request adapter, applies model optimization and
TOON compression, calls the upstream, checks returned tool calls against
the tool invocation policy and hands back either a JSON body or an SSE
stream. Bookkeeping runs in background tasks.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Mapping

import httpx

from llmgw.core.config import Settings, get_settings
from llmgw.core.interactions import Interaction, InteractionRecorder, LoggingInteractionRecorder
from llmgw.core.json_utils import get_path, parse_arguments
from llmgw.core.optimization import OptimizationRule, content_length, evaluate_rules, rules_for_provider
from llmgw.core.policy import ToolInvocationPolicy, policy_from_config
from llmgw.llm import sse
from llmgw.llm.base import LLMProvider, RequestAdapter, StreamAdapter
from llmgw.llm.errors import error_status_code
from llmgw.llm.metrics import observable_http_client, observe_time_to_first_token
from llmgw.llm.registry import get_provider
from llmgw.llm.types import CommonToolCall, CreateClientOptions, ToonCompressionResult

logger = logging.getLogger(__name__)


@dataclass
class ProxyResponse:
    status_code: int = 200
    body: dict | None = None
    stream: AsyncIterator[str] | None = None
    headers: dict[str, str] = field(default_factory=dict)


def error_body(message: str, error_type: str = "api_error") -> dict:
    return {"error": {"message": message, "type": error_type}}


def _error_type(error: Any) -> str:
    error_type = get_path(error, "body.error.type") or get_path(error, "body.type")
    return error_type if isinstance(error_type, str) and error_type != "error" else "api_error"


class ProxyHandler:
    def __init__(
        self,
        settings: Settings | None = None,
        policy: ToolInvocationPolicy | None = None,
        recorder: InteractionRecorder | None = None,
        rules: list[OptimizationRule] | None = None,
    ):
        self.settings = settings or get_settings()
        self.policy = policy or policy_from_config(self.settings.policy)
        self.recorder = recorder or LoggingInteractionRecorder()
        if rules is None:
            rules = [OptimizationRule.from_config(rule) for rule in self.settings.optimization_rules]
        self.rules = rules
        self._background: set[asyncio.Task] = set()

    # -- request preparation -----------------------------------------------

    def resolve_api_key(self, provider: LLMProvider, headers: Mapping[str, str]) -> str | None:
        """Caller's key first, then the configured one."""
        api_key = provider.extract_api_key(headers)
        if api_key:
            return api_key
        config = self.settings.providers.get(provider.provider)
        return (config.resolve_api_key() if config else "") or None

    def resolve_base_url(self, provider: LLMProvider) -> str | None:
        config = self.settings.providers.get(provider.provider)
        return config.base_url if config else provider.get_base_url()

    def apply_optimization_rules(self, provider: LLMProvider, adapter: RequestAdapter) -> str | None:
        rules = rules_for_provider(self.rules, provider.provider)
        if not rules:
            return None
        target = evaluate_rules(
            rules,
            content_length(adapter.get_provider_messages()),
            adapter.has_tools(),
        )
        if target and target != adapter.get_model():
            logger.info(
                "[%s] Optimization rule switched model %s -> %s",
                provider.provider, adapter.get_model(), target,
            )
            adapter.set_model(target)
        return target

    async def prepare(self, provider: LLMProvider, adapter: RequestAdapter) -> ToonCompressionResult:
        self.apply_optimization_rules(provider, adapter)
        if self.settings.compression.toon_enabled:
            return await adapter.apply_toon_compression(adapter.get_model())
        return ToonCompressionResult()

    # -- entry point -------------------------------------------------------

    async def handle(
        self,
        provider_name: str,
        body: dict,
        headers: Mapping[str, str],
        agent_id: str | None = None,
    ) -> ProxyResponse:
        provider = get_provider(provider_name)
        adapter = provider.create_request_adapter(body)
        toon = await self.prepare(provider, adapter)

        http_client = observable_http_client(provider.provider, agent_id)
        try:
            client = provider.create_client(
                self.resolve_api_key(provider, headers),
                CreateClientOptions(
                    base_url=self.resolve_base_url(provider),
                    http_client=http_client,
                    agent_id=agent_id,
                ),
            )
        except Exception as error:
            logger.exception("[%s] Could not create upstream client", provider.provider)
            await http_client.aclose()
            return ProxyResponse(
                status_code=error_status_code(error),
                body=error_body(provider.extract_error_message(error)),
            )
        request = adapter.to_provider_request()
        interaction = Interaction(
            provider=provider.provider,
            interaction_type=provider.interaction_type,
            model=adapter.get_model(),
            request=adapter.get_original_request(),
            processed_request=request,
            toon=toon,
            agent_id=agent_id,
        )
        logger.info(
            "[%s] %s request (model=%s, streaming=%s, agent=%s)",
            provider.provider, provider.get_span_name(), interaction.model,
            adapter.is_streaming(), agent_id,
        )

        if adapter.is_streaming():
            stream_adapter = provider.create_stream_adapter()
            return ProxyResponse(
                stream=self._stream(provider, client, http_client, request, stream_adapter, interaction),
                headers=stream_adapter.get_sse_headers(),
            )

        try:
            return await self._complete(provider, client, request, interaction)
        finally:
            await http_client.aclose()

    # -- non-streaming -----------------------------------------------------

    async def _complete(
        self,
        provider: LLMProvider,
        client: Any,
        request: dict,
        interaction: Interaction,
    ) -> ProxyResponse:
        started = time.monotonic()
        try:
            response = await provider.execute(client, request)
        except Exception as error:
            logger.exception("[%s] Upstream request failed", provider.provider)
            message = provider.extract_error_message(error)
            interaction.error = message
            interaction.duration_ms = (time.monotonic() - started) * 1000
            self._record(interaction)
            return ProxyResponse(
                status_code=error_status_code(error),
                body=error_body(message, _error_type(error)),
            )

        response_adapter = provider.create_response_adapter(response)
        body = response
        if response_adapter.has_tool_calls():
            decision = await self.policy.evaluate(response_adapter.get_tool_calls())
            if not decision.allowed:
                body = response_adapter.to_refusal_response(
                    decision.refusal_message, decision.content_message
                )
                interaction.refused = True

        interaction.response = body
        interaction.usage = response_adapter.get_usage()
        interaction.duration_ms = (time.monotonic() - started) * 1000
        self._record(interaction)
        return ProxyResponse(body=body)

    # -- streaming ---------------------------------------------------------

    async def _stream(
        self,
        provider: LLMProvider,
        client: Any,
        http_client: httpx.AsyncClient,
        request: dict,
        stream_adapter: StreamAdapter,
        interaction: Interaction,
    ) -> AsyncIterator[str]:
        started = time.monotonic()
        upstream = provider.execute_stream(client, request)
        try:
            async for chunk in upstream:
                result = stream_adapter.process_chunk(chunk)
                if result.sse_data:
                    yield result.sse_data
                if result.is_final:
                    logger.debug("[%s] Final chunk received", provider.provider)

            async for frame in self._release_tool_calls(stream_adapter, interaction):
                yield frame
            yield stream_adapter.format_end_sse()
        except Exception as error:
            logger.exception("[%s] Upstream stream failed", provider.provider)
            message = provider.extract_error_message(error)
            interaction.error = message
            yield sse.error_frame(message, _error_type(error))
            yield stream_adapter.format_end_sse()
        finally:
            await upstream.aclose()
            await http_client.aclose()

            state = stream_adapter.state
            interaction.time_to_first_token_ms = state.timing.time_to_first_token_ms
            observe_time_to_first_token(provider.provider, interaction.time_to_first_token_ms)
            interaction.duration_ms = (time.monotonic() - started) * 1000
            interaction.response = stream_adapter.to_provider_response()
            if state.usage is not None:
                interaction.usage = state.usage
            self._record(interaction)

    async def _release_tool_calls(
        self,
        stream_adapter: StreamAdapter,
        interaction: Interaction,
    ) -> AsyncIterator[str]:
        """Replay held tool-call events, or a refusal text if policy blocks them."""
        state = stream_adapter.state
        if not state.tool_calls:
            return

        tool_calls = [
            CommonToolCall(id=tc.id, name=tc.name, arguments=parse_arguments(tc.arguments))
            for tc in state.tool_calls
        ]
        decision = await self.policy.evaluate(tool_calls)
        if decision.allowed:
            for frame in stream_adapter.get_raw_tool_call_events():
                yield frame
            return

        interaction.refused = True
        # The turn now ends with text, so the end framing uses the plain stop reason
        state.stop_reason = None
        for frame in stream_adapter.format_complete_text_sse(decision.content_message):
            yield frame

    # -- bookkeeping -------------------------------------------------------

    def _record(self, interaction: Interaction) -> None:
        task = asyncio.create_task(self._safe_record(interaction))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _safe_record(self, interaction: Interaction) -> None:
        try:
            await self.recorder.record(interaction)
        except Exception:
            logger.exception("Failed to record %s interaction", interaction.interaction_type)

    async def drain(self) -> None:
        """Wait for pending bookkeeping tasks."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
