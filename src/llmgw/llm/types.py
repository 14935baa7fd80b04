"""Canonical data types shared across provider adapters."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

import httpx

ROLES = ("system", "user", "assistant", "tool", "developer", "function")


@dataclass
class CommonToolResult:
    id: str
    name: str
    content: Any  # parsed JSON when possible, raw string otherwise
    is_error: bool = False


@dataclass
class CommonMessage:
    role: str  # one of ROLES
    tool_calls: list[CommonToolResult] | None = None


@dataclass
class CommonToolCall:
    id: str
    name: str
    arguments: dict = field(default_factory=dict)


@dataclass
class CommonMcpToolDefinition:
    name: str
    description: str | None = None
    input_schema: dict = field(default_factory=dict)


@dataclass
class UsageView:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class AccumulatedToolCall:
    id: str = ""
    name: str = ""
    arguments: str = ""  # raw JSON fragments joined in arrival order


@dataclass
class StreamTiming:
    start_time: float = field(default_factory=time.time)
    first_chunk_time: float | None = None

    @property
    def time_to_first_token_ms(self) -> float | None:
        if self.first_chunk_time is None:
            return None
        return (self.first_chunk_time - self.start_time) * 1000


@dataclass
class StreamAccumulatorState:
    response_id: str = ""
    model: str = ""
    created: int | None = None
    text: str = ""
    reasoning: str = ""
    refusal: str = ""
    tool_calls: list[AccumulatedToolCall] = field(default_factory=list)
    raw_tool_call_events: list[Any] = field(default_factory=list)
    usage: UsageView | None = None
    stop_reason: str | None = None
    timing: StreamTiming = field(default_factory=StreamTiming)


@dataclass
class ChunkProcessingResult:
    sse_data: str | None = None
    is_tool_call_chunk: bool = False
    is_final: bool = False


@dataclass
class ToonCompressionResult:
    tokens_before: int | None = None
    tokens_after: int | None = None
    cost_savings: float | None = None


@dataclass
class CreateClientOptions:
    base_url: str | None = None
    http_client: httpx.AsyncClient | None = None
    agent_id: str | None = None
