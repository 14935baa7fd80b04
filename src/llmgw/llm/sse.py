"""Server-Sent Events framing for proxied streams."""

from __future__ import annotations

from typing import Any

from llmgw.core.json_utils import dumps_compact

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}

DONE_FRAME = "data: [DONE]\n\n"


def sse_headers() -> dict[str, str]:
    return dict(SSE_HEADERS)


def data_frame(payload: Any) -> str:
    """``data: <json>\\n\\n``"""
    return f"data: {dumps_compact(payload)}\n\n"


def event_frame(event: str, payload: Any) -> str:
    """``event: <name>\\ndata: <json>\\n\\n`` (Anthropic style)."""
    return f"event: {event}\ndata: {dumps_compact(payload)}\n\n"


def error_frame(message: str, error_type: str = "api_error") -> str:
    return data_frame({"error": {"message": message, "type": error_type}})

