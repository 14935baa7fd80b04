"""Best-effort JSON helpers shared by every provider adapter."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any


@dataclass
class ParseResult:
    ok: bool
    value: Any = None
    raw: Any = None


def try_parse_json(value: Any) -> ParseResult:
    """Parse a JSON string, or report the raw value back untouched.

    Non-string input is never parsed: it is returned as ``ok=False`` with the
    value in ``raw`` so callers keep a single "parse or fall back" decision.
    """
    if not isinstance(value, (str, bytes, bytearray)):
        return ParseResult(ok=False, raw=value)
    try:
        return ParseResult(ok=True, value=json.loads(value))
    except (json.JSONDecodeError, UnicodeDecodeError, ValueError):
        return ParseResult(ok=False, raw=value)


def parse_arguments(value: Any) -> dict:
    """Materialize tool-call arguments as a dict; anything unusable becomes {}."""
    if isinstance(value, dict):
        return value
    result = try_parse_json(value)
    if result.ok and isinstance(result.value, dict):
        return result.value
    return {}


def parse_or_raw(value: Any) -> Any:
    """Return parsed JSON when the value is a JSON string, otherwise the value itself."""
    result = try_parse_json(value)
    return result.value if result.ok else value


def _text_blocks(value: Any) -> list[str] | None:
    if not isinstance(value, list) or not value:
        return None
    texts = []
    for block in value:
        if not isinstance(block, dict) or block.get("type") != "text":
            return None
        text = block.get("text")
        if not isinstance(text, str):
            return None
        texts.append(text)
    return texts


def unwrap_tool_content(content: str) -> str:
    """Strip MCP-style content envelopes from a tool result string.

    Handles ``[{"type": "text", "text": ...}]`` and ``{"content": [...]}``
    envelopes; anything else is returned unchanged.
    """
    result = try_parse_json(content)
    if not result.ok:
        return content

    payload = result.value
    if isinstance(payload, dict) and set(payload) <= {"content", "isError", "is_error"}:
        payload = payload.get("content")

    texts = _text_blocks(payload)
    if texts is None:
        return content
    return "\n".join(texts)


def join_text_parts(content: Any) -> str | None:
    """Join a string or a list of text parts into one string."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            part.get("text", "")
            for part in content
            if isinstance(part, dict) and part.get("type") == "text"
        ]
        return "".join(parts)
    return None


_MISSING = object()


def get_path(obj: Any, path: str, default: Any = None) -> Any:
    """Read a dotted path through dicts and attributes (``"error.message"``)."""
    current = obj
    for key in path.split("."):
        if isinstance(current, dict):
            current = current.get(key, _MISSING)
        else:
            current = getattr(current, key, _MISSING)
        if current is _MISSING or current is None:
            return default
    return current


def dumps_compact(value: Any) -> str:
    """Serialize the way JavaScript's JSON.stringify does: no spaces, raw unicode."""
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
