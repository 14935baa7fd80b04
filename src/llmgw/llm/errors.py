"""Upstream error normalization shared by all providers."""

from __future__ import annotations

from typing import Any

from llmgw.core.json_utils import dumps_compact, get_path, try_parse_json

DEFAULT_ERROR_MESSAGE = "Internal server error"


def extract_error_message(error: Any) -> str:
    """Collapse provider error envelopes into one plain, non-empty string.

    Looks in order at ``error.message`` (OpenAI, Anthropic, Gemini bodies),
    a top-level ``message``, the ``body`` or ``details`` an SDK exception
    carries, and finally the exception's own text. Unrecognized dicts are
    returned as compact JSON.
    """
    if isinstance(error, str):
        parsed = try_parse_json(error)
        if parsed.ok:
            return extract_error_message(parsed.value)
        return error or DEFAULT_ERROR_MESSAGE

    for path in ("error.message", "body.error.message", "body.message", "details.error.message"):
        message = get_path(error, path)
        if isinstance(message, str) and message:
            return message

    if isinstance(error, dict):
        for key in ("message", "error", "detail"):
            message = error.get(key)
            if isinstance(message, str) and message:
                return message
        return dumps_compact(error) if error else DEFAULT_ERROR_MESSAGE

    if isinstance(error, BaseException):
        message = str(error)
        if message:
            return message

    return DEFAULT_ERROR_MESSAGE


def error_status_code(error: Any, default: int = 500) -> int:
    """Status code carried by SDK/httpx exceptions, else ``default``."""
    status = getattr(error, "status_code", None)
    if isinstance(status, int):
        return status
    response = getattr(error, "response", None)
    status = getattr(response, "status_code", None)
    if isinstance(status, int):
        return status
    # google-genai errors carry the HTTP status as ``code``
    status = getattr(error, "code", None)
    if isinstance(status, int) and 400 <= status < 600:
        return status
    return default
