"""Case-insensitive access to inbound request headers."""

from __future__ import annotations

from typing import Mapping


def get_header(headers: Mapping[str, str] | None, name: str) -> str | None:
    if not headers:
        return None
    name = name.lower()
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def bearer_token(headers: Mapping[str, str] | None) -> str | None:
    """Value of ``Authorization`` without the ``Bearer`` scheme."""
    value = get_header(headers, "authorization")
    if not value:
        return None
    if value[:7].lower() == "bearer ":
        value = value[7:].strip()
    return value or None
