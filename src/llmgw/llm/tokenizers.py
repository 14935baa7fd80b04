"""Provider tokenizers used to measure compression savings."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import tiktoken

logger = logging.getLogger(__name__)

# Per-message framing overhead, following OpenAI's chat token accounting.
TOKENS_PER_MESSAGE = 3
TOKENS_PER_REPLY = 3

# Only OpenAI publishes its encodings; other providers get a cl100k estimate.
PROVIDER_ENCODINGS = {
    "openai": "o200k_base",
}
DEFAULT_ENCODING = "cl100k_base"

_encoder_cache: dict[str, Any] = {}


class Tokenizer(Protocol):
    def count_tokens(self, messages: list[dict]) -> int: ...


def _get_encoder(encoding_name: str) -> Any:
    if encoding_name not in _encoder_cache:
        _encoder_cache[encoding_name] = tiktoken.get_encoding(encoding_name)
    return _encoder_cache[encoding_name]


class TiktokenTokenizer:
    """Counts chat-message tokens with a tiktoken encoding."""

    def __init__(self, encoding_name: str = DEFAULT_ENCODING):
        self.encoding_name = encoding_name

    def count_tokens(self, messages: list[dict]) -> int:
        encoder = _get_encoder(self.encoding_name)
        total = 0
        for message in messages:
            total += TOKENS_PER_MESSAGE
            for value in message.values():
                if isinstance(value, str):
                    # Tool output may quote special tokens; count them as plain text
                    total += len(encoder.encode(value, disallowed_special=()))
        return total + TOKENS_PER_REPLY


def get_tokenizer(provider: str) -> Tokenizer:
    encoding_name = PROVIDER_ENCODINGS.get(provider, DEFAULT_ENCODING)
    logger.debug("Using %s tokenizer for provider %s", encoding_name, provider)
    return TiktokenTokenizer(encoding_name)
