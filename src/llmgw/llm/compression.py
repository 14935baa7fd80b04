"""TOON compression of tool results, shared by all request adapters.

Adapters walk their own message shapes and hand each tool-result string to
``ToonCompressor.compress``; the compressor keeps the token totals and turns
them into a ``ToonCompressionResult`` once every message has been seen.
"""

from __future__ import annotations

import logging

import toon_format

from llmgw.core.json_utils import try_parse_json, unwrap_tool_content
from llmgw.llm import pricing
from llmgw.llm.tokenizers import get_tokenizer
from llmgw.llm.types import ToonCompressionResult

logger = logging.getLogger(__name__)


class ToonCompressor:
    """Compresses tool-result strings for one request and tallies savings."""

    def __init__(self, provider: str):
        self.provider = provider
        self._tokenizer = get_tokenizer(provider)
        self.tool_result_count = 0
        self.tokens_before = 0
        self.tokens_after = 0

    def compress(self, tool_call_id: str, content: str) -> str:
        """Return the TOON form of ``content``, or ``content`` itself if it is not JSON."""
        unwrapped = unwrap_tool_content(content)
        parsed = try_parse_json(unwrapped)
        if not parsed.ok:
            logger.info(
                "Skipping TOON conversion for %s (%s): content is not JSON: %s",
                tool_call_id, self.provider, content[:100],
            )
            return content

        compressed = toon_format.encode(parsed.value)
        before = self._tokenizer.count_tokens([{"role": "user", "content": unwrapped}])
        after = self._tokenizer.count_tokens([{"role": "user", "content": compressed}])

        self.tokens_before += before
        self.tokens_after += after
        self.tool_result_count += 1

        logger.info(
            "TOON compressed tool result %s (%s): %d -> %d chars, %d -> %d tokens",
            tool_call_id, self.provider, len(unwrapped), len(compressed), before, after,
        )
        logger.debug("TOON before: %s\nTOON after: %s", unwrapped, compressed)
        return compressed

    async def result(self, model: str) -> ToonCompressionResult:
        logger.info(
            "TOON conversion completed for %s: %d tool results compressed",
            self.provider, self.tool_result_count,
        )
        if self.tool_result_count == 0:
            return ToonCompressionResult()

        cost_savings = None
        tokens_saved = self.tokens_before - self.tokens_after
        if tokens_saved > 0:
            price = await pricing.get_token_price_lookup().find_by_model(model)
            if price is not None:
                cost_savings = tokens_saved * price.price_per_million_input / 1_000_000

        return ToonCompressionResult(
            tokens_before=self.tokens_before,
            tokens_after=self.tokens_after,
            cost_savings=cost_savings,
        )
