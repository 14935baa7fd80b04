"""Token price lookup used for compression savings and cost estimates."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Protocol

from llmgw.llm.types import UsageView


@dataclass
class TokenPrice:
    model: str
    price_per_million_input: float
    price_per_million_output: float = 0.0


class TokenPriceLookup(Protocol):
    async def find_by_model(self, model: str) -> TokenPrice | None: ...


class StaticTokenPriceLookup:
    """Price table held in memory, typically built from settings."""

    def __init__(self, prices: Mapping[str, TokenPrice] | None = None):
        self._prices = dict(prices or {})

    @classmethod
    def from_config(cls, table: Mapping[str, Mapping[str, float]]) -> StaticTokenPriceLookup:
        return cls({
            model: TokenPrice(
                model=model,
                price_per_million_input=float(entry.get("price_per_million_input", 0)),
                price_per_million_output=float(entry.get("price_per_million_output", 0)),
            )
            for model, entry in table.items()
        })

    async def find_by_model(self, model: str) -> TokenPrice | None:
        return self._prices.get(model)


# Installed at startup; an empty table means "no price known".
_lookup: TokenPriceLookup = StaticTokenPriceLookup()


def set_token_price_lookup(lookup: TokenPriceLookup) -> None:
    """Set the price lookup used by compression and bookkeeping."""
    global _lookup
    _lookup = lookup


def get_token_price_lookup() -> TokenPriceLookup:
    return _lookup


def estimate_cost(price: TokenPrice, usage: UsageView) -> float:
    return (
        usage.input_tokens * price.price_per_million_input
        + usage.output_tokens * price.price_per_million_output
    ) / 1_000_000
