"""Per-request interaction records and where they go."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from llmgw.llm import pricing
from llmgw.llm.types import ToonCompressionResult, UsageView

logger = logging.getLogger(__name__)


@dataclass
class Interaction:
    provider: str
    interaction_type: str
    model: str
    request: dict
    processed_request: dict
    response: dict | None = None
    usage: UsageView = field(default_factory=UsageView)
    toon: ToonCompressionResult = field(default_factory=ToonCompressionResult)
    time_to_first_token_ms: float | None = None
    duration_ms: float | None = None
    agent_id: str | None = None
    refused: bool = False
    error: str | None = None


class InteractionRecorder(Protocol):
    async def record(self, interaction: Interaction) -> None: ...


class LoggingInteractionRecorder:
    """Writes one summary line per interaction to the log."""

    async def record(self, interaction: Interaction) -> None:
        cost: Any = None
        price = await pricing.get_token_price_lookup().find_by_model(interaction.model)
        if price is not None:
            cost = round(pricing.estimate_cost(price, interaction.usage), 6)

        logger.info(
            "%s model=%s agent=%s in=%d out=%d cost=%s ttft_ms=%s duration_ms=%s "
            "toon_before=%s toon_after=%s refused=%s error=%s",
            interaction.interaction_type,
            interaction.model,
            interaction.agent_id,
            interaction.usage.input_tokens,
            interaction.usage.output_tokens,
            cost,
            _ms(interaction.time_to_first_token_ms),
            _ms(interaction.duration_ms),
            interaction.toon.tokens_before,
            interaction.toon.tokens_after,
            interaction.refused,
            interaction.error,
        )


def _ms(value: float | None) -> str | None:
    return None if value is None else f"{value:.0f}"
