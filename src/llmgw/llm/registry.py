"""Provider lookup by name."""

from __future__ import annotations

from llmgw.llm.anthropic_provider import anthropic_provider
from llmgw.llm.base import LLMProvider
from llmgw.llm.gemini_provider import gemini_provider
from llmgw.llm.minimax_provider import minimax_provider
from llmgw.llm.openai_provider import ollama_provider, openai_provider, vllm_provider

_providers: dict[str, LLMProvider] = {}


def register_provider(factory: LLMProvider) -> None:
    """Register (or replace) the factory serving ``factory.provider``."""
    _providers[factory.provider] = factory


def get_provider(name: str) -> LLMProvider:
    try:
        return _providers[name]
    except KeyError:
        raise ValueError(f"Unknown provider: {name}") from None


def list_providers() -> list[str]:
    return sorted(_providers)


for _factory in (
    openai_provider,
    anthropic_provider,
    gemini_provider,
    minimax_provider,
    vllm_provider,
    ollama_provider,
):
    register_provider(_factory)
