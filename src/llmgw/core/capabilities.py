"""Best-effort model capability tagging from model id substrings.

The table below is data: add a ``Matcher`` to extend a capability.
"""

from __future__ import annotations

from dataclasses import dataclass

VISION = "vision"
REASONING = "reasoning"
IMAGE_GENERATION = "image_generation"
FAST = "fast"
DOCS = "docs"


@dataclass(frozen=True)
class Matcher:
    """Matches a lowercased model id.

    ``contains`` and ``prefix`` are alternatives (any hit is enough when
    either is given); every ``all_of`` group needs at least one hit; any
    ``excludes`` hit rejects.
    """

    contains: tuple[str, ...] = ()
    prefix: tuple[str, ...] = ()
    all_of: tuple[tuple[str, ...], ...] = ()
    excludes: tuple[str, ...] = ()

    def matches(self, model_id: str) -> bool:
        if any(word in model_id for word in self.excludes):
            return False
        if self.contains or self.prefix:
            hit = any(word in model_id for word in self.contains) or any(
                model_id.startswith(word) for word in self.prefix
            )
            if not hit:
                return False
        return all(any(word in model_id for word in group) for group in self.all_of)


_CLAUDE_MULTIMODAL = Matcher(all_of=(("claude",), ("3", "4", "5", "v3", "v4")))

CAPABILITY_TABLE: list[tuple[str, list[Matcher]]] = [
    (VISION, [
        Matcher(contains=(
            "gpt-4o", "gpt-4.1", "gpt-4-turbo", "gpt-4-vision", "gpt-5", "o4", "omni-moderation",
            "gemini-1.5", "gemini-2", "gemini-flash", "gemini-1.0-pro-vision",
            "robotics", "computer-use", "computer use", "gemma",
            "llava", "vision", "pixtral",
        )),
        _CLAUDE_MULTIMODAL,
    ]),
    (REASONING, [
        Matcher(contains=(
            "o1", "o4", "gpt-4o", "gpt-4.1", "gpt-5", "deepseek-r1",
            "gemini-1.5-pro", "deep-research", "deep research", "reasoning",
        )),
        Matcher(prefix=("o3",)),
        Matcher(all_of=(
            ("claude",),
            ("opus", "sonnet", "4", "5"),
            ("3.5", "3-5", "3.7", "3-7", "4", "5", "opus"),
        )),
        Matcher(all_of=(("gemini-2",), ("pro",))),
    ]),
    (IMAGE_GENERATION, [
        Matcher(contains=(
            "dall-e", "gpt-5", "gemini-1.5", "gemini-2",
            "stable-diffusion", "flux", "image-gen", "imagen",
        )),
        Matcher(contains=("gpt-4o",), excludes=("mini",)),
        Matcher(contains=("gpt-4.1",), excludes=("mini", "nano")),
    ]),
    (FAST, [
        Matcher(contains=(
            "gpt-4o-mini", "gpt-4.1-mini", "gpt-4.1-nano", "gpt-3.5",
            "flash", "lite", "gemma", "haiku",
            "llama-3-70b", "llama-3-8b", "mixtral", "groq",
            "turbo", "fast", "o1-mini", "o4-mini", "realtime",
            "davinci", "babbage", "banana", "nano",
        )),
    ]),
    (DOCS, [
        Matcher(contains=(
            "gemini", "gemma", "banana", "robotics", "computer-use", "computer use",
            "deep-research", "deep research",
            "gpt-4o", "gpt-4.1", "gpt-5", "gpt-4-turbo", "o4",
        )),
        _CLAUDE_MULTIMODAL,
    ]),
]


def resolve_model_capabilities(provider: str, model_id: str) -> list[str]:
    """Capabilities in table order; the provider does not change the result today."""
    lower_id = model_id.lower()
    return [
        capability
        for capability, matchers in CAPABILITY_TABLE
        if any(matcher.matches(lower_id) for matcher in matchers)
    ]
