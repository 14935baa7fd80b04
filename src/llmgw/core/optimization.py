"""Cost optimization rules: route cheap requests to a cheaper model."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from llmgw.core.config import OptimizationRuleConfig
from llmgw.core.json_utils import join_text_parts

logger = logging.getLogger(__name__)

CONTENT_LENGTH = "content_length"
TOOL_PRESENCE = "tool_presence"
RULE_TYPES = (CONTENT_LENGTH, TOOL_PRESENCE)


@dataclass
class OptimizationRule:
    rule_type: str
    target_model: str
    conditions: dict[str, Any] = field(default_factory=dict)
    provider: str | None = None
    priority: int = 0
    enabled: bool = True

    @classmethod
    def from_config(cls, config: OptimizationRuleConfig) -> OptimizationRule:
        if config.rule_type not in RULE_TYPES:
            raise ValueError(f"Unknown optimization rule type: {config.rule_type}")
        if config.rule_type == CONTENT_LENGTH:
            conditions = {"max_length": config.max_length or 0}
        else:
            conditions = {"has_tools": bool(config.has_tools)}
        return cls(
            rule_type=config.rule_type,
            target_model=config.target_model,
            conditions=conditions,
            provider=config.provider,
            priority=config.priority,
            enabled=config.enabled,
        )

    def matches(self, content_length: int, has_tools: bool) -> bool:
        if self.rule_type == CONTENT_LENGTH:
            return content_length <= self.conditions.get("max_length", 0)
        if self.rule_type == TOOL_PRESENCE:
            return has_tools == self.conditions.get("has_tools")
        return False


def rules_for_provider(rules: Iterable[OptimizationRule], provider: str) -> list[OptimizationRule]:
    """Enabled rules that apply to ``provider``, lowest priority value first."""
    selected = [
        rule for rule in rules
        if rule.enabled and (rule.provider is None or rule.provider == provider)
    ]
    return sorted(selected, key=lambda rule: rule.priority)


def evaluate_rules(
    rules: Iterable[OptimizationRule],
    content_length: int,
    has_tools: bool,
) -> str | None:
    """Target model of the first enabled matching rule, or None."""
    for rule in sorted(rules, key=lambda rule: rule.priority):
        if not rule.enabled:
            continue
        if rule.matches(content_length, has_tools):
            logger.debug(
                "Optimization rule %s matched (content_length=%d, has_tools=%s) -> %s",
                rule.rule_type, content_length, has_tools, rule.target_model,
            )
            return rule.target_model
    return None


def content_length(messages: list[Any]) -> int:
    """Characters of text across native messages of any provider shape."""
    total = 0
    for message in messages:
        if not isinstance(message, dict):
            continue
        text = join_text_parts(message.get("content"))
        if text:
            total += len(text)
        # Gemini contents keep text in parts
        for part in message.get("parts") or []:
            if isinstance(part, dict) and isinstance(part.get("text"), str):
                total += len(part["text"])
    return total
