"""Tool invocation policies applied to tool calls returned by the model."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Protocol

from llmgw.core.config import PolicyConfig
from llmgw.llm.types import CommonToolCall

logger = logging.getLogger(__name__)


@dataclass
class PolicyDecision:
    allowed: bool
    refusal_message: str = ""
    content_message: str = ""


class ToolInvocationPolicy(Protocol):
    async def evaluate(self, tool_calls: list[CommonToolCall]) -> PolicyDecision: ...


class AllowAllPolicy:
    async def evaluate(self, tool_calls: list[CommonToolCall]) -> PolicyDecision:
        return PolicyDecision(allowed=True)


class BlockedToolsPolicy:
    """Refuses any response that calls one of the blocked tool names."""

    def __init__(self, blocked_names: Iterable[str], template: str = "Tool call '{name}' was blocked by policy."):
        self.blocked_names = set(blocked_names)
        self.template = template

    async def evaluate(self, tool_calls: list[CommonToolCall]) -> PolicyDecision:
        for tool_call in tool_calls:
            if tool_call.name in self.blocked_names:
                message = self.template.format(name=tool_call.name)
                logger.warning("Blocked tool call %s (%s)", tool_call.name, tool_call.id)
                return PolicyDecision(
                    allowed=False,
                    refusal_message=message,
                    content_message=message,
                )
        return PolicyDecision(allowed=True)


def policy_from_config(config: PolicyConfig) -> ToolInvocationPolicy:
    if config.blocked_tools:
        return BlockedToolsPolicy(config.blocked_tools, config.refusal_template)
    return AllowAllPolicy()
