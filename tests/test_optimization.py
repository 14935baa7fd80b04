"""Tests for cost optimization rules and tool invocation policies."""

import pytest

from llmgw.core.config import OptimizationRuleConfig, PolicyConfig
from llmgw.core.optimization import (
    OptimizationRule,
    content_length,
    evaluate_rules,
    rules_for_provider,
)
from llmgw.core.policy import AllowAllPolicy, BlockedToolsPolicy, policy_from_config
from llmgw.llm.types import CommonToolCall


def short_rule(max_length=100, target="gpt-4o-mini", **kwargs) -> OptimizationRule:
    return OptimizationRule("content_length", target, {"max_length": max_length}, **kwargs)


def tools_rule(has_tools=False, target="gpt-4o-mini", **kwargs) -> OptimizationRule:
    return OptimizationRule("tool_presence", target, {"has_tools": has_tools}, **kwargs)


class TestOptimizationRules:
    def test_content_length_matches_at_or_below_limit(self):
        assert evaluate_rules([short_rule(100)], 100, False) == "gpt-4o-mini"
        assert evaluate_rules([short_rule(100)], 101, False) is None

    def test_tool_presence(self):
        assert evaluate_rules([tools_rule(False)], 5000, False) == "gpt-4o-mini"
        assert evaluate_rules([tools_rule(False)], 5000, True) is None

    def test_lowest_priority_wins(self):
        rules = [
            short_rule(1000, target="second", priority=2),
            tools_rule(False, target="first", priority=1),
        ]
        assert evaluate_rules(rules, 10, False) == "first"

    def test_disabled_rules_are_skipped(self):
        rules = [short_rule(1000, target="off", enabled=False), tools_rule(False, target="on", priority=5)]
        assert evaluate_rules(rules, 10, False) == "on"

    def test_rules_for_provider(self):
        rules = [
            short_rule(provider="anthropic", target="claude-haiku-4-5"),
            short_rule(provider=None, target="any", priority=3),
            short_rule(provider="openai", target="gpt-4o-mini", priority=1),
            short_rule(provider="openai", target="off", enabled=False),
        ]
        assert [r.target_model for r in rules_for_provider(rules, "openai")] == ["gpt-4o-mini", "any"]

    def test_from_config(self):
        rule = OptimizationRule.from_config(OptimizationRuleConfig(
            rule_type="content_length", target_model="gpt-4o-mini", max_length=500, provider="openai", priority=2,
        ))
        assert rule.conditions == {"max_length": 500}
        assert (rule.provider, rule.priority, rule.enabled) == ("openai", 2, True)

        rule = OptimizationRule.from_config(OptimizationRuleConfig(
            rule_type="tool_presence", target_model="m", has_tools=True,
        ))
        assert rule.conditions == {"has_tools": True}

    def test_from_config_rejects_unknown_type(self):
        with pytest.raises(ValueError, match="Unknown optimization rule type"):
            OptimizationRule.from_config(OptimizationRuleConfig(rule_type="time_of_day", target_model="m"))

    def test_content_length_across_shapes(self):
        assert content_length([
            {"role": "user", "content": "hello"},
            {"role": "user", "content": [{"type": "text", "text": "abc"}, {"type": "image"}]},
            {"role": "user", "parts": [{"text": "gemini"}, {"inlineData": {}}]},
            {"role": "assistant", "content": None},
        ]) == 5 + 3 + 6


class TestPolicies:
    async def test_allow_all(self):
        decision = await AllowAllPolicy().evaluate([CommonToolCall("c1", "rm", {})])
        assert decision.allowed

    async def test_blocked_tool(self):
        policy = BlockedToolsPolicy(["delete_file"], "No {name}!")
        decision = await policy.evaluate([
            CommonToolCall("c1", "read_file", {}),
            CommonToolCall("c2", "delete_file", {"path": "/"}),
        ])
        assert not decision.allowed
        assert decision.refusal_message == "No delete_file!"
        assert decision.content_message == "No delete_file!"

    async def test_unblocked_tools_pass(self):
        decision = await BlockedToolsPolicy(["delete_file"]).evaluate([CommonToolCall("c1", "read_file", {})])
        assert decision.allowed

    def test_policy_from_config(self):
        assert isinstance(policy_from_config(PolicyConfig()), AllowAllPolicy)
        policy = policy_from_config(PolicyConfig(blocked_tools=["rm"]))
        assert isinstance(policy, BlockedToolsPolicy)
        assert policy.blocked_names == {"rm"}
