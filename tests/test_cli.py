"""Tests for the command-line interface."""

from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from llmgw.core.model_catalog import ModelInfo
from llmgw.interfaces.cli import cli


@pytest.fixture
def config_args(tmp_path):
    config = tmp_path / "settings.yaml"
    config.write_text("log_level: WARNING\n")
    return ["--config", str(config)]


def test_providers(config_args):
    result = CliRunner().invoke(cli, [*config_args, "providers"])
    assert result.exit_code == 0
    assert result.output.split() == ["anthropic", "gemini", "minimax", "ollama", "openai", "vllm"]


def test_models(config_args):
    models = [ModelInfo("gpt-4o", "gpt-4o", "openai", ["vision", "docs"])]
    with patch("llmgw.interfaces.cli.ModelCatalog.list_models", AsyncMock(return_value=models)) as list_models:
        result = CliRunner().invoke(cli, [*config_args, "models", "--provider", "openai"])

    assert result.exit_code == 0
    assert "gpt-4o" in result.output
    assert "vision, docs" in result.output
    list_models.assert_awaited_once_with("openai")


def test_models_empty(config_args):
    with patch("llmgw.interfaces.cli.ModelCatalog.list_models", AsyncMock(return_value=[])):
        result = CliRunner().invoke(cli, [*config_args, "models"])
    assert "No models found" in result.output


def test_test_key_failure(config_args):
    check = AsyncMock(side_effect=RuntimeError("Failed to fetch OpenAI models: 401"))
    with patch("llmgw.interfaces.cli.ModelCatalog.test_provider_api_key", check):
        result = CliRunner().invoke(cli, [*config_args, "test-key", "openai", "sk-bad"])

    assert result.exit_code == 1
    assert "Failed to fetch OpenAI models: 401" in result.output


def test_test_key_success(config_args):
    with patch("llmgw.interfaces.cli.ModelCatalog.test_provider_api_key", AsyncMock(return_value=None)):
        result = CliRunner().invoke(cli, [*config_args, "test-key", "openai", "sk-good"])

    assert result.exit_code == 0
    assert "API key for openai is valid." in result.output
