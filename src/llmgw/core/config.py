"""Configuration management using Pydantic Settings."""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


class ProviderConfig(BaseModel):
    base_url: str
    api_key: str = ""
    api_key_env: str = ""

    def resolve_api_key(self) -> str:
        """Configured key first, then the provider's conventional env var."""
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.environ.get(self.api_key_env, "")
        return ""


class ProvidersConfig(BaseModel):
    openai: ProviderConfig = ProviderConfig(
        base_url="https://api.openai.com/v1", api_key_env="OPENAI_API_KEY"
    )
    anthropic: ProviderConfig = ProviderConfig(
        base_url="https://api.anthropic.com", api_key_env="ANTHROPIC_API_KEY"
    )
    gemini: ProviderConfig = ProviderConfig(
        base_url="https://generativelanguage.googleapis.com", api_key_env="GEMINI_API_KEY"
    )
    minimax: ProviderConfig = ProviderConfig(
        base_url="https://api.minimax.io/v1", api_key_env="MINIMAX_API_KEY"
    )
    vllm: ProviderConfig = ProviderConfig(
        base_url="http://localhost:8000/v1", api_key_env="VLLM_API_KEY"
    )
    ollama: ProviderConfig = ProviderConfig(
        base_url="http://localhost:11434/v1", api_key_env="OLLAMA_API_KEY"
    )

    def get(self, provider: str) -> ProviderConfig | None:
        value = getattr(self, provider, None)
        return value if isinstance(value, ProviderConfig) else None


class CompressionConfig(BaseModel):
    toon_enabled: bool = False


class PolicyConfig(BaseModel):
    blocked_tools: list[str] = []
    refusal_template: str = "Tool call '{name}' was blocked by policy."


class OptimizationRuleConfig(BaseModel):
    rule_type: str  # "content_length" | "tool_presence"
    target_model: str
    provider: str | None = None
    priority: int = 0
    enabled: bool = True
    max_length: int | None = None
    has_tools: bool | None = None


class TokenPriceConfig(BaseModel):
    price_per_million_input: float = 0.0
    price_per_million_output: float = 0.0


class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 9000


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="LLMGW_",
        env_nested_delimiter="__",
    )

    providers: ProvidersConfig = ProvidersConfig()
    compression: CompressionConfig = CompressionConfig()
    policy: PolicyConfig = PolicyConfig()
    optimization_rules: list[OptimizationRuleConfig] = []
    token_prices: dict[str, TokenPriceConfig] = {}
    server: ServerConfig = ServerConfig()
    models_cache_ttl_seconds: int = 7200
    log_level: str = "INFO"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Constructor values carry the YAML file, which env vars override
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @classmethod
    def load(cls, config_path: Path | None = None) -> Settings:
        """Load settings from YAML file, then overlay env vars."""
        data: dict = {}
        if config_path and config_path.exists():
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        return cls(**data)


def get_project_root() -> Path:
    """Walk up from CWD to find pyproject.toml, or fall back to CWD."""
    current = Path.cwd()
    for parent in [current, *current.parents]:
        if (parent / "pyproject.toml").exists():
            return parent
    return current


def load_settings(config_path: Path | None = None) -> Settings:
    """Load .env, then settings from the given file or the project's config/settings.yaml."""
    load_dotenv(get_project_root() / ".env")
    return Settings.load(config_path or get_project_root() / "config" / "settings.yaml")


_settings: Settings | None = None


def get_settings() -> Settings:
    """Process-wide settings, loaded on first use."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def set_settings(settings: Settings | None) -> None:
    """Replace the process-wide settings (``None`` reloads on next access)."""
    global _settings
    _settings = settings
