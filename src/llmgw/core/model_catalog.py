"""Model listing across configured providers.

Each provider's models endpoint is fetched with httpx, tagged with
capabilities, cached per provider and key, and merged. A provider that is
not configured or fails contributes no models.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import httpx

from llmgw.core.capabilities import resolve_model_capabilities
from llmgw.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
OPENAI_EXCLUDE_PATTERNS = (
    "instruct", "embedding", "tts", "whisper", "image", "audio", "sora", "dall-e",
)
CATALOG_PROVIDERS = ("anthropic", "openai", "gemini", "vllm", "ollama")
# Local servers that run without authentication
KEYLESS_PROVIDERS = ("vllm", "ollama")

_GEMINI_HINTS = ("gemini", "gemma", "banana", "robotics", "computer-use", "deep-research")


@dataclass
class ModelInfo:
    id: str
    display_name: str
    provider: str
    capabilities: list[str] = field(default_factory=list)
    created_at: str | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        if data["created_at"] is None:
            del data["created_at"]
        return data


def _iso_timestamp(created: Any) -> str | None:
    if not isinstance(created, (int, float)) or not created:
        return None
    moment = datetime.fromtimestamp(created, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def map_openai_model_to_model_info(model: dict) -> ModelInfo:
    """Map an entry of an OpenAI-style ``/models`` listing.

    Aggregator listings omit ``owned_by``; their provider is inferred from
    the model id, defaulting to OpenAI.
    """
    model_id = model["id"]
    provider = "openai"
    if "owned_by" not in model:
        if "claude" in model_id:
            provider = "anthropic"
        elif any(hint in model_id for hint in _GEMINI_HINTS):
            provider = "gemini"

    return ModelInfo(
        id=model_id,
        display_name=model.get("name") or model_id,
        provider=provider,
        capabilities=resolve_model_capabilities(provider, model_id),
        created_at=_iso_timestamp(model.get("created")),
    )


def _raise_for_status(response: httpx.Response, label: str) -> None:
    if response.is_success:
        return
    logger.error("Failed to fetch %s models (status=%s): %s", label, response.status_code, response.text[:500])
    raise RuntimeError(f"Failed to fetch {label} models: {response.status_code}")


class ModelCatalog:
    """Fetches, caches and aggregates models from every catalog provider."""

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        ttl_seconds: float | None = None,
    ):
        self.settings = settings or get_settings()
        self._http = http_client
        self.ttl_seconds = self.settings.models_cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._cache: dict[str, tuple[float, list[ModelInfo]]] = {}
        self._fetchers: dict[str, Callable[[str], Awaitable[list[ModelInfo]]]] = {
            "anthropic": self.fetch_anthropic_models,
            "openai": self.fetch_openai_models,
            "gemini": self.fetch_gemini_models,
            "vllm": self.fetch_vllm_models,
            "ollama": self.fetch_ollama_models,
        }

    def _base_url(self, provider: str) -> str:
        return self.settings.providers.get(provider).base_url.rstrip("/")

    async def _get(self, url: str, headers: dict | None = None, params: dict | None = None) -> httpx.Response:
        if self._http is not None:
            return await self._http.get(url, headers=headers, params=params)
        async with httpx.AsyncClient(timeout=30.0) as client:
            return await client.get(url, headers=headers, params=params)

    async def fetch_anthropic_models(self, api_key: str) -> list[ModelInfo]:
        response = await self._get(
            f"{self._base_url('anthropic')}/v1/models",
            headers={"x-api-key": api_key, "anthropic-version": ANTHROPIC_VERSION},
            params={"limit": 100},
        )
        _raise_for_status(response, "Anthropic")
        return [
            ModelInfo(
                id=model["id"],
                display_name=model.get("display_name") or model["id"],
                provider="anthropic",
                capabilities=resolve_model_capabilities("anthropic", model["id"]),
                created_at=model.get("created_at"),
            )
            for model in response.json().get("data", [])
        ]

    async def fetch_openai_models(self, api_key: str) -> list[ModelInfo]:
        response = await self._get(
            f"{self._base_url('openai')}/models",
            headers={"Authorization": f"Bearer {api_key}"},
        )
        _raise_for_status(response, "OpenAI")
        return [
            map_openai_model_to_model_info(model)
            for model in response.json().get("data", [])
            if not any(pattern in model["id"].lower() for pattern in OPENAI_EXCLUDE_PATTERNS)
        ]

    async def fetch_gemini_models(self, api_key: str) -> list[ModelInfo]:
        response = await self._get(
            f"{self._base_url('gemini')}/v1beta/models",
            params={"key": api_key, "pageSize": 100},
        )
        _raise_for_status(response, "Gemini")
        result = []
        for model in response.json().get("models", []):
            if "generateContent" not in (model.get("supportedGenerationMethods") or []):
                continue
            model_id = model["name"].replace("models/", "", 1)
            result.append(ModelInfo(
                id=model_id,
                display_name=model.get("displayName") or model_id,
                provider="gemini",
                capabilities=resolve_model_capabilities("gemini", model_id),
            ))
        return result

    async def _fetch_local_models(self, provider: str, label: str, api_key: str) -> list[ModelInfo]:
        response = await self._get(
            f"{self._base_url(provider)}/models",
            headers={"Authorization": f"Bearer {api_key or 'EMPTY'}"},
        )
        _raise_for_status(response, label)
        return [
            ModelInfo(
                id=model["id"],
                display_name=model["id"],
                provider=provider,
                capabilities=resolve_model_capabilities(provider, model["id"]),
                created_at=_iso_timestamp(model.get("created")),
            )
            for model in response.json().get("data", [])
        ]

    async def fetch_vllm_models(self, api_key: str) -> list[ModelInfo]:
        return await self._fetch_local_models("vllm", "vLLM", api_key)

    async def fetch_ollama_models(self, api_key: str) -> list[ModelInfo]:
        return await self._fetch_local_models("ollama", "Ollama", api_key)

    async def test_provider_api_key(self, provider: str, api_key: str) -> None:
        """Raise if ``api_key`` cannot list the provider's models."""
        if provider not in self._fetchers:
            raise ValueError(f"Model listing is not supported for provider: {provider}")
        await self._fetchers[provider](api_key)

    async def fetch_models_for_provider(self, provider: str) -> list[ModelInfo]:
        if provider not in self._fetchers:
            raise ValueError(f"Model listing is not supported for provider: {provider}")

        api_key = self.settings.providers.get(provider).resolve_api_key()
        if not api_key and provider not in KEYLESS_PROVIDERS:
            logger.debug("No API key available for provider %s", provider)
            return []

        cache_key = f"{provider}-{api_key[:6]}"
        cached = self._cache.get(cache_key)
        if cached and time.monotonic() - cached[0] < self.ttl_seconds:
            return cached[1]

        try:
            models = await self._fetchers[provider](api_key)
        except Exception:
            logger.exception("Error fetching models from provider %s", provider)
            return []

        self._cache[cache_key] = (time.monotonic(), models)
        return models

    async def list_models(self, provider: str | None = None) -> list[ModelInfo]:
        providers = [provider] if provider else list(CATALOG_PROVIDERS)
        results = await asyncio.gather(*(self.fetch_models_for_provider(p) for p in providers))

        seen: set[str] = set()
        models = []
        for model in (model for batch in results for model in batch):
            key = f"{model.provider}:{model.id}"
            if key not in seen:
                seen.add(key)
                models.append(model)

        logger.info("Fetched %d models (provider=%s)", len(models), provider or "all")
        return models

    def clear_cache(self) -> None:
        self._cache.clear()
