"""FastAPI application exposing the llmgw proxy routes."""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel

from llmgw.core.config import Settings, get_settings
from llmgw.core.model_catalog import ModelCatalog
from llmgw.core.proxy import ProxyHandler, ProxyResponse, error_body
from llmgw.llm.pricing import StaticTokenPriceLookup, set_token_price_lookup
from llmgw.llm.registry import get_provider, list_providers

logger = logging.getLogger(__name__)

VERSION = "0.1.0"
AGENT_ID_HEADER = "x-agent-id"
GEMINI_ACTIONS = ("generateContent", "streamGenerateContent")


# Request models (module-level for FastAPI compatibility with __future__ annotations)
class ApiKeyCheckRequest(BaseModel):
    api_key: str


def _to_response(result: ProxyResponse) -> Response:
    if result.stream is not None:
        return StreamingResponse(result.stream, headers=result.headers, media_type="text/event-stream")
    return JSONResponse(result.body, status_code=result.status_code, headers=result.headers)


async def _read_json(request: Request) -> dict | None:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return body if isinstance(body, dict) else None


def create_app(
    settings: Settings | None = None,
    handler: ProxyHandler | None = None,
    catalog: ModelCatalog | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()
    handler = handler or ProxyHandler(settings)
    catalog = catalog or ModelCatalog(settings)

    set_token_price_lookup(StaticTokenPriceLookup.from_config({
        model: price.model_dump() for model, price in settings.token_prices.items()
    }))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting llmgw (providers: %s)", ", ".join(list_providers()))
        yield
        logger.info("Shutting down llmgw, waiting for pending bookkeeping...")
        await handler.drain()

    app = FastAPI(
        title="llmgw",
        version=VERSION,
        description="Proxy for OpenAI, Anthropic, Gemini, MiniMax, vLLM and Ollama APIs",
        lifespan=lifespan,
    )
    app.state.handler = handler
    app.state.catalog = catalog

    async def proxy(provider: str, request: Request, body: dict | None) -> Response:
        if body is None:
            return JSONResponse(
                error_body("Request body must be a JSON object", "invalid_request_error"),
                status_code=400,
            )
        result = await handler.handle(
            provider,
            body,
            dict(request.headers),
            agent_id=request.headers.get(AGENT_ID_HEADER),
        )
        return _to_response(result)

    # -----------------------------------------------------------------------
    # System
    # -----------------------------------------------------------------------

    @app.get("/health", tags=["System"], summary="Health check")
    async def health_check():
        return {"status": "healthy", "version": VERSION, "providers": list_providers()}

    @app.get("/metrics", tags=["System"], summary="Prometheus metrics")
    async def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # -----------------------------------------------------------------------
    # Proxy routes
    # -----------------------------------------------------------------------

    @app.post("/v1/anthropic/v1/messages", tags=["Proxy"], summary="Anthropic Messages")
    async def anthropic_messages(request: Request):
        return await proxy("anthropic", request, await _read_json(request))

    @app.post(
        "/v1/gemini/v1beta/models/{model_action}",
        tags=["Proxy"],
        summary="Gemini generateContent / streamGenerateContent",
    )
    async def gemini_generate(model_action: str, request: Request):
        model, _, action = model_action.partition(":")
        if action not in GEMINI_ACTIONS:
            return JSONResponse(error_body(f"Unsupported Gemini action: {action}", "not_found_error"), status_code=404)
        body = await _read_json(request)
        if body is not None:
            body = {**body, "model": model, "stream": action == "streamGenerateContent"}
        return await proxy("gemini", request, body)

    @app.post("/v1/{provider}/chat/completions", tags=["Proxy"], summary="OpenAI-compatible chat completions")
    async def chat_completions(provider: str, request: Request):
        try:
            factory = get_provider(provider)
        except ValueError as e:
            return JSONResponse(error_body(str(e), "not_found_error"), status_code=404)
        if not factory.interaction_type.endswith(":chatCompletions"):
            return JSONResponse(
                error_body(f"Provider {provider} does not serve chat completions", "not_found_error"),
                status_code=404,
            )
        return await proxy(provider, request, await _read_json(request))

    # -----------------------------------------------------------------------
    # Models
    # -----------------------------------------------------------------------

    @app.get("/api/models", tags=["Models"], summary="List models")
    async def api_models(provider: str | None = None):
        """Models from all configured providers, cached per provider."""
        try:
            models = await catalog.list_models(provider)
        except ValueError as e:
            return JSONResponse(error_body(str(e), "not_found_error"), status_code=404)
        return [model.to_dict() for model in models]

    @app.post("/api/models/{provider}/test-key", tags=["Models"], summary="Test a provider API key")
    async def api_test_key(provider: str, req: ApiKeyCheckRequest):
        try:
            await catalog.test_provider_api_key(provider, req.api_key)
        except ValueError as e:
            return JSONResponse(error_body(str(e), "not_found_error"), status_code=404)
        except Exception as e:
            logger.warning("API key test failed for %s: %s", provider, e)
            return {"status": "error", "message": str(e)}
        return {"status": "ok"}

    return app
