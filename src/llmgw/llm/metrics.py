"""Prometheus metrics for upstream LLM provider calls."""

from __future__ import annotations

import logging
import time

import httpx
from prometheus_client import Counter, Histogram

logger = logging.getLogger(__name__)

NAMESPACE = "llmgw"

upstream_request_duration_seconds = Histogram(
    f"{NAMESPACE}_upstream_request_duration_seconds",
    "Time until upstream response headers arrive, in seconds",
    ["provider", "status"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

upstream_requests_total = Counter(
    f"{NAMESPACE}_upstream_requests_total",
    "Total upstream requests sent to LLM providers",
    ["provider", "status"],
)

time_to_first_token_seconds = Histogram(
    f"{NAMESPACE}_time_to_first_token_seconds",
    "Time from stream start to the first upstream chunk, in seconds",
    ["provider"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

UPSTREAM_TIMEOUT = httpx.Timeout(600.0, connect=10.0)


def observable_http_client(
    provider: str,
    agent_id: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """httpx client that records request count and duration per provider."""

    async def on_request(request: httpx.Request) -> None:
        request.extensions["llmgw_start"] = time.perf_counter()

    async def on_response(response: httpx.Response) -> None:
        start = response.request.extensions.get("llmgw_start")
        status = str(response.status_code)
        upstream_requests_total.labels(provider=provider, status=status).inc()
        if start is not None:
            elapsed = time.perf_counter() - start
            upstream_request_duration_seconds.labels(provider=provider, status=status).observe(elapsed)
            logger.debug(
                "Upstream %s responded %s in %.3fs (agent=%s)",
                provider, status, elapsed, agent_id,
            )

    return httpx.AsyncClient(
        timeout=UPSTREAM_TIMEOUT,
        transport=transport,
        event_hooks={"request": [on_request], "response": [on_response]},
    )


def observe_time_to_first_token(provider: str, ttft_ms: float | None) -> None:
    if ttft_ms is not None:
        time_to_first_token_seconds.labels(provider=provider).observe(ttft_ms / 1000)
