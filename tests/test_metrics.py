"""Tests for upstream call metrics."""

import httpx
from prometheus_client import REGISTRY

from llmgw.llm.metrics import observable_http_client, observe_time_to_first_token


def sample(name: str, **labels) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


class TestObservableHttpClient:
    async def test_records_count_and_duration(self):
        labels = {"provider": "metrics-test", "status": "201"}
        count_before = sample("llmgw_upstream_requests_total", **labels)
        observed_before = sample("llmgw_upstream_request_duration_seconds_count", **labels)

        transport = httpx.MockTransport(lambda request: httpx.Response(201, json={"ok": True}))
        async with observable_http_client("metrics-test", "agent-1", transport=transport) as client:
            response = await client.post("https://upstream.test/v1/chat/completions", json={})

        assert response.status_code == 201
        assert sample("llmgw_upstream_requests_total", **labels) == count_before + 1
        assert sample("llmgw_upstream_request_duration_seconds_count", **labels) == observed_before + 1
        assert sample("llmgw_upstream_request_duration_seconds_sum", **labels) >= 0

    async def test_error_status_is_labelled(self):
        labels = {"provider": "metrics-test-errors", "status": "429"}
        before = sample("llmgw_upstream_requests_total", **labels)

        transport = httpx.MockTransport(lambda request: httpx.Response(429))
        async with observable_http_client("metrics-test-errors", transport=transport) as client:
            await client.get("https://upstream.test/v1/models")

        assert sample("llmgw_upstream_requests_total", **labels) == before + 1


class TestTimeToFirstToken:
    def test_observed_in_seconds(self):
        before = sample("llmgw_time_to_first_token_seconds_sum", provider="metrics-ttft")
        observe_time_to_first_token("metrics-ttft", 250.0)
        assert sample("llmgw_time_to_first_token_seconds_sum", provider="metrics-ttft") == before + 0.25

    def test_missing_value_is_skipped(self):
        before = sample("llmgw_time_to_first_token_seconds_count", provider="metrics-ttft-none")
        observe_time_to_first_token("metrics-ttft-none", None)
        assert sample("llmgw_time_to_first_token_seconds_count", provider="metrics-ttft-none") == before
