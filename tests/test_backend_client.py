"""Tests for the outbound agent backend client (HTTP via httpx.MockTransport)."""

from __future__ import annotations

import json

import httpx
import pytest

from warden.backend.client import AgentBackendClient, BackendError
from warden.observability.metrics import MetricsCollector

from conftest import make_settings


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

class Recorder:
    """MockTransport handler replaying scripted responses; the last one repeats."""

    def __init__(self, *responses):
        self.responses = list(responses) or [lambda: httpx.Response(204)]
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item()

    def body(self, index: int = -1) -> dict:
        return json.loads(self.requests[index].content)


def client_for(recorder, **overrides):
    metrics = MetricsCollector()
    client = AgentBackendClient(
        make_settings(**overrides),
        transport=httpx.MockTransport(recorder),
        metrics=metrics,
    )
    return client, metrics


# ─────────────────────────────────────────────────────────────────────────────
# Requests
# ─────────────────────────────────────────────────────────────────────────────

class TestRequests:
    @pytest.mark.asyncio
    async def test_set_workflow_hash(self):
        recorder = Recorder()
        client, metrics = client_for(recorder, backend_api_key="secret")
        async with client:
            await client.set_workflow_hash("W1")
        request = recorder.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/workflow/hash"
        assert request.headers["Authorization"] == "Bearer secret"
        assert recorder.body() == {"workflow_hash": "W1"}
        assert metrics.snapshot()["histograms"]["outbound_latency_ms"]["count"] == 1

    @pytest.mark.asyncio
    async def test_resolve_approval_payloads(self):
        recorder = Recorder()
        client, _ = client_for(recorder)
        async with client:
            await client.resolve_approval("a1", "approve", trust=True)
            await client.resolve_approval("a2", "reject", reason="no")
        assert recorder.requests[0].url.path == "/approvals/a1/resolve"
        assert recorder.body(0) == {"decision": "approve", "trust": True}
        assert recorder.body(1) == {"decision": "reject", "trust": False, "reason": "no"}

    @pytest.mark.asyncio
    async def test_no_auth_header_without_key(self):
        recorder = Recorder()
        client, _ = client_for(recorder)
        async with client:
            await client.stop_current_task()
        assert "Authorization" not in recorder.requests[0].headers
        assert recorder.requests[0].url.path == "/tasks/current/stop"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method,path", [
        ("pause_agent", "/agents/ag1/pause"),
        ("resume_agent", "/agents/ag1/resume"),
        ("cancel_agent", "/agents/ag1/cancel"),
    ])
    async def test_agent_controls(self, method, path):
        recorder = Recorder()
        client, _ = client_for(recorder)
        async with client:
            await getattr(client, method)("ag1")
        assert recorder.requests[0].url.path == path


# ─────────────────────────────────────────────────────────────────────────────
# Failures & retries
# ─────────────────────────────────────────────────────────────────────────────

class TestFailures:
    @pytest.mark.asyncio
    async def test_transient_error_retried(self):
        recorder = Recorder(lambda: httpx.Response(503), lambda: httpx.Response(200, json={"ok": True}))
        client, metrics = client_for(recorder)
        async with client:
            await client.set_workflow_hash("W1")
        assert len(recorder.requests) == 2
        assert metrics.counter("outbound_errors_total", "set_workflow_hash") == 0

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        recorder = Recorder(lambda: httpx.Response(400, text="bad decision"))
        client, metrics = client_for(recorder)
        async with client:
            with pytest.raises(BackendError) as exc_info:
                await client.resolve_approval("a1", "approve")
        assert exc_info.value.status_code == 400
        assert exc_info.value.call == "resolve_approval"
        assert len(recorder.requests) == 1
        assert metrics.counter("outbound_errors_total", "resolve_approval") == 1

    @pytest.mark.asyncio
    async def test_transport_error_exhausts_retries(self):
        recorder = Recorder(httpx.ConnectError("refused"))
        client, metrics = client_for(recorder, backend_max_retries=2)
        async with client:
            with pytest.raises(BackendError) as exc_info:
                await client.pause_agent("ag1")
        assert exc_info.value.status_code is None
        assert len(recorder.requests) == 2
        assert metrics.counter("outbound_errors_total", "pause_agent") == 1
