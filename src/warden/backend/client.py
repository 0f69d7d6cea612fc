"""HTTP client for the agent backend's control API.

The backend is the only thing that executes actions. This client only
tells it things: which workflow hash to stamp on its events, how a gated
action was resolved, and stop/pause/resume/cancel requests for agents.

Transient failures (429/5xx, timeouts, dropped connections) are retried
with exponential backoff before a BackendError reaches the caller.
"""

from __future__ import annotations

import time
from typing import Any, Literal, Protocol

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from warden.config import Settings, settings as default_settings
from warden.observability.metrics import MetricsCollector

logger = structlog.get_logger()

Decision = Literal["approve", "reject"]

_RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class BackendError(Exception):
    """An outbound call to the agent backend failed."""

    def __init__(self, message: str, call: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.call = call
        self.status_code = status_code


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, BackendError):
        return exc.status_code is None or exc.status_code in _RETRYABLE_STATUS_CODES
    return False


class AgentBackend(Protocol):
    """Outbound surface the sync layer depends on."""

    async def set_workflow_hash(self, workflow_hash: str) -> None: ...

    async def resolve_approval(
        self,
        approval_id: str,
        decision: Decision,
        reason: str | None = None,
        trust: bool = False,
    ) -> None: ...

    async def stop_current_task(self) -> None: ...

    async def pause_agent(self, agent_id: str) -> None: ...

    async def resume_agent(self, agent_id: str) -> None: ...

    async def cancel_agent(self, agent_id: str) -> None: ...


class AgentBackendClient:
    """Async client for the agent backend control endpoints."""

    def __init__(
        self,
        config: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        cfg = config or default_settings
        headers = {"Content-Type": "application/json"}
        if cfg.backend_api_key:
            headers["Authorization"] = f"Bearer {cfg.backend_api_key}"

        self._client = httpx.AsyncClient(
            base_url=cfg.backend_base_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(cfg.backend_timeout_s, connect=5.0),
            transport=transport,
        )
        self._max_attempts = max(1, cfg.backend_max_retries)
        self._metrics = metrics

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> AgentBackendClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def _post(self, call: str, path: str, payload: dict[str, Any] | None = None) -> Any:
        """POST with retries; raises BackendError once attempts are exhausted."""

        @retry(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
            reraise=True,
        )
        async def _do_request() -> Any:
            try:
                resp = await self._client.post(path, json=payload or {})
                resp.raise_for_status()
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                logger.warning(
                    "backend_call_http_error",
                    call=call,
                    status=status,
                    body=e.response.text[:300],
                )
                raise BackendError(f"HTTP {status} from backend", call=call, status_code=status) from e
            except httpx.TransportError as e:
                logger.warning("backend_call_transport_error", call=call, error=str(e))
                raise BackendError(f"Transport error calling {call}: {e}", call=call) from e
            if not resp.content:
                return None
            try:
                return resp.json()
            except ValueError:
                return resp.text

        t0 = time.monotonic()
        try:
            return await _do_request()
        except BackendError:
            if self._metrics is not None:
                self._metrics.outbound_failed(call)
            raise
        finally:
            if self._metrics is not None:
                self._metrics.record("outbound_latency_ms", (time.monotonic() - t0) * 1000)

    # ── workflow correlation ─────────────────────────────────

    async def set_workflow_hash(self, workflow_hash: str) -> None:
        await self._post("set_workflow_hash", "/workflow/hash", {"workflow_hash": workflow_hash})
        logger.debug("backend_workflow_hash_set", workflow_hash=workflow_hash)

    # ── approvals ────────────────────────────────────────────

    async def resolve_approval(
        self,
        approval_id: str,
        decision: Decision,
        reason: str | None = None,
        trust: bool = False,
    ) -> None:
        payload: dict[str, Any] = {"decision": decision, "trust": trust}
        if reason:
            payload["reason"] = reason
        await self._post("resolve_approval", f"/approvals/{approval_id}/resolve", payload)

    # ── agent control ────────────────────────────────────────

    async def stop_current_task(self) -> None:
        await self._post("stop_current_task", "/tasks/current/stop")

    async def pause_agent(self, agent_id: str) -> None:
        await self._post("pause_agent", f"/agents/{agent_id}/pause")

    async def resume_agent(self, agent_id: str) -> None:
        await self._post("resume_agent", f"/agents/{agent_id}/resume")

    async def cancel_agent(self, agent_id: str) -> None:
        await self._post("cancel_agent", f"/agents/{agent_id}/cancel")
