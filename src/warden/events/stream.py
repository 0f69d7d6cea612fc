"""Server-sent event stream from the agent backend.

The backend pushes every channel over one SSE connection:

    event: permission_required
    data: {"actionId": "a1", "scope": {"type": "filesystem"}}

Frames are separated by blank lines; ``:`` lines are keep-alive comments.
A frame without an ``event:`` field may carry its channel in a JSON
envelope ``{"channel": ..., "payload": ...}``. Decoded events are published
on a ``LocalEventBus``; the stream reconnects after a delay until stopped.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Iterable, Iterator

import httpx
import structlog

from warden.config import Settings, settings
from warden.events.transport import LocalEventBus

logger = structlog.get_logger()


class SseDecoder:
    """Incremental SSE frame decoder yielding ``(channel, payload)`` pairs."""

    def __init__(self) -> None:
        self._event: str | None = None
        self._data: list[str] = []

    def feed(self, line: str) -> tuple[str, Any] | None:
        line = line.rstrip("\r\n")
        if not line.strip():
            return self.flush()
        if line.startswith(":"):
            return None
        field, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if field == "event":
            self._event = value.strip() or None
        elif field == "data":
            self._data.append(value)
        return None

    def flush(self) -> tuple[str, Any] | None:
        event, data = self._event, "\n".join(self._data)
        self._event = None
        self._data = []
        if not data.strip():
            return None
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            logger.warning("sse_frame_not_json", channel=event, size=len(data))
            return None
        if event:
            return event, payload
        if isinstance(payload, dict) and isinstance(payload.get("channel"), str):
            return payload["channel"], payload.get("payload")
        logger.debug("sse_frame_without_channel")
        return None


def iter_sse_events(lines: Iterable[str]) -> Iterator[tuple[str, Any]]:
    decoder = SseDecoder()
    for line in lines:
        event = decoder.feed(line)
        if event is not None:
            yield event
    event = decoder.flush()
    if event is not None:
        yield event


class EventStream:
    """Consumes the backend's SSE endpoint and feeds the event bus."""

    def __init__(
        self,
        bus: LocalEventBus,
        config: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._bus = bus
        self._config = config or settings
        headers = {"Accept": "text/event-stream"}
        if self._config.backend_api_key:
            headers["Authorization"] = f"Bearer {self._config.backend_api_key}"
        self._client = httpx.AsyncClient(
            base_url=self._config.backend_base_url,
            headers=headers,
            # No read timeout: the stream idles between events.
            timeout=httpx.Timeout(self._config.backend_timeout_s, read=None),
            transport=transport,
        )
        self._stopped = asyncio.Event()
        self.connections = 0

    async def run(self) -> None:
        """Stream until ``stop()``; reconnect after any disconnect."""
        try:
            while not self._stopped.is_set():
                try:
                    async for channel, payload in self._events():
                        self._bus.publish(channel, payload)
                    logger.info("event_stream_closed_by_backend")
                except httpx.HTTPError as e:
                    logger.warning("event_stream_disconnected", error=str(e))
                except Exception as e:
                    logger.error("event_stream_failed", error=str(e), exc_info=True)
                if self._stopped.is_set():
                    break
                try:
                    await asyncio.wait_for(
                        self._stopped.wait(), timeout=self._config.stream_reconnect_delay_s,
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            await self._client.aclose()

    def stop(self) -> None:
        self._stopped.set()

    async def _events(self) -> AsyncIterator[tuple[str, Any]]:
        async with self._client.stream("GET", self._config.events_path) as resp:
            resp.raise_for_status()
            self.connections += 1
            logger.info("event_stream_connected", path=self._config.events_path)
            decoder = SseDecoder()
            async for line in resp.aiter_lines():
                if self._stopped.is_set():
                    return
                event = decoder.feed(line)
                if event is not None:
                    yield event
            event = decoder.flush()
            if event is not None:
                yield event
