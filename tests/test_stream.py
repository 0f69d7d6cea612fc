"""Tests for SSE decoding and the backend event stream."""

from __future__ import annotations

import asyncio

import httpx
import pytest
import structlog.testing

from warden.events.stream import EventStream, SseDecoder, iter_sse_events
from warden.events.transport import LocalEventBus
from warden.session import SyncSession

from conftest import make_settings

SSE_BODY = (
    ": keep-alive\n"
    "event: permission_required\n"
    'data: {"actionId": "a1",\n'
    'data:  "scope": {"type": "filesystem"}}\n'
    "\n"
    'data: {"channel": "metrics", "payload": {"metrics": {"tokens": 5}}}\n'
    "\n"
    "event: file_operation\n"
    "data: not json\n"
    "\n"
)


class TestSseDecoder:
    def test_frames_decoded(self):
        events = list(iter_sse_events(SSE_BODY.splitlines()))
        assert events == [
            ("permission_required", {"actionId": "a1", "scope": {"type": "filesystem"}}),
            ("metrics", {"metrics": {"tokens": 5}}),
        ]

    def test_trailing_frame_without_blank_line(self):
        events = list(iter_sse_events(["event: screenshot", 'data: {"screenshot": {}}']))
        assert events == [("screenshot", {"screenshot": {}})]

    def test_comment_only_stream(self):
        assert list(iter_sse_events([": ping", "", ": ping", ""])) == []

    def test_non_json_frame_skipped_with_warning(self):
        with structlog.testing.capture_logs() as logs:
            events = list(iter_sse_events(["event: file_operation", "data: not json", ""]))
        assert events == []
        warning = next(e for e in logs if e["event"] == "sse_frame_not_json")
        assert warning["channel"] == "file_operation"
        assert warning["log_level"] == "warning"

    def test_event_name_reset_between_frames(self):
        decoder = SseDecoder()
        decoder.feed("event: metrics")
        decoder.feed("data: {}")
        assert decoder.feed("") == ("metrics", {})
        decoder.feed("data: {}")
        assert decoder.feed("") is None


class TestEventStream:
    @pytest.mark.asyncio
    async def test_publishes_and_reconnects(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.path)
            if len(calls) == 1:
                return httpx.Response(500)
            return httpx.Response(
                200,
                headers={"Content-Type": "text/event-stream"},
                content=SSE_BODY.encode(),
            )

        bus = LocalEventBus()
        received = asyncio.Event()
        seen = []

        def on_permission(event):
            seen.append(event.payload["actionId"])
            received.set()

        await bus.listen("permission_required", on_permission)
        stream = EventStream(bus, make_settings(), transport=httpx.MockTransport(handler))
        task = asyncio.create_task(stream.run())
        try:
            await asyncio.wait_for(received.wait(), timeout=2)
        finally:
            stream.stop()
            await asyncio.wait_for(task, timeout=2)
            await bus.close()

        assert seen[0] == "a1"
        assert calls[0] == "/events"
        assert len(calls) >= 2
        assert stream.connections >= 1

    @pytest.mark.asyncio
    async def test_unexpected_error_reconnects(self):
        class FlakyBus(LocalEventBus):
            def __init__(self):
                super().__init__()
                self.failures = 1

            def publish(self, channel, payload):
                if self.failures:
                    self.failures -= 1
                    raise RuntimeError("bus hiccup")
                return super().publish(channel, payload)

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                headers={"Content-Type": "text/event-stream"},
                content=SSE_BODY.encode(),
            )

        bus = FlakyBus()
        received = asyncio.Event()
        await bus.listen("permission_required", lambda event: received.set())
        stream = EventStream(bus, make_settings(), transport=httpx.MockTransport(handler))
        task = asyncio.create_task(stream.run())
        try:
            await asyncio.wait_for(received.wait(), timeout=2)
        finally:
            stream.stop()
            await asyncio.wait_for(task, timeout=2)
            await bus.close()

        assert stream.connections >= 2
        assert not task.cancelled() and task.exception() is None

    @pytest.mark.asyncio
    async def test_session_close_releases_http_client(self, tmp_path):
        async def endless():
            yield b": keep-alive\n\n"
            await asyncio.Event().wait()

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                headers={"Content-Type": "text/event-stream"},
                content=endless(),
            )

        cfg = make_settings(tmp_path)
        bus = LocalEventBus()
        stream = EventStream(bus, cfg, transport=httpx.MockTransport(handler))
        session = SyncSession(transport=bus, config=cfg, stream=stream)
        await session.start()
        try:
            for _ in range(200):
                if stream.connections:
                    break
                await asyncio.sleep(0.01)
            assert stream.connections == 1
        finally:
            await session.close()
            await bus.close()

        assert stream._client.is_closed
