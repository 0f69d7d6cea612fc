"""Inbound event transport.

A transport delivers named-channel events to registered callbacks.
Registration is asynchronous (it may need a round trip to the process
hosting the channels) and returns a plain ``unlisten`` callable.

``LocalEventBus`` is the in-process implementation: one FIFO queue and one
worker task per channel, so events on a channel are handled strictly in
arrival order while different channels interleave freely.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol

import structlog

logger = structlog.get_logger()

Unlisten = Callable[[], None]


@dataclass(frozen=True)
class Event:
    channel: str
    payload: Any
    seq: int = 0


EventCallback = Callable[[Event], "Awaitable[None] | None"]


class EventTransport(Protocol):
    async def listen(self, channel: str, callback: EventCallback) -> Unlisten: ...

    async def join(self) -> None: ...


class LocalEventBus:
    """In-process channel bus with per-channel ordered delivery."""

    def __init__(self) -> None:
        self._callbacks: dict[str, list[EventCallback]] = {}
        self._queues: dict[str, asyncio.Queue[Event]] = {}
        self._workers: dict[str, asyncio.Task[None]] = {}
        self._seq = itertools.count(1)
        self._closed = False

    async def listen(self, channel: str, callback: EventCallback) -> Unlisten:
        if self._closed:
            raise RuntimeError("event bus is closed")
        # Registration completes on a later loop turn, like a remote host would.
        await asyncio.sleep(0)
        self._callbacks.setdefault(channel, []).append(callback)
        self._ensure_worker(channel)
        logger.debug("channel_listener_registered", channel=channel)

        def unlisten() -> None:
            callbacks = self._callbacks.get(channel, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unlisten

    def publish(self, channel: str, payload: Any) -> Event:
        """Queue an event for delivery. Safe to call from any coroutine."""
        if self._closed:
            raise RuntimeError("event bus is closed")
        event = Event(channel=channel, payload=payload, seq=next(self._seq))
        self._ensure_worker(channel)
        self._queues[channel].put_nowait(event)
        return event

    def listener_count(self, channel: str) -> int:
        return len(self._callbacks.get(channel, []))

    async def join(self) -> None:
        """Wait until every queued event has been handled."""
        for queue in list(self._queues.values()):
            await queue.join()

    async def close(self) -> None:
        self._closed = True
        workers = list(self._workers.values())
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()
        self._callbacks.clear()

    def _ensure_worker(self, channel: str) -> None:
        if channel not in self._queues:
            self._queues[channel] = asyncio.Queue()
        worker = self._workers.get(channel)
        if worker is None or worker.done():
            self._workers[channel] = asyncio.create_task(
                self._run_channel(channel), name=f"warden-channel-{channel}",
            )

    async def _run_channel(self, channel: str) -> None:
        queue = self._queues[channel]
        while True:
            event = await queue.get()
            try:
                for callback in list(self._callbacks.get(channel, [])):
                    try:
                        result = callback(event)
                        if inspect.isawaitable(result):
                            await result
                    except Exception as e:
                        logger.warning(
                            "channel_callback_failed",
                            channel=channel,
                            seq=event.seq,
                            error=str(e),
                        )
            finally:
                queue.task_done()
