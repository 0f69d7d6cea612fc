"""Event channel listener registry.

Subscribes handlers to named channels and guarantees a safe teardown:

- every handler is wrapped in a guard that checks the ``mounted`` flag
  first; events delivered after teardown began are dropped, never applied
- a subscription whose registration completes after teardown is released
  immediately instead of leaking
- on teardown every accumulated unsubscribe runs exactly once, and a
  failing one does not stop the rest (errors are collected and returned)
- a handler that raises is logged and counted; the channel keeps flowing
"""

from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable, Mapping

import structlog

from warden.events.transport import Event, EventTransport, Unlisten
from warden.observability.metrics import MetricsCollector

logger = structlog.get_logger()

Handler = Callable[[Any], "Awaitable[None] | None"]


def _once(fn: Unlisten) -> Unlisten:
    called = False

    def wrapper() -> None:
        nonlocal called
        if called:
            return
        called = True
        fn()

    return wrapper


class ListenerRegistry:
    """Owns every channel subscription of one session."""

    def __init__(
        self,
        transport: EventTransport,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._transport = transport
        self._metrics = metrics
        self._unlisteners: list[Unlisten] = []
        self._channels: list[str] = []
        self._mounted = False

    @property
    def mounted(self) -> bool:
        return self._mounted

    @property
    def channels(self) -> list[str]:
        return list(self._channels)

    def mount(self) -> None:
        self._mounted = True

    async def subscribe(self, channel: str, handler: Handler) -> Unlisten:
        """Register ``handler`` on ``channel`` and return its unsubscribe."""
        unlisten = _once(await self._transport.listen(channel, self._guard(channel, handler)))
        if not self._mounted:
            # Torn down while the registration round trip was in flight.
            unlisten()
            logger.debug("listener_released_after_teardown", channel=channel)
            return unlisten
        self._unlisteners.append(unlisten)
        self._channels.append(channel)
        return unlisten

    async def subscribe_all(self, handlers: Mapping[str, Handler]) -> list[str]:
        """Subscribe every channel; returns the channels that failed to register."""
        failed: list[str] = []
        for channel, handler in handlers.items():
            try:
                await self.subscribe(channel, handler)
            except Exception as e:
                logger.warning("listener_registration_failed", channel=channel, error=str(e))
                failed.append(channel)
        logger.info(
            "listeners_established",
            channels=len(self._channels),
            failed=len(failed),
        )
        return failed

    def teardown(self) -> list[Exception]:
        """Stop dispatching and release every subscription."""
        self._mounted = False
        unlisteners, self._unlisteners = self._unlisteners, []
        self._channels = []
        errors: list[Exception] = []
        for unlisten in unlisteners:
            try:
                unlisten()
            except Exception as e:
                logger.warning("listener_teardown_failed", error=str(e))
                errors.append(e)
        logger.info("listeners_torn_down", released=len(unlisteners), errors=len(errors))
        return errors

    def _guard(self, channel: str, handler: Handler) -> Callable[[Event], Awaitable[None]]:
        async def dispatch(event: Event) -> None:
            if not self._mounted:
                self._count_drop("torn_down")
                return
            if self._metrics is not None:
                self._metrics.event_received(channel)
            logger.debug("event_dispatched", channel=channel, seq=event.seq)
            try:
                result = handler(event.payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(
                    "event_handler_failed",
                    channel=channel,
                    seq=event.seq,
                    error=str(e),
                    exc_info=True,
                )
                if self._metrics is not None:
                    self._metrics.handler_failed(channel)

        return dispatch

    def _count_drop(self, reason: str) -> None:
        if self._metrics is not None:
            self._metrics.event_dropped(reason)
