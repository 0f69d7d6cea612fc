"""Sync session: one consumer of the agent event stream.

Wires the pieces together and owns their lifecycle:

    transport -> ListenerRegistry -> AgentEventHandlers
              -> (WorkflowCorrelator, ApprovalGate) -> StateStore

A session is an explicit instance; two sessions never share a store, a
registry or a metrics collector. Outbound calls triggered by events (the
workflow handshake, trusted auto-approvals, preflight rejections) run as
tracked background tasks so they never hold up dispatch.
"""

from __future__ import annotations

import asyncio
from typing import Any, Coroutine

import structlog

from warden.backend.client import AgentBackend, AgentBackendClient, BackendError
from warden.config import Settings, settings
from warden.core.approval_gate import ApprovalGate, PreflightConfirmer
from warden.core.preferences import PreferencesFile
from warden.core.store import StateStore, StoreHandle
from warden.core.types import ApprovalRequest
from warden.core.workflow import WorkflowCorrelator
from warden.events.handlers import AgentEventHandlers
from warden.events.registry import ListenerRegistry
from warden.events.stream import EventStream
from warden.events.transport import EventTransport, LocalEventBus
from warden.observability.metrics import MetricsCollector

logger = structlog.get_logger()


class SyncSession:
    """Reconciles one agent backend's events into a local StateStore."""

    def __init__(
        self,
        transport: EventTransport | None = None,
        backend: AgentBackend | None = None,
        config: Settings | None = None,
        store: StateStore | None = None,
        preferences_file: PreferencesFile | None = None,
        confirmer: PreflightConfirmer | None = None,
        metrics: MetricsCollector | None = None,
        stream: EventStream | None = None,
    ) -> None:
        self.config = config or settings
        self.metrics = metrics or MetricsCollector()
        self.transport: EventTransport = transport or LocalEventBus()
        self._owns_transport = transport is None
        self._backend = backend
        self._preferences_file = preferences_file
        self._stream = stream

        if store is None:
            prefs = preferences_file.load() if preferences_file is not None else None
            store = StateStore(preferences=prefs)
        self.handle = StoreHandle(store)

        self._active = False
        self._tasks: set[asyncio.Task[Any]] = set()
        self._ticker: asyncio.Task[None] | None = None
        self._stream_task: asyncio.Task[None] | None = None
        self._unsubscribe_preferences: Any = None

        self.correlator = WorkflowCorrelator(self.handle, backend, self.spawn, self.is_active)
        self.gate = ApprovalGate(
            self.handle,
            self.correlator,
            backend,
            self.spawn,
            self.is_active,
            metrics=self.metrics,
            policy=self.config.preflight_policy,
            confirmer=confirmer,
            default_timeout_s=self.config.default_approval_timeout_s,
        )
        self.handlers = AgentEventHandlers(
            self.handle, self.correlator, self.gate, self.is_active, metrics=self.metrics,
        )
        self.registry = ListenerRegistry(self.transport, metrics=self.metrics)

    @classmethod
    def from_settings(
        cls,
        config: Settings | None = None,
        confirmer: PreflightConfirmer | None = None,
    ) -> SyncSession:
        """A session talking to a live backend over HTTP + SSE."""
        cfg = config or settings
        metrics = MetricsCollector()
        bus = LocalEventBus()
        return cls(
            transport=bus,
            backend=AgentBackendClient(cfg, metrics=metrics),
            config=cfg,
            preferences_file=PreferencesFile(cfg.preferences_path),
            confirmer=confirmer,
            metrics=metrics,
            stream=EventStream(bus, cfg),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def store(self) -> StateStore:
        return self.handle.current

    def is_active(self) -> bool:
        return self._active

    async def start(self) -> list[str]:
        """Register every channel handler; returns channels that failed to register."""
        if self._active:
            return []
        self._active = True
        self.registry.mount()
        if self._preferences_file is not None:
            self._unsubscribe_preferences = self.store.subscribe_preferences(
                self._preferences_file.save,
            )
        failed = await self.registry.subscribe_all(self.handlers.channel_map())
        if not self._active:
            # Closed while listeners were being registered.
            return failed
        self._ticker = asyncio.create_task(
            self.gate.run_ticker(self.config.approval_tick_interval_s),
            name="warden-approval-ticker",
        )
        if self._stream is not None:
            self._stream_task = asyncio.create_task(self._stream.run(), name="warden-event-stream")
        logger.info("session_started", policy=self.gate.policy, failed_channels=failed)
        return failed

    async def close(self) -> list[Exception]:
        """Tear down listeners and background work. Returns teardown errors."""
        self._active = False
        errors = self.registry.teardown()
        if self._stream is not None:
            self._stream.stop()
        pending = [t for t in (self._ticker, self._stream_task) if t is not None]
        pending.extend(self._tasks)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._ticker = self._stream_task = None

        if self._unsubscribe_preferences is not None:
            self._unsubscribe_preferences()
            self._unsubscribe_preferences = None
        if isinstance(self._backend, AgentBackendClient):
            await self._backend.close()
        if self._owns_transport and isinstance(self.transport, LocalEventBus):
            await self.transport.close()
        logger.info("session_closed", teardown_errors=len(errors))
        return errors

    async def __aenter__(self) -> SyncSession:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    def swap_store(self, store: StateStore) -> StateStore:
        """Point every handler at a new store; returns the previous one."""
        previous = self.handle.swap(store)
        if self._unsubscribe_preferences is not None:
            self._unsubscribe_preferences()
            self._unsubscribe_preferences = store.subscribe_preferences(
                self._preferences_file.save,  # type: ignore[union-attr]
            )
        return previous

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any] | None:
        """Run ``coro`` without blocking the caller. Dropped after teardown."""
        if not self._active:
            coro.close()
            logger.debug("background_call_skipped_after_teardown")
            return None
        task = asyncio.create_task(self._run_background(coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_background(self, coro: Coroutine[Any, Any, Any]) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("background_call_failed", error=str(e), exc_info=True)

    async def drain(self) -> None:
        """Wait until queued events and the background calls they started are done."""
        while True:
            await self.transport.join()
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    async def begin_workflow(self, entry_point: str) -> str | None:
        return await self.correlator.begin_workflow(entry_point)

    async def approve(self, approval_id: str, trust: bool = False) -> ApprovalRequest:
        return await self.gate.approve(approval_id, trust=trust)

    async def reject(self, approval_id: str, reason: str | None = None) -> ApprovalRequest:
        return await self.gate.reject(approval_id, reason)

    async def stop_current_task(self) -> None:
        await self._control("stop_current_task")

    async def pause_agent(self, agent_id: str) -> None:
        await self._control("pause_agent", agent_id)

    async def resume_agent(self, agent_id: str) -> None:
        await self._control("resume_agent", agent_id)

    async def cancel_agent(self, agent_id: str) -> None:
        await self._control("cancel_agent", agent_id)

    async def _control(self, call: str, *args: str) -> None:
        if self._backend is None:
            raise BackendError("no agent backend configured", call=call)
        try:
            await getattr(self._backend, call)(*args)
        except BackendError as e:
            logger.error("agent_control_failed", call=call, args=args, error=str(e))
            raise
        logger.info("agent_control_sent", call=call, args=args)

    def export_conversation(self) -> str:
        return self.store.export_conversation()
