"""Workflow correlation.

Every event belonging to one logical task thread should carry the same
workflow hash, but the backend omits it on some events. The correlator:

- adopts an explicit hash when an event carries one
- otherwise derives it from ``entryPoint + "::" + planDescription`` with
  SHA-256, so identical inputs give identical hashes across reconnects and
  replays
- tells the backend which hash it adopted (the handshake), so later
  backend events reuse it

Hashing runs off the event loop and the handshake is fire-and-forget;
neither ever holds up dispatch, and handshake failures are only logged.
"""

from __future__ import annotations

import asyncio
import hashlib
import uuid
from typing import Any, Callable, Coroutine

import structlog

from warden.backend.client import AgentBackend, BackendError
from warden.core.store import StoreHandle
from warden.core.types import WorkflowContext

logger = structlog.get_logger()

Spawn = Callable[[Coroutine[Any, Any, Any]], Any]

_FNV_OFFSET = 0xCBF29CE484222325
_FNV_PRIME = 0x100000001B3
_MASK_64 = (1 << 64) - 1


def fallback_digest(data: bytes) -> str:
    """64-bit FNV-1a. Deterministic, not collision resistant."""
    h = _FNV_OFFSET
    for byte in data:
        h ^= byte
        h = (h * _FNV_PRIME) & _MASK_64
    return f"{h:016x}"


def digest(text: str) -> str:
    data = text.encode("utf-8")
    try:
        return hashlib.new("sha256", data).hexdigest()
    except ValueError as e:
        logger.warning("workflow_hash_sha256_unavailable", error=str(e))
        return fallback_digest(data)


def compute_workflow_hash(entry_point: str, description: str) -> str:
    return digest(f"{entry_point}::{description}")


class WorkflowCorrelator:
    """Keeps the session's WorkflowContext and the backend in agreement."""

    def __init__(
        self,
        handle: StoreHandle,
        backend: AgentBackend | None,
        spawn: Spawn,
        is_active: Callable[[], bool],
    ) -> None:
        self._handle = handle
        self._backend = backend
        self._spawn = spawn
        self._is_active = is_active

    @property
    def current_hash(self) -> str | None:
        ctx = self._handle.current.state.workflow_context
        return ctx.hash if ctx else None

    def stamp(self, workflow_hash: str | None) -> str | None:
        """The event's own hash if it has one, else the active context's."""
        return workflow_hash or self.current_hash

    async def correlate_plan(self, description: str, explicit_hash: str | None = None) -> str | None:
        """Resolve the hash for a plan event and adopt it as the context.

        Returns None if the session was torn down while hashing.
        """
        ctx = self._handle.current.state.workflow_context
        entry_point = (ctx.entry_point or ctx.description) if ctx else ""
        entry_point = entry_point or description

        workflow_hash = explicit_hash
        if not workflow_hash and entry_point:
            workflow_hash = await asyncio.to_thread(compute_workflow_hash, entry_point, description)
            if not self._is_active():
                logger.debug("workflow_hash_discarded_after_teardown")
                return None

        if workflow_hash:
            self.adopt(workflow_hash, description=description, entry_point=entry_point)
        return workflow_hash

    async def begin_workflow(self, entry_point: str) -> str | None:
        """Start a new thread from a user prompt, before any plan exists."""
        seed = entry_point.strip() or uuid.uuid4().hex
        workflow_hash = await asyncio.to_thread(digest, seed)
        if not self._is_active():
            return None
        self.adopt(workflow_hash, description=entry_point.strip(), entry_point=entry_point.strip())
        return workflow_hash

    def adopt_if_idle(self, workflow_hash: str | None, description: str = "") -> None:
        """Adopt a hash seen on a non-plan event only when no context exists."""
        if workflow_hash and self.current_hash is None:
            self.adopt(workflow_hash, description=description, entry_point=description)

    def adopt(self, workflow_hash: str, description: str, entry_point: str) -> bool:
        """Replace the active context. Returns True when the hash changed."""
        store = self._handle.current
        previous = self.current_hash
        store.set_workflow_context(WorkflowContext(
            hash=workflow_hash,
            description=description,
            entry_point=entry_point,
        ))
        if previous == workflow_hash:
            return False
        logger.info("workflow_adopted", workflow_hash=workflow_hash, previous=previous)
        if self._backend is not None:
            self._spawn(self._handshake(workflow_hash))
        return True

    async def _handshake(self, workflow_hash: str) -> None:
        try:
            await self._backend.set_workflow_hash(workflow_hash)  # type: ignore[union-attr]
        except BackendError as e:
            logger.warning(
                "workflow_handshake_failed",
                workflow_hash=workflow_hash,
                error=str(e),
            )
