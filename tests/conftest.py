"""Shared fixtures: an in-memory agent backend and ready-made sessions.

Run with:
    pytest tests/                         # Run all tests
    pytest tests/test_approval_gate.py -v # Run one module
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable

import pytest
import pytest_asyncio

from warden.backend.client import BackendError, Decision
from warden.config import Settings
from warden.session import SyncSession


class FakeBackend:
    """Records every outbound call; can be told to fail or stall calls."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.fail: set[str] = set()
        self.gate: asyncio.Event | None = None

    async def _call(self, name: str, *args: Any) -> None:
        if self.gate is not None:
            await self.gate.wait()
        self.calls.append((name, args))
        if name in self.fail:
            raise BackendError(f"{name} failed", call=name, status_code=503)

    def called(self, name: str) -> list[tuple[Any, ...]]:
        return [args for call, args in self.calls if call == name]

    async def set_workflow_hash(self, workflow_hash: str) -> None:
        await self._call("set_workflow_hash", workflow_hash)

    async def resolve_approval(
        self,
        approval_id: str,
        decision: Decision,
        reason: str | None = None,
        trust: bool = False,
    ) -> None:
        await self._call("resolve_approval", approval_id, decision, reason, trust)

    async def stop_current_task(self) -> None:
        await self._call("stop_current_task")

    async def pause_agent(self, agent_id: str) -> None:
        await self._call("pause_agent", agent_id)

    async def resume_agent(self, agent_id: str) -> None:
        await self._call("resume_agent", agent_id)

    async def cancel_agent(self, agent_id: str) -> None:
        await self._call("cancel_agent", agent_id)


def make_settings(tmp_path: Path | None = None, **overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "backend_base_url": "http://backend.test",
        "backend_max_retries": 2,
        "stream_reconnect_delay_s": 0.01,
        "approval_tick_interval_s": 1.0,
    }
    if tmp_path is not None:
        values["preferences_path"] = tmp_path / "prefs.json"
    values.update(overrides)
    return Settings(**values)


@pytest.fixture()
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def settings_factory(tmp_path: Path) -> Callable[..., Settings]:
    return lambda **overrides: make_settings(tmp_path, **overrides)


@pytest_asyncio.fixture
async def session(backend: FakeBackend, tmp_path: Path):
    """A started session on a local bus, wired to the fake backend."""
    s = SyncSession(backend=backend, config=make_settings(tmp_path))
    await s.start()
    yield s
    await s.close()


@pytest_asyncio.fixture
async def offline_session(tmp_path: Path):
    """A started session with no backend: decisions resolve locally."""
    s = SyncSession(config=make_settings(tmp_path))
    await s.start()
    yield s
    await s.close()


@pytest.fixture()
def emit(session: SyncSession):
    """Publish one event on the session bus and wait for everything it started."""

    async def _emit(channel: str, payload: Any) -> None:
        session.transport.publish(channel, payload)  # type: ignore[attr-defined]
        await session.drain()

    return _emit
