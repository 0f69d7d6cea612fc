"""Channel handler tests: each inbound channel applied through a live session."""

from __future__ import annotations

import pytest

from warden.core.status import ActionLogType, ActionStatus
from warden.core.store import StateStore
from warden.core.types import AgentState, TaskStatus
from warden.core.workflow import compute_workflow_hash
from warden.events.handlers import CHANNELS


# ─────────────────────────────────────────────────────────────────────────────
# Registration
# ─────────────────────────────────────────────────────────────────────────────

class TestRegistration:
    @pytest.mark.asyncio
    async def test_every_channel_registered(self, session):
        assert sorted(session.registry.channels) == sorted(CHANNELS)
        for channel in CHANNELS:
            assert session.transport.listener_count(channel) == 1

    @pytest.mark.asyncio
    async def test_close_releases_every_channel(self, session):
        await session.close()
        assert session.registry.channels == []

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, session):
        assert await session.start() == []
        assert session.transport.listener_count("metrics") == 1


# ─────────────────────────────────────────────────────────────────────────────
# Operation logs
# ─────────────────────────────────────────────────────────────────────────────

class TestOperationLogs:
    @pytest.mark.asyncio
    async def test_file_operation_recorded(self, session, emit):
        await emit("file_operation", {"operation": {
            "id": "f1", "type": "write", "filePath": "/src/app.py", "success": True,
            "timestamp": 1_700_000_000_000,
        }})
        op = session.store.state.file_operations[0]
        assert op.file_path == "/src/app.py"
        assert op.timestamp.year == 2023

    @pytest.mark.asyncio
    async def test_repeated_events_are_distinct_occurrences(self, session, emit):
        payload = {"command": {"id": "c1", "command": "pytest", "exitCode": 1}}
        await emit("terminal_command", payload)
        await emit("terminal_command", payload)
        assert len(session.store.state.terminal_commands) == 2
        assert session.store.state.terminal_commands[0].success is False

    @pytest.mark.asyncio
    async def test_missing_id_generated(self, session, emit):
        await emit("tool_execution", {"execution": {"toolName": "web_search", "duration": 120}})
        execution = session.store.state.tool_executions[0]
        assert execution.tool_name == "web_search"
        assert execution.id

    @pytest.mark.asyncio
    async def test_malformed_record_dropped(self, session, emit):
        await emit("file_operation", {"operation": {"id": "f1"}})
        await emit("screenshot", "not a mapping")
        assert session.store.state.file_operations == ()
        assert session.store.state.screenshots == ()
        assert session.metrics.counter("events_dropped_total", "malformed") == 2

    @pytest.mark.asyncio
    async def test_screenshot(self, session, emit):
        await emit("screenshot", {"screenshot": {"id": "s1", "imageBase64": "iVBOR", "action": "click"}})
        assert session.store.state.screenshots[0].image_base64 == "iVBOR"


# ─────────────────────────────────────────────────────────────────────────────
# Plan & action updates
# ─────────────────────────────────────────────────────────────────────────────

class TestPlanAndActions:
    @pytest.mark.asyncio
    async def test_plan_sets_plan_context_and_log(self, session, emit, backend):
        await emit("plan_update", {"plan": {
            "id": "p1",
            "description": "Ship the release",
            "steps": [
                {"id": "s1", "title": "Build", "status": "in_progress"},
                {"id": "s2", "title": "Tag", "status": "whatever"},
                {"title": "no id, skipped"},
            ],
        }})
        plan = session.store.state.plan
        assert [s.id for s in plan.steps] == ["s1", "s2"]
        assert plan.steps[0].status is ActionStatus.RUNNING
        assert plan.steps[1].status is ActionStatus.PENDING

        expected = compute_workflow_hash("Ship the release", "Ship the release")
        assert session.store.state.workflow_context.hash == expected
        assert backend.called("set_workflow_hash") == [(expected,)]

        entry = session.store.get_action_log_entry("p1")
        assert entry.type is ActionLogType.PLAN
        assert entry.title == "Plan generated"
        assert entry.status is ActionStatus.SUCCESS
        assert entry.workflow_hash == expected

    @pytest.mark.asyncio
    async def test_plan_replay_is_silent(self, session, emit, backend):
        payload = {"plan": {"id": "p1", "description": "d", "workflowHash": "W", "steps": []}}
        await emit("plan_update", payload)
        await emit("plan_update", payload)
        assert backend.called("set_workflow_hash") == [("W",)]
        assert len(session.store.state.action_log) == 1

    @pytest.mark.asyncio
    async def test_handshake_failure_keeps_local_correlation(self, session, emit, backend):
        backend.fail.add("set_workflow_hash")
        await emit("plan_update", {"plan": {"id": "p1", "description": "d", "workflowHash": "W"}})
        assert session.store.state.workflow_context.hash == "W"
        await emit("action_update", {"action": {"id": "x1"}})
        assert session.store.get_action_log_entry("x1").workflow_hash == "W"

    @pytest.mark.asyncio
    async def test_action_update_merges_with_permission(self, session, emit):
        await emit("permission_required", {"actionId": "a1", "scope": {"type": "filesystem"}})
        await emit("action_update", {"action": {"id": "a1", "status": "completed", "result": "ok"}})
        assert len(session.store.state.action_log) == 1
        entry = session.store.get_action_log_entry("a1")
        assert entry.status is ActionStatus.SUCCESS
        assert entry.requires_approval is True
        assert entry.result == "ok"

    @pytest.mark.asyncio
    async def test_action_update_hash_adopted_when_idle(self, session, emit):
        await emit("action_update", {"action": {"actionId": "a1", "workflowHash": "W9"}})
        assert session.store.state.workflow_context.hash == "W9"
        await emit("action_update", {"action": {"actionId": "a2", "workflowHash": "W10"}})
        assert session.store.state.workflow_context.hash == "W9"
        assert session.store.get_action_log_entry("a2").workflow_hash == "W10"

    @pytest.mark.asyncio
    async def test_action_update_without_identity_dropped(self, session, emit):
        await emit("action_update", {"action": {"title": "orphan"}})
        assert session.store.state.action_log == ()

    @pytest.mark.asyncio
    async def test_metrics_entry(self, session, emit):
        await emit("metrics", {"metrics": {"actionId": "a1", "tokens": 1520, "costUsd": 0.0123}})
        entry = session.store.get_action_log_entry("metrics-a1")
        assert entry.type is ActionLogType.METRICS
        assert entry.title == "Task metrics"
        assert entry.description == "Tokens: 1520, Cost: $0.0123"
        assert entry.metadata["tokens"] == 1520

    @pytest.mark.asyncio
    async def test_metrics_do_not_clobber_action(self, session, emit):
        await emit("action_update", {"action": {"id": "a1", "title": "Write file", "type": "file"}})
        await emit("metrics", {"metrics": {"actionId": "a1", "tokens": 10}})
        action = session.store.get_action_log_entry("a1")
        assert action.title == "Write file"
        assert action.type is ActionLogType.FILESYSTEM


# ─────────────────────────────────────────────────────────────────────────────
# Agents & tasks
# ─────────────────────────────────────────────────────────────────────────────

class TestAgentsAndTasks:
    @pytest.mark.asyncio
    async def test_agent_spawned(self, session, emit):
        await emit("agent_spawned", {"agent_id": "ag1", "goal": "index repo"})
        agent = session.store.get_agent("ag1")
        assert agent.name == "Agent • index repo"
        assert agent.status is AgentState.IDLE
        assert agent.progress == 0
        assert agent.started_at is not None

    @pytest.mark.asyncio
    async def test_spawn_replay_does_not_reset_agent(self, session, emit):
        await emit("agent_spawned", {"agent_id": "ag1"})
        await emit("agent_status_update", {"agent": {"id": "ag1", "status": "running", "progress": 30}})
        await emit("agent_spawned", {"agent_id": "ag1"})
        agent = session.store.get_agent("ag1")
        assert len(session.store.state.agents) == 1
        assert agent.status is AgentState.RUNNING
        assert agent.progress == 30

    @pytest.mark.asyncio
    async def test_task_lifecycle(self, session, emit):
        await emit("task_progress", {"task": {"id": "t1", "name": "Indexing", "status": "running", "progress": 20}})
        await emit("task_completed", {"task": {"id": "t1", "status": "completed", "progress": 100}})
        task = session.store.get_background_task("t1")
        assert task.name == "Indexing"
        assert task.status is TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_task_failed_for_unknown_task_inserts(self, session, emit):
        await emit("task_failed", {"task": {"id": "t9", "status": "failed", "error": "oom"}})
        assert session.store.get_background_task("t9").error == "oom"

    @pytest.mark.asyncio
    async def test_goal_events_are_log_only(self, session, emit):
        version = session.store.version
        await emit("goal_progress", {"goal_id": "g1", "progress": 50})
        await emit("step_completed", {"step_id": "s1"})
        await emit("goal_completed", {"goal_id": "g1"})
        assert session.store.version == version
        assert session.metrics.counter("events_total", "goal_completed") == 1


# ─────────────────────────────────────────────────────────────────────────────
# Handle indirection
# ─────────────────────────────────────────────────────────────────────────────

class TestStoreSwap:
    @pytest.mark.asyncio
    async def test_handlers_follow_swapped_store(self, session, emit):
        old = session.store
        fresh = StateStore()
        session.swap_store(fresh)
        await emit("file_operation", {"operation": {"id": "f1", "type": "read", "filePath": "/a"}})
        assert old.state.file_operations == ()
        assert len(fresh.state.file_operations) == 1
