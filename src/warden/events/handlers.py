"""Per-channel event handlers.

Each inbound channel maps to one handler. Handlers reach the store only
through ``StoreHandle.current`` and never keep references into it, so a
store swap between two events is picked up on the next one.

Payload shapes follow the backend's wire contract (camelCase keys, the
record nested under a channel-specific key such as ``operation`` or
``agent``). A payload that is not a mapping or lacks its identity is
dropped and counted, never raised.
"""

from __future__ import annotations

import uuid
from dataclasses import replace
from typing import Any, Callable, Mapping

import structlog

from warden.core.action_log import ActionFragment
from warden.core.approval_gate import ApprovalGate
from warden.core.status import ActionLogType, ActionStatus
from warden.core.store import StoreHandle
from warden.core.types import (
    AgentState,
    AgentStatus,
    ApprovalStatus,
    FileOperation,
    Plan,
    PlanStep,
    Screenshot,
    TerminalCommand,
    ToolExecution,
    from_payload,
    utcnow,
)
from warden.core.workflow import WorkflowCorrelator
from warden.events.registry import Handler
from warden.observability.metrics import MetricsCollector

logger = structlog.get_logger()

FILE_OPERATION = "file_operation"
TERMINAL_COMMAND = "terminal_command"
TOOL_EXECUTION = "tool_execution"
SCREENSHOT = "screenshot"
PLAN_UPDATE = "plan_update"
ACTION_UPDATE = "action_update"
PERMISSION_REQUIRED = "permission_required"
METRICS = "metrics"
AGENT_STATUS_UPDATE = "agent_status_update"
AGENT_SPAWNED = "agent_spawned"
TASK_PROGRESS = "task_progress"
TASK_COMPLETED = "task_completed"
TASK_FAILED = "task_failed"
APPROVAL_REQUIRED = "approval_required"
APPROVAL_GRANTED = "approval_granted"
APPROVAL_DENIED = "approval_denied"
APPROVAL_REQUEST = "approval_request"
GOAL_PROGRESS = "goal_progress"
STEP_COMPLETED = "step_completed"
GOAL_COMPLETED = "goal_completed"

CHANNELS: tuple[str, ...] = (
    FILE_OPERATION, TERMINAL_COMMAND, TOOL_EXECUTION, SCREENSHOT,
    PLAN_UPDATE, ACTION_UPDATE, PERMISSION_REQUIRED, METRICS,
    AGENT_STATUS_UPDATE, AGENT_SPAWNED,
    TASK_PROGRESS, TASK_COMPLETED, TASK_FAILED,
    APPROVAL_REQUIRED, APPROVAL_GRANTED, APPROVAL_DENIED, APPROVAL_REQUEST,
    GOAL_PROGRESS, STEP_COMPLETED, GOAL_COMPLETED,
)


def _nested(payload: Any, key: str) -> dict[str, Any] | None:
    if not isinstance(payload, Mapping):
        return None
    value = payload.get(key)
    return dict(value) if isinstance(value, Mapping) else None


class AgentEventHandlers:
    """Applies inbound agent events to the session state."""

    def __init__(
        self,
        handle: StoreHandle,
        correlator: WorkflowCorrelator,
        gate: ApprovalGate,
        is_active: Callable[[], bool],
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._handle = handle
        self._correlator = correlator
        self._gate = gate
        self._is_active = is_active
        self._metrics = metrics

    def channel_map(self) -> dict[str, Handler]:
        return {
            FILE_OPERATION: self.on_file_operation,
            TERMINAL_COMMAND: self.on_terminal_command,
            TOOL_EXECUTION: self.on_tool_execution,
            SCREENSHOT: self.on_screenshot,
            PLAN_UPDATE: self.on_plan_update,
            ACTION_UPDATE: self.on_action_update,
            PERMISSION_REQUIRED: self.on_permission_required,
            METRICS: self.on_metrics,
            AGENT_STATUS_UPDATE: self.on_agent_status_update,
            AGENT_SPAWNED: self.on_agent_spawned,
            TASK_PROGRESS: self.on_task_update,
            TASK_COMPLETED: self.on_task_update,
            TASK_FAILED: self.on_task_update,
            APPROVAL_REQUIRED: self.on_approval_required,
            APPROVAL_GRANTED: self.on_approval_granted,
            APPROVAL_DENIED: self.on_approval_denied,
            APPROVAL_REQUEST: self.on_approval_request,
            GOAL_PROGRESS: self._log_only(GOAL_PROGRESS),
            STEP_COMPLETED: self._log_only(STEP_COMPLETED),
            GOAL_COMPLETED: self._log_only(GOAL_COMPLETED),
        }

    # ------------------------------------------------------------------
    # Operation logs (append-only, one record per event)
    # ------------------------------------------------------------------

    def on_file_operation(self, payload: Any) -> None:
        op = self._record(FileOperation, _nested(payload, "operation"))
        if op is not None:
            self._handle.current.add_file_operation(op)

    def on_terminal_command(self, payload: Any) -> None:
        cmd = self._record(TerminalCommand, _nested(payload, "command"))
        if cmd is not None:
            self._handle.current.add_terminal_command(cmd)

    def on_tool_execution(self, payload: Any) -> None:
        execution = self._record(ToolExecution, _nested(payload, "execution"))
        if execution is not None:
            self._handle.current.add_tool_execution(execution)

    def on_screenshot(self, payload: Any) -> None:
        shot = self._record(Screenshot, _nested(payload, "screenshot"))
        if shot is not None:
            self._handle.current.add_screenshot(shot)

    # ------------------------------------------------------------------
    # Plan, actions, permissions, metrics
    # ------------------------------------------------------------------

    async def on_plan_update(self, payload: Any) -> None:
        raw = _nested(payload, "plan")
        if raw is None or not raw.get("id"):
            self._dropped(PLAN_UPDATE, "missing_identity")
            return

        description = str(raw.get("description") or "")
        steps = tuple(
            from_payload(PlanStep, step, title=step.get("description") or step.get("id", ""))
            for step in raw.get("steps") or ()
            if isinstance(step, Mapping) and step.get("id")
        )
        plan = from_payload(Plan, {k: v for k, v in raw.items() if k != "steps"},
                            description=description)
        self._handle.current.set_plan(Plan(
            id=plan.id,
            description=plan.description,
            steps=steps,
            created_at=plan.created_at,
            updated_at=utcnow(),
        ))

        workflow_hash = await self._correlator.correlate_plan(description, raw.get("workflowHash"))
        if not self._is_active():
            return
        self._handle.current.upsert_action_log(ActionFragment(
            id=plan.id,
            type=ActionLogType.PLAN,
            title="Plan generated",
            description=description or None,
            status=ActionStatus.SUCCESS,
            workflow_hash=workflow_hash,
        ))
        logger.info("plan_updated", plan_id=plan.id, steps=len(steps), workflow_hash=workflow_hash)

    def on_action_update(self, payload: Any) -> None:
        raw = _nested(payload, "action")
        fragment = ActionFragment.from_payload(raw) if raw is not None else None
        if fragment is None or fragment.identity is None:
            self._dropped(ACTION_UPDATE, "missing_identity")
            return
        self._correlator.adopt_if_idle(fragment.workflow_hash, fragment.description or "")
        fragment = replace(fragment, workflow_hash=self._correlator.stamp(fragment.workflow_hash))
        self._handle.current.upsert_action_log(fragment)

    def on_permission_required(self, payload: Any) -> None:
        if not isinstance(payload, Mapping):
            self._dropped(PERMISSION_REQUIRED, "malformed")
            return
        self._gate.handle_permission_required(dict(payload))

    def on_metrics(self, payload: Any) -> None:
        raw = _nested(payload, "metrics")
        if raw is None:
            self._dropped(METRICS, "malformed")
            return
        workflow_hash = self._correlator.stamp(raw.get("workflowHash"))
        key = raw.get("actionId") or workflow_hash or uuid.uuid4().hex
        tokens = raw.get("tokens") or 0
        cost = float(raw.get("costUsd") or 0.0)
        self._handle.current.upsert_action_log(ActionFragment(
            id=f"metrics-{key}",
            type=ActionLogType.METRICS,
            title="Task metrics",
            description=f"Tokens: {tokens}, Cost: ${cost:.4f}",
            status=ActionStatus.SUCCESS,
            workflow_hash=workflow_hash,
            metadata=raw,
        ))

    # ------------------------------------------------------------------
    # Agents & background tasks
    # ------------------------------------------------------------------

    def on_agent_status_update(self, payload: Any) -> None:
        agent = _nested(payload, "agent")
        if agent is None or self._handle.current.upsert_agent(agent) is None:
            self._dropped(AGENT_STATUS_UPDATE, "missing_identity")

    def on_agent_spawned(self, payload: Any) -> None:
        agent_id = payload.get("agent_id") if isinstance(payload, Mapping) else None
        if not agent_id:
            self._dropped(AGENT_SPAWNED, "missing_identity")
            return
        store = self._handle.current
        if store.get_agent(agent_id) is not None:
            logger.debug("agent_spawn_replay_ignored", agent_id=agent_id)
            return
        goal = payload.get("goal")
        store.add_agent(AgentStatus(
            id=agent_id,
            name=f"Agent • {goal}" if goal else agent_id,
            status=AgentState.IDLE,
            current_goal=goal,
            progress=0.0,
            started_at=utcnow(),
        ))
        logger.info("agent_spawned", agent_id=agent_id)

    def on_task_update(self, payload: Any) -> None:
        task = _nested(payload, "task")
        if task is None or self._handle.current.upsert_background_task(task) is None:
            self._dropped("task", "missing_identity")

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------

    def on_approval_required(self, payload: Any) -> None:
        approval = _nested(payload, "approval")
        if approval is None:
            self._dropped(APPROVAL_REQUIRED, "malformed")
            return
        self._gate.record_request(approval)

    def on_approval_request(self, payload: Any) -> None:
        if not isinstance(payload, Mapping):
            self._dropped(APPROVAL_REQUEST, "malformed")
            return
        self._gate.record_request(dict(payload))

    def on_approval_granted(self, payload: Any) -> None:
        approval = _nested(payload, "approval")
        if approval is None or not approval.get("id"):
            self._dropped(APPROVAL_GRANTED, "missing_identity")
            return
        self._gate.apply_remote_resolution(approval["id"], ApprovalStatus.APPROVED)

    def on_approval_denied(self, payload: Any) -> None:
        approval = _nested(payload, "approval")
        if approval is None or not approval.get("id"):
            self._dropped(APPROVAL_DENIED, "missing_identity")
            return
        self._gate.apply_remote_resolution(
            approval["id"],
            ApprovalStatus.REJECTED,
            reason=approval.get("rejectionReason"),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _record(self, cls: type, raw: dict[str, Any] | None) -> Any:
        channel = cls.__name__
        if raw is None:
            self._dropped(channel, "malformed")
            return None
        try:
            return from_payload(cls, raw, id=uuid.uuid4().hex)
        except TypeError as e:
            logger.warning("operation_record_malformed", record=channel, error=str(e))
            self._dropped(channel, "malformed")
            return None

    def _log_only(self, channel: str) -> Handler:
        def handler(payload: Any) -> None:
            logger.info(channel, payload=payload)
        return handler

    def _dropped(self, channel: str, reason: str) -> None:
        logger.debug("event_dropped", channel=channel, reason=reason)
        if self._metrics is not None:
            self._metrics.event_dropped(reason)
