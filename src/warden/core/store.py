"""The state store: the single authoritative surface for session state.

Every collection is an immutable tuple inside a frozen ``SessionState``.
Named operations build a new state and swap it in under a lock, so:

- readers always get a complete snapshot, never a half-applied update
- no caller ever holds a mutable reference into store internals
- two writers never interleave their read-modify-write, even if the store
  is driven from more than one thread

Derived views (pending approvals, filtered logs...) are computed on read
from the current snapshot and never cached.

Two persistence tiers, kept apart:
    UIPreferences  small, persisted via ``subscribe_preferences``
    SessionState   volatile; rebuilt from the event stream each session
"""

from __future__ import annotations

import json
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Iterable

import structlog

from warden.core.action_log import ActionFragment, apply_fragment
from warden.core.preferences import (
    FILE_OPERATION_TYPES,
    SIDECAR_SECTIONS,
    TERMINAL_STATUSES,
    OperationFilters,
    UIPreferences,
)
from warden.core.types import (
    ActionLogEntry,
    AgentStatus,
    ApprovalRequest,
    ApprovalStatus,
    Attachment,
    BackgroundTask,
    ContextItem,
    ConversationMode,
    FileOperation,
    Message,
    Plan,
    PlanStep,
    Screenshot,
    TerminalCommand,
    ToolExecution,
    TrustRecord,
    WorkflowContext,
    payload_fields,
    to_wire,
    utcnow,
)

logger = structlog.get_logger()

StoreListener = Callable[["SessionState"], None]
PreferencesListener = Callable[[UIPreferences], None]


@dataclass(frozen=True)
class SessionState:
    """Everything volatile a session knows. Never written to disk."""

    messages: tuple[Message, ...] = ()
    is_loading: bool = False
    streaming_message_id: str | None = None

    file_operations: tuple[FileOperation, ...] = ()
    terminal_commands: tuple[TerminalCommand, ...] = ()
    tool_executions: tuple[ToolExecution, ...] = ()
    screenshots: tuple[Screenshot, ...] = ()

    agents: tuple[AgentStatus, ...] = ()
    agent_status: AgentStatus | None = None
    background_tasks: tuple[BackgroundTask, ...] = ()

    approvals: tuple[ApprovalRequest, ...] = ()
    trust_records: tuple[TrustRecord, ...] = ()
    action_log: tuple[ActionLogEntry, ...] = ()
    plan: Plan | None = None
    workflow_context: WorkflowContext | None = None

    active_context: tuple[ContextItem, ...] = ()
    conversation_mode: ConversationMode = ConversationMode.SAFE
    mission_control_open: bool = False
    selected_message: str | None = None

    @property
    def is_streaming(self) -> bool:
        return self.streaming_message_id is not None


class StateStore:
    """Mutation-gated container for one session's state.

    Usage:
        store = StateStore(preferences=PreferencesFile(path).load())
        unsubscribe = store.subscribe(lambda state: render(state))

        store.add_file_operation(op)
        store.upsert_action_log(ActionFragment(id="a1", status="running"))
        pending = store.pending_approvals()
    """

    def __init__(self, preferences: UIPreferences | None = None) -> None:
        self._lock = threading.RLock()
        self._state = SessionState()
        self._prefs = preferences or UIPreferences()
        self._listeners: list[StoreListener] = []
        self._pref_listeners: list[PreferencesListener] = []
        self._version = 0

    # ------------------------------------------------------------------
    # Snapshots & subscriptions
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def preferences(self) -> UIPreferences:
        return self._prefs

    @property
    def version(self) -> int:
        """Monotonic counter bumped on every committed change."""
        return self._version

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        """Call ``listener`` with the new state after every change."""
        self._listeners.append(listener)
        return lambda: self._discard(self._listeners, listener)

    def subscribe_preferences(self, listener: PreferencesListener) -> Callable[[], None]:
        self._pref_listeners.append(listener)
        return lambda: self._discard(self._pref_listeners, listener)

    @staticmethod
    def _discard(listeners: list[Any], listener: Any) -> None:
        try:
            listeners.remove(listener)
        except ValueError:
            pass

    def _commit(self, **changes: Any) -> None:
        with self._lock:
            self._state = replace(self._state, **changes)
            self._version += 1
            state = self._state
            for listener in list(self._listeners):
                try:
                    listener(state)
                except Exception as e:
                    logger.warning("store_listener_failed", error=str(e))

    def _commit_preferences(self, prefs: UIPreferences) -> None:
        with self._lock:
            if prefs == self._prefs:
                return
            self._prefs = prefs
            for listener in list(self._pref_listeners):
                try:
                    listener(prefs)
                except Exception as e:
                    logger.warning("preferences_listener_failed", error=str(e))

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def add_message(
        self,
        role: str,
        content: str,
        metadata: dict[str, Any] | None = None,
        attachments: Iterable[Attachment] = (),
        message_id: str | None = None,
    ) -> Message:
        message = Message(
            id=message_id or uuid.uuid4().hex,
            role=role,
            content=content,
            metadata=dict(metadata) if metadata else None,
            attachments=tuple(attachments),
            streaming=bool(metadata and metadata.get("streaming")),
        )
        with self._lock:
            self._commit(messages=self._state.messages + (message,))
        return message

    def update_message(self, message_id: str, **updates: Any) -> Message | None:
        with self._lock:
            messages = self._state.messages
            for i, message in enumerate(messages):
                if message.id == message_id:
                    updated = replace(message, **updates)
                    self._commit(messages=messages[:i] + (updated,) + messages[i + 1:])
                    return updated
        return None

    def delete_message(self, message_id: str) -> None:
        with self._lock:
            remaining = tuple(m for m in self._state.messages if m.id != message_id)
            if len(remaining) != len(self._state.messages):
                self._commit(messages=remaining)

    def set_streaming_message(self, message_id: str | None) -> None:
        with self._lock:
            self._commit(streaming_message_id=message_id)

    def append_to_streaming_message(self, content: str) -> None:
        with self._lock:
            target = self._state.streaming_message_id
            if target is None:
                return
            current = self.get_message(target)
            if current is not None:
                self.update_message(target, content=current.content + content)

    def set_loading(self, loading: bool) -> None:
        with self._lock:
            self._commit(is_loading=loading)

    def get_message(self, message_id: str) -> Message | None:
        return next((m for m in self._state.messages if m.id == message_id), None)

    # ------------------------------------------------------------------
    # Operation logs (append-only)
    # ------------------------------------------------------------------

    def add_file_operation(self, op: FileOperation) -> None:
        with self._lock:
            self._commit(file_operations=self._state.file_operations + (op,))

    def add_terminal_command(self, cmd: TerminalCommand) -> None:
        with self._lock:
            self._commit(terminal_commands=self._state.terminal_commands + (cmd,))

    def update_terminal_output(
        self,
        command_id: str,
        stdout: str,
        stderr: str,
        exit_code: int | None,
        duration_ms: float,
    ) -> None:
        with self._lock:
            commands = self._state.terminal_commands
            for i, cmd in enumerate(commands):
                if cmd.id == command_id:
                    updated = replace(
                        cmd, stdout=stdout, stderr=stderr, exit_code=exit_code, duration=duration_ms,
                    )
                    self._commit(terminal_commands=commands[:i] + (updated,) + commands[i + 1:])
                    return

    def add_tool_execution(self, execution: ToolExecution) -> None:
        with self._lock:
            self._commit(tool_executions=self._state.tool_executions + (execution,))

    def add_screenshot(self, screenshot: Screenshot) -> None:
        with self._lock:
            self._commit(screenshots=self._state.screenshots + (screenshot,))

    # ------------------------------------------------------------------
    # Agents & background tasks (upserted by id)
    # ------------------------------------------------------------------

    def upsert_agent(self, payload: dict[str, Any]) -> AgentStatus | None:
        """Insert or merge an agent from a wire payload. Requires ``id``."""
        updates = payload_fields(AgentStatus, payload)
        agent_id = updates.get("id")
        if not agent_id:
            return None
        with self._lock:
            agents = self._state.agents
            for i, agent in enumerate(agents):
                if agent.id == agent_id:
                    merged = replace(agent, **updates)
                    if merged != agent:
                        self._commit(agents=agents[:i] + (merged,) + agents[i + 1:])
                    return merged
            created = AgentStatus(**{"name": agent_id, **updates})
            self._commit(agents=agents + (created,))
            return created

    def add_agent(self, agent: AgentStatus) -> None:
        """Add an agent; an agent with the same id is replaced, never duplicated."""
        with self._lock:
            others = tuple(a for a in self._state.agents if a.id != agent.id)
            if len(others) == len(self._state.agents):
                self._commit(agents=self._state.agents + (agent,))
            else:
                self._commit(agents=tuple(
                    agent if a.id == agent.id else a for a in self._state.agents
                ))

    def update_agent_status(self, agent_id: str, **updates: Any) -> None:
        with self._lock:
            self._commit(agents=tuple(
                replace(a, **updates) if a.id == agent_id else a for a in self._state.agents
            ))

    def set_agent_status(self, agent: AgentStatus | None) -> None:
        with self._lock:
            self._commit(agent_status=agent)

    def remove_agent(self, agent_id: str) -> None:
        with self._lock:
            self._commit(agents=tuple(a for a in self._state.agents if a.id != agent_id))

    def get_agent(self, agent_id: str) -> AgentStatus | None:
        return next((a for a in self._state.agents if a.id == agent_id), None)

    def upsert_background_task(self, payload: dict[str, Any]) -> BackgroundTask | None:
        updates = payload_fields(BackgroundTask, payload)
        task_id = updates.get("id")
        if not task_id:
            return None
        with self._lock:
            tasks = self._state.background_tasks
            for i, task in enumerate(tasks):
                if task.id == task_id:
                    merged = replace(task, **updates)
                    if merged != task:
                        self._commit(background_tasks=tasks[:i] + (merged,) + tasks[i + 1:])
                    return merged
            created = BackgroundTask(**{"name": task_id, **updates})
            self._commit(background_tasks=tasks + (created,))
            return created

    def update_task_progress(self, task_id: str, progress: float) -> None:
        with self._lock:
            self._commit(background_tasks=tuple(
                replace(t, progress=progress) if t.id == task_id else t
                for t in self._state.background_tasks
            ))

    def get_background_task(self, task_id: str) -> BackgroundTask | None:
        return next((t for t in self._state.background_tasks if t.id == task_id), None)

    # ------------------------------------------------------------------
    # Approvals & trust
    # ------------------------------------------------------------------

    def add_approval_request(self, request: ApprovalRequest) -> ApprovalRequest:
        """Record a request. A replay of an id already recorded is ignored."""
        with self._lock:
            existing = self.get_approval(request.id)
            if existing is not None:
                return existing
            self._commit(approvals=self._state.approvals + (request,))
            return request

    def resolve_approval(
        self,
        approval_id: str,
        status: ApprovalStatus,
        reason: str | None = None,
        at: datetime | None = None,
    ) -> ApprovalRequest | None:
        """Move a pending request to a terminal status.

        Returns the updated request, or None when the request is unknown or
        already terminal (a replayed resolution is a no-op).
        """
        if status is ApprovalStatus.PENDING:
            raise ValueError("cannot resolve an approval back to pending")
        when = at or utcnow()
        with self._lock:
            approvals = self._state.approvals
            for i, request in enumerate(approvals):
                if request.id != approval_id:
                    continue
                if request.status.is_terminal:
                    return None
                if status is ApprovalStatus.APPROVED:
                    updated = replace(request, status=status, approved_at=when)
                elif status is ApprovalStatus.REJECTED:
                    updated = replace(
                        request, status=status, rejected_at=when, rejection_reason=reason,
                    )
                else:
                    updated = replace(request, status=status, timed_out_at=when)
                self._commit(approvals=approvals[:i] + (updated,) + approvals[i + 1:])
                return updated
        return None

    def approve_operation(self, approval_id: str) -> ApprovalRequest | None:
        return self.resolve_approval(approval_id, ApprovalStatus.APPROVED)

    def reject_operation(self, approval_id: str, reason: str | None = None) -> ApprovalRequest | None:
        return self.resolve_approval(approval_id, ApprovalStatus.REJECTED, reason=reason)

    def get_approval(self, approval_id: str) -> ApprovalRequest | None:
        return next((a for a in self._state.approvals if a.id == approval_id), None)

    def add_trust_record(self, record: TrustRecord) -> None:
        with self._lock:
            if self.find_trust(*record.key) is None:
                self._commit(trust_records=self._state.trust_records + (record,))

    def find_trust(self, workflow_hash: str, action_signature: str) -> TrustRecord | None:
        return next(
            (t for t in self._state.trust_records if t.key == (workflow_hash, action_signature)),
            None,
        )

    # ------------------------------------------------------------------
    # Action log, plan, workflow
    # ------------------------------------------------------------------

    def upsert_action_log(self, fragment: ActionFragment) -> ActionLogEntry | None:
        """Fold a fragment into the action log; None when it has no identity."""
        with self._lock:
            entries, entry = apply_fragment(self._state.action_log, fragment)
            if entries is not self._state.action_log:
                self._commit(action_log=entries)
            return entry

    def get_action_log_entry(self, entry_id: str) -> ActionLogEntry | None:
        return next(
            (e for e in self._state.action_log if e.id == entry_id or e.action_id == entry_id),
            None,
        )

    def set_plan(self, plan: Plan | None) -> None:
        with self._lock:
            self._commit(plan=plan)

    def update_plan_step(self, step_id: str, **updates: Any) -> None:
        with self._lock:
            plan = self._state.plan
            if plan is None:
                return
            steps = tuple(replace(s, **updates) if s.id == step_id else s for s in plan.steps)
            self._commit(plan=replace(plan, steps=steps, updated_at=utcnow()))

    def set_workflow_context(self, context: WorkflowContext | None) -> None:
        with self._lock:
            if context != self._state.workflow_context:
                self._commit(workflow_context=context)

    # ------------------------------------------------------------------
    # Context items, settings, UI state
    # ------------------------------------------------------------------

    def add_context_item(self, item: ContextItem) -> None:
        with self._lock:
            self._commit(active_context=self._state.active_context + (item,))

    def remove_context_item(self, item_id: str) -> None:
        with self._lock:
            self._commit(active_context=tuple(
                i for i in self._state.active_context if i.id != item_id
            ))

    def clear_context(self) -> None:
        with self._lock:
            self._commit(active_context=())

    def set_conversation_mode(self, mode: ConversationMode | str) -> None:
        with self._lock:
            self._commit(conversation_mode=ConversationMode(mode))

    def set_mission_control_open(self, open_: bool) -> None:
        with self._lock:
            self._commit(mission_control_open=open_)

    def set_selected_message(self, message_id: str | None) -> None:
        with self._lock:
            self._commit(selected_message=message_id)

    def set_sidecar_open(self, open_: bool) -> None:
        self._commit_preferences(replace(self._prefs, sidecar_open=open_))

    def set_sidecar_section(self, section: str) -> None:
        if section not in SIDECAR_SECTIONS:
            raise ValueError(f"unknown sidecar section: {section}")
        self._commit_preferences(replace(self._prefs, sidecar_section=section))

    def set_sidecar_width(self, width: int) -> None:
        if width <= 0:
            raise ValueError("sidecar width must be positive")
        self._commit_preferences(replace(self._prefs, sidecar_width=width))

    def set_file_operation_filter(self, types: Iterable[str]) -> None:
        values = tuple(types)
        unknown = set(values) - FILE_OPERATION_TYPES
        if unknown:
            raise ValueError(f"unknown file operation types: {sorted(unknown)}")
        self._set_filters(file_operations=values)

    def set_terminal_status_filter(self, statuses: Iterable[str]) -> None:
        values = tuple(statuses)
        unknown = set(values) - TERMINAL_STATUSES
        if unknown:
            raise ValueError(f"unknown terminal statuses: {sorted(unknown)}")
        self._set_filters(terminal_status=values)

    def set_tool_name_filter(self, names: Iterable[str]) -> None:
        self._set_filters(tool_names=tuple(names))

    def _set_filters(self, **changes: Any) -> None:
        filters: OperationFilters = replace(self._prefs.filters, **changes)
        self._commit_preferences(replace(self._prefs, filters=filters))

    # ------------------------------------------------------------------
    # Derived views (computed on read)
    # ------------------------------------------------------------------

    def pending_approvals(self, now: datetime | None = None) -> list[ApprovalRequest]:
        """Outstanding requests, oldest first. Overdue requests are excluded."""
        pending = [
            a for a in self._state.approvals
            if a.effective_status(now) is ApprovalStatus.PENDING
        ]
        return sorted(pending, key=lambda a: a.created_at)

    def next_pending_approval(self, now: datetime | None = None) -> ApprovalRequest | None:
        pending = self.pending_approvals(now)
        return pending[0] if pending else None

    def action_log_for(self, workflow_hash: str) -> list[ActionLogEntry]:
        return [e for e in self._state.action_log if e.workflow_hash == workflow_hash]

    def filtered_file_operations(self) -> list[FileOperation]:
        wanted = self._prefs.filters.file_operations
        ops = self._state.file_operations
        return [op for op in ops if not wanted or op.type in wanted]

    def filtered_terminal_commands(self) -> list[TerminalCommand]:
        wanted = self._prefs.filters.terminal_status
        if not wanted:
            return list(self._state.terminal_commands)
        return [
            cmd for cmd in self._state.terminal_commands
            if ("success" if cmd.success else "error") in wanted
        ]

    def filtered_tool_executions(self) -> list[ToolExecution]:
        wanted = self._prefs.filters.tool_names
        return [e for e in self._state.tool_executions if not wanted or e.tool_name in wanted]

    def plan_step(self, step_id: str) -> PlanStep | None:
        plan = self._state.plan
        if plan is None:
            return None
        return next((s for s in plan.steps if s.id == step_id), None)

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    def clear_history(self) -> None:
        """Drop messages and operation logs; approvals and action log stay."""
        with self._lock:
            self._commit(
                messages=(),
                streaming_message_id=None,
                file_operations=(),
                terminal_commands=(),
                tool_executions=(),
                screenshots=(),
            )

    def export_conversation(self) -> str:
        """Serialize messages and operation logs as indented JSON."""
        state = self._state
        data = {
            "messages": to_wire(state.messages),
            "fileOperations": to_wire(state.file_operations),
            "terminalCommands": to_wire(state.terminal_commands),
            "toolExecutions": to_wire(state.tool_executions),
            "screenshots": to_wire(state.screenshots),
            "exportedAt": utcnow().isoformat(),
        }
        return json.dumps(data, indent=2, ensure_ascii=False, default=str)


class StoreHandle:
    """Indirection every handler goes through to reach the store.

    Handlers keep the handle, never a bound store method, so swapping the
    store (a reload, a fresh session in tests) takes effect on the very
    next event without re-subscribing anything.
    """

    def __init__(self, store: StateStore) -> None:
        self._store = store

    @property
    def current(self) -> StateStore:
        return self._store

    def swap(self, store: StateStore) -> StateStore:
        previous, self._store = self._store, store
        logger.info("store_swapped", previous_version=previous.version)
        return previous
