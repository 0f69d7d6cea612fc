"""Entity types held by the state store.

All records are frozen dataclasses: the store swaps whole records (and
whole collection tuples) rather than mutating them, so a reader holding a
snapshot never sees a half-applied update.

The backend speaks camelCase JSON. ``payload_fields`` translates a wire
payload into the dataclass fields it actually carries, dropping absent and
null keys so that merges never regress a known value to unknown.
"""

from __future__ import annotations

import dataclasses
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, TypeVar

from warden.core.status import ActionLogType, ActionStatus, map_action_type, normalize_status

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AgentState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self is not ApprovalStatus.PENDING


class ConversationMode(str, Enum):
    SAFE = "safe"
    FULL_CONTROL = "full_control"


# ═══════════════════════════════════════════════════════════════════════════
# CONVERSATION
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Attachment:
    id: str
    type: str
    name: str
    path: str | None = None
    size: int | None = None
    mime_type: str | None = None
    content: str | None = None


@dataclass(frozen=True)
class Message:
    id: str
    role: str
    content: str
    timestamp: datetime = field(default_factory=utcnow)
    metadata: dict[str, Any] | None = None
    attachments: tuple[Attachment, ...] = ()
    streaming: bool = False


@dataclass(frozen=True)
class ContextItem:
    id: str
    type: str
    name: str
    path: str | None = None
    size: int | None = None


# ═══════════════════════════════════════════════════════════════════════════
# OPERATION LOGS (append-only)
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class FileOperation:
    id: str
    type: str
    file_path: str
    success: bool = True
    old_content: str | None = None
    new_content: str | None = None
    size_bytes: int | None = None
    error: str | None = None
    timestamp: datetime = field(default_factory=utcnow)
    session_id: str | None = None
    agent_id: str | None = None
    goal_id: str | None = None


@dataclass(frozen=True)
class TerminalCommand:
    id: str
    command: str
    cwd: str = ""
    exit_code: int | None = None
    stdout: str | None = None
    stderr: str | None = None
    duration: float | None = None
    timestamp: datetime = field(default_factory=utcnow)
    session_id: str | None = None
    agent_id: str | None = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class ToolExecution:
    id: str
    tool_name: str
    input: Any = None
    output: Any = None
    error: str | None = None
    duration: float = 0.0
    success: bool = True
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class Screenshot:
    id: str
    image_base64: str = ""
    action: str | None = None
    element_bounds: dict[str, float] | None = None
    confidence: float | None = None
    timestamp: datetime = field(default_factory=utcnow)


# ═══════════════════════════════════════════════════════════════════════════
# AGENTS & TASKS (upserted by id)
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AgentStatus:
    id: str
    name: str = ""
    status: AgentState = AgentState.IDLE
    current_goal: str | None = None
    current_step: str | None = None
    progress: float = 0.0
    resource_usage: dict[str, float] | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(frozen=True)
class BackgroundTask:
    id: str
    name: str = ""
    description: str | None = None
    status: TaskStatus = TaskStatus.QUEUED
    progress: float = 0.0
    priority: TaskPriority = TaskPriority.NORMAL
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None


# ═══════════════════════════════════════════════════════════════════════════
# APPROVALS, ACTION LOG, PLAN, WORKFLOW
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ApprovalRequest:
    """One gated action. Status only ever moves pending → terminal."""

    id: str
    type: str = "terminal_command"
    description: str = ""
    risk_level: RiskLevel = RiskLevel.HIGH
    details: dict[str, Any] = field(default_factory=dict)
    status: ApprovalStatus = ApprovalStatus.PENDING
    impact: str | None = None
    scope: dict[str, Any] | None = None
    workflow_hash: str | None = None
    action_id: str | None = None
    action_signature: str | None = None
    timeout_seconds: float | None = None
    created_at: datetime = field(default_factory=utcnow)
    approved_at: datetime | None = None
    rejected_at: datetime | None = None
    timed_out_at: datetime | None = None
    rejection_reason: str | None = None
    auto_approved: bool = False

    def remaining_seconds(self, now: datetime | None = None) -> float | None:
        """Seconds left before timeout, or None when no timeout is set."""
        if self.status is not ApprovalStatus.PENDING or not self.timeout_seconds:
            return None
        elapsed = ((now or utcnow()) - self.created_at).total_seconds()
        return max(0.0, self.timeout_seconds - elapsed)

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.status is not ApprovalStatus.PENDING or not self.timeout_seconds:
            return False
        elapsed = ((now or utcnow()) - self.created_at).total_seconds()
        return elapsed > self.timeout_seconds

    def effective_status(self, now: datetime | None = None) -> ApprovalStatus:
        """Status as of ``now``, treating an overdue pending request as timed out."""
        return ApprovalStatus.TIMEOUT if self.is_expired(now) else self.status


@dataclass(frozen=True)
class ActionLogEntry:
    id: str
    type: ActionLogType = ActionLogType.TERMINAL
    title: str = "Agent action"
    status: ActionStatus = ActionStatus.PENDING
    action_id: str | None = None
    workflow_hash: str | None = None
    description: str | None = None
    requires_approval: bool | None = None
    scope: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None
    result: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class PlanStep:
    id: str
    title: str
    status: ActionStatus = ActionStatus.PENDING
    description: str | None = None
    parent_id: str | None = None
    result: str | None = None


@dataclass(frozen=True)
class Plan:
    id: str
    description: str
    steps: tuple[PlanStep, ...] = ()
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class WorkflowContext:
    hash: str
    description: str
    entry_point: str


@dataclass(frozen=True)
class TrustRecord:
    workflow_hash: str
    action_signature: str
    approval_id: str
    created_at: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> tuple[str, str]:
        return (self.workflow_hash, self.action_signature)


# ═══════════════════════════════════════════════════════════════════════════
# WIRE TRANSLATION
# ═══════════════════════════════════════════════════════════════════════════

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def snake_case(key: str) -> str:
    return _CAMEL_RE.sub("_", key).lower()


def parse_timestamp(value: Any) -> datetime | None:
    """Accept ISO-8601 strings, epoch milliseconds, or datetimes."""
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def positive_seconds(value: Any) -> float | None:
    """A positive, finite number of seconds; None for anything else."""
    if value is None or isinstance(value, bool):
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    return seconds if math.isfinite(seconds) and seconds > 0 else None


def _enum(enum_cls: type[Enum], fallback: Enum) -> Callable[[Any], Any]:
    def convert(value: Any) -> Any:
        try:
            return enum_cls(str(value).lower())
        except ValueError:
            return fallback
    return convert


_CONVERTERS: dict[tuple[type, str], Callable[[Any], Any]] = {
    (AgentStatus, "status"): _enum(AgentState, AgentState.IDLE),
    (BackgroundTask, "status"): _enum(TaskStatus, TaskStatus.QUEUED),
    (BackgroundTask, "priority"): _enum(TaskPriority, TaskPriority.NORMAL),
    (ApprovalRequest, "risk_level"): _enum(RiskLevel, RiskLevel.HIGH),
    (ApprovalRequest, "status"): _enum(ApprovalStatus, ApprovalStatus.PENDING),
    (ApprovalRequest, "timeout_seconds"): positive_seconds,
    (ActionLogEntry, "status"): normalize_status,
    (ActionLogEntry, "type"): map_action_type,
    (PlanStep, "status"): normalize_status,
}

_TIMESTAMP_FIELDS = frozenset({
    "timestamp", "created_at", "updated_at", "started_at", "completed_at",
    "approved_at", "rejected_at", "timed_out_at",
})


def payload_fields(cls: type[T], payload: dict[str, Any]) -> dict[str, Any]:
    """Return the fields of ``cls`` present (and non-null) in a wire payload."""
    names = {f.name for f in dataclasses.fields(cls)}  # type: ignore[arg-type]
    out: dict[str, Any] = {}
    for key, value in payload.items():
        if value is None:
            continue
        name = snake_case(key)
        if name not in names:
            continue
        if name in _TIMESTAMP_FIELDS:
            value = parse_timestamp(value)
            if value is None:
                continue
        converter = _CONVERTERS.get((cls, name))
        if converter is not None:
            value = converter(value)
            if value is None:
                continue
        out[name] = value
    return out


def from_payload(cls: type[T], payload: dict[str, Any], **defaults: Any) -> T:
    """Build a record from a wire payload; ``defaults`` fill required gaps."""
    return cls(**{**defaults, **payload_fields(cls, payload)})


def to_wire(value: Any) -> Any:
    """Convert records back into JSON-friendly camelCase structures."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            _camel(f.name): to_wire(getattr(value, f.name))
            for f in dataclasses.fields(value)
        }
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [to_wire(v) for v in value]
    if isinstance(value, dict):
        return {k: to_wire(v) for k, v in value.items()}
    return value


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)
