"""Closed vocabularies for upstream status and type strings.

The agent backend's wording drifts between releases ("done", "completed",
"in_progress"...). Everything entering the action log or plan passes
through here so the local model only ever sees the closed enums below.
Unknown strings never raise.
"""

from __future__ import annotations

from enum import Enum


class ActionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    BLOCKED = "blocked"


class ActionLogType(str, Enum):
    TERMINAL = "terminal"
    FILESYSTEM = "filesystem"
    BROWSER = "browser"
    UI = "ui"
    MCP = "mcp"
    APPROVAL = "approval"
    METRICS = "metrics"
    PLAN = "plan"


_STATUS_ALIASES: dict[str, ActionStatus] = {
    "running": ActionStatus.RUNNING,
    "in_progress": ActionStatus.RUNNING,
    "success": ActionStatus.SUCCESS,
    "completed": ActionStatus.SUCCESS,
    "done": ActionStatus.SUCCESS,
    "failed": ActionStatus.FAILED,
    "error": ActionStatus.FAILED,
    "blocked": ActionStatus.BLOCKED,
}

_TYPE_ALIASES: dict[str, ActionLogType] = {
    "filesystem": ActionLogType.FILESYSTEM,
    "file": ActionLogType.FILESYSTEM,
    "browser": ActionLogType.BROWSER,
    "ui": ActionLogType.UI,
    "desktop": ActionLogType.UI,
    "mcp": ActionLogType.MCP,
    "approval": ActionLogType.APPROVAL,
    "metrics": ActionLogType.METRICS,
    "plan": ActionLogType.PLAN,
}


def normalize_status(status: str | ActionStatus | None) -> ActionStatus:
    """Map an arbitrary upstream status string onto ActionStatus.

    Matching is case-insensitive; anything unrecognised (or absent) is
    treated as PENDING.
    """
    if isinstance(status, ActionStatus):
        return status
    if not status or not isinstance(status, str):
        return ActionStatus.PENDING
    return _STATUS_ALIASES.get(status.strip().lower(), ActionStatus.PENDING)


def map_action_type(action_type: str | ActionLogType | None) -> ActionLogType:
    """Map an upstream action type onto ActionLogType, defaulting to TERMINAL."""
    if isinstance(action_type, ActionLogType):
        return action_type
    if not action_type or not isinstance(action_type, str):
        return ActionLogType.TERMINAL
    return _TYPE_ALIASES.get(action_type.strip().lower(), ActionLogType.TERMINAL)
