"""Persisted UI preferences.

This is the only state that survives a restart: panel open state, active
section, panel width and the operation-log filters. It is serialized on
its own, to its own file, and never together with session data (messages,
operation logs, approvals, action log, plan), which is volatile and
rebuilt from the event stream every session.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger()

SIDECAR_SECTIONS: frozenset[str] = frozenset({
    "operations", "reasoning", "files", "terminal", "tools", "tasks", "agents",
})
FILE_OPERATION_TYPES: frozenset[str] = frozenset({
    "read", "write", "create", "delete", "move", "rename",
})
TERMINAL_STATUSES: frozenset[str] = frozenset({"success", "error"})


@dataclass(frozen=True)
class OperationFilters:
    file_operations: tuple[str, ...] = ()
    terminal_status: tuple[str, ...] = ()
    tool_names: tuple[str, ...] = ()


@dataclass(frozen=True)
class UIPreferences:
    sidecar_open: bool = True
    sidecar_section: str = "operations"
    sidecar_width: int = 400
    filters: OperationFilters = field(default_factory=OperationFilters)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sidecarOpen": self.sidecar_open,
            "sidecarSection": self.sidecar_section,
            "sidecarWidth": self.sidecar_width,
            "filters": {
                "fileOperations": list(self.filters.file_operations),
                "terminalStatus": list(self.filters.terminal_status),
                "toolNames": list(self.filters.tool_names),
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UIPreferences:
        """Build preferences from stored JSON, ignoring unknown or invalid values."""
        prefs = cls()
        if isinstance(data.get("sidecarOpen"), bool):
            prefs = replace(prefs, sidecar_open=data["sidecarOpen"])
        if data.get("sidecarSection") in SIDECAR_SECTIONS:
            prefs = replace(prefs, sidecar_section=data["sidecarSection"])
        width = data.get("sidecarWidth")
        if isinstance(width, int) and not isinstance(width, bool) and width > 0:
            prefs = replace(prefs, sidecar_width=width)
        raw_filters = data.get("filters")
        if isinstance(raw_filters, dict):
            prefs = replace(prefs, filters=OperationFilters(
                file_operations=_valid(raw_filters.get("fileOperations"), FILE_OPERATION_TYPES),
                terminal_status=_valid(raw_filters.get("terminalStatus"), TERMINAL_STATUSES),
                tool_names=tuple(str(n) for n in raw_filters.get("toolNames") or ()),
            ))
        return prefs


def _valid(values: Any, allowed: frozenset[str]) -> tuple[str, ...]:
    if not isinstance(values, list):
        return ()
    return tuple(v for v in values if v in allowed)


class PreferencesFile:
    """JSON file holding a single UIPreferences record."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> UIPreferences:
        """Load preferences. Returns defaults if the file is missing or unreadable."""
        if not self.path.exists():
            return UIPreferences()
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except Exception as e:
            logger.warning("preferences_load_failed", path=str(self.path), error=str(e))
            return UIPreferences()
        if not isinstance(data, dict):
            return UIPreferences()
        return UIPreferences.from_dict(data)

    def save(self, prefs: UIPreferences) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(
                json.dumps(prefs.to_dict(), indent=2, ensure_ascii=False),
                encoding="utf-8",
            )
        except Exception as e:
            logger.warning("preferences_write_failed", path=str(self.path), error=str(e))
