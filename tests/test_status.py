"""Tests for status normalization and action type mapping."""

from __future__ import annotations

import pytest

from warden.core.status import ActionLogType, ActionStatus, map_action_type, normalize_status


class TestNormalizeStatus:
    @pytest.mark.parametrize("raw", ["in_progress", "RUNNING", "running", " Running "])
    def test_running_aliases(self, raw):
        assert normalize_status(raw) is ActionStatus.RUNNING

    @pytest.mark.parametrize("raw", ["success", "completed", "done", "DONE"])
    def test_success_aliases(self, raw):
        assert normalize_status(raw) is ActionStatus.SUCCESS

    @pytest.mark.parametrize("raw", ["failed", "error", "Error"])
    def test_failed_aliases(self, raw):
        assert normalize_status(raw) is ActionStatus.FAILED

    def test_blocked(self):
        assert normalize_status("blocked") is ActionStatus.BLOCKED

    @pytest.mark.parametrize("raw", ["queued", "weird", "", None, 42])
    def test_unknown_is_pending(self, raw):
        assert normalize_status(raw) is ActionStatus.PENDING

    def test_enum_passes_through(self):
        assert normalize_status(ActionStatus.FAILED) is ActionStatus.FAILED


class TestMapActionType:
    @pytest.mark.parametrize("raw,expected", [
        ("file", ActionLogType.FILESYSTEM),
        ("filesystem", ActionLogType.FILESYSTEM),
        ("desktop", ActionLogType.UI),
        ("browser", ActionLogType.BROWSER),
        ("MCP", ActionLogType.MCP),
        ("plan", ActionLogType.PLAN),
    ])
    def test_known_types(self, raw, expected):
        assert map_action_type(raw) is expected

    @pytest.mark.parametrize("raw", ["terminal_command", "shell", None, ""])
    def test_unknown_falls_back_to_terminal(self, raw):
        assert map_action_type(raw) is ActionLogType.TERMINAL
