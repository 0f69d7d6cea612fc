"""Warden core: state store, action log, workflow correlation and approvals."""

from warden.core.approval_gate import (
    ApprovalGate,
    ApprovalResolutionError,
    UnknownApprovalError,
)
from warden.core.status import ActionLogType, ActionStatus, normalize_status
from warden.core.store import SessionState, StateStore, StoreHandle
from warden.core.workflow import WorkflowCorrelator, compute_workflow_hash

__all__ = [
    "ActionLogType",
    "ActionStatus",
    "ApprovalGate",
    "ApprovalResolutionError",
    "SessionState",
    "StateStore",
    "StoreHandle",
    "UnknownApprovalError",
    "WorkflowCorrelator",
    "compute_workflow_hash",
    "normalize_status",
]
