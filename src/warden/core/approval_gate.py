"""Approval gate: human approval for risky agent actions.

State machine per request:

    pending → approved | rejected | timeout

Exactly one transition is allowed. A second resolution of a terminal
request (a replayed event, a double click) is a no-op, not an error.

Resolution order for user decisions:
    1. tell the backend (approve / reject + reason / trust flag)
    2. only once the backend acknowledged, move the request to terminal
A failed round trip raises ApprovalResolutionError and leaves the request
pending so the user can retry; nothing is resolved optimistically.
A second decision on an id whose round trip is in flight waits for that
one and never reaches the backend itself.

Trust memoization:
    Approving with ``trust=True`` stores a TrustRecord keyed by
    (workflow_hash, action_signature). A later request with the same key in
    the same workflow is approved without ever entering the pending queue.
    A new workflow hash starts with no trust.

Preflight (optional, one policy per session):
    ``queue``              never interrupts, every request is queued
    ``confirm_high_risk``  high-risk filesystem/browser requests go through a
                           blocking local confirmation first; a decline is
                           rejected through the same path as a user reject
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Coroutine

import structlog

from warden.backend.client import AgentBackend, BackendError, Decision
from warden.config import PreflightPolicy
from warden.core.action_log import ActionFragment
from warden.core.status import ActionStatus
from warden.core.store import StoreHandle
from warden.core.types import (
    ApprovalRequest,
    ApprovalStatus,
    RiskLevel,
    TrustRecord,
    from_payload,
    positive_seconds,
    utcnow,
)
from warden.core.workflow import WorkflowCorrelator, digest
from warden.observability.metrics import MetricsCollector

logger = structlog.get_logger()

PreflightConfirmer = Callable[[ApprovalRequest], bool]
Spawn = Callable[[Coroutine[Any, Any, Any]], Any]

PREFLIGHT_SCOPES: frozenset[str] = frozenset({"filesystem", "browser"})
PREFLIGHT_REJECTION = "Blocked by user preflight"


class ApprovalResolutionError(Exception):
    """The backend did not acknowledge a resolution; the request stays pending."""

    def __init__(self, approval_id: str, decision: Decision, cause: Exception) -> None:
        super().__init__(f"Could not {decision} {approval_id}: {cause}")
        self.approval_id = approval_id
        self.decision = decision


class UnknownApprovalError(KeyError):
    """No request with this id was ever recorded."""


def derive_action_signature(action_type: str | None, scope: dict[str, Any] | None) -> str:
    """Fingerprint of "the same kind of action": type plus canonical scope."""
    canonical = json.dumps(scope or {}, sort_keys=True, separators=(",", ":"), default=str)
    return digest(f"{action_type or ''}|{canonical}")[:16]


def _risk(value: Any) -> RiskLevel:
    try:
        return RiskLevel(str(value).lower())
    except ValueError:
        return RiskLevel.HIGH


class ApprovalGate:
    """Pending queue, resolution state machine, preflight and trust table."""

    def __init__(
        self,
        handle: StoreHandle,
        correlator: WorkflowCorrelator,
        backend: AgentBackend | None,
        spawn: Spawn,
        is_active: Callable[[], bool],
        metrics: MetricsCollector | None = None,
        policy: PreflightPolicy = "queue",
        confirmer: PreflightConfirmer | None = None,
        default_timeout_s: float | None = None,
    ) -> None:
        if policy == "confirm_high_risk" and confirmer is None:
            raise ValueError("confirm_high_risk policy needs a preflight confirmer")
        self._handle = handle
        self._correlator = correlator
        self._backend = backend
        self._spawn = spawn
        self._is_active = is_active
        self._metrics = metrics
        self._policy = policy
        self._confirmer = confirmer
        self._default_timeout_s = default_timeout_s
        self._auto_inflight: set[str] = set()
        self._resolving: dict[str, asyncio.Event] = {}

    @property
    def policy(self) -> PreflightPolicy:
        return self._policy

    # ------------------------------------------------------------------
    # Inbound requests
    # ------------------------------------------------------------------

    def handle_permission_required(self, payload: dict[str, Any]) -> ApprovalRequest | None:
        """Gate a ``permission_required`` event.

        Returns the recorded request (pending, or already approved through
        trust), or None when the event was dropped or is still being
        auto-approved.
        """
        action_id = payload.get("actionId")
        if not action_id:
            logger.debug("permission_required_without_action_id")
            self._dropped("missing_identity")
            return None

        store = self._handle.current
        existing = store.get_approval(action_id)
        if existing is not None or action_id in self._auto_inflight:
            logger.debug("permission_required_replay_ignored", action_id=action_id)
            return existing

        scope = payload.get("scope") if isinstance(payload.get("scope"), dict) else {}
        explicit_hash = payload.get("workflowHash")
        self._correlator.adopt_if_idle(explicit_hash)
        workflow_hash = self._correlator.stamp(explicit_hash)
        action_type = payload.get("type")
        reason = payload.get("reason")

        request = ApprovalRequest(
            id=action_id,
            type=action_type or "terminal_command",
            description=reason or "Action requires approval",
            risk_level=_risk(payload.get("riskLevel") or scope.get("risk") or "high"),
            details={"scope": scope},
            scope=scope,
            workflow_hash=workflow_hash,
            action_id=action_id,
            action_signature=(
                payload.get("actionSignature") or derive_action_signature(action_type, scope)
            ),
            timeout_seconds=(
                positive_seconds(payload.get("timeoutSeconds")) or self._default_timeout_s
            ),
        )
        # Fallback titles only name new entries; they never replace a known title.
        known = store.get_action_log_entry(action_id) is not None
        fragment = ActionFragment(
            id=action_id,
            type=action_type,
            title=payload.get("title") or (None if known else "Approval required"),
            description=reason,
            status=ActionStatus.BLOCKED,
            workflow_hash=workflow_hash,
            requires_approval=True,
            scope=scope,
        )

        if self._trusted(request):
            return self._auto_approve(request, fragment)

        if self._needs_preflight(request):
            confirmed = self._confirmer(request)  # type: ignore[misc]
            if not confirmed:
                logger.info("approval_preflight_declined", approval_id=action_id)
                recorded = store.add_approval_request(request)
                store.upsert_action_log(replace(
                    fragment,
                    title=payload.get("title") or "Blocked action",
                    status=ActionStatus.FAILED,
                    description=reason or request.description,
                ))
                self._spawn(self._reject_in_background(action_id, PREFLIGHT_REJECTION))
                return recorded

        recorded = store.add_approval_request(request)
        store.upsert_action_log(fragment)
        logger.info(
            "approval_queued",
            approval_id=action_id,
            risk=request.risk_level.value,
            workflow_hash=workflow_hash,
        )
        return recorded

    def record_request(self, payload: dict[str, Any]) -> ApprovalRequest | None:
        """Record an ``approval_required`` / ``approval_request`` payload."""
        approval_id = payload.get("id")
        if not approval_id:
            self._dropped("missing_identity")
            return None

        store = self._handle.current
        existing = store.get_approval(approval_id)
        if existing is not None or approval_id in self._auto_inflight:
            return existing

        request = from_payload(
            ApprovalRequest,
            payload,
            description="Agent operation requires approval",
        )
        request = replace(
            request,
            status=ApprovalStatus.PENDING,
            details=request.details if isinstance(request.details, dict) else {},
            workflow_hash=self._correlator.stamp(request.workflow_hash),
            timeout_seconds=request.timeout_seconds or self._default_timeout_s,
        )
        if self._trusted(request):
            return self._auto_approve(request, None)

        recorded = store.add_approval_request(request)
        logger.info("approval_queued", approval_id=approval_id, risk=request.risk_level.value)
        return recorded

    # ------------------------------------------------------------------
    # User decisions
    # ------------------------------------------------------------------

    async def approve(self, approval_id: str, trust: bool = False) -> ApprovalRequest:
        request = self._pending_or_terminal(approval_id)
        if request.status.is_terminal:
            return request

        if not await self._notify_once(request, "approve", trust=trust):
            return self._handle.current.get_approval(approval_id) or request

        store = self._handle.current
        updated = store.approve_operation(approval_id)
        if updated is None:
            # Resolved by another path (remote event, ticker) during the round trip.
            return store.get_approval(approval_id) or request

        if trust and updated.workflow_hash and updated.action_signature:
            store.add_trust_record(TrustRecord(
                workflow_hash=updated.workflow_hash,
                action_signature=updated.action_signature,
                approval_id=approval_id,
            ))
            logger.info(
                "trust_recorded",
                workflow_hash=updated.workflow_hash,
                action_signature=updated.action_signature,
            )
        self._resolved(ApprovalStatus.APPROVED)
        logger.info("approval_approved", approval_id=approval_id, trust=trust)
        return updated

    async def reject(self, approval_id: str, reason: str | None = None) -> ApprovalRequest:
        request = self._pending_or_terminal(approval_id)
        if request.status.is_terminal:
            return request

        if not await self._notify_once(request, "reject", reason=reason):
            return self._handle.current.get_approval(approval_id) or request

        store = self._handle.current
        updated = store.reject_operation(approval_id, reason)
        if updated is None:
            return store.get_approval(approval_id) or request

        log_key = updated.action_id or updated.id
        if store.get_action_log_entry(log_key) is not None:
            store.upsert_action_log(ActionFragment(
                id=log_key,
                status=ActionStatus.FAILED,
                error=reason or "Rejected by user",
            ))
        self._resolved(ApprovalStatus.REJECTED)
        logger.info("approval_rejected", approval_id=approval_id, reason=reason)
        return updated

    # ------------------------------------------------------------------
    # Remote resolutions & timeouts
    # ------------------------------------------------------------------

    def apply_remote_resolution(
        self,
        approval_id: str,
        status: ApprovalStatus,
        reason: str | None = None,
    ) -> ApprovalRequest | None:
        """Apply a resolution the backend reported (granted / denied)."""
        updated = self._handle.current.resolve_approval(approval_id, status, reason=reason)
        if updated is not None:
            self._resolved(status)
            logger.info("approval_resolved_remotely", approval_id=approval_id, status=status.value)
        return updated

    def expire_overdue(self, now: datetime | None = None) -> list[ApprovalRequest]:
        """Move every pending request past its deadline to ``timeout``."""
        now = now or utcnow()
        store = self._handle.current
        expired: list[ApprovalRequest] = []
        for request in store.state.approvals:
            if request.is_expired(now):
                updated = store.resolve_approval(request.id, ApprovalStatus.TIMEOUT, at=now)
                if updated is not None:
                    expired.append(updated)
                    self._resolved(ApprovalStatus.TIMEOUT)
                    logger.info("approval_timed_out", approval_id=request.id)
        return expired

    async def run_ticker(self, interval_s: float = 1.0) -> None:
        """Expire overdue requests every ``interval_s`` until cancelled."""
        while self._is_active():
            await asyncio.sleep(interval_s)
            if not self._is_active():
                break
            try:
                self.expire_overdue()
            except Exception as e:
                logger.error("approval_ticker_failed", error=str(e), exc_info=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _pending_or_terminal(self, approval_id: str) -> ApprovalRequest:
        store = self._handle.current
        request = store.get_approval(approval_id)
        if request is None:
            raise UnknownApprovalError(approval_id)
        if request.is_expired():
            expired = store.resolve_approval(approval_id, ApprovalStatus.TIMEOUT)
            if expired is not None:
                self._resolved(ApprovalStatus.TIMEOUT)
                logger.info("approval_timed_out", approval_id=approval_id)
                return expired
        return request

    async def _notify_once(
        self,
        request: ApprovalRequest,
        decision: Decision,
        reason: str | None = None,
        trust: bool = False,
    ) -> bool:
        """Notify the backend unless a resolution of this id is already in flight.

        Returns False when the call waited for that other resolution instead.
        """
        in_flight = self._resolving.get(request.id)
        if in_flight is not None:
            logger.debug("approval_resolution_in_flight", approval_id=request.id)
            await in_flight.wait()
            return False
        done = self._resolving[request.id] = asyncio.Event()
        try:
            await self._notify(request, decision, reason=reason, trust=trust)
        finally:
            del self._resolving[request.id]
            done.set()
        return True

    async def _notify(
        self,
        request: ApprovalRequest,
        decision: Decision,
        reason: str | None = None,
        trust: bool = False,
    ) -> None:
        if self._backend is None:
            return
        try:
            await self._backend.resolve_approval(request.id, decision, reason=reason, trust=trust)
        except BackendError as e:
            logger.error(
                "approval_resolution_failed",
                approval_id=request.id,
                decision=decision,
                error=str(e),
            )
            raise ApprovalResolutionError(request.id, decision, e) from e

    def _trusted(self, request: ApprovalRequest) -> bool:
        if not request.workflow_hash or not request.action_signature:
            return False
        return self._handle.current.find_trust(
            request.workflow_hash, request.action_signature,
        ) is not None

    def _needs_preflight(self, request: ApprovalRequest) -> bool:
        if self._policy != "confirm_high_risk":
            return False
        scope_type = (request.scope or {}).get("type")
        return scope_type in PREFLIGHT_SCOPES and request.risk_level is RiskLevel.HIGH

    def _auto_approve(
        self,
        request: ApprovalRequest,
        fragment: ActionFragment | None,
    ) -> ApprovalRequest | None:
        logger.info(
            "approval_trusted",
            approval_id=request.id,
            workflow_hash=request.workflow_hash,
            action_signature=request.action_signature,
        )
        if self._backend is None:
            return self._record_auto_approval(request, fragment)
        self._auto_inflight.add(request.id)
        self._spawn(self._confirm_auto_approval(request, fragment))
        return None

    async def _confirm_auto_approval(
        self,
        request: ApprovalRequest,
        fragment: ActionFragment | None,
    ) -> None:
        try:
            await self._backend.resolve_approval(  # type: ignore[union-attr]
                request.id, "approve", trust=True,
            )
        except BackendError as e:
            logger.warning("trusted_approval_notify_failed", approval_id=request.id, error=str(e))
            if self._is_active():
                store = self._handle.current
                store.add_approval_request(request)
                if fragment is not None:
                    store.upsert_action_log(fragment)
            return
        finally:
            self._auto_inflight.discard(request.id)
        if self._is_active():
            self._record_auto_approval(request, fragment)

    def _record_auto_approval(
        self,
        request: ApprovalRequest,
        fragment: ActionFragment | None,
    ) -> ApprovalRequest:
        store = self._handle.current
        approved = store.add_approval_request(replace(
            request,
            status=ApprovalStatus.APPROVED,
            approved_at=utcnow(),
            auto_approved=True,
        ))
        if fragment is not None:
            store.upsert_action_log(replace(
                fragment,
                status=ActionStatus.PENDING,
                metadata={"autoApproved": True},
            ))
        self._resolved(ApprovalStatus.APPROVED, auto=True)
        return approved

    async def _reject_in_background(self, approval_id: str, reason: str) -> None:
        try:
            await self.reject(approval_id, reason)
        except ApprovalResolutionError:
            logger.warning("preflight_rejection_left_pending", approval_id=approval_id)

    def _resolved(self, status: ApprovalStatus, auto: bool = False) -> None:
        if self._metrics is not None:
            self._metrics.approval_resolved(status.value, auto=auto)

    def _dropped(self, reason: str) -> None:
        if self._metrics is not None:
            self._metrics.event_dropped(reason)
