"""Action log upsert engine.

Different event sources describe the same logical action with different
keys: a plan or action update introduces ``id``, a later permission
request points at it with ``actionId``, and either may arrive first. Every
fragment is folded into a single ActionLogEntry:

1. join identity = ``id`` or else ``actionId``; no identity → dropped
2. an existing entry matches when any fragment key equals its ``id`` or
   its ``actionId``
3. no match → insert (status defaults to pending, type to terminal)
4. match → right-biased, null-safe merge: fields the fragment carries
   overwrite, fields it omits are left alone

Status and type strings are normalized on the way in. Applying the same
fragment any number of times converges to the same single entry.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any

from warden.core.status import ActionLogType, ActionStatus, map_action_type, normalize_status
from warden.core.types import ActionLogEntry

_MERGEABLE = (
    "action_id",
    "workflow_hash",
    "type",
    "title",
    "description",
    "status",
    "requires_approval",
    "scope",
    "metadata",
    "result",
    "error",
)


@dataclass(frozen=True)
class ActionFragment:
    """A partial view of one action, as carried by a single event."""

    id: str | None = None
    action_id: str | None = None
    workflow_hash: str | None = None
    type: str | ActionLogType | None = None
    title: str | None = None
    description: str | None = None
    status: str | ActionStatus | None = None
    requires_approval: bool | None = None
    scope: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None
    result: str | None = None
    error: str | None = None

    @property
    def identity(self) -> str | None:
        return self.id or self.action_id

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ActionFragment:
        """Read an ``action_update`` style payload (camelCase keys)."""
        return cls(
            id=payload.get("id") or payload.get("actionId"),
            action_id=payload.get("actionId") or payload.get("id"),
            workflow_hash=payload.get("workflowHash"),
            type=payload.get("type"),
            title=payload.get("title"),
            description=payload.get("description"),
            status=payload.get("status"),
            requires_approval=payload.get("requiresApproval"),
            scope=payload.get("scope"),
            metadata=payload.get("metadata"),
            result=payload.get("result"),
            error=payload.get("error"),
        )

    def present(self) -> dict[str, Any]:
        """Fields this fragment actually carries, normalized."""
        out: dict[str, Any] = {}
        for name in _MERGEABLE:
            value = getattr(self, name)
            if value is None:
                continue
            if name == "status":
                value = normalize_status(value)
            elif name == "type":
                value = map_action_type(value)
            elif name in ("scope", "metadata"):
                value = dict(value)
            out[name] = value
        return out


def find_entry(
    entries: tuple[ActionLogEntry, ...],
    fragment: ActionFragment,
) -> int | None:
    """Index of the entry the fragment refers to, or None."""
    keys = {k for k in (fragment.id, fragment.action_id) if k}
    if not keys:
        return None
    # Primary key match wins over an alias match.
    for i, entry in enumerate(entries):
        if entry.id in keys:
            return i
    for i, entry in enumerate(entries):
        if entry.action_id and entry.action_id in keys:
            return i
    return None


def new_entry(fragment: ActionFragment) -> ActionLogEntry:
    values = fragment.present()
    values.setdefault("status", ActionStatus.PENDING)
    values.setdefault("type", ActionLogType.TERMINAL)
    values.setdefault("title", fragment.description or "Agent action")
    return ActionLogEntry(id=fragment.identity, **values)  # type: ignore[arg-type]


def merge_entry(existing: ActionLogEntry, fragment: ActionFragment) -> ActionLogEntry:
    """Right-biased, null-safe merge of a fragment into an existing entry."""
    updates = fragment.present()
    if not updates:
        return existing
    changed = {k: v for k, v in updates.items() if getattr(existing, k) != v}
    return replace(existing, **changed) if changed else existing


def apply_fragment(
    entries: tuple[ActionLogEntry, ...],
    fragment: ActionFragment,
) -> tuple[tuple[ActionLogEntry, ...], ActionLogEntry | None]:
    """Fold one fragment into the collection.

    Returns the new collection (the same tuple object when nothing changed)
    and the resulting entry, or None when the fragment has no identity.
    """
    if not fragment.identity:
        return entries, None

    index = find_entry(entries, fragment)
    if index is None:
        entry = new_entry(fragment)
        return entries + (entry,), entry

    existing = entries[index]
    merged = merge_entry(existing, fragment)
    if merged is existing:
        return entries, existing
    return entries[:index] + (merged,) + entries[index + 1:], merged
