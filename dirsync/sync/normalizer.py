"""Change event normalizer: raw notifications into ``ChangeEvent`` objects.

Pure functions, no I/O. A member update whose before/after snapshots are
identical produces no events. An update that both adds and removes grants
(a swap) produces one event of each kind, both carrying the full snapshots.
"""

from __future__ import annotations

from dirsync.models.events import (
    ChangeEvent,
    EventKind,
    RawExclusionChange,
    RawMemberJoin,
    RawMemberLeave,
    RawMemberUpdate,
    RawNotification,
)


def normalize_member_update(
    directory_id: str,
    principal_id: str,
    before: frozenset[str],
    after: frozenset[str],
) -> list[ChangeEvent]:
    """Diff two grant snapshots into GrantRemoved / GrantAdded events."""
    if before == after:
        return []

    events = []
    removed = before - after
    added = after - before
    if removed:
        events.append(
            ChangeEvent(
                kind=EventKind.GRANT_REMOVED,
                directory_id=directory_id,
                principal_id=principal_id,
                grant_ids=frozenset(removed),
                before=before,
                after=after,
            )
        )
    if added:
        events.append(
            ChangeEvent(
                kind=EventKind.GRANT_ADDED,
                directory_id=directory_id,
                principal_id=principal_id,
                grant_ids=frozenset(added),
                before=before,
                after=after,
            )
        )
    return events


def normalize(raw: RawNotification) -> list[ChangeEvent]:
    """Normalize any raw notification. Returns ``[]`` for no-ops."""
    if isinstance(raw, RawMemberUpdate):
        return normalize_member_update(raw.directory_id, raw.principal_id, raw.before, raw.after)

    if isinstance(raw, RawMemberJoin):
        return [
            ChangeEvent(
                kind=EventKind.PRINCIPAL_JOINED,
                directory_id=raw.directory_id,
                principal_id=raw.principal_id,
                grant_ids=raw.grant_ids,
                after=raw.grant_ids,
            )
        ]

    if isinstance(raw, RawMemberLeave):
        return [
            ChangeEvent(
                kind=EventKind.PRINCIPAL_REMOVED,
                directory_id=raw.directory_id,
                principal_id=raw.principal_id,
                grant_ids=raw.grant_ids,
                before=raw.grant_ids,
            )
        ]

    if isinstance(raw, RawExclusionChange):
        kind = EventKind.EXCLUSION_ADDED if raw.added else EventKind.EXCLUSION_REMOVED
        return [
            ChangeEvent(
                kind=kind,
                directory_id=raw.directory_id,
                principal_id=raw.principal_id,
                reason=raw.reason,
            )
        ]

    raise TypeError(f"Unsupported notification type: {type(raw).__name__}")
