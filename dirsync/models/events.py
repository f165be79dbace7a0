"""Change notifications, raw and normalized.

Raw notifications are what the directory service's subscription feed delivers.
The normalizer turns them into ``ChangeEvent`` objects which the rest of the
engine consumes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Union


class EventKind(str, Enum):
    """Kinds of normalized change events."""

    GRANT_ADDED = "grant_added"
    GRANT_REMOVED = "grant_removed"
    EXCLUSION_ADDED = "exclusion_added"
    EXCLUSION_REMOVED = "exclusion_removed"
    PRINCIPAL_REMOVED = "principal_removed"
    PRINCIPAL_JOINED = "principal_joined"


# ---------------------------------------------------------------------------
# Raw notifications
# ---------------------------------------------------------------------------


@dataclass
class RawMemberUpdate:
    """Before/after grant snapshots for one principal in one directory."""

    directory_id: str
    principal_id: str
    before: frozenset[str] = field(default_factory=frozenset)
    after: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        self.before = frozenset(self.before)
        self.after = frozenset(self.after)


@dataclass
class RawMemberJoin:
    """A principal joined a directory."""

    directory_id: str
    principal_id: str
    grant_ids: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        self.grant_ids = frozenset(self.grant_ids)


@dataclass
class RawMemberLeave:
    """A principal is no longer a member of a directory (left or expelled)."""

    directory_id: str
    principal_id: str
    grant_ids: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        self.grant_ids = frozenset(self.grant_ids)


@dataclass
class RawExclusionChange:
    """An exclusion was added to or lifted from a principal."""

    directory_id: str
    principal_id: str
    added: bool
    reason: str = ""


RawNotification = Union[RawMemberUpdate, RawMemberJoin, RawMemberLeave, RawExclusionChange]


# ---------------------------------------------------------------------------
# Normalized events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChangeEvent:
    """A normalized change, tagged with principal, directory and grants.

    ``before``/``after`` carry the snapshots the event was derived from so
    that consumers which need the full picture (exclusivity enforcement)
    don't have to re-fetch. Consumers must still treat the event as a
    trigger and re-derive state from the service.
    """

    kind: EventKind
    directory_id: str
    principal_id: str
    grant_ids: frozenset[str] = frozenset()
    before: frozenset[str] = frozenset()
    after: frozenset[str] = frozenset()
    reason: str = ""

    def describe(self) -> str:
        grants = ",".join(sorted(self.grant_ids)) or "-"
        return f"{self.kind.value} principal={self.principal_id} directory={self.directory_id} grants={grants}"
