"""Directory-side data models: what the directory service hands back to us."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class Directory:
    """The primary or a replica directory."""

    id: str
    name: str = ""


@dataclass(frozen=True)
class Grant:
    """A named capability within one directory."""

    id: str
    directory_id: str
    name: str = ""


@dataclass
class Member:
    """A principal's current membership in one directory.

    ``grant_ids`` is the full set of grants the principal holds there at the
    time of the fetch.
    """

    principal_id: str
    directory_id: str
    grant_ids: frozenset[str] = field(default_factory=frozenset)
    display_name: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.grant_ids, frozenset):
            self.grant_ids = frozenset(self.grant_ids)

    def has(self, grant_id: str) -> bool:
        return grant_id in self.grant_ids

    @property
    def label(self) -> str:
        return self.display_name or self.principal_id


@dataclass(frozen=True)
class Exclusion:
    """A directory-level block (ban) on a principal."""

    principal_id: str
    directory_id: str
    reason: str = ""


@dataclass(frozen=True)
class AdminRemovalRecord:
    """An audit-trail entry for an administrative removal (kick).

    ``created_at`` is a POSIX timestamp in seconds.
    """

    principal_id: str
    directory_id: str
    created_at: float
    actor_id: str = ""
    reason: str = ""
