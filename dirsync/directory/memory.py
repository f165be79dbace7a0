"""In-memory directory service.

Holds full directory state in dictionaries. Used by the test-suite and by
``dirsync sweep --snapshot`` to plan a reconciliation against exported
state without touching the real service. Snapshots are plain YAML::

    directories:
      "100":
        name: Primary
        grants: {"g1": Tsunami, "m": Member}
        members:
          "u1": {grants: ["g1", "m"], name: alice}
        exclusions: {"u9": spam}
"""

from __future__ import annotations

import time
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml

from dirsync.directory.base import DirectoryService
from dirsync.errors import DirSyncError, NotFoundError
from dirsync.models.directory import AdminRemovalRecord, Directory, Exclusion, Grant, Member


@dataclass(frozen=True)
class RecordedCall:
    """One mutating call received by the in-memory service."""

    method: str
    directory_id: str
    principal_id: str
    grant_id: str = ""
    reason: str = ""


class InMemoryDirectoryService(DirectoryService):
    """A ``DirectoryService`` backed by dictionaries."""

    def __init__(self) -> None:
        self.directories: dict[str, Directory] = {}
        self.grants: dict[tuple[str, str], Grant] = {}
        self.members: dict[str, dict[str, set[str]]] = defaultdict(dict)
        self.names: dict[str, str] = {}
        self.exclusions: dict[str, dict[str, str]] = defaultdict(dict)
        self.admin_removals: dict[str, list[AdminRemovalRecord]] = defaultdict(list)
        self.calls: list[RecordedCall] = []
        self._failures: dict[tuple[str, str], list[Exception]] = defaultdict(list)

    # -- setup helpers -------------------------------------------------------

    def add_directory(self, directory_id: str, name: str = "", grants: dict[str, str] | None = None) -> None:
        self.directories[directory_id] = Directory(id=directory_id, name=name or directory_id)
        self.members.setdefault(directory_id, {})
        for grant_id, grant_name in (grants or {}).items():
            self.define_grant(directory_id, grant_id, grant_name)

    def define_grant(self, directory_id: str, grant_id: str, name: str = "") -> None:
        self.grants[(directory_id, grant_id)] = Grant(id=grant_id, directory_id=directory_id, name=name or grant_id)

    def add_member(self, directory_id: str, principal_id: str, grant_ids=(), name: str = "") -> None:
        self.members[directory_id][principal_id] = set(grant_ids)
        if name:
            self.names[principal_id] = name

    def record_admin_removal(
        self, directory_id: str, principal_id: str, *, at: float | None = None, actor_id: str = "", reason: str = ""
    ) -> None:
        self.admin_removals[directory_id].insert(
            0,
            AdminRemovalRecord(
                principal_id=principal_id,
                directory_id=directory_id,
                created_at=time.time() if at is None else at,
                actor_id=actor_id,
                reason=reason,
            ),
        )

    def fail(self, method: str, directory_id: str = "*", error: Exception | None = None, times: int = 1) -> None:
        """Make the next ``times`` calls to ``method`` in ``directory_id`` raise ``error``."""
        exc = error or DirSyncError(f"injected failure in {method}")
        self._failures[(method, directory_id)].extend([exc] * times)

    def grants_of(self, directory_id: str, principal_id: str) -> set[str]:
        return set(self.members.get(directory_id, {}).get(principal_id, set()))

    def mutations(self, method: str | None = None) -> list[RecordedCall]:
        if method is None:
            return list(self.calls)
        return [c for c in self.calls if c.method == method]

    # -- snapshots -----------------------------------------------------------

    @classmethod
    def from_snapshot(cls, source: str | Path | dict[str, Any]) -> "InMemoryDirectoryService":
        if isinstance(source, dict):
            data = source
        else:
            with open(source) as f:
                data = yaml.safe_load(f) or {}

        service = cls()
        for directory_id, entry in (data.get("directories") or {}).items():
            directory_id = str(directory_id)
            entry = entry or {}
            service.add_directory(
                directory_id,
                name=str(entry.get("name", "")),
                grants={str(k): str(v) for k, v in (entry.get("grants") or {}).items()},
            )
            for principal_id, member in (entry.get("members") or {}).items():
                member = member or {}
                service.add_member(
                    directory_id,
                    str(principal_id),
                    [str(g) for g in member.get("grants", [])],
                    name=str(member.get("name", "")),
                )
            for principal_id, reason in (entry.get("exclusions") or {}).items():
                service.exclusions[directory_id][str(principal_id)] = reason or ""
        return service

    def to_snapshot(self) -> dict[str, Any]:
        directories: dict[str, Any] = {}
        for directory_id, directory in self.directories.items():
            directories[directory_id] = {
                "name": directory.name,
                "grants": {g.id: g.name for (d, _), g in self.grants.items() if d == directory_id},
                "members": {
                    pid: {"grants": sorted(grants), "name": self.names.get(pid, "")}
                    for pid, grants in self.members.get(directory_id, {}).items()
                },
                "exclusions": dict(self.exclusions.get(directory_id, {})),
            }
        return {"directories": directories}

    # -- internals -----------------------------------------------------------

    def _maybe_fail(self, method: str, directory_id: str) -> None:
        for key in ((method, directory_id), (method, "*")):
            queue = self._failures.get(key)
            if queue:
                raise queue.pop(0)

    def _member_grants(self, directory_id: str, principal_id: str) -> set[str]:
        if directory_id not in self.directories:
            raise NotFoundError(f"Unknown directory {directory_id}")
        grants = self.members[directory_id].get(principal_id)
        if grants is None:
            raise NotFoundError(f"{principal_id} is not a member of {directory_id}")
        return grants

    # -- reads ---------------------------------------------------------------

    async def fetch_directory(self, directory_id: str) -> Optional[Directory]:
        self._maybe_fail("fetch_directory", directory_id)
        return self.directories.get(directory_id)

    async def fetch_principal(self, directory_id: str, principal_id: str) -> Optional[Member]:
        self._maybe_fail("fetch_principal", directory_id)
        grants = self.members.get(directory_id, {}).get(principal_id)
        if grants is None:
            return None
        return Member(principal_id, directory_id, frozenset(grants), self.names.get(principal_id, ""))

    async def fetch_grant(self, directory_id: str, grant_id: str) -> Optional[Grant]:
        self._maybe_fail("fetch_grant", directory_id)
        return self.grants.get((directory_id, grant_id))

    async def list_principals(self, directory_id: str) -> list[Member]:
        self._maybe_fail("list_principals", directory_id)
        if directory_id not in self.directories:
            raise NotFoundError(f"Unknown directory {directory_id}")
        return [
            Member(pid, directory_id, frozenset(grants), self.names.get(pid, ""))
            for pid, grants in self.members[directory_id].items()
        ]

    async def list_exclusions(self, directory_id: str) -> list[Exclusion]:
        self._maybe_fail("list_exclusions", directory_id)
        return [Exclusion(pid, directory_id, reason) for pid, reason in self.exclusions[directory_id].items()]

    async def fetch_exclusion(self, directory_id: str, principal_id: str) -> Optional[Exclusion]:
        self._maybe_fail("fetch_exclusion", directory_id)
        reason = self.exclusions[directory_id].get(principal_id)
        if reason is None:
            return None
        return Exclusion(principal_id, directory_id, reason)

    async def list_admin_removals(self, directory_id: str, limit: int = 5) -> list[AdminRemovalRecord]:
        self._maybe_fail("list_admin_removals", directory_id)
        return list(self.admin_removals[directory_id][:limit])

    # -- mutations -----------------------------------------------------------

    async def add_grant(self, directory_id: str, principal_id: str, grant_id: str, reason: str = "") -> None:
        self.calls.append(RecordedCall("add_grant", directory_id, principal_id, grant_id, reason))
        self._maybe_fail("add_grant", directory_id)
        if (directory_id, grant_id) not in self.grants:
            raise NotFoundError(f"Unknown grant {grant_id} in {directory_id}")
        self._member_grants(directory_id, principal_id).add(grant_id)

    async def remove_grant(self, directory_id: str, principal_id: str, grant_id: str, reason: str = "") -> None:
        self.calls.append(RecordedCall("remove_grant", directory_id, principal_id, grant_id, reason))
        self._maybe_fail("remove_grant", directory_id)
        self._member_grants(directory_id, principal_id).discard(grant_id)

    async def add_exclusion(self, directory_id: str, principal_id: str, reason: str = "") -> None:
        self.calls.append(RecordedCall("add_exclusion", directory_id, principal_id, reason=reason))
        self._maybe_fail("add_exclusion", directory_id)
        self.exclusions[directory_id][principal_id] = reason
        self.members[directory_id].pop(principal_id, None)

    async def remove_exclusion(self, directory_id: str, principal_id: str, reason: str = "") -> None:
        self.calls.append(RecordedCall("remove_exclusion", directory_id, principal_id, reason=reason))
        self._maybe_fail("remove_exclusion", directory_id)
        self.exclusions[directory_id].pop(principal_id, None)

    async def remove_principal(self, directory_id: str, principal_id: str, reason: str = "") -> None:
        self.calls.append(RecordedCall("remove_principal", directory_id, principal_id, reason=reason))
        self._maybe_fail("remove_principal", directory_id)
        self._member_grants(directory_id, principal_id)
        del self.members[directory_id][principal_id]
