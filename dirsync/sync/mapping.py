"""Grant mapping resolver: static lookups over the group mapping.

Forward: primary group grant → {replica directory: replica grant}.
Reverse: (replica directory, replica grant) → the one primary grant that
authorizes it. The reverse direction must be unambiguous; construction
fails with ``ConfigError`` otherwise.
"""

from __future__ import annotations

from typing import Iterable, Optional

from dirsync.config.loader import GroupConfig
from dirsync.errors import ConfigError, UnknownGrantError


class GrantMapping:
    """Read-only bidirectional view of the group mapping."""

    def __init__(self, groups: Iterable[GroupConfig]):
        self._forward: dict[str, dict[str, str]] = {}
        self._reverse: dict[tuple[str, str], str] = {}
        self._names: dict[str, str] = {}

        conflicts = []
        for group in groups:
            if group.grant_id in self._forward:
                conflicts.append(f"Primary grant {group.grant_id} is mapped twice")
                continue
            self._forward[group.grant_id] = dict(group.replicas)
            self._names[group.grant_id] = group.name
            for directory_id, replica_grant_id in group.replicas.items():
                owner = self._reverse.setdefault((directory_id, replica_grant_id), group.grant_id)
                if owner != group.grant_id:
                    conflicts.append(
                        f"Replica grant {replica_grant_id} in {directory_id} is mapped from "
                        f"both {owner} and {group.grant_id}"
                    )
        if conflicts:
            raise ConfigError(conflicts)

    # -- forward -------------------------------------------------------------

    @property
    def group_grant_ids(self) -> frozenset[str]:
        return frozenset(self._forward)

    def is_group_grant(self, grant_id: str) -> bool:
        return grant_id in self._forward

    def group_name(self, grant_id: str) -> str:
        return self._names.get(grant_id, "") or grant_id

    def targets_for(self, primary_grant_id: str) -> dict[str, str]:
        """Return ``{replica directory id: replica grant id}`` for a primary grant.

        Raises:
            UnknownGrantError: the grant is not a mapped group grant.
        """
        try:
            return dict(self._forward[primary_grant_id])
        except KeyError:
            raise UnknownGrantError(primary_grant_id) from None

    def held_groups(self, grant_ids: Iterable[str]) -> frozenset[str]:
        """The mapped group grants among ``grant_ids``."""
        return frozenset(g for g in grant_ids if g in self._forward)

    # -- reverse -------------------------------------------------------------

    @property
    def replica_directory_ids(self) -> list[str]:
        seen: dict[str, None] = {}
        for targets in self._forward.values():
            for directory_id in targets:
                seen.setdefault(directory_id, None)
        return list(seen)

    def is_replica(self, directory_id: str) -> bool:
        return directory_id in self.replica_directory_ids

    def authorizing_grant_for(self, directory_id: str, replica_grant_id: str) -> Optional[str]:
        """The primary grant that authorizes a replica grant, or None if unmapped."""
        return self._reverse.get((directory_id, replica_grant_id))

    def mapped_replica_grants(self, directory_id: str) -> frozenset[str]:
        """Every replica grant in ``directory_id`` that this mapping manages."""
        return frozenset(g for (d, g) in self._reverse if d == directory_id)

    def authorized_replica_grants(self, directory_id: str, primary_grant_ids: Iterable[str]) -> frozenset[str]:
        """Replica grants in ``directory_id`` that a primary grant set authorizes."""
        authorized = set()
        for grant_id in primary_grant_ids:
            replica_grant_id = self._forward.get(grant_id, {}).get(directory_id)
            if replica_grant_id:
                authorized.add(replica_grant_id)
        return frozenset(authorized)
