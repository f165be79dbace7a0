"""Synchronization orchestrator: group membership across directories.

Per principal the primary side moves between three conceptual states:

    Unaffiliated ──GrantAdded(G)──▶ Affiliated(G)
    Pending      ──GrantAdded(G)──▶ Affiliated(G)
    Affiliated(G) ─GrantRemoved(G), no other group─▶ Unaffiliated

Nothing is stored. Every event is a wake-up call: the orchestrator re-reads
the principal's current grants and derives what should be true from them,
so out-of-order or missed events converge to the same result.

Failure semantics: a failed primary-side mutation aborts the rest of the
transition and propagates. Replica fan-out runs concurrently and isolates
each replica; failures are logged and collected in a ``FanOutResult``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from typing import Optional

from dirsync.config.loader import PrimaryConfig
from dirsync.directory.base import DirectoryService
from dirsync.errors import EntityFailure, UnknownGrantError
from dirsync.models.directory import Member
from dirsync.models.events import ChangeEvent, EventKind
from dirsync.sync.dedup import ActionKind
from dirsync.sync.dispatcher import DispatchOutcome, MutationDispatcher
from dirsync.sync.mapping import GrantMapping
from dirsync.utils.log import get_logger

logger = get_logger("orchestrator")


@dataclass
class FanOutResult:
    """Outcome of pushing one primary grant change to every mapped replica."""

    principal_id: str
    primary_grant_id: str
    action: ActionKind
    outcomes: dict[str, Optional[DispatchOutcome]] = field(default_factory=dict)
    failures: list[EntityFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass
class ReplicaDiff:
    """Grants to add and remove so a replica member matches the primary."""

    directory_id: str
    principal_id: str
    to_add: frozenset[str] = frozenset()
    to_remove: frozenset[str] = frozenset()

    @property
    def empty(self) -> bool:
        return not self.to_add and not self.to_remove


class SyncOrchestrator:
    """Drives group-grant propagation and main-membership marker upkeep."""

    def __init__(
        self,
        service: DirectoryService,
        dispatcher: MutationDispatcher,
        mapping: GrantMapping,
        primary: PrimaryConfig,
    ):
        self.service = service
        self.dispatcher = dispatcher
        self.mapping = mapping
        self.primary = primary

    @property
    def primary_id(self) -> str:
        return self.primary.directory_id

    # ── Event entry point ────────────────────────────────────────────────

    async def handle(self, event: ChangeEvent) -> None:
        """React to one grant or join event from any directory."""
        if event.directory_id == self.primary_id:
            if event.kind == EventKind.PRINCIPAL_JOINED:
                await self.on_primary_join(event.principal_id)
            elif event.kind in (EventKind.GRANT_ADDED, EventKind.GRANT_REMOVED):
                await self.on_primary_grants_changed(event)
            return

        if not self.mapping.is_replica(event.directory_id):
            return

        if event.kind == EventKind.PRINCIPAL_JOINED:
            await self.reconcile_replica_member(event.directory_id, event.principal_id)
        elif event.kind in (EventKind.GRANT_ADDED, EventKind.GRANT_REMOVED):
            if event.grant_ids & self.mapping.mapped_replica_grants(event.directory_id):
                await self.reconcile_replica_member(event.directory_id, event.principal_id)

    # ── Primary side ─────────────────────────────────────────────────────

    async def on_primary_grants_changed(self, event: ChangeEvent) -> None:
        member = await self.service.fetch_principal(self.primary_id, event.principal_id)
        if member is None:
            logger.info(
                "Principal left the primary before sync ran",
                extra={"context": {"principal": event.principal_id}},
            )
            return

        if event.kind == EventKind.GRANT_ADDED:
            added = sorted(g for g in self.mapping.held_groups(event.grant_ids) if member.has(g))
            if added:
                await self.affiliate(member, added[0])
                return
        else:
            for grant_id in sorted(self.mapping.held_groups(event.grant_ids)):
                if not member.has(grant_id):
                    member = await self.disaffiliate(member, grant_id)

        await self.correct_markers(member)

    async def on_primary_join(self, principal_id: str) -> None:
        member = await self.service.fetch_principal(self.primary_id, principal_id)
        if member is not None:
            await self.correct_markers(member)

    async def affiliate(self, member: Member, grant_id: str) -> Member:
        """Make ``grant_id`` the principal's one group and propagate it.

        Steps, in order: drop any other group grant (and its replica grants),
        ensure the main-membership marker, clear pending status, fan out.
        """
        pid = member.principal_id
        group = self.mapping.group_name(grant_id)
        logger.info("Syncing group %s for %s", group, member.label, extra={"context": {"principal": pid}})

        for other in sorted(self.mapping.held_groups(member.grant_ids) - {grant_id}):
            await self.dispatcher.remove_grant(
                self.primary_id, pid, other, reason=f"Principal moved to group {group}"
            )
            member = _without(member, other)
            await self.fan_out(pid, other, ActionKind.REMOVE_GRANT)

        if not member.has(self.primary.member_grant_id):
            await self.dispatcher.add_grant(
                self.primary_id, pid, self.primary.member_grant_id, reason=f"Joined group {group}"
            )
            member = _with(member, self.primary.member_grant_id)

        member = await self._clear_pending(member)
        await self.fan_out(pid, grant_id, ActionKind.ADD_GRANT)
        return member

    async def disaffiliate(self, member: Member, grant_id: str) -> Member:
        """Propagate loss of ``grant_id``; drop the marker if no group remains."""
        pid = member.principal_id
        group = self.mapping.group_name(grant_id)
        logger.info("Removing group %s from %s", group, member.label, extra={"context": {"principal": pid}})

        if not self.mapping.held_groups(member.grant_ids) and member.has(self.primary.member_grant_id):
            await self.dispatcher.remove_grant(
                self.primary_id, pid, self.primary.member_grant_id, reason=f"Left group {group}"
            )
            member = _without(member, self.primary.member_grant_id)

        await self.fan_out(pid, grant_id, ActionKind.REMOVE_GRANT)
        return member

    async def correct_markers(self, member: Member) -> list[DispatchOutcome]:
        """Make the marker and pending grants agree with group affiliation.

        The marker implies exactly one group: restore it when a group is held,
        strip it when none is. Pending status is cleared once a group is held.
        """
        pid = member.principal_id
        marker = self.primary.member_grant_id
        pending = self.primary.pending_grant_id
        affiliated = bool(self.mapping.held_groups(member.grant_ids))
        outcomes = []

        if affiliated and not member.has(marker):
            logger.warning(
                "Main-membership grant missing for affiliated principal; restoring",
                extra={"context": {"principal": pid}},
            )
            outcomes.append(await self.dispatcher.add_grant(self.primary_id, pid, marker, reason="Restore main-membership grant"))
        elif not affiliated and member.has(marker):
            logger.warning(
                "Main-membership grant held without a group; removing",
                extra={"context": {"principal": pid}},
            )
            outcomes.append(await self.dispatcher.remove_grant(self.primary_id, pid, marker, reason="No group grant held"))

        if affiliated and pending and member.has(pending):
            outcomes.append(await self.dispatcher.remove_grant(self.primary_id, pid, pending, reason="Group grant obtained"))
        return outcomes

    async def _clear_pending(self, member: Member) -> Member:
        pending = self.primary.pending_grant_id
        if pending and member.has(pending):
            await self.dispatcher.remove_grant(
                self.primary_id, member.principal_id, pending, reason="Group grant obtained"
            )
            member = _without(member, pending)
        return member

    # ── Replica fan-out ──────────────────────────────────────────────────

    async def fan_out(self, principal_id: str, primary_grant_id: str, action: ActionKind) -> FanOutResult:
        """Push one primary grant change to every mapped replica concurrently."""
        result = FanOutResult(principal_id, primary_grant_id, action)
        try:
            targets = self.mapping.targets_for(primary_grant_id)
        except UnknownGrantError:
            logger.warning(
                "No group mapping for grant; nothing to fan out",
                extra={"context": {"grant": primary_grant_id}},
            )
            return result

        reason = f"Group sync: {self.mapping.group_name(primary_grant_id)}"
        items = list(targets.items())
        outcomes = await asyncio.gather(
            *(self._apply_to_replica(d, principal_id, g, action, reason) for d, g in items),
            return_exceptions=True,
        )

        for (directory_id, _), outcome in zip(items, outcomes):
            if isinstance(outcome, Exception):
                logger.error(
                    "Replica sync failed",
                    extra={"context": {"principal": principal_id, "directory": directory_id, "error": str(outcome)}},
                )
                result.failures.append(EntityFailure(directory_id, principal_id, str(outcome)))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                result.outcomes[directory_id] = outcome

        if result.failures:
            logger.error(
                "%d of %d replica operation(s) failed",
                len(result.failures),
                len(items),
                extra={"context": {"principal": principal_id, "grant": primary_grant_id}},
            )
        return result

    async def _apply_to_replica(
        self, directory_id: str, principal_id: str, grant_id: str, action: ActionKind, reason: str
    ) -> Optional[DispatchOutcome]:
        member = await self.service.fetch_principal(directory_id, principal_id)
        if member is None:
            logger.debug(
                "Principal is not a member of replica",
                extra={"context": {"principal": principal_id, "directory": directory_id}},
            )
            return None

        if action == ActionKind.ADD_GRANT:
            if member.has(grant_id):
                return None
            return await self.dispatcher.add_grant(directory_id, principal_id, grant_id, reason=reason)
        if not member.has(grant_id):
            return None
        return await self.dispatcher.remove_grant(directory_id, principal_id, grant_id, reason=reason)

    # ── Replica drift ────────────────────────────────────────────────────

    def diff_replica_member(self, member: Member, primary_grant_ids: frozenset[str]) -> ReplicaDiff:
        """Compare a replica member's mapped grants with what the primary authorizes.

        A held replica grant stays only while the primary grant that maps to it
        is held; unmapped replica grants are never touched.
        """
        directory_id = member.directory_id
        authorized = self.mapping.authorized_replica_grants(directory_id, primary_grant_ids)
        current = member.grant_ids & self.mapping.mapped_replica_grants(directory_id)
        unauthorized = {
            grant_id
            for grant_id in current
            if self.mapping.authorizing_grant_for(directory_id, grant_id) not in primary_grant_ids
        }
        return ReplicaDiff(
            directory_id=directory_id,
            principal_id=member.principal_id,
            to_add=frozenset(authorized - current),
            to_remove=frozenset(unauthorized),
        )

    async def apply_replica_diff(self, diff: ReplicaDiff) -> list[DispatchOutcome]:
        outcomes = []
        for grant_id in sorted(diff.to_remove):
            outcomes.append(
                await self.dispatcher.remove_grant(
                    diff.directory_id, diff.principal_id, grant_id, reason="Not authorized by primary group"
                )
            )
        for grant_id in sorted(diff.to_add):
            outcomes.append(
                await self.dispatcher.add_grant(
                    diff.directory_id, diff.principal_id, grant_id, reason="Authorized by primary group"
                )
            )
        return outcomes

    async def reconcile_replica_member(self, directory_id: str, principal_id: str) -> ReplicaDiff:
        """Re-derive one replica member's mapped grants from the primary."""
        empty = ReplicaDiff(directory_id, principal_id)
        member = await self.service.fetch_principal(directory_id, principal_id)
        if member is None:
            return empty

        primary_member = await self.service.fetch_principal(self.primary_id, principal_id)
        primary_grants = primary_member.grant_ids if primary_member is not None else frozenset()
        diff = self.diff_replica_member(member, primary_grants)
        if diff.empty:
            return diff

        logger.warning(
            "Replica grants diverge from primary; correcting",
            extra={
                "context": {
                    "principal": principal_id,
                    "directory": directory_id,
                    "add": sorted(diff.to_add),
                    "remove": sorted(diff.to_remove),
                }
            },
        )
        await self.apply_replica_diff(diff)
        return diff


def _with(member: Member, grant_id: str) -> Member:
    return replace(member, grant_ids=member.grant_ids | {grant_id})


def _without(member: Member, grant_id: str) -> Member:
    return replace(member, grant_ids=member.grant_ids - {grant_id})
