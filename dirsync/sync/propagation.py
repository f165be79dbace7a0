"""Exclusion and expulsion propagation from the primary to replicas.

Exclusions mirror unconditionally. A principal disappearing from the
primary is ambiguous: the audit trail decides whether it was an expulsion
(mirror it) or a voluntary departure (strip mapped grants, keep the
principal in the replicas). The audit check is a heuristic bounded by a
short attribution window; the service may publish the record late.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from dirsync.directory.base import DirectoryService
from dirsync.errors import DirSyncError, EntityFailure
from dirsync.models.directory import AdminRemovalRecord
from dirsync.models.events import ChangeEvent, EventKind
from dirsync.sync.dispatcher import DispatchOutcome, MutationDispatcher
from dirsync.sync.mapping import GrantMapping
from dirsync.utils.log import get_logger

logger = get_logger("propagation")

NO_REASON = "No reason provided"


def exclusion_reason(reason: str) -> str:
    return f"Primary directory exclusion sync: {reason or NO_REASON}"


def expulsion_reason(reason: str) -> str:
    return f"Primary directory expulsion sync: {reason or NO_REASON}"


@dataclass
class PropagationResult:
    """What happened on each replica for one propagated primary change."""

    principal_id: str
    action: str
    outcomes: dict[str, list[DispatchOutcome]] = field(default_factory=dict)
    failures: list[EntityFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass
class ExclusionSyncReport:
    primary_exclusions: int = 0
    mirrored: int = 0
    failures: list[EntityFailure] = field(default_factory=list)


class ExclusionPropagator:
    """Mirrors primary exclusions, lifts and expulsions onto every replica.

    Args:
        service: Directory service.
        dispatcher: Shared mutation dispatcher.
        mapping: Group mapping; supplies the replica set and mapped grants.
        primary_id: The primary directory.
        attribution_window: Seconds an admin-removal record stays attributable
            to a departure.
        clock: Wall-clock source compared with record timestamps.
    """

    def __init__(
        self,
        service: DirectoryService,
        dispatcher: MutationDispatcher,
        mapping: GrantMapping,
        primary_id: str,
        *,
        attribution_window: float = 5.0,
        clock: Callable[[], float] = time.time,
    ):
        self.service = service
        self.dispatcher = dispatcher
        self.mapping = mapping
        self.primary_id = primary_id
        self.attribution_window = attribution_window
        self._clock = clock

    async def handle(self, event: ChangeEvent) -> Optional[PropagationResult]:
        if event.directory_id != self.primary_id:
            return None
        if event.kind == EventKind.EXCLUSION_ADDED:
            return await self.propagate_exclusion(event.principal_id, event.reason)
        if event.kind == EventKind.EXCLUSION_REMOVED:
            return await self.propagate_lift(event.principal_id)
        if event.kind == EventKind.PRINCIPAL_REMOVED:
            return await self.on_principal_removed(event.principal_id)
        return None

    # ── Exclusions ───────────────────────────────────────────────────────

    async def propagate_exclusion(self, principal_id: str, reason: str = "") -> PropagationResult:
        logger.info("Exclusion detected on primary", extra={"context": {"principal": principal_id}})
        text = exclusion_reason(reason)

        async def apply(directory_id: str) -> list[DispatchOutcome]:
            if await self.service.fetch_exclusion(directory_id, principal_id) is not None:
                return []
            return [await self.dispatcher.add_exclusion(directory_id, principal_id, reason=text)]

        return await self._across_replicas(principal_id, "exclude", apply)

    async def propagate_lift(self, principal_id: str) -> PropagationResult:
        logger.info("Exclusion lifted on primary", extra={"context": {"principal": principal_id}})

        async def apply(directory_id: str) -> list[DispatchOutcome]:
            if await self.service.fetch_exclusion(directory_id, principal_id) is None:
                return []
            return [
                await self.dispatcher.remove_exclusion(
                    directory_id, principal_id, reason="Primary directory exclusion lifted"
                )
            ]

        return await self._across_replicas(principal_id, "lift_exclusion", apply)

    # ── Departures ───────────────────────────────────────────────────────

    async def find_expulsion(self, principal_id: str) -> Optional[AdminRemovalRecord]:
        """Return a recent admin-removal record for ``principal_id``, if any."""
        try:
            records = await self.service.list_admin_removals(self.primary_id)
        except DirSyncError as e:
            logger.warning(
                "Could not read admin-removal records; treating departure as voluntary (%s)",
                e,
                extra={"context": {"principal": principal_id}},
            )
            return None

        now = self._clock()
        for record in records:
            if record.principal_id == principal_id and now - record.created_at <= self.attribution_window:
                return record
        return None

    async def on_principal_removed(self, principal_id: str) -> PropagationResult:
        record = await self.find_expulsion(principal_id)
        if record is not None:
            return await self.propagate_expulsion(principal_id, record.reason)
        return await self.strip_mapped_grants(principal_id)

    async def propagate_expulsion(self, principal_id: str, reason: str = "") -> PropagationResult:
        logger.info("Expulsion detected on primary", extra={"context": {"principal": principal_id}})
        text = expulsion_reason(reason)

        async def apply(directory_id: str) -> list[DispatchOutcome]:
            if await self.service.fetch_principal(directory_id, principal_id) is None:
                return []
            return [await self.dispatcher.expel(directory_id, principal_id, reason=text)]

        return await self._across_replicas(principal_id, "expel", apply)

    async def strip_mapped_grants(self, principal_id: str) -> PropagationResult:
        logger.info("Voluntary departure from primary", extra={"context": {"principal": principal_id}})

        async def apply(directory_id: str) -> list[DispatchOutcome]:
            member = await self.service.fetch_principal(directory_id, principal_id)
            if member is None:
                return []
            held = member.grant_ids & self.mapping.mapped_replica_grants(directory_id)
            return [
                await self.dispatcher.remove_grant(
                    directory_id, principal_id, grant_id, reason="Left the primary directory"
                )
                for grant_id in sorted(held)
            ]

        return await self._across_replicas(principal_id, "strip_grants", apply)

    # ── Startup exclusion sync ───────────────────────────────────────────

    async def sync_exclusions(self) -> ExclusionSyncReport:
        """Copy every primary exclusion to each replica that lacks it."""
        report = ExclusionSyncReport()
        primary_exclusions = await self.service.list_exclusions(self.primary_id)
        report.primary_exclusions = len(primary_exclusions)
        logger.info("Starting exclusion sync", extra={"context": {"exclusions": len(primary_exclusions)}})

        for directory_id in sorted(self.mapping.replica_directory_ids):
            try:
                existing = {e.principal_id for e in await self.service.list_exclusions(directory_id)}
            except Exception as e:
                logger.error("Cannot list exclusions for replica %s: %s", directory_id, e)
                report.failures.append(EntityFailure(directory_id, "*", str(e)))
                continue

            for exclusion in primary_exclusions:
                if exclusion.principal_id in existing:
                    continue
                try:
                    outcome = await self.dispatcher.add_exclusion(
                        directory_id, exclusion.principal_id, reason=exclusion_reason(exclusion.reason)
                    )
                except Exception as e:
                    report.failures.append(EntityFailure(directory_id, exclusion.principal_id, str(e)))
                    continue
                if outcome.performed:
                    report.mirrored += 1
        return report

    # ── internals ────────────────────────────────────────────────────────

    async def _across_replicas(
        self,
        principal_id: str,
        action: str,
        apply: Callable[[str], Awaitable[list[DispatchOutcome]]],
    ) -> PropagationResult:
        result = PropagationResult(principal_id, action)
        replicas = sorted(self.mapping.replica_directory_ids)
        outcomes = await asyncio.gather(*(apply(d) for d in replicas), return_exceptions=True)
        for directory_id, outcome in zip(replicas, outcomes):
            if isinstance(outcome, Exception):
                logger.error(
                    "Failed to %s in replica: %s",
                    action,
                    outcome,
                    extra={"context": {"principal": principal_id, "directory": directory_id}},
                )
                result.failures.append(EntityFailure(directory_id, principal_id, str(outcome)))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                result.outcomes[directory_id] = outcome
        return result
