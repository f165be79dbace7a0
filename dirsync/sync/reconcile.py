"""Reconciliation sweep: full-state self-healing pass.

Runs at startup and on a fixed interval, independent of events:

1. Primary: fix the main-membership marker and pending status of every
   principal.
2. Exclusions: copy every primary exclusion to replicas that lack it.
3. Replicas: diff every member's mapped grants against the primary-derived
   authorized set and apply the difference in small batches, pausing
   between batches.

Each principal and each replica is isolated; a failure is recorded in the
report and the sweep moves on. The sweep shares the deduplicator with the
reactive path through the dispatcher.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from dirsync.directory.base import DirectoryService
from dirsync.errors import EntityFailure, PartialBatchFailure
from dirsync.sync.orchestrator import ReplicaDiff, SyncOrchestrator
from dirsync.sync.propagation import ExclusionPropagator
from dirsync.utils.log import get_logger

logger = get_logger("reconcile")


@dataclass
class SweepReport:
    """What one sweep pass checked, changed and failed on."""

    dry_run: bool = False
    started_at: float = 0.0
    finished_at: float = 0.0
    principals_checked: int = 0
    markers_corrected: int = 0
    exclusions_mirrored: int = 0
    grants_added: int = 0
    grants_removed: int = 0
    multiple_groups: list[str] = field(default_factory=list)
    failures: list[EntityFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def duration(self) -> float:
        return max(0.0, self.finished_at - self.started_at)

    def summary(self) -> str:
        status = "OK" if self.ok else "PARTIAL"
        prefix = "[DRY RUN] " if self.dry_run else ""
        return (
            f"{prefix}[{status}] {self.principals_checked} principal(s) checked, "
            f"{self.markers_corrected} marker fix(es), {self.exclusions_mirrored} exclusion(s) mirrored, "
            f"+{self.grants_added}/-{self.grants_removed} replica grant(s), "
            f"{len(self.failures)} failure(s)"
        )

    def raise_for_failures(self) -> None:
        if self.failures:
            raise PartialBatchFailure(self.failures)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "dry_run": self.dry_run,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "principals_checked": self.principals_checked,
            "markers_corrected": self.markers_corrected,
            "exclusions_mirrored": self.exclusions_mirrored,
            "grants_added": self.grants_added,
            "grants_removed": self.grants_removed,
            "multiple_groups": list(self.multiple_groups),
            "failures": [str(f) for f in self.failures],
            "summary": self.summary(),
        }


class ReconciliationSweep:
    """One full pass over the primary and every replica.

    Args:
        service: Directory service.
        orchestrator: Supplies marker correction and replica diffing.
        propagator: Supplies exclusion sync; ``None`` skips that phase.
        batch_size: Principals corrected concurrently per replica batch.
        batch_pause: Seconds to wait between batches.
    """

    def __init__(
        self,
        service: DirectoryService,
        orchestrator: SyncOrchestrator,
        propagator: Optional[ExclusionPropagator] = None,
        *,
        batch_size: int = 10,
        batch_pause: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.service = service
        self.orchestrator = orchestrator
        self.propagator = propagator
        self.batch_size = max(1, batch_size)
        self.batch_pause = batch_pause
        self._sleep = sleep
        self._clock = clock

    async def run(self) -> SweepReport:
        report = SweepReport(dry_run=self.orchestrator.dispatcher.dry_run, started_at=self._clock())
        primary_id = self.orchestrator.primary_id
        logger.info("Reconciliation sweep started", extra={"context": {"dry_run": report.dry_run}})

        try:
            primary_members = await self.service.list_principals(primary_id)
        except Exception as e:
            # Without the primary there is nothing to derive authorization from.
            logger.error("Cannot list primary principals; sweep aborted: %s", e)
            report.failures.append(EntityFailure(primary_id, "*", str(e)))
            report.finished_at = self._clock()
            return report

        await self._sweep_primary(primary_members, report)
        await self._sweep_exclusions(report)

        authorization = {m.principal_id: m.grant_ids for m in primary_members}
        for directory_id in self.orchestrator.mapping.replica_directory_ids:
            await self._sweep_replica(directory_id, authorization, report)

        report.finished_at = self._clock()
        log = logger.info if report.ok else logger.warning
        log(report.summary(), extra={"context": {"duration": round(report.duration, 3)}})
        return report

    # -- phases --------------------------------------------------------------

    async def _sweep_primary(self, members, report: SweepReport) -> None:
        mapping = self.orchestrator.mapping
        for member in members:
            report.principals_checked += 1
            if len(mapping.held_groups(member.grant_ids)) > 1:
                logger.warning(
                    "Principal holds more than one group grant",
                    extra={"context": {"principal": member.principal_id, "groups": sorted(mapping.held_groups(member.grant_ids))}},
                )
                report.multiple_groups.append(member.principal_id)
            try:
                outcomes = await self.orchestrator.correct_markers(member)
            except Exception as e:
                report.failures.append(EntityFailure(member.directory_id, member.principal_id, str(e)))
                continue
            report.markers_corrected += sum(1 for o in outcomes if o.performed)

    async def _sweep_exclusions(self, report: SweepReport) -> None:
        if self.propagator is None:
            return
        try:
            result = await self.propagator.sync_exclusions()
        except Exception as e:
            logger.error("Exclusion sync failed: %s", e)
            report.failures.append(EntityFailure(self.orchestrator.primary_id, "*", str(e)))
            return
        report.exclusions_mirrored += result.mirrored
        report.failures.extend(result.failures)

    async def _sweep_replica(self, directory_id: str, authorization: dict, report: SweepReport) -> None:
        try:
            members = await self.service.list_principals(directory_id)
        except Exception as e:
            logger.error("Cannot list principals of replica %s: %s", directory_id, e)
            report.failures.append(EntityFailure(directory_id, "*", str(e)))
            return

        diffs: list[ReplicaDiff] = []
        for member in members:
            report.principals_checked += 1
            diff = self.orchestrator.diff_replica_member(member, authorization.get(member.principal_id, frozenset()))
            if not diff.empty:
                diffs.append(diff)

        logger.info(
            "Replica %s: %d of %d principal(s) need correction",
            directory_id,
            len(diffs),
            len(members),
        )
        for start in range(0, len(diffs), self.batch_size):
            if start:
                await self._sleep(self.batch_pause)
            batch = diffs[start : start + self.batch_size]
            results = await asyncio.gather(
                *(self.orchestrator.apply_replica_diff(diff) for diff in batch), return_exceptions=True
            )
            for diff, outcome in zip(batch, results):
                if isinstance(outcome, Exception):
                    report.failures.append(EntityFailure(directory_id, diff.principal_id, str(outcome)))
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    removed = outcome[: len(diff.to_remove)]
                    added = outcome[len(diff.to_remove) :]
                    report.grants_removed += sum(1 for o in removed if o.performed)
                    report.grants_added += sum(1 for o in added if o.performed)
