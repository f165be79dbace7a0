"""Engine wiring: one object that owns every component of a running sync.

Data flow::

    notification ─▶ normalizer ─▶ debounce coalescer ─▶ orchestrator ─┐
                                                    └▶ exclusivity ────┤
                 exclusion / leave ─▶ propagator ──────────────────────┤
                                     reconciliation sweep ─────────────┤
                                                                       ▼
                           deduplicator ─▶ dry-run gate ─▶ retry ─▶ service

The event handler is the error boundary of the reactive path: a failed
event is logged and dropped. There is no replay queue; the next change or
the next sweep converges the state.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import asdict
from typing import Any, Awaitable, Callable, Optional

from dirsync.config.loader import SelectableGrant, SyncConfig
from dirsync.config.validator import ConfigValidationResult, validate_config, verify_against_service
from dirsync.directory.base import DirectoryService
from dirsync.directory.http import HttpDirectoryService
from dirsync.models.events import ChangeEvent, EventKind, RawMemberUpdate, RawNotification
from dirsync.sync.debounce import DebounceCoalescer, PendingChange
from dirsync.sync.dedup import OperationDeduplicator
from dirsync.sync.dispatcher import MutationDispatcher
from dirsync.sync.exclusivity import ExclusivityEnforcer, SelectionResult
from dirsync.sync.mapping import GrantMapping
from dirsync.sync.normalizer import normalize, normalize_member_update
from dirsync.sync.orchestrator import SyncOrchestrator
from dirsync.sync.propagation import ExclusionPropagator
from dirsync.sync.reconcile import ReconciliationSweep, SweepReport
from dirsync.sync.retry import RetryPolicy
from dirsync.utils.log import get_logger

logger = get_logger("engine")

_PROPAGATED = (EventKind.EXCLUSION_ADDED, EventKind.EXCLUSION_REMOVED, EventKind.PRINCIPAL_REMOVED)


class SyncEngine:
    """Owns the components of one synchronization run.

    Args:
        config: Loaded configuration.
        service: Directory service to sync through.
        clock: Monotonic clock for the deduplicator.
        wall_clock: Epoch clock compared with admin-removal timestamps.
        sleep: Awaitable sleep used for retry backoff and sweep pauses.

    Raises:
        ConfigError: the group mapping is ambiguous.
    """

    def __init__(
        self,
        config: SyncConfig,
        service: DirectoryService,
        *,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        timing = config.timing
        self.config = config
        self.service = service
        self.mapping = GrantMapping(config.groups)
        self.dedup = OperationDeduplicator(timing.effective_dedup_window, clock=clock)
        self.dispatcher = MutationDispatcher(
            service,
            self.dedup,
            RetryPolicy(timing.retry_max_attempts, timing.retry_initial_delay),
            dry_run=config.dry_run,
            sleep=sleep,
        )
        self.orchestrator = SyncOrchestrator(service, self.dispatcher, self.mapping, config.primary)
        self.propagator = ExclusionPropagator(
            service,
            self.dispatcher,
            self.mapping,
            config.primary.directory_id,
            attribution_window=timing.expulsion_attribution_window,
            clock=wall_clock,
        )
        self.enforcer = ExclusivityEnforcer(service, self.dispatcher, self.dedup, config.selection_sets)
        self.sweep = ReconciliationSweep(
            service,
            self.orchestrator,
            self.propagator,
            batch_size=timing.sweep_batch_size,
            batch_pause=timing.sweep_batch_pause,
            sleep=sleep,
            clock=wall_clock,
        )
        self.coalescer = DebounceCoalescer(timing.debounce_window, self._on_member_change)

        self.last_sweep: Optional[SweepReport] = None
        self.started = False
        self.events_received = 0
        self.events_dropped = 0
        self._sweep_lock = asyncio.Lock()
        self._tasks: list[asyncio.Task] = []

    @classmethod
    def from_config(cls, config: SyncConfig, service: Optional[DirectoryService] = None, **kwargs) -> "SyncEngine":
        """Build an engine, defaulting to the HTTP service described in ``config``."""
        if service is None:
            service = HttpDirectoryService(
                config.service.base_url,
                token=config.service.token,
                timeout=config.service.timeout,
            )
        return cls(config, service, **kwargs)

    @property
    def dry_run(self) -> bool:
        return self.dispatcher.dry_run

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def validate(self, live: bool = True) -> ConfigValidationResult:
        """Run startup validation; raises ``ConfigError`` on any error."""
        result = validate_config(self.config)
        if live and result.passed:
            live_result = await verify_against_service(self.config, self.service)
            result.issues.extend(live_result.issues)
        for issue in result.warnings:
            logger.warning(str(issue))
        logger.info("Configuration validation: %s", result.summary())
        result.raise_for_errors()
        return result

    async def start(self, *, live_validation: bool = True) -> None:
        """Validate, run the startup sweep and schedule background tasks.

        Validation failures are fatal and happen before any mutation.
        """
        await self.validate(live=live_validation)
        if self.dry_run:
            logger.warning("Dry-run mode: no mutation will reach the directory service")

        if self.config.timing.sweep_on_startup:
            await self.run_sweep()

        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(self._every(self.config.timing.sweep_interval, self.run_sweep, "sweep")),
            loop.create_task(self._every(max(self.dedup.window, 1.0), self._evict, "dedup eviction")),
        ]
        self.started = True
        logger.info(
            "Engine started",
            extra={
                "context": {
                    "primary": self.config.primary.directory_id,
                    "replicas": self.mapping.replica_directory_ids,
                    "dry_run": self.dry_run,
                }
            },
        )

    async def stop(self) -> None:
        """Cancel background tasks and finish coalesced changes."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self.coalescer.flush()
        self.started = False
        logger.info("Engine stopped")

    async def aclose(self) -> None:
        await self.stop()
        await self.service.aclose()

    async def _every(self, interval: float, job: Callable[[], Awaitable[Any]], name: str) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await job()
            except Exception:
                logger.exception("Background %s failed", name)

    async def _evict(self) -> int:
        evicted = self.dedup.evict_expired()
        if evicted:
            logger.debug("Evicted %d expired operation record(s)", evicted)
        return evicted

    # ── Reactive path ────────────────────────────────────────────────────

    async def handle_notification(self, raw: RawNotification) -> None:
        """Entry point for the subscription feed.

        Member updates are coalesced per (directory, principal); everything
        else is handled immediately.
        """
        self.events_received += 1
        if isinstance(raw, RawMemberUpdate):
            if raw.before == raw.after:
                return
            self.coalescer.submit(
                raw.directory_id,
                raw.principal_id,
                raw.before,
                raw.after,
                engine_sets=self.enforcer.engine_caused_sets(
                    raw.directory_id, raw.principal_id, raw.before, raw.after
                ),
            )
            return

        for event in normalize(raw):
            await self._handle_event(event)

    async def _handle_event(self, event: ChangeEvent) -> None:
        logger.debug("Handling %s", event.describe())
        try:
            if event.kind in _PROPAGATED:
                await self.propagator.handle(event)
            else:
                await self.orchestrator.handle(event)
        except Exception:
            self.events_dropped += 1
            logger.exception("Event handling failed; dropped %s", event.describe())

    async def _on_member_change(self, change: PendingChange) -> None:
        for event in normalize_member_update(change.directory_id, change.principal_id, change.before, change.after):
            await self._handle_event(event)
        try:
            await self.enforcer.enforce(
                change.directory_id,
                change.principal_id,
                change.before,
                change.after,
                suppressed=change.suppressed_sets,
            )
        except Exception:
            self.events_dropped += 1
            logger.exception(
                "Exclusivity enforcement failed",
                extra={"context": {"principal": change.principal_id, "directory": change.directory_id}},
            )

    # ── Sweep ────────────────────────────────────────────────────────────

    async def run_sweep(self) -> SweepReport:
        """Run one reconciliation pass; concurrent callers wait their turn."""
        async with self._sweep_lock:
            report = await self.sweep.run()
            self.last_sweep = report
            return report

    # ── Presentation surface ─────────────────────────────────────────────

    async def submit_selection(
        self, principal_id: str, directory_id: str, chosen_grant_ids, set_id: str
    ) -> SelectionResult:
        return await self.enforcer.submit_selection(principal_id, directory_id, chosen_grant_ids, set_id)

    async def current_grant(self, principal_id: str, set_id: str) -> Optional[SelectableGrant]:
        return await self.enforcer.current_grant(principal_id, set_id)

    def status(self) -> dict[str, Any]:
        return {
            "started": self.started,
            "dry_run": self.dry_run,
            "primary": self.config.primary.directory_id,
            "replicas": self.mapping.replica_directory_ids,
            "dedup_records": len(self.dedup),
            "pending_changes": len(self.coalescer.pending_keys),
            "events_received": self.events_received,
            "events_dropped": self.events_dropped,
            "dispatch": asdict(self.dispatcher.stats),
            "last_sweep": self.last_sweep.to_dict() if self.last_sweep else None,
        }
