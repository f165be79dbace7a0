"""Mutation dispatch: the one path every remote write goes through.

Order of checks for each mutation:
1. Deduplicator: a live record for the same key drops the call.
2. Dry-run gate: in dry-run mode the decision is logged and recorded but
   the service is never called.
3. Retry engine around the actual service call.

A ``NotFoundError`` from the service is a skip (the target vanished). Any
other failure releases the dedup record, so a later event or sweep can try
again, and propagates to the caller.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from dirsync.directory.base import DirectoryService
from dirsync.errors import NotFoundError
from dirsync.sync.dedup import ActionKind, OperationDeduplicator, OperationKey
from dirsync.sync.retry import RetryPolicy, with_retry
from dirsync.utils.log import get_logger

logger = get_logger("dispatch")


class DispatchOutcome(str, Enum):
    APPLIED = "applied"
    DRY_RUN = "dry_run"
    DUPLICATE = "duplicate"
    NOT_FOUND = "not_found"

    @property
    def performed(self) -> bool:
        """True when the mutation was (or, in dry-run, would have been) issued."""
        return self in (DispatchOutcome.APPLIED, DispatchOutcome.DRY_RUN)


@dataclass
class DispatchStats:
    applied: int = 0
    dry_run: int = 0
    duplicates: int = 0
    not_found: int = 0
    failed: int = 0


_VERBS = {
    ActionKind.ADD_GRANT: "Add grant {grant} to {principal} in {directory}",
    ActionKind.REMOVE_GRANT: "Remove grant {grant} from {principal} in {directory}",
    ActionKind.ADD_EXCLUSION: "Exclude {principal} from {directory}",
    ActionKind.REMOVE_EXCLUSION: "Lift exclusion of {principal} in {directory}",
    ActionKind.EXPEL: "Expel {principal} from {directory}",
}


class MutationDispatcher:
    """Deduplicated, retried, dry-run-aware mutations against the service."""

    def __init__(
        self,
        service: DirectoryService,
        dedup: OperationDeduplicator,
        policy: RetryPolicy = RetryPolicy(),
        *,
        dry_run: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.service = service
        self.dedup = dedup
        self.policy = policy
        self.dry_run = dry_run
        self.stats = DispatchStats()
        self._sleep = sleep

    # -- public API ----------------------------------------------------------

    async def add_grant(self, directory_id: str, principal_id: str, grant_id: str, reason: str = "") -> DispatchOutcome:
        key = OperationKey(principal_id, directory_id, grant_id, ActionKind.ADD_GRANT)
        return await self._dispatch(
            key, lambda: self.service.add_grant(directory_id, principal_id, grant_id, reason), reason
        )

    async def remove_grant(
        self, directory_id: str, principal_id: str, grant_id: str, reason: str = ""
    ) -> DispatchOutcome:
        key = OperationKey(principal_id, directory_id, grant_id, ActionKind.REMOVE_GRANT)
        return await self._dispatch(
            key, lambda: self.service.remove_grant(directory_id, principal_id, grant_id, reason), reason
        )

    async def add_exclusion(self, directory_id: str, principal_id: str, reason: str = "") -> DispatchOutcome:
        key = OperationKey(principal_id, directory_id, "", ActionKind.ADD_EXCLUSION)
        return await self._dispatch(key, lambda: self.service.add_exclusion(directory_id, principal_id, reason), reason)

    async def remove_exclusion(self, directory_id: str, principal_id: str, reason: str = "") -> DispatchOutcome:
        key = OperationKey(principal_id, directory_id, "", ActionKind.REMOVE_EXCLUSION)
        return await self._dispatch(
            key, lambda: self.service.remove_exclusion(directory_id, principal_id, reason), reason
        )

    async def expel(self, directory_id: str, principal_id: str, reason: str = "") -> DispatchOutcome:
        key = OperationKey(principal_id, directory_id, "", ActionKind.EXPEL)
        return await self._dispatch(
            key, lambda: self.service.remove_principal(directory_id, principal_id, reason), reason
        )

    # -- internals -----------------------------------------------------------

    async def _dispatch(
        self, key: OperationKey, call: Callable[[], Awaitable[None]], reason: str
    ) -> DispatchOutcome:
        description = _VERBS[key.action].format(
            grant=key.grant_id, principal=key.principal_id, directory=key.directory_id
        )
        context = {
            "principal": key.principal_id,
            "directory": key.directory_id,
            "grant": key.grant_id,
            "action": key.action.value,
            "dry_run": self.dry_run,
        }

        if not self.dedup.try_acquire(key):
            self.stats.duplicates += 1
            logger.debug("Skipped duplicate: %s", description, extra={"context": context})
            return DispatchOutcome.DUPLICATE

        prefix = "[DRY RUN] " if self.dry_run else ""
        logger.info("%s%s", prefix, description, extra={"context": {**context, "reason": reason}})
        if self.dry_run:
            self.stats.dry_run += 1
            return DispatchOutcome.DRY_RUN

        try:
            await with_retry(call, self.policy, description=description, sleep=self._sleep)
        except NotFoundError as e:
            self.stats.not_found += 1
            logger.info("Skipped, target missing: %s (%s)", description, e, extra={"context": context})
            return DispatchOutcome.NOT_FOUND
        except Exception as e:
            self.dedup.release(key)
            self.stats.failed += 1
            logger.error("Failed: %s (%s)", description, e, extra={"context": context})
            raise

        self.stats.applied += 1
        return DispatchOutcome.APPLIED
