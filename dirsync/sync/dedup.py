"""Operation deduplicator / rate limiter.

Every mutation is keyed by ``(principal, directory, grant, action)``. A key
can be acquired once per window: a second acquire inside the window is
refused and the caller drops the operation instead of retrying it. The
reactive path and the reconciliation sweep share one instance, so they
cannot double-fire the same mutation.

Records are never persisted. They expire lazily on the next acquire of the
same key, and ``evict_expired`` removes the rest in bulk. Observed
notifications are matched against live records with ``claim_echo``, once
per record, to tell the engine's own changes from external ones.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Callable, NamedTuple


class ActionKind(str, Enum):
    ADD_GRANT = "add_grant"
    REMOVE_GRANT = "remove_grant"
    ADD_EXCLUSION = "add_exclusion"
    REMOVE_EXCLUSION = "remove_exclusion"
    EXPEL = "expel"


class OperationKey(NamedTuple):
    principal_id: str
    directory_id: str
    grant_id: str
    action: ActionKind

    def __str__(self) -> str:
        return f"{self.principal_id}-{self.directory_id}-{self.grant_id or '*'}-{self.action.value}"


class OperationDeduplicator:
    """Keyed acquire-or-skip gate with a fixed time window.

    Args:
        window: Seconds a record blocks its key.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(self, window: float, clock: Callable[[], float] = time.monotonic):
        self.window = window
        self._clock = clock
        self._records: dict[OperationKey, float] = {}
        self._echoed: set[OperationKey] = set()

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, key: OperationKey) -> bool:
        return self._is_live(key, self._clock())

    def _is_live(self, key: OperationKey, now: float) -> bool:
        stamp = self._records.get(key)
        return stamp is not None and now - stamp < self.window

    def try_acquire(self, key: OperationKey) -> bool:
        """Record ``key`` and return True unless a live record already exists."""
        now = self._clock()
        if self._is_live(key, now):
            return False
        self._records[key] = now
        self._echoed.discard(key)
        return True

    def release(self, key: OperationKey) -> None:
        """Drop the record for ``key`` so the operation may be attempted again."""
        self._records.pop(key, None)
        self._echoed.discard(key)

    def claim_echo(self, key: OperationKey) -> bool:
        """Attribute one observed change to the live operation ``key``.

        Each record explains at most one notification: the first claim
        succeeds, later claims for the same record fail, so a finished
        operation cannot mask later external changes to the same grant.
        """
        if key in self._echoed or not self._is_live(key, self._clock()):
            return False
        self._echoed.add(key)
        return True

    def evict_expired(self) -> int:
        """Remove every expired record; returns how many were removed."""
        now = self._clock()
        expired = [k for k, stamp in self._records.items() if now - stamp >= self.window]
        for key in expired:
            del self._records[key]
            self._echoed.discard(key)
        return len(expired)

    def snapshot(self) -> dict[OperationKey, float]:
        return dict(self._records)
