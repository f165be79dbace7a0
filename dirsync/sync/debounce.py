"""Debounce coalescer: collapse bursts of member updates before syncing.

One external action often produces several raw updates in quick succession
(a grant swap arrives as remove + add). Updates are keyed by
``(directory, principal)``; each new update restarts that key's timer and
folds into the pending entry, keeping the earliest ``before`` and the latest
``after``. When the timer fires the handler receives the coalesced change.
A burst that nets out to no change is dropped.

The handler is the event-handling boundary: its failures are logged and the
change is dropped. The next external change or the next sweep repairs
whatever was missed.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Mapping, Optional

from dirsync.utils.log import get_logger

logger = get_logger("debounce")


@dataclass
class PendingChange:
    directory_id: str
    principal_id: str
    before: frozenset[str]
    after: frozenset[str]
    updates: int = 1
    engine_sets: dict[str, bool] = field(default_factory=dict)

    @property
    def is_noop(self) -> bool:
        return self.before == self.after

    @property
    def suppressed_sets(self) -> frozenset[str]:
        """Selection sets whose change in this burst was caused by the engine."""
        return frozenset(set_id for set_id, caused in self.engine_sets.items() if caused)


Handler = Callable[[PendingChange], Awaitable[None]]


class DebounceCoalescer:
    """Timer-keyed coalescing map. Must be used from inside a running loop."""

    def __init__(self, window: float, handler: Handler):
        self.window = window
        self._handler = handler
        self._pending: dict[tuple[str, str], PendingChange] = {}
        self._timers: dict[tuple[str, str], asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending_keys(self) -> list[tuple[str, str]]:
        return list(self._pending)

    def submit(
        self,
        directory_id: str,
        principal_id: str,
        before: frozenset[str],
        after: frozenset[str],
        *,
        engine_sets: Optional[Mapping[str, bool]] = None,
    ) -> None:
        """Fold one update into its pending entry and restart the timer.

        ``engine_sets`` maps each selection set touched by this update to
        whether the engine caused that part of it. A set stays engine-caused
        for the burst only while every update touching it was.
        """
        key = (directory_id, principal_id)
        entry = self._pending.get(key)
        if entry is None:
            entry = self._pending[key] = PendingChange(
                directory_id, principal_id, frozenset(before), frozenset(after), updates=0
            )
        entry.after = frozenset(after)
        entry.updates += 1
        for set_id, caused in (engine_sets or {}).items():
            entry.engine_sets[set_id] = entry.engine_sets.get(set_id, True) and caused

        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(self.window, self._fire, key)

    def _fire(self, key: tuple[str, str]) -> None:
        self._timers.pop(key, None)
        entry = self._pending.pop(key, None)
        if entry is None:
            return
        task = asyncio.get_running_loop().create_task(self._run(entry))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, entry: PendingChange) -> None:
        if entry.is_noop:
            logger.debug(
                "Dropped net no-op burst",
                extra={"context": {"principal": entry.principal_id, "directory": entry.directory_id, "updates": entry.updates}},
            )
            return
        try:
            await self._handler(entry)
        except Exception:
            logger.exception(
                "Synchronization failed; change dropped",
                extra={"context": {"principal": entry.principal_id, "directory": entry.directory_id}},
            )

    async def flush(self) -> None:
        """Fire every pending key now and wait for all handlers to finish."""
        for key in list(self._pending):
            timer = self._timers.pop(key, None)
            if timer is not None:
                timer.cancel()
            self._fire(key)
        await self.drain()

    async def drain(self) -> None:
        """Wait for handlers that are already running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel(self) -> None:
        """Drop every pending change without running it."""
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._pending.clear()
