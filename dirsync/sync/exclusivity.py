"""Selection sets: exclusivity enforcement and the selection surface.

For an exclusive set a principal holds at most one grant, and once a
selection is made the set is never left empty:

* nothing held after a change, something held before: restore it;
* several held: keep the newly added one (the grant missing from the prior
  snapshot), otherwise the lowest id, and remove the rest.

Changes the engine caused itself are not enforced. Attribution is per set:
a set is skipped only when every grant that changed in it matches an engine
operation not yet claimed by an earlier notification.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Collection, Iterable, Optional

from dirsync.config.loader import SelectableGrant, SelectionSetConfig
from dirsync.directory.base import DirectoryService
from dirsync.errors import NotFoundError, SelectionError
from dirsync.sync.dedup import ActionKind, OperationDeduplicator, OperationKey
from dirsync.sync.dispatcher import DispatchOutcome, MutationDispatcher
from dirsync.utils.log import get_logger

logger = get_logger("exclusivity")


@dataclass
class SelectionResult:
    """Outcome of one submitted selection."""

    set_id: str
    principal_id: str
    previous: list[str] = field(default_factory=list)
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    message: str = ""

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)


class ExclusivityEnforcer:
    """Keeps exclusive sets exclusive and applies presentation-layer selections."""

    def __init__(
        self,
        service: DirectoryService,
        dispatcher: MutationDispatcher,
        dedup: OperationDeduplicator,
        selection_sets: Iterable[SelectionSetConfig],
    ):
        self.service = service
        self.dispatcher = dispatcher
        self.dedup = dedup
        self.sets = {s.id: s for s in selection_sets}

    def get_set(self, set_id: str) -> SelectionSetConfig:
        try:
            return self.sets[set_id]
        except KeyError:
            raise SelectionError(f"Unknown selection set: {set_id}") from None

    def exclusive_sets_in(self, directory_id: str) -> list[SelectionSetConfig]:
        return [s for s in self.sets.values() if s.exclusive and s.directory_id == directory_id]

    def engine_caused_sets(
        self, directory_id: str, principal_id: str, before: frozenset[str], after: frozenset[str]
    ) -> dict[str, bool]:
        """Attribute an observed change to the engine, per exclusive set.

        Only sets whose grants differ between ``before`` and ``after`` are
        reported. A set maps to True when every added and removed grant in it
        matches an unclaimed engine operation; opt-in sets never count.
        """
        attribution: dict[str, bool] = {}
        for selection_set in self.exclusive_sets_in(directory_id):
            added = sorted((after - before) & selection_set.grant_ids)
            removed = sorted((before - after) & selection_set.grant_ids)
            if not added and not removed:
                continue
            claims = [
                self.dedup.claim_echo(OperationKey(principal_id, directory_id, grant_id, ActionKind.ADD_GRANT))
                for grant_id in added
            ] + [
                self.dedup.claim_echo(OperationKey(principal_id, directory_id, grant_id, ActionKind.REMOVE_GRANT))
                for grant_id in removed
            ]
            attribution[selection_set.id] = all(claims)
        return attribution

    # ── Enforcement ──────────────────────────────────────────────────────

    async def enforce(
        self,
        directory_id: str,
        principal_id: str,
        before: frozenset[str],
        after: frozenset[str],
        *,
        suppressed: Optional[Collection[str]] = None,
    ) -> list[DispatchOutcome]:
        """Restore or trim exclusive-set grants after an observed change.

        ``suppressed`` names the sets whose change the engine caused. When
        omitted it is worked out from the deduplicator for this change.
        """
        if suppressed is None:
            attribution = self.engine_caused_sets(directory_id, principal_id, before, after)
            suppressed = {set_id for set_id, caused in attribution.items() if caused}

        outcomes: list[DispatchOutcome] = []
        for selection_set in self.exclusive_sets_in(directory_id):
            held_before = before & selection_set.grant_ids
            held_after = after & selection_set.grant_ids
            emptied = bool(held_before) and not held_after
            if not emptied and len(held_after) <= 1:
                continue

            if selection_set.id in suppressed:
                logger.info(
                    "Skipping enforcement of %s (caused by engine)",
                    selection_set.id,
                    extra={"context": {"principal": principal_id, "directory": directory_id}},
                )
                continue

            if emptied:
                restore = min(held_before)
                logger.info(
                    "Restoring externally removed %s grant %s",
                    selection_set.id,
                    _label(selection_set, restore),
                    extra={"context": {"principal": principal_id, "directory": directory_id}},
                )
                outcomes.append(
                    await self.dispatcher.add_grant(
                        directory_id, principal_id, restore, reason=f"Restore {selection_set.title or selection_set.id}"
                    )
                )
            else:
                newly_added = held_after - held_before
                keep = min(newly_added) if newly_added else min(held_after)
                logger.info(
                    "Several %s grants held; keeping %s",
                    selection_set.id,
                    _label(selection_set, keep),
                    extra={"context": {"principal": principal_id, "directory": directory_id}},
                )
                for grant_id in sorted(held_after - {keep}):
                    outcomes.append(
                        await self.dispatcher.remove_grant(
                            directory_id,
                            principal_id,
                            grant_id,
                            reason=f"Only one {selection_set.title or selection_set.id} grant allowed",
                        )
                    )
        return outcomes

    # ── Selection surface ────────────────────────────────────────────────

    async def submit_selection(
        self,
        principal_id: str,
        directory_id: str,
        chosen_grant_ids: Iterable[str],
        set_id: str,
    ) -> SelectionResult:
        """Apply a selection made on the presentation surface.

        Raises:
            SelectionError: unknown set, wrong directory, foreign grant, or
                not exactly one choice for an exclusive set.
            NotFoundError: the principal is not a member of the directory.
        """
        selection_set = self.get_set(set_id)
        if directory_id != selection_set.directory_id:
            raise SelectionError(f"Selection set {set_id} does not belong to directory {directory_id}")

        chosen = frozenset(chosen_grant_ids)
        foreign = chosen - selection_set.grant_ids
        if foreign:
            raise SelectionError(f"Invalid selection for {set_id}: {', '.join(sorted(foreign))}")

        member = await self.service.fetch_principal(directory_id, principal_id)
        if member is None:
            raise NotFoundError(f"{principal_id} is not a member of {directory_id}")
        held = member.grant_ids & selection_set.grant_ids

        if selection_set.exclusive:
            if len(chosen) != 1:
                raise SelectionError(f"Exactly one grant must be chosen from {set_id}")
            return await self._select_exclusive(selection_set, principal_id, held, next(iter(chosen)))
        return await self._select_opt_in(selection_set, principal_id, held, chosen)

    async def _select_exclusive(
        self, selection_set: SelectionSetConfig, principal_id: str, held: frozenset[str], choice: str
    ) -> SelectionResult:
        directory_id = selection_set.directory_id
        result = SelectionResult(selection_set.id, principal_id, previous=sorted(held))
        if held == {choice}:
            result.message = f"Already using {_label(selection_set, choice)}"
            return result

        previous = min(held - {choice}) if held - {choice} else None
        busy = SelectionError(
            f"A change to {selection_set.title or selection_set.id} is already in progress, retry shortly"
        )
        try:
            for grant_id in sorted(held - {choice}):
                outcome = await self.dispatcher.remove_grant(
                    directory_id, principal_id, grant_id, reason="Selection changed"
                )
                if outcome is DispatchOutcome.DUPLICATE:
                    raise busy
                if outcome.performed:
                    result.removed.append(grant_id)
            if choice not in held:
                outcome = await self.dispatcher.add_grant(directory_id, principal_id, choice, reason="Selected")
                if not outcome.performed:
                    raise busy
                result.added.append(choice)
        except Exception:
            logger.error(
                "Selection failed for %s",
                selection_set.id,
                extra={"context": {"principal": principal_id, "choice": choice}},
            )
            if previous is not None and previous in result.removed:
                # an earlier grant of the same key must not block the rollback
                self.dedup.release(OperationKey(principal_id, directory_id, previous, ActionKind.ADD_GRANT))
                try:
                    await self.dispatcher.add_grant(directory_id, principal_id, previous, reason="Selection rollback")
                except Exception as restore_error:
                    logger.error("Failed to restore previous grant %s: %s", previous, restore_error)
            raise

        old = _label(selection_set, previous) if previous else "none"
        result.message = f"Changed from {old} to {_label(selection_set, choice)}"
        logger.info("%s", result.message, extra={"context": {"principal": principal_id, "set": selection_set.id}})
        return result

    async def _select_opt_in(
        self, selection_set: SelectionSetConfig, principal_id: str, held: frozenset[str], chosen: frozenset[str]
    ) -> SelectionResult:
        directory_id = selection_set.directory_id
        result = SelectionResult(selection_set.id, principal_id, previous=sorted(held))
        if held == chosen:
            result.message = "Nothing to change" if chosen else "No grants to remove"
            return result

        skipped = 0
        for grant_id in sorted(held - chosen):
            outcome = await self.dispatcher.remove_grant(directory_id, principal_id, grant_id, reason="Deselected")
            if outcome.performed:
                result.removed.append(grant_id)
            else:
                skipped += 1
        for grant_id in sorted(chosen - held):
            outcome = await self.dispatcher.add_grant(directory_id, principal_id, grant_id, reason="Selected")
            if outcome.performed:
                result.added.append(grant_id)
            else:
                skipped += 1

        if skipped:
            result.message = f"{skipped} change(s) already in progress, retry shortly"
        else:
            result.message = "All grants removed" if not chosen else "Selection updated"
        return result

    # ── Reads ────────────────────────────────────────────────────────────

    async def current_grants(self, principal_id: str, set_id: str) -> list[SelectableGrant]:
        selection_set = self.get_set(set_id)
        member = await self.service.fetch_principal(selection_set.directory_id, principal_id)
        if member is None:
            return []
        held = sorted(member.grant_ids & selection_set.grant_ids)
        return [g for g in (selection_set.get(grant_id) for grant_id in held) if g is not None]

    async def current_grant(self, principal_id: str, set_id: str) -> Optional[SelectableGrant]:
        """The held grant of a set (lowest id if several), or None."""
        grants = await self.current_grants(principal_id, set_id)
        return grants[0] if grants else None


def _label(selection_set: SelectionSetConfig, grant_id: str) -> str:
    grant = selection_set.get(grant_id)
    if grant is None:
        return grant_id
    return f"{grant.emoji} {grant.name}".strip()
