"""Tests for exclusivity enforcement and the selection surface."""

import asyncio

import pytest

from conftest import PRIMARY, REPLICA_A, make_engine, make_service
from dirsync.errors import NotFoundError, SelectionError


def _engine(grants):
    service = make_service()
    service.add_member(PRIMARY, "u1", grants, name="alice")
    return service, make_engine(service)


# --- Enforcement ---


def test_externally_removed_grant_is_restored():
    service, engine = _engine({"m"})
    asyncio.run(engine.enforcer.enforce(PRIMARY, "u1", frozenset({"w1", "m"}), frozenset({"m"})))
    assert service.grants_of(PRIMARY, "u1") == {"w1", "m"}


def test_newest_grant_wins():
    service, engine = _engine({"w1", "w2"})
    asyncio.run(engine.enforcer.enforce(PRIMARY, "u1", frozenset({"w1"}), frozenset({"w1", "w2"})))
    assert service.grants_of(PRIMARY, "u1") == {"w2"}


def test_lowest_id_kept_when_none_is_new():
    service, engine = _engine({"w2", "w3"})
    asyncio.run(engine.enforcer.enforce(PRIMARY, "u1", frozenset({"w2", "w3", "x1"}), frozenset({"w2", "w3"})))
    assert service.grants_of(PRIMARY, "u1") == {"w2"}


def test_bulk_add_keeps_lowest_new_grant():
    service, engine = _engine({"w2", "w3"})
    asyncio.run(engine.enforcer.enforce(PRIMARY, "u1", frozenset({"w1"}), frozenset({"w2", "w3"})))
    assert service.grants_of(PRIMARY, "u1") == {"w2"}


def test_never_selected_set_stays_empty():
    service, engine = _engine(set())
    asyncio.run(engine.enforcer.enforce(PRIMARY, "u1", frozenset({"x1"}), frozenset()))
    assert service.mutations() == []


def test_opt_in_sets_are_not_enforced():
    service, engine = _engine({"x1", "x2"})
    asyncio.run(engine.enforcer.enforce(PRIMARY, "u1", frozenset({"x1"}), frozenset({"x1", "x2"})))
    assert service.mutations() == []


def test_engine_caused_set_is_not_enforced():
    service, engine = _engine(set())
    asyncio.run(engine.enforcer.enforce(PRIMARY, "u1", frozenset({"w1"}), frozenset(), suppressed={"weapon"}))
    assert service.mutations() == []


def test_own_operation_suppresses_enforcement():
    service, engine = _engine({"w1"})

    async def run():
        await engine.dispatcher.remove_grant(PRIMARY, "u1", "w1")
        await engine.enforcer.enforce(PRIMARY, "u1", frozenset({"w1"}), frozenset())

    asyncio.run(run())
    assert service.mutations("add_grant") == []


def test_own_operation_explains_only_one_change():
    service, engine = _engine({"w1"})

    async def run():
        await engine.dispatcher.remove_grant(PRIMARY, "u1", "w1")
        await engine.enforcer.enforce(PRIMARY, "u1", frozenset({"w1"}), frozenset())
        await engine.enforcer.enforce(PRIMARY, "u1", frozenset({"w1"}), frozenset())

    asyncio.run(run())
    assert service.grants_of(PRIMARY, "u1") == {"w1"}
    assert [c.grant_id for c in service.mutations("add_grant")] == ["w1"]


def test_attribution_is_per_set():
    _, engine = _engine({"x1"})

    async def run():
        await engine.dispatcher.add_grant(PRIMARY, "u1", "x1")
        return engine.enforcer.engine_caused_sets(
            PRIMARY, "u1", frozenset({"w1"}), frozenset({"w1", "w2", "x1"})
        )

    assert asyncio.run(run()) == {"weapon": False}
    assert engine.enforcer.engine_caused_sets(REPLICA_A, "u1", frozenset(), frozenset({"w1"})) == {}


def test_partially_explained_change_is_enforced():
    service, engine = _engine({"w1", "w2", "w3"})

    async def run():
        await engine.dispatcher.add_grant(PRIMARY, "u1", "w2")
        await engine.enforcer.enforce(PRIMARY, "u1", frozenset({"w1"}), frozenset({"w1", "w2", "w3"}))

    asyncio.run(run())
    assert service.grants_of(PRIMARY, "u1") == {"w2"}


# --- Exclusive selection ---


def test_select_replaces_previous_grant():
    service, engine = _engine({"w1", "m"})
    result = asyncio.run(engine.submit_selection("u1", PRIMARY, ["w2"], "weapon"))
    assert service.grants_of(PRIMARY, "u1") == {"w2", "m"}
    assert result.changed
    assert result.removed == ["w1"] and result.added == ["w2"]
    assert result.message == "Changed from 🛡️ SNS / GS to Staff"


def test_select_held_grant_is_a_noop():
    service, engine = _engine({"w1"})
    result = asyncio.run(engine.submit_selection("u1", PRIMARY, ["w1"], "weapon"))
    assert not result.changed
    assert result.message.startswith("Already using")
    assert service.mutations() == []


def test_first_selection():
    service, engine = _engine(set())
    result = asyncio.run(engine.submit_selection("u1", PRIMARY, ["w3"], "weapon"))
    assert service.grants_of(PRIMARY, "u1") == {"w3"}
    assert result.message == "Changed from none to Bow"


def test_failed_selection_rolls_back():
    service, engine = _engine({"w1"})
    service.fail("add_grant", PRIMARY)

    with pytest.raises(Exception):
        asyncio.run(engine.submit_selection("u1", PRIMARY, ["w2"], "weapon"))

    assert service.grants_of(PRIMARY, "u1") == {"w1"}
    assert [c.grant_id for c in service.mutations("add_grant")] == ["w2", "w1"]


def test_quick_reselection_reports_only_applied_changes(clock):
    service = make_service()
    service.add_member(PRIMARY, "u1", {"w1"}, name="alice")
    engine = make_engine(service, clock=clock)

    first = asyncio.run(engine.submit_selection("u1", PRIMARY, ["w2"], "weapon"))
    second = asyncio.run(engine.submit_selection("u1", PRIMARY, ["w1"], "weapon"))
    assert first.removed == ["w1"] and first.added == ["w2"]
    assert second.removed == ["w2"] and second.added == ["w1"]

    with pytest.raises(SelectionError, match="already in progress"):
        asyncio.run(engine.submit_selection("u1", PRIMARY, ["w2"], "weapon"))
    assert service.grants_of(PRIMARY, "u1") == {"w1"}

    clock.advance(31)
    third = asyncio.run(engine.submit_selection("u1", PRIMARY, ["w2"], "weapon"))
    assert third.removed == ["w1"] and third.added == ["w2"]
    assert service.grants_of(PRIMARY, "u1") == {"w2"}


def test_duplicate_add_after_removal_rolls_back(clock):
    service = make_service()
    service.add_member(PRIMARY, "u1", {"w1"}, name="alice")
    engine = make_engine(service, clock=clock)

    async def run():
        await engine.dispatcher.add_grant(PRIMARY, "u1", "w2")
        await engine.dispatcher.remove_grant(PRIMARY, "u1", "w2")
        await engine.submit_selection("u1", PRIMARY, ["w2"], "weapon")

    with pytest.raises(SelectionError):
        asyncio.run(run())
    assert service.grants_of(PRIMARY, "u1") == {"w1"}


@pytest.mark.parametrize(
    "directory, choice, set_id",
    [
        (PRIMARY, ["w1", "w2"], "weapon"),
        (PRIMARY, [], "weapon"),
        (PRIMARY, ["x1"], "weapon"),
        (PRIMARY, ["w1"], "nope"),
        (REPLICA_A, ["w1"], "weapon"),
    ],
)
def test_invalid_selections(directory, choice, set_id):
    service, engine = _engine(set())
    with pytest.raises(SelectionError):
        asyncio.run(engine.submit_selection("u1", directory, choice, set_id))
    assert service.mutations() == []


def test_selection_for_non_member():
    _, engine = _engine(set())
    with pytest.raises(NotFoundError):
        asyncio.run(engine.submit_selection("ghost", PRIMARY, ["w1"], "weapon"))


# --- Opt-in selection ---


def test_opt_in_applies_the_difference():
    service, engine = _engine({"x1", "m"})
    result = asyncio.run(engine.submit_selection("u1", PRIMARY, ["x2"], "extras"))
    assert service.grants_of(PRIMARY, "u1") == {"x2", "m"}
    assert result.removed == ["x1"] and result.added == ["x2"]


def test_opt_in_empty_selection_removes_all():
    service, engine = _engine({"x1", "x2"})
    result = asyncio.run(engine.submit_selection("u1", PRIMARY, [], "extras"))
    assert service.grants_of(PRIMARY, "u1") == set()
    assert result.message == "All grants removed"


def test_opt_in_same_selection_is_a_noop():
    service, engine = _engine({"x1", "x2"})
    result = asyncio.run(engine.submit_selection("u1", PRIMARY, ["x2", "x1"], "extras"))
    assert not result.changed
    assert service.mutations() == []


def test_opt_in_skipped_changes_are_not_reported():
    service, engine = _engine({"x1"})
    asyncio.run(engine.submit_selection("u1", PRIMARY, [], "extras"))
    asyncio.run(engine.submit_selection("u1", PRIMARY, ["x1"], "extras"))

    result = asyncio.run(engine.submit_selection("u1", PRIMARY, [], "extras"))
    assert not result.changed
    assert result.message == "1 change(s) already in progress, retry shortly"
    assert service.grants_of(PRIMARY, "u1") == {"x1"}


# --- Reads ---


def test_current_grant():
    _, engine = _engine({"w2", "m"})
    grant = asyncio.run(engine.current_grant("u1", "weapon"))
    assert grant.grant_id == "w2"
    assert grant.name == "Staff"
    assert asyncio.run(engine.current_grant("u1", "extras")) is None
    assert asyncio.run(engine.current_grant("ghost", "weapon")) is None
