"""Tests for the change event normalizer."""

import pytest

from dirsync.models.events import (
    EventKind,
    RawExclusionChange,
    RawMemberJoin,
    RawMemberLeave,
    RawMemberUpdate,
)
from dirsync.sync.normalizer import normalize, normalize_member_update


def test_identical_snapshots_produce_nothing():
    assert normalize_member_update("100", "u1", frozenset({"a"}), frozenset({"a"})) == []
    assert normalize(RawMemberUpdate("100", "u1", {"a", "b"}, {"b", "a"})) == []


def test_added_grant():
    events = normalize(RawMemberUpdate("100", "u1", {"a"}, {"a", "b"}))
    assert len(events) == 1
    event = events[0]
    assert event.kind == EventKind.GRANT_ADDED
    assert event.grant_ids == frozenset({"b"})
    assert event.before == frozenset({"a"})
    assert event.after == frozenset({"a", "b"})


def test_swap_produces_remove_then_add():
    events = normalize(RawMemberUpdate("100", "u1", {"a"}, {"b"}))
    assert [e.kind for e in events] == [EventKind.GRANT_REMOVED, EventKind.GRANT_ADDED]
    assert events[0].grant_ids == frozenset({"a"})
    assert events[1].grant_ids == frozenset({"b"})
    assert all(e.principal_id == "u1" and e.directory_id == "100" for e in events)


def test_join_and_leave():
    joined = normalize(RawMemberJoin("200", "u1", {"r1"}))
    assert joined[0].kind == EventKind.PRINCIPAL_JOINED
    assert joined[0].after == frozenset({"r1"})

    left = normalize(RawMemberLeave("100", "u1", {"g1"}))
    assert left[0].kind == EventKind.PRINCIPAL_REMOVED
    assert left[0].before == frozenset({"g1"})


def test_exclusion_changes():
    added = normalize(RawExclusionChange("100", "u1", added=True, reason="spam"))
    assert added[0].kind == EventKind.EXCLUSION_ADDED
    assert added[0].reason == "spam"

    lifted = normalize(RawExclusionChange("100", "u1", added=False))
    assert lifted[0].kind == EventKind.EXCLUSION_REMOVED


def test_describe_is_readable():
    event = normalize(RawMemberUpdate("100", "u1", set(), {"b", "a"}))[0]
    assert event.describe() == "grant_added principal=u1 directory=100 grants=a,b"


def test_unsupported_notification():
    with pytest.raises(TypeError):
        normalize({"directory_id": "100"})
