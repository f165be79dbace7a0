"""Tests for the grant mapping resolver."""

import pytest

from dirsync.config.loader import GroupConfig
from dirsync.errors import ConfigError, NotFoundError, UnknownGrantError
from dirsync.sync.mapping import GrantMapping


def _mapping():
    return GrantMapping(
        [
            GroupConfig("Tsunami", "g1", {"200": "r1", "300": "s1"}),
            GroupConfig("Hurricane", "g2", {"200": "r2"}),
        ]
    )


def test_targets_for():
    mapping = _mapping()
    assert mapping.targets_for("g1") == {"200": "r1", "300": "s1"}
    assert mapping.group_name("g2") == "Hurricane"
    assert mapping.group_grant_ids == frozenset({"g1", "g2"})


def test_unknown_grant():
    with pytest.raises(UnknownGrantError) as exc:
        _mapping().targets_for("zz")
    assert exc.value.grant_id == "zz"
    assert isinstance(exc.value, NotFoundError)


def test_reverse_lookup():
    mapping = _mapping()
    assert mapping.authorizing_grant_for("200", "r2") == "g2"
    assert mapping.authorizing_grant_for("300", "r2") is None
    assert mapping.mapped_replica_grants("200") == frozenset({"r1", "r2"})
    assert mapping.replica_directory_ids == ["200", "300"]
    assert mapping.is_replica("300")
    assert not mapping.is_replica("100")


def test_authorized_replica_grants():
    mapping = _mapping()
    assert mapping.authorized_replica_grants("200", {"g1", "m"}) == frozenset({"r1"})
    assert mapping.authorized_replica_grants("300", {"g2"}) == frozenset()
    assert mapping.held_groups({"g2", "m", "p"}) == frozenset({"g2"})


def test_duplicate_primary_grant_rejected():
    with pytest.raises(ConfigError):
        GrantMapping([GroupConfig("a", "g1", {"200": "r1"}), GroupConfig("b", "g1", {"200": "r2"})])


def test_ambiguous_reverse_mapping_rejected():
    with pytest.raises(ConfigError) as exc:
        GrantMapping([GroupConfig("a", "g1", {"200": "r1"}), GroupConfig("b", "g2", {"200": "r1"})])
    assert "r1" in exc.value.issues[0]
