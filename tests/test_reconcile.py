"""Tests for the reconciliation sweep."""

import asyncio

import pytest

from conftest import PRIMARY, REPLICA_A, REPLICA_B, SleepRecorder, make_engine, make_service
from dirsync.errors import PartialBatchFailure


def _messy_world():
    service = make_service()
    service.add_member(PRIMARY, "u1", {"g1", "m"})
    service.add_member(PRIMARY, "u2", {"g2", "m"})
    service.add_member(PRIMARY, "u3", {"g1"})
    service.add_member(PRIMARY, "u4", {"m"})
    service.add_member(PRIMARY, "u5", {"g1", "m", "p"})

    service.add_member(REPLICA_A, "u1", {"r2", "z2"})
    service.add_member(REPLICA_A, "u2", {"r1"})
    service.add_member(REPLICA_A, "u9", {"r1"})
    service.add_member(REPLICA_B, "u1", set())
    service.add_member(REPLICA_B, "u2", {"s1", "z3"})
    service.add_member(REPLICA_B, "u5", {"s1"})
    return service


def _assert_converged(engine, service):
    primary = {pid: grants for pid, grants in service.members[PRIMARY].items()}
    for directory_id in engine.mapping.replica_directory_ids:
        mapped = engine.mapping.mapped_replica_grants(directory_id)
        for principal_id, grants in service.members[directory_id].items():
            expected = engine.mapping.authorized_replica_grants(directory_id, primary.get(principal_id, set()))
            assert grants & mapped == expected, (directory_id, principal_id)


def test_sweep_converges_every_replica():
    service = _messy_world()
    engine = make_engine(service)

    report = asyncio.run(engine.run_sweep())

    assert report.ok
    _assert_converged(engine, service)
    assert service.grants_of(REPLICA_A, "u1") == {"r1", "z2"}
    assert service.grants_of(REPLICA_A, "u9") == set()
    assert service.grants_of(REPLICA_B, "u2") == {"z3"}
    assert report.grants_added == 3
    assert report.grants_removed == 4
    assert engine.last_sweep is report


def test_sweep_corrects_primary_markers():
    service = _messy_world()
    engine = make_engine(service)

    report = asyncio.run(engine.run_sweep())

    assert service.grants_of(PRIMARY, "u3") == {"g1", "m"}
    assert service.grants_of(PRIMARY, "u4") == set()
    assert service.grants_of(PRIMARY, "u5") == {"g1", "m"}
    assert report.markers_corrected == 3


def test_second_sweep_finds_nothing_to_do():
    service = _messy_world()
    engine = make_engine(service)
    asyncio.run(engine.run_sweep())
    before = len(service.mutations())

    report = asyncio.run(engine.sweep.run())

    assert len(service.mutations()) == before
    assert report.grants_added == report.grants_removed == report.markers_corrected == 0


def test_batches_pause_between_each_other():
    service = make_service()
    for i in range(5):
        service.add_member(REPLICA_A, f"u{i}", {"r1"})
    sleeper = SleepRecorder()
    engine = make_engine(service, sleep=sleeper, timing={"sweep_batch_size": 2, "sweep_batch_pause": 0.5})

    asyncio.run(engine.run_sweep())

    assert sleeper.delays == [0.5, 0.5]
    assert all(not service.grants_of(REPLICA_A, f"u{i}") for i in range(5))


def test_failures_are_isolated_and_reported():
    service = _messy_world()
    service.fail("add_grant", REPLICA_A)
    engine = make_engine(service)

    report = asyncio.run(engine.run_sweep())

    assert not report.ok
    assert [(f.directory_id, f.principal_id) for f in report.failures] == [(REPLICA_A, "u1")]
    assert service.grants_of(REPLICA_B, "u1") == {"s1"}
    assert service.grants_of(REPLICA_A, "u9") == set()
    assert "PARTIAL" in report.summary()
    with pytest.raises(PartialBatchFailure) as exc:
        report.raise_for_failures()
    assert len(exc.value.failures) == 1


def test_unreadable_replica_is_skipped():
    service = _messy_world()
    service.fail("list_principals", REPLICA_A)
    engine = make_engine(service)

    report = asyncio.run(engine.run_sweep())

    assert [(f.directory_id, f.principal_id) for f in report.failures] == [(REPLICA_A, "*")]
    assert service.grants_of(REPLICA_B, "u1") == {"s1"}


def test_unreadable_primary_aborts_before_any_mutation():
    service = _messy_world()
    service.fail("list_principals", PRIMARY)
    engine = make_engine(service)

    report = asyncio.run(engine.run_sweep())

    assert len(report.failures) == 1
    assert service.mutations() == []


def test_sweep_mirrors_exclusions_and_flags_multiple_groups():
    service = make_service()
    service.add_member(PRIMARY, "u6", {"g1", "g2", "m"})
    service.exclusions[PRIMARY]["u7"] = "spam"
    engine = make_engine(service)

    report = asyncio.run(engine.run_sweep())

    assert report.exclusions_mirrored == 2
    assert report.multiple_groups == ["u6"]
    assert service.grants_of(PRIMARY, "u6") == {"g1", "g2", "m"}


def test_dry_run_sweep_reports_without_mutating():
    service = _messy_world()
    engine = make_engine(service, dry_run=True)

    report = asyncio.run(engine.run_sweep())

    assert service.mutations() == []
    assert report.dry_run
    assert report.grants_added == 3
    assert report.summary().startswith("[DRY RUN]")
    assert report.to_dict()["grants_removed"] == 4
