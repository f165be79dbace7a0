"""Tests for engine wiring, the reactive path and startup behaviour."""

import asyncio
import logging
from contextlib import contextmanager

import pytest

from conftest import PRIMARY, REPLICA_A, REPLICA_B, make_config, make_engine, make_service
from dirsync.engine import SyncEngine
from dirsync.errors import ConfigError
from dirsync.models.events import RawExclusionChange, RawMemberJoin, RawMemberLeave, RawMemberUpdate


class _Capture(logging.Handler):
    def __init__(self):
        super().__init__(logging.DEBUG)
        self.records = []

    def emit(self, record):
        self.records.append(record)


@contextmanager
def capture_logs(name):
    logger = logging.getLogger(name)
    handler = _Capture()
    level = logger.level
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    try:
        yield handler.records
    finally:
        logger.removeHandler(handler)
        logger.setLevel(level)


def _feed(engine, *notifications):
    async def run():
        for notification in notifications:
            await engine.handle_notification(notification)
        await engine.coalescer.flush()

    asyncio.run(run())


# --- Dry run ---


def _affiliation_run(dry_run):
    service = make_service()
    service.add_member(PRIMARY, "u1", {"p", "g1"})
    service.add_member(REPLICA_A, "u1")
    service.add_member(REPLICA_B, "u1")
    engine = make_engine(service, dry_run=dry_run)

    with capture_logs("dirsync.dispatch") as records:
        _feed(engine, RawMemberUpdate(PRIMARY, "u1", {"p"}, {"p", "g1"}))

    shape = [
        (
            r.levelname,
            r.getMessage().replace("[DRY RUN] ", ""),
            {k: v for k, v in r.context.items() if k != "dry_run"},
        )
        for r in records
    ]
    return service, engine, shape, records


def test_dry_run_is_neutral():
    live_service, live_engine, live_shape, _ = _affiliation_run(dry_run=False)
    dry_service, dry_engine, dry_shape, dry_records = _affiliation_run(dry_run=True)

    assert len(live_service.mutations()) == 4
    assert dry_service.mutations() == []
    assert dry_shape == live_shape
    assert set(dry_engine.dedup.snapshot()) == set(live_engine.dedup.snapshot())
    assert all(r.context["dry_run"] for r in dry_records)
    assert all(r.getMessage().startswith("[DRY RUN] ") for r in dry_records)


# --- Startup ---


def test_static_validation_failure_is_fatal():
    service = make_service()
    engine = make_engine(service, primary={"pending_grant_id": "m"})

    with pytest.raises(ConfigError) as exc:
        asyncio.run(engine.start())

    assert any("MARKER_COLLISION" in issue for issue in exc.value.issues)
    assert engine.last_sweep is None
    assert service.mutations() == []


def test_missing_grant_on_service_is_fatal():
    service = make_service()
    service.add_member(PRIMARY, "u4", {"m"})
    config = make_config(groups=[{"name": "Ghost", "grant_id": "g9", "replicas": {REPLICA_A: "r1"}}])
    engine = make_engine(service, config=config)

    with pytest.raises(ConfigError) as exc:
        asyncio.run(engine.start())

    assert any("GRANT_NOT_FOUND" in issue for issue in exc.value.issues)
    assert service.mutations() == []


def test_ambiguous_mapping_is_rejected_at_construction():
    config = make_config(
        groups=[
            {"name": "a", "grant_id": "g1", "replicas": {REPLICA_A: "r1"}},
            {"name": "b", "grant_id": "g2", "replicas": {REPLICA_A: "r1"}},
        ]
    )
    with pytest.raises(ConfigError):
        SyncEngine(config, make_service())


def test_start_runs_sweep_and_stop_cancels_tasks():
    service = make_service()
    service.add_member(PRIMARY, "u1", {"g1"})
    engine = make_engine(service)

    async def run():
        await engine.start()
        status = engine.status()
        await engine.stop()
        return status

    status = asyncio.run(run())
    assert status["started"]
    assert status["last_sweep"]["markers_corrected"] == 1
    assert not engine.started
    assert engine._tasks == []
    assert service.grants_of(PRIMARY, "u1") == {"g1", "m"}


def test_startup_sweep_can_be_disabled():
    engine = make_engine(timing={"sweep_on_startup": False})

    async def run():
        await engine.start(live_validation=False)
        await engine.stop()

    asyncio.run(run())
    assert engine.last_sweep is None


# --- Reactive path ---


def test_grant_swap_burst_is_handled_once():
    service = make_service()
    service.add_member(PRIMARY, "u1", {"g2", "m"})
    service.add_member(REPLICA_A, "u1", {"r1"})
    service.add_member(REPLICA_B, "u1", {"s1"})
    engine = make_engine(service)

    _feed(
        engine,
        RawMemberUpdate(PRIMARY, "u1", {"g1", "m"}, {"m"}),
        RawMemberUpdate(PRIMARY, "u1", {"m"}, {"g2", "m"}),
    )

    assert service.grants_of(PRIMARY, "u1") == {"g2", "m"}
    assert service.grants_of(REPLICA_A, "u1") == {"r2"}
    assert service.grants_of(REPLICA_B, "u1") == set()
    assert engine.status()["events_received"] == 2


def test_external_removal_of_exclusive_grant_is_restored():
    service = make_service()
    service.add_member(PRIMARY, "u1", set())
    engine = make_engine(service)

    _feed(engine, RawMemberUpdate(PRIMARY, "u1", {"w1"}, set()))

    assert service.grants_of(PRIMARY, "u1") == {"w1"}


def test_engine_does_not_fight_its_own_selection():
    service = make_service()
    service.add_member(PRIMARY, "u1", {"w1"})
    engine = make_engine(service)

    asyncio.run(engine.submit_selection("u1", PRIMARY, ["w2"], "weapon"))
    _feed(engine, RawMemberUpdate(PRIMARY, "u1", {"w1"}, set()))

    assert service.grants_of(PRIMARY, "u1") == {"w2"}
    assert [c.grant_id for c in service.mutations("add_grant")] == ["w2"]


def test_opt_in_selection_does_not_mask_external_exclusive_change():
    service = make_service()
    service.add_member(PRIMARY, "u1", {"w1"})
    engine = make_engine(service)

    asyncio.run(engine.submit_selection("u1", PRIMARY, ["x1"], "extras"))
    service.add_member(PRIMARY, "u1", {"w1", "w2", "x1"})
    _feed(engine, RawMemberUpdate(PRIMARY, "u1", {"w1", "x1"}, {"w1", "w2", "x1"}))

    assert service.grants_of(PRIMARY, "u1") & {"w1", "w2", "w3"} == {"w2"}


def test_finished_selection_does_not_mask_later_external_change():
    service = make_service()
    service.add_member(PRIMARY, "u1", {"w1"})
    engine = make_engine(service)

    asyncio.run(engine.submit_selection("u1", PRIMARY, ["w2"], "weapon"))
    _feed(engine, RawMemberUpdate(PRIMARY, "u1", {"w1"}, {"w2"}))
    service.add_member(PRIMARY, "u1", {"w1", "w2"})
    _feed(engine, RawMemberUpdate(PRIMARY, "u1", {"w2"}, {"w1", "w2"}))

    assert service.grants_of(PRIMARY, "u1") == {"w1"}


def test_failed_event_is_logged_and_dropped():
    service = make_service()
    service.add_member(PRIMARY, "u1", {"g1"})
    service.fail("add_grant", PRIMARY)
    engine = make_engine(service)

    _feed(engine, RawMemberJoin(PRIMARY, "u1", {"g1"}))

    assert engine.events_dropped == 1
    assert service.grants_of(PRIMARY, "u1") == {"g1"}


def test_exclusion_and_leave_notifications():
    service = make_service()
    service.add_member(REPLICA_A, "u1", {"r1", "z2"})
    service.add_member(REPLICA_B, "u2", {"s1"})
    engine = make_engine(service)

    _feed(
        engine,
        RawExclusionChange(PRIMARY, "u2", added=True, reason="spam"),
        RawMemberLeave(PRIMARY, "u1", {"g1", "m"}),
        RawExclusionChange(REPLICA_A, "u3", added=True),
    )

    assert "u2" in service.exclusions[REPLICA_B]
    assert len(service.mutations("add_exclusion")) == 2
    assert service.grants_of(REPLICA_A, "u1") == {"z2"}
    assert service.mutations("remove_principal") == []


def test_status_shape():
    engine = make_engine(dry_run=True)
    status = engine.status()
    assert status["dry_run"] is True
    assert status["primary"] == PRIMARY
    assert status["replicas"] == [REPLICA_A, REPLICA_B]
    assert status["dispatch"] == {"applied": 0, "dry_run": 0, "duplicates": 0, "not_found": 0, "failed": 0}
    assert status["last_sweep"] is None
