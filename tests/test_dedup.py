"""Tests for the operation deduplicator and the mutation dispatch path."""

import asyncio

import pytest

from conftest import FakeClock, SleepRecorder, make_service
from dirsync.errors import DirSyncError, TransientError
from dirsync.sync.dedup import ActionKind, OperationDeduplicator, OperationKey
from dirsync.sync.dispatcher import DispatchOutcome, MutationDispatcher
from dirsync.sync.retry import RetryPolicy


def _key(grant="r1", action=ActionKind.ADD_GRANT):
    return OperationKey("u1", "200", grant, action)


# --- Deduplicator Tests ---


def test_acquire_refused_within_window():
    clock = FakeClock()
    dedup = OperationDeduplicator(5.0, clock=clock)
    assert dedup.try_acquire(_key())
    assert not dedup.try_acquire(_key())
    clock.advance(4.9)
    assert not dedup.try_acquire(_key())
    clock.advance(0.1)
    assert dedup.try_acquire(_key())


def test_keys_are_independent():
    dedup = OperationDeduplicator(5.0, clock=FakeClock())
    assert dedup.try_acquire(_key(action=ActionKind.ADD_GRANT))
    assert dedup.try_acquire(_key(action=ActionKind.REMOVE_GRANT))
    assert dedup.try_acquire(_key(grant="r2"))
    assert len(dedup) == 3


def test_release_allows_reacquire():
    dedup = OperationDeduplicator(5.0, clock=FakeClock())
    dedup.try_acquire(_key())
    dedup.release(_key())
    assert _key() not in dedup
    assert dedup.try_acquire(_key())


def test_evict_expired():
    clock = FakeClock()
    dedup = OperationDeduplicator(5.0, clock=clock)
    dedup.try_acquire(_key("a"))
    clock.advance(3)
    dedup.try_acquire(_key("b"))
    clock.advance(3)
    assert dedup.evict_expired() == 1
    assert list(dedup.snapshot()) == [_key("b")]


def test_echo_is_claimed_once_per_record():
    clock = FakeClock()
    dedup = OperationDeduplicator(5.0, clock=clock)
    assert not dedup.claim_echo(_key())
    dedup.try_acquire(_key())
    assert dedup.claim_echo(_key())
    assert not dedup.claim_echo(_key())
    assert not dedup.claim_echo(_key("r1", ActionKind.REMOVE_GRANT))

    clock.advance(6)
    dedup.try_acquire(_key())
    assert dedup.claim_echo(_key())


def test_expired_record_explains_nothing():
    clock = FakeClock()
    dedup = OperationDeduplicator(5.0, clock=clock)
    dedup.try_acquire(_key())
    clock.advance(5)
    assert not dedup.claim_echo(_key())


def test_key_string_form():
    assert str(OperationKey("u1", "200", "", ActionKind.EXPEL)) == "u1-200-*-expel"


# --- Dispatcher Tests ---


def _dispatcher(service, **kwargs):
    dedup = OperationDeduplicator(30.0, clock=FakeClock())
    sleep = kwargs.pop("sleep", SleepRecorder())
    return MutationDispatcher(service, dedup, RetryPolicy(3, 1.0), sleep=sleep, **kwargs)


def test_dispatch_twice_within_window_calls_service_once():
    service = make_service()
    service.add_member("200", "u1")
    dispatcher = _dispatcher(service)

    async def run():
        first = await dispatcher.add_grant("200", "u1", "r1")
        second = await dispatcher.add_grant("200", "u1", "r1")
        return first, second

    first, second = asyncio.run(run())
    assert first == DispatchOutcome.APPLIED
    assert second == DispatchOutcome.DUPLICATE
    assert len(service.mutations("add_grant")) == 1
    assert dispatcher.stats.duplicates == 1


def test_dry_run_records_but_never_calls():
    service = make_service()
    service.add_member("200", "u1")
    dispatcher = _dispatcher(service, dry_run=True)

    outcome = asyncio.run(dispatcher.remove_grant("200", "u1", "r1"))
    assert outcome == DispatchOutcome.DRY_RUN
    assert outcome.performed
    assert service.mutations() == []
    assert _key("r1", ActionKind.REMOVE_GRANT) in dispatcher.dedup


def test_transient_failures_are_retried():
    service = make_service()
    service.add_member("200", "u1")
    service.fail("add_grant", "200", TransientError("flaky"), times=2)
    sleep = SleepRecorder()
    dispatcher = _dispatcher(service, sleep=sleep)

    outcome = asyncio.run(dispatcher.add_grant("200", "u1", "r1"))
    assert outcome == DispatchOutcome.APPLIED
    assert len(service.mutations("add_grant")) == 3
    assert sleep.delays == [1.0, 2.0]
    assert service.grants_of("200", "u1") == {"r1"}


def test_failure_releases_key_and_propagates():
    service = make_service()
    service.add_member("200", "u1")
    service.fail("add_grant", "200")
    dispatcher = _dispatcher(service)

    with pytest.raises(DirSyncError):
        asyncio.run(dispatcher.add_grant("200", "u1", "r1"))
    assert len(dispatcher.dedup) == 0
    assert dispatcher.stats.failed == 1

    assert asyncio.run(dispatcher.add_grant("200", "u1", "r1")) == DispatchOutcome.APPLIED


def test_missing_target_is_a_skip():
    service = make_service()
    dispatcher = _dispatcher(service)
    outcome = asyncio.run(dispatcher.add_grant("200", "ghost", "r1"))
    assert outcome == DispatchOutcome.NOT_FOUND
    assert not outcome.performed
    assert dispatcher.stats.not_found == 1


def test_expel_goes_through_remove_principal():
    service = make_service()
    service.add_member("300", "u1")
    dispatcher = _dispatcher(service)
    asyncio.run(dispatcher.expel("300", "u1", reason="bye"))
    assert service.mutations("remove_principal")[0].reason == "bye"
    assert "u1" not in service.members["300"]
