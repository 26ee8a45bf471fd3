import threading

import pytest

from conftest import ALICE, BOB, CAROL, NOW, POOL_A, POOL_B, POOL_C, FakeGateway
from pool_registry import PoolRegistry


@pytest.fixture
def registry(gateway, backoff):
    registry = PoolRegistry(gateway, backoff, max_workers=2, sweep_timeout=5, clock=lambda: NOW)
    yield registry
    registry.close()


def test_register_reads_full_snapshot(gateway, registry) -> None:
    gateway.add_pool(POOL_A, contributed=(ALICE, BOB), current_round=2)
    gateway.pools[POOL_A].paid_out.add(CAROL)

    assert registry.register_pool(POOL_A) is True

    snapshot = registry.get(POOL_A)
    assert snapshot.current_round == 2
    assert snapshot.members == (ALICE, BOB, CAROL)
    assert snapshot.contributions_this_cycle == {ALICE: 10, BOB: 10}
    assert snapshot.has_received_payout == {ALICE: False, BOB: False, CAROL: True}
    assert snapshot.max_members == 3
    assert snapshot.last_checked == NOW


def test_register_is_idempotent(gateway, registry) -> None:
    gateway.add_pool(POOL_A)

    assert registry.register_pool(POOL_A) is True
    assert registry.register_pool(POOL_A) is False
    assert len(registry) == 1
    assert gateway.calls.count("get_pool_info") == 1


def test_failed_registration_leaves_pool_unknown(gateway, registry) -> None:
    gateway.add_pool(POOL_A)
    gateway.broken_pools.add(POOL_A)

    with pytest.raises(ConnectionError):
        registry.register_pool(POOL_A)

    assert POOL_A not in registry


def test_contributions_only_count_current_round(gateway, registry) -> None:
    pool = gateway.add_pool(POOL_A, contributed=(ALICE, BOB, CAROL), current_round=1)
    registry.register_pool(POOL_A)

    pool.current_round = 2
    snapshot = registry.refresh(POOL_A)

    assert snapshot.current_round == 2
    assert snapshot.contributions_this_cycle == {}


def test_load_existing_pools_pages_through_factory(gateway, registry) -> None:
    for address in (POOL_A, POOL_B, POOL_C):
        gateway.add_pool(address)

    assert registry.load_existing_pools(page_size=2) == 3

    assert set(registry.addresses()) == {POOL_A, POOL_B, POOL_C}
    assert gateway.calls.count("list_pools") == 2


def test_load_existing_pools_skips_broken_pool(gateway, registry) -> None:
    for address in (POOL_A, POOL_B):
        gateway.add_pool(address)
    gateway.broken_pools.add(POOL_A)

    assert registry.load_existing_pools() == 1
    assert registry.addresses() == [POOL_B]


def test_refresh_many_isolates_failures(gateway, registry) -> None:
    for address in (POOL_A, POOL_B):
        gateway.add_pool(address)
        registry.register_pool(address)
    before = registry.get(POOL_A)
    gateway.broken_pools.add(POOL_A)
    gateway.pools[POOL_B].contributed.add((ALICE, 1))

    stats = registry.refresh_many([POOL_A, POOL_B])

    assert stats.refreshed == [POOL_B]
    assert stats.failed == [POOL_A]
    assert registry.get(POOL_A) is before
    assert registry.get(POOL_B).has_contributed(ALICE)


def test_sweep_skips_inactive_pools(gateway, registry) -> None:
    gateway.add_pool(POOL_A)
    gateway.add_pool(POOL_B, is_active=False)
    registry.register_pool(POOL_A)
    registry.register_pool(POOL_B)
    calls_before = gateway.calls.count("get_pool_info")

    stats = registry.sweep_all()

    assert stats.refreshed == [POOL_A]
    assert stats.skipped_inactive == 1
    assert gateway.calls.count("get_pool_info") == calls_before + 1


def test_completed_pool_stays_inactive(gateway, registry) -> None:
    pool = gateway.add_pool(POOL_A, is_active=False)
    registry.register_pool(POOL_A)

    pool.is_active = True
    snapshot = registry.refresh(POOL_A)

    assert snapshot.is_active is False


def test_refresh_retries_transient_errors(gateway, registry, sleeps) -> None:
    gateway.add_pool(POOL_A, next_payout_time=NOW + 60)
    gateway.fail("get_pool_info", ConnectionError("reset"))

    registry.register_pool(POOL_A)

    assert registry.get(POOL_A).next_payout_time == int(NOW + 60)
    assert sleeps == [1.0]


def test_load_existing_pools_keeps_broken_pool_pending(gateway, registry) -> None:
    for address in (POOL_A, POOL_B):
        gateway.add_pool(address)
    gateway.broken_pools.add(POOL_A)

    registry.load_existing_pools()
    assert registry.pending_addresses() == [POOL_A]

    gateway.broken_pools.clear()

    assert registry.retry_pending() == 1
    assert POOL_A in registry
    assert registry.pending_addresses() == []


def test_retry_pending_leaves_still_broken_pool_pending(gateway, registry) -> None:
    gateway.add_pool(POOL_A)
    gateway.broken_pools.add(POOL_A)
    registry.load_existing_pools()

    assert registry.retry_pending() == 0
    assert registry.pending_addresses() == [POOL_A]
    assert POOL_A not in registry


class StallingGateway(FakeGateway):
    """Blocks inside get_pool_info for one pool until released

    The pool state is read before blocking, so a released call returns what
    the chain looked like when it started.
    """

    def __init__(self, stalled_pool: str):
        super().__init__()
        self.stalled_pool = stalled_pool
        self.stall_next = False
        self.stalled = threading.Event()
        self.release = threading.Event()

    def get_pool_info(self, pool):
        info = super().get_pool_info(pool)
        if pool == self.stalled_pool and self.stall_next:
            self.stall_next = False
            self.stalled.set()
            self.release.wait(5)
        return info


@pytest.fixture
def stalling_gateway():
    gateway = StallingGateway(POOL_A)
    yield gateway
    gateway.release.set()


@pytest.fixture
def quick_registry(stalling_gateway, backoff):
    registry = PoolRegistry(stalling_gateway, backoff, max_workers=4, sweep_timeout=0.2, clock=lambda: NOW)
    yield registry
    stalling_gateway.release.set()
    registry.close()


def test_slow_pool_times_out_while_others_refresh(stalling_gateway, quick_registry) -> None:
    for address in (POOL_A, POOL_B):
        stalling_gateway.add_pool(address)
        quick_registry.register_pool(address)
    stalling_gateway.stall_next = True
    stalling_gateway.pools[POOL_B].contributed.add((ALICE, 1))

    stats = quick_registry.sweep_all()

    assert stats.refreshed == [POOL_B]
    assert stats.timed_out == [POOL_A]
    assert stats.failed == []
    assert quick_registry.get(POOL_B).has_contributed(ALICE)


def test_pool_with_refresh_in_flight_is_not_resubmitted(stalling_gateway, quick_registry) -> None:
    stalling_gateway.add_pool(POOL_A)
    quick_registry.register_pool(POOL_A)
    stalling_gateway.stall_next = True

    first = quick_registry.refresh_many([POOL_A])
    calls_before = stalling_gateway.calls.count("get_pool_info")
    second = quick_registry.refresh_many([POOL_A])

    assert first.timed_out == [POOL_A]
    assert second.still_running == [POOL_A]
    assert second.total == 0
    assert stalling_gateway.calls.count("get_pool_info") == calls_before


def test_abandoned_refresh_does_not_overwrite_newer_snapshot(stalling_gateway, quick_registry) -> None:
    pool = stalling_gateway.add_pool(POOL_A, next_payout_time=NOW + 60)
    quick_registry.register_pool(POOL_A)
    stalling_gateway.stall_next = True

    stats = quick_registry.sweep_all()
    assert stats.timed_out == [POOL_A]
    assert stalling_gateway.stalled.is_set()

    pool.current_round = 2
    pool.next_payout_time = int(NOW + 60 + pool.cycle_duration)
    newer = quick_registry.refresh(POOL_A)
    assert newer.current_round == 2

    stalling_gateway.release.set()
    quick_registry.close()

    snapshot = quick_registry.get(POOL_A)
    assert snapshot.current_round == 2
    assert snapshot.next_payout_time == int(NOW + 60 + pool.cycle_duration)
