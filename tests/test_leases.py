import dataclasses
import threading
from ipaddress import IPv4Address

import pytest

from conftest import MAC1, MAC2, MAC3
from core.leases import LeaseManager, LeaseMismatch, LeaseState, PoolExhausted, UnknownLease


def client(i: int) -> bytes:
    return bytes([0x02, 0, 0, 0, i // 256, i % 256])


def test_allocate_lowest_first(manager):
    assert manager.allocate(MAC1, now=0) == IPv4Address('192.168.1.100')
    assert manager.allocate(MAC2, now=0) == IPv4Address('192.168.1.101')
    lease = manager.get(MAC1)
    assert lease.state is LeaseState.OFFERED
    assert lease.expiry == 86400
    manager.check_invariants()


def test_distinct_clients_get_distinct_addresses(manager):
    addresses = [manager.allocate(client(i), now=i) for i in range(100)]
    assert len(set(addresses)) == 100
    assert manager.free_count == 0
    manager.check_invariants()


def test_allocate_is_idempotent(manager):
    first = manager.allocate(MAC1, now=0)
    for t in range(1, 10):
        assert manager.allocate(MAC1, now=t) == first
    assert len(manager) == 1
    assert manager.free_count == 99


def test_pool_exhaustion(small_manager):
    for i in range(3):
        small_manager.allocate(client(i), now=0)
    with pytest.raises(PoolExhausted):
        small_manager.allocate(client(3), now=1)
    # holders are unaffected
    assert small_manager.allocate(client(0), now=1) == IPv4Address('10.0.0.10')
    small_manager.check_invariants()


def test_expired_lease_is_reused(small_manager):
    for i in range(3):
        small_manager.allocate(client(i), now=0)
    # lease_duration is 100; expiry == now counts as expired
    assert small_manager.allocate(MAC1, now=100) == IPv4Address('10.0.0.10')
    assert small_manager.get(client(0)) is None
    assert small_manager.owner_of(IPv4Address('10.0.0.10')) == MAC1
    small_manager.check_invariants()


def test_sweep_returns_reclaimed(small_manager):
    small_manager.allocate(MAC1, now=0)
    small_manager.allocate(MAC2, now=50)
    assert small_manager.sweep(now=99) == []
    assert small_manager.sweep(now=100) == [IPv4Address('10.0.0.10')]
    assert small_manager.is_free(IPv4Address('10.0.0.10'))
    assert small_manager.get(MAC2) is not None
    small_manager.check_invariants()


def test_confirm_binds_and_refreshes(manager):
    address = manager.allocate(MAC1, now=0)
    assert manager.confirm(MAC1, address, now=1) == address
    lease = manager.get(MAC1)
    assert lease.state is LeaseState.BOUND
    assert lease.expiry == 86401


def test_confirm_mismatch_leaves_table_alone(manager):
    manager.allocate(MAC1, now=0)
    before = [dataclasses.replace(l) for l in manager.leases()]
    with pytest.raises(LeaseMismatch) as err:
        manager.confirm(MAC1, IPv4Address('192.168.1.150'), now=1)
    assert err.value.leased == IPv4Address('192.168.1.100')
    assert manager.get(MAC1).state is LeaseState.OFFERED
    assert manager.leases() == before


def test_confirm_without_requested_address_is_mismatch(manager):
    manager.allocate(MAC1, now=0)
    with pytest.raises(LeaseMismatch):
        manager.confirm(MAC1, None, now=1)


def test_confirm_unknown_client(manager):
    with pytest.raises(UnknownLease):
        manager.confirm(MAC1, IPv4Address('192.168.1.100'), now=0)


def test_confirm_expired_lease_is_unknown(small_manager):
    address = small_manager.allocate(MAC1, now=0)
    with pytest.raises(UnknownLease):
        small_manager.confirm(MAC1, address, now=100)
    assert small_manager.is_free(address)
    small_manager.check_invariants()


def test_release_address(manager):
    address = manager.allocate(MAC1, now=0)
    assert manager.release(address)
    assert manager.get(MAC1) is None
    assert not manager.release(address)
    assert manager.allocate(MAC2, now=1) == address
    manager.check_invariants()


def test_release_client_and_withdraw_offer(manager):
    a1 = manager.allocate(MAC1, now=0)
    a2 = manager.allocate(MAC2, now=0)
    manager.confirm(MAC2, a2, now=1)
    assert manager.release_client(MAC1) == a1
    assert manager.release_client(MAC1) is None
    # bound leases are not withdrawn
    assert manager.withdraw_offer(MAC2) is None
    assert manager.get(MAC2).state is LeaseState.BOUND
    a3 = manager.allocate(MAC3, now=2)
    assert manager.withdraw_offer(MAC3) == a3
    manager.check_invariants()


def test_decline_holds_address(small_manager):
    address = small_manager.allocate(MAC1, now=0)
    assert not small_manager.decline(MAC1, IPv4Address('10.0.0.11'), now=1)
    assert small_manager.decline(MAC1, address, now=1)
    small_manager.check_invariants()
    # held address is skipped while the hold lasts (decline_hold is 50)
    assert small_manager.allocate(MAC1, now=2) == IPv4Address('10.0.0.11')
    assert not small_manager.is_free(address)
    assert address in small_manager.sweep(now=51)
    assert small_manager.allocate(MAC2, now=52) == address
    small_manager.check_invariants()


def test_check_invariants_detects_corruption(manager):
    manager.allocate(MAC1, now=0)
    manager.allocate(MAC2, now=0)
    manager._leases[MAC2].address = manager._leases[MAC1].address
    with pytest.raises(AssertionError):
        manager.check_invariants()


def test_concurrent_allocation_is_exclusive(config):
    manager = LeaseManager(config)
    results = {}
    errors = []

    def worker(start):
        for i in range(start, start + 30):
            try:
                results[i] = manager.allocate(client(i), now=0)
            except PoolExhausted:
                errors.append(i)

    threads = [threading.Thread(target=worker, args=(n * 30,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(results) == 100
    assert len(errors) == 20
    assert len(set(results.values())) == 100
    manager.check_invariants()


def test_release_client_checks_address(manager):
    address = manager.allocate(MAC1, now=0)
    assert manager.release_client(MAC1, IPv4Address('192.168.1.120')) is None
    assert manager.get(MAC1).address == address
    assert manager.release_client(MAC1, address) == address
    assert manager.get(MAC1) is None
    assert manager.is_free(address)
    manager.check_invariants()


def test_mutation_checks_invariants(manager):
    manager.allocate(MAC1, now=0)
    # an address both free and held
    manager._declined[IPv4Address('192.168.1.150')] = 10 ** 9
    with pytest.raises(AssertionError):
        manager.allocate(MAC2, now=1)


def test_release_checks_invariants(manager):
    address = manager.allocate(MAC1, now=0)
    manager.allocate(MAC2, now=0)
    manager._leases[MAC2].address = address
    with pytest.raises(AssertionError):
        manager.release_client(MAC1)
