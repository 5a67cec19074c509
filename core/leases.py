import heapq
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from ipaddress import IPv4Address
from typing import Dict, List, Optional, Set

from core.packet import format_mac
from utils.config import ServerConfig

logger = logging.getLogger("dorad.leases")


class LeaseState(Enum):
    OFFERED = 'offered'
    BOUND = 'bound'


@dataclass
class Lease:
    client_id: bytes
    address: IPv4Address
    state: LeaseState
    expiry: float

    def is_active(self, now: float) -> bool:
        return self.expiry > now


class LeaseError(Exception):
    pass


class PoolExhausted(LeaseError):
    pass


class UnknownLease(LeaseError):
    def __init__(self, client_id: bytes):
        super().__init__('no lease for %s' % format_mac(client_id))
        self.client_id = client_id


class LeaseMismatch(LeaseError):
    def __init__(self, client_id: bytes, requested: Optional[IPv4Address], leased: IPv4Address):
        super().__init__('%s requested %s but holds %s' % (format_mac(client_id), requested, leased))
        self.client_id = client_id
        self.requested = requested
        self.leased = leased


class LeaseManager:
    """Owns the server configuration, the free pool and the lease table.

    Every address of the configured range is at any time in exactly one
    of: the free pool, one lease, or the decline hold. All public methods
    take the same lock, so callers on several threads are serialized.
    Expiry is compared against the `now` the caller passes in. Every
    change ends with `check_invariants`, so a broken table raises
    AssertionError at the operation that broke it.
    """

    def __init__(self, config: ServerConfig):
        self.config = config
        self._lock = threading.RLock()
        self._leases: Dict[bytes, Lease] = {}
        # reverse map address -> client for conflict checks
        self._by_address: Dict[IPv4Address, bytes] = {}
        # address -> time the decline hold ends
        self._declined: Dict[IPv4Address, float] = {}
        # min-heap so the lowest free address is handed out first
        self._free: List[IPv4Address] = list(config.pool_addresses())
        heapq.heapify(self._free)
        self._free_set: Set[IPv4Address] = set(self._free)

    def __len__(self):
        with self._lock:
            return len(self._leases)

    @property
    def free_count(self) -> int:
        with self._lock:
            return len(self._free)

    def get(self, client_id: bytes) -> Optional[Lease]:
        with self._lock:
            return self._leases.get(client_id)

    def owner_of(self, address: IPv4Address) -> Optional[bytes]:
        with self._lock:
            return self._by_address.get(address)

    def leases(self) -> List[Lease]:
        with self._lock:
            return sorted(self._leases.values(), key=lambda l: l.address)

    def is_free(self, address: IPv4Address) -> bool:
        with self._lock:
            return address in self._free_set

    def allocate(self, client_id: bytes, now: float) -> IPv4Address:
        """Offer an address to `client_id`.

        A client that already holds an unexpired lease gets the same
        address back. Raises PoolExhausted when no address is free.
        """
        with self._lock:
            self.sweep(now)
            lease = self._leases.get(client_id)
            if lease is not None:
                return lease.address
            if not self._free:
                raise PoolExhausted('no free address for %s' % format_mac(client_id))
            address = heapq.heappop(self._free)
            self._free_set.discard(address)
            assert address not in self._by_address, 'free address %s is leased to %s' % (
                address, format_mac(self._by_address[address]))
            self._leases[client_id] = Lease(
                client_id=client_id,
                address=address,
                state=LeaseState.OFFERED,
                expiry=now + self.config.lease_duration,
            )
            self._by_address[address] = client_id
            self.check_invariants()
            logger.debug('Allocated %s to %s', address, format_mac(client_id))
            return address

    def confirm(self, client_id: bytes, requested: Optional[IPv4Address], now: float) -> IPv4Address:
        """Bind the client's lease if `requested` matches it.

        Raises UnknownLease when the client has no unexpired lease and
        LeaseMismatch when the lease is for another address. Neither
        changes the table.
        """
        with self._lock:
            lease = self._leases.get(client_id)
            if lease is not None and not lease.is_active(now):
                self._reclaim(lease)
                self.check_invariants()
                lease = None
            if lease is None:
                raise UnknownLease(client_id)
            if requested != lease.address:
                raise LeaseMismatch(client_id, requested, lease.address)
            lease.state = LeaseState.BOUND
            lease.expiry = now + self.config.lease_duration
            self.check_invariants()
            logger.debug('Bound %s to %s until %s', lease.address, format_mac(client_id), lease.expiry)
            return lease.address

    def release(self, address: IPv4Address) -> bool:
        """Return `address` to the pool now, whoever holds it."""
        with self._lock:
            client_id = self._by_address.get(address)
            if client_id is None:
                return False
            self._reclaim(self._leases[client_id])
            self.check_invariants()
            return True

    def release_client(self, client_id: bytes, address: Optional[IPv4Address] = None) -> Optional[IPv4Address]:
        """Drop the client's lease and return its address.

        With `address` given the lease is dropped only if it is for that
        address; the check and the removal happen under one lock hold.
        """
        with self._lock:
            lease = self._leases.get(client_id)
            if lease is None:
                return None
            if address is not None and lease.address != address:
                return None
            self._reclaim(lease)
            self.check_invariants()
            return lease.address

    def withdraw_offer(self, client_id: bytes) -> Optional[IPv4Address]:
        """Drop the client's lease only while it is still an offer."""
        with self._lock:
            lease = self._leases.get(client_id)
            if lease is None or lease.state is not LeaseState.OFFERED:
                return None
            self._reclaim(lease)
            self.check_invariants()
            return lease.address

    def decline(self, client_id: bytes, address: Optional[IPv4Address], now: float) -> bool:
        """Drop the client's lease on `address` and keep the address out
        of the pool for `decline_hold` seconds."""
        with self._lock:
            lease = self._leases.get(client_id)
            if lease is None or lease.address != address:
                return False
            del self._leases[client_id]
            del self._by_address[lease.address]
            self._declined[lease.address] = now + self.config.decline_hold
            self.check_invariants()
            logger.warning('%s declined %s; holding it until %s', format_mac(client_id), lease.address,
                           self._declined[lease.address])
            return True

    def sweep(self, now: float) -> List[IPv4Address]:
        """Reclaim expired leases and finished decline holds.

        Returns the addresses put back into the pool.
        """
        with self._lock:
            reclaimed = []
            for lease in list(self._leases.values()):
                if not lease.is_active(now):
                    self._reclaim(lease)
                    reclaimed.append(lease.address)
            for address, until in list(self._declined.items()):
                if until <= now:
                    del self._declined[address]
                    self._push_free(address)
                    reclaimed.append(address)
            self.check_invariants()
            if reclaimed:
                logger.debug('Reclaimed %s', ', '.join(str(a) for a in reclaimed))
            return reclaimed

    def check_invariants(self):
        with self._lock:
            leased = set(self._by_address)
            held = set(self._declined)
            assert len(self._free) == len(self._free_set), 'duplicate address in free pool'
            assert len(leased) == len(self._leases), 'two leases share an address'
            for client_id, lease in self._leases.items():
                assert lease.client_id == client_id, 'lease filed under the wrong client'
                assert self._by_address.get(lease.address) == client_id, 'address index out of sync'
            assert not (self._free_set & leased), 'address both free and leased'
            assert not (self._free_set & held), 'address both free and held'
            assert not (leased & held), 'address both leased and held'
            assert len(self._free_set) + len(leased) + len(held) == self.config.pool_size, \
                'address lost from the pool'

    def _reclaim(self, lease: Lease):
        del self._leases[lease.client_id]
        del self._by_address[lease.address]
        self._push_free(lease.address)
        logger.debug('Returned %s from %s to the pool', lease.address, format_mac(lease.client_id))

    def _push_free(self, address: IPv4Address):
        assert address not in self._free_set, 'address %s returned to the pool twice' % address
        heapq.heappush(self._free, address)
        self._free_set.add(address)
