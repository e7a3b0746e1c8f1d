"""
Per-entity serialization.

Every mutation of a single appointment, client profile or waitlist line runs
under a lock scoped to that entity. There is no global lock: unrelated
businesses and clients proceed in parallel.

Locks are in-process asyncio locks. Engine code also takes a row lock
(SELECT ... FOR UPDATE) on the owning row, which is what serializes
multiple workers against PostgreSQL.

Keys are tuples whose first element is the entity kind. Multiple keys are
always acquired in rank order (business -> appointment -> line -> client)
to rule out lock-order deadlocks.

Usage:
    async with entity_locks.hold(line_key(business_id, service_id)):
        ...
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable

LOCK_RANK = {
    "business": 0,
    "appointment": 1,
    "line": 2,
    "client": 3,
}

LockKey = tuple[Hashable, ...]


def business_key(business_id: int) -> LockKey:
    return ("business", business_id)


def appointment_key(appointment_id) -> LockKey:
    return ("appointment", str(appointment_id))


def line_key(business_id: int, service_id: int) -> LockKey:
    return ("line", business_id, service_id)


def client_key(client_id: int) -> LockKey:
    return ("client", client_id)


class KeyedLocks:
    """
    Registry of asyncio locks keyed by entity.

    A lock only lives while someone holds or waits for it, so the registry
    does not grow with the number of entities ever touched.
    """

    def __init__(self):
        self._locks: dict[LockKey, asyncio.Lock] = {}
        self._users: dict[LockKey, int] = {}

    def _checkout(self, key: LockKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
            self._users[key] = 0
        self._users[key] += 1
        return lock

    def _checkin(self, key: LockKey) -> None:
        self._users[key] -= 1
        if self._users[key] == 0:
            del self._users[key]
            del self._locks[key]

    def is_locked(self, key: LockKey) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, *keys: LockKey) -> AsyncIterator[None]:
        ordered = sorted(set(keys), key=lambda k: (LOCK_RANK[k[0]], tuple(str(p) for p in k[1:])))
        acquired: list[LockKey] = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                try:
                    await lock.acquire()
                except BaseException:
                    self._checkin(key)
                    raise
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._locks[key].release()
                self._checkin(key)


entity_locks = KeyedLocks()
