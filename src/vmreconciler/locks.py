"""Per-resource serialization of reconciliation passes.

At most one pass may be in flight for a given resource within this process.
Locks are keyed by resource kind and name so that same-named resources of
different kinds do not contend. The manager is injected into the engine; it
is not a module-level singleton.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


class ResourceLockManager:
    """Keyed asyncio locks for resource identities.

    An entry exists only while a pass holds or waits for it.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        # Passes holding or waiting for each lock
        self._users: dict[str, int] = {}

    @staticmethod
    def key(name: str, kind: str) -> str:
        return f"{kind}:{name}"

    @property
    def active_keys(self) -> frozenset[str]:
        """Keys some pass currently holds or waits for."""
        return frozenset(self._locks)

    def _checkout(self, key: str) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        return self._locks[key]

    def _checkin(self, key: str) -> None:
        self._users[key] -= 1
        if self._users[key] == 0:
            del self._users[key]
            del self._locks[key]

    def locked(self, name: str, kind: str) -> bool:
        """Whether a pass currently holds the lock."""
        lock = self._locks.get(self.key(name, kind))
        return lock is not None and lock.locked()

    async def acquire(self, name: str, kind: str) -> None:
        """Wait until the lock for (name, kind) is free, then take it."""
        key = self.key(name, kind)
        lock = self._checkout(key)
        if lock.locked():
            logger.debug("Waiting for in-flight pass on resource", extra={"lock_key": key})
        try:
            await lock.acquire()
        except BaseException:
            self._checkin(key)
            raise

    def release(self, name: str, kind: str) -> None:
        """Release the lock for (name, kind).

        Raises:
            RuntimeError: If the lock is not held.
        """
        key = self.key(name, kind)
        lock = self._locks.get(key)
        if lock is None or not lock.locked():
            raise RuntimeError(f"Lock {key!r} is not held")
        lock.release()
        self._checkin(key)

    @asynccontextmanager
    async def hold(self, name: str, kind: str) -> AsyncIterator[None]:
        """Hold the lock for the duration of the block, released on every exit path."""
        await self.acquire(name, kind)
        try:
            yield
        finally:
            self.release(name, kind)
