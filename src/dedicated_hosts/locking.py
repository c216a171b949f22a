"""Named mutual exclusion for the "check capacity, else create a host" step.

Placement only takes a lock when no host has room, and holds it for one
selector read plus at most one host creation. The lock is keyed by the
lower-cased host group id, so groups never contend with each other.

Backends:
- InMemoryLockProvider: asyncio.Lock per key, serializes coroutines of one
  process.
- RedisLockProvider: SET NX PX lease with a per-acquire token, released by
  compare-and-delete. Serializes engine instances sharing a Redis.

Both raise LockContentionError when the lock stays held past the wait
budget; callers retry with backoff.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, TypeVar
from uuid import uuid4

from dedicated_hosts import constants
from dedicated_hosts._logging import get_logger
from dedicated_hosts.exceptions import LockContentionError

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = get_logger(__name__)

T = TypeVar("T")

# Delete the key only if we still own it (lease may have expired and been
# taken by someone else).
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class SerializationProvider(ABC):
    """Named lock: acquire(key) returns a lease token, release(key, token) ends it."""

    @abstractmethod
    async def acquire(self, key: str) -> str:
        """Acquire the lock for key and return the token owning this acquisition.

        Raises:
            LockContentionError: Lock still held after the wait budget
        """

    @abstractmethod
    async def release(self, key: str, token: str) -> None:
        """Release the lock for key if token still owns it. No-op otherwise."""

    async def run_exclusive(self, key: str, critical_section: Callable[[], Awaitable[T]]) -> T:
        """Run critical_section while holding the lock for key.

        The lock is released on every exit path, including exceptions and
        task cancellation inside the critical section. Only this call's own
        acquisition is released, never a later holder's.

        Raises:
            LockContentionError: Lock could not be acquired (critical_section not run)
        """
        token = await self.acquire(key)
        logger.debug("Lock acquired", extra={"lock_key": key})
        try:
            return await critical_section()
        finally:
            await self.release(key, token)
            logger.debug("Lock released", extra={"lock_key": key})

    async def aclose(self) -> None:  # noqa: B027
        """Release backend resources."""


class InMemoryLockProvider(SerializationProvider):
    """Per-key asyncio.Lock. Only coordinates coroutines in this process."""

    def __init__(self, wait_seconds: float = constants.LOCK_WAIT_SECONDS) -> None:
        self._wait_seconds = wait_seconds
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, str] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def acquire(self, key: str) -> str:
        lock = self._lock_for(key)
        if self._wait_seconds <= 0:
            if lock.locked():
                raise LockContentionError(f"Lock {key} is held", lock_key=key)
            await lock.acquire()
        else:
            try:
                async with asyncio.timeout(self._wait_seconds):
                    await lock.acquire()
            except TimeoutError:
                raise LockContentionError(
                    f"Failed to acquire lock {key} within {self._wait_seconds}s",
                    lock_key=key,
                ) from None
        token = self._holders[key] = uuid4().hex
        return token

    async def release(self, key: str, token: str) -> None:
        lock = self._locks.get(key)
        if lock is None or not lock.locked() or self._holders.get(key) != token:
            logger.debug("Lock not held by this token (idempotent)", extra={"lock_key": key})
            return
        del self._holders[key]
        lock.release()

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()


class RedisLockProvider(SerializationProvider):
    """Lease-based lock in Redis.

    The lease bounds how long a crashed holder can block a host group. Each
    acquisition gets its own token, so a holder whose lease expired can
    never delete the key of whoever acquired it next.
    """

    def __init__(
        self,
        client: Redis,
        key_prefix: str = constants.LOCK_KEY_PREFIX,
        lease_seconds: float = constants.LOCK_LEASE_SECONDS,
        wait_seconds: float = constants.LOCK_WAIT_SECONDS,
        poll_interval_seconds: float = constants.LOCK_POLL_INTERVAL_SECONDS,
    ) -> None:
        self._client = client
        self._key_prefix = key_prefix
        self._lease_ms = max(1, round(lease_seconds * 1000))
        self._wait_seconds = wait_seconds
        self._poll_interval = poll_interval_seconds

    def _redis_key(self, key: str) -> str:
        return f"{self._key_prefix}:{key}"

    async def acquire(self, key: str) -> str:
        redis_key = self._redis_key(key)
        token = uuid4().hex
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._wait_seconds
        while True:
            if await self._client.set(redis_key, token, nx=True, px=self._lease_ms):
                return token
            if loop.time() >= deadline:
                raise LockContentionError(
                    f"Failed to acquire lock {redis_key} within {self._wait_seconds}s",
                    lock_key=key,
                )
            await asyncio.sleep(self._poll_interval)

    async def release(self, key: str, token: str) -> None:
        released = await self._client.eval(_RELEASE_SCRIPT, 1, self._redis_key(key), token)
        if not released:
            logger.warning(
                "Lock lease expired before release, another caller may have held it concurrently",
                extra={"lock_key": key, "lease_ms": self._lease_ms},
            )
