"""Short-lived per-host coordination hints.

Three independent hints per host, each with its own TTL:

- in_usage: host was just chosen for a VM placement attempt. Blocks
  delete_vm from reclaiming it while the VM is being created.
- at_capacity: the control plane failed a VM on this host for lack of
  room. The selector skips the host until the hint expires.
- marked_for_deletion: host was observed with zero VMs and is about to be
  deleted.

Hints are never the source of truth. An absent or expired hint reads as
False, and no hint outlives the TTL it was set with.

Backends:
- InMemoryHostStateStore: single process, injectable clock.
- RedisHostStateStore: shared across engine instances; expiry enforced by
  Redis (SET ... PX).
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING

from dedicated_hosts._logging import get_logger

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


class HostHint(str, Enum):
    """Kinds of per-host hints."""

    IN_USAGE = "in-usage"
    AT_CAPACITY = "at-capacity"
    MARKED_FOR_DELETION = "marked-for-deletion"


@dataclass(frozen=True, slots=True)
class HintEntry:
    """A stored hint and its absolute expiry."""

    marked_at: datetime
    expires_at: datetime


def _effective_mark_time(timestamp: datetime | None, now: datetime) -> datetime:
    # A timestamp in the future would stretch the hint past its TTL
    if timestamp is None or timestamp > now:
        return now
    return timestamp


def _check_ttl(ttl: timedelta) -> None:
    if ttl <= timedelta(0):
        raise ValueError(f"hint ttl must be positive, got {ttl}")


class HostStateStore(ABC):
    """Backend for host hints. Keys are already normalized by HostStateTracker."""

    @abstractmethod
    async def mark(self, kind: HostHint, key: str, ttl: timedelta, timestamp: datetime | None = None) -> None:
        """Set a hint that expires ttl after timestamp (default: now)."""

    @abstractmethod
    async def is_set(self, kind: HostHint, key: str) -> bool:
        """True while the hint is present and unexpired."""

    @abstractmethod
    async def unmark(self, kind: HostHint, key: str) -> None:
        """Clear a hint. No-op when absent."""

    async def aclose(self) -> None:  # noqa: B027
        """Release backend resources."""


class InMemoryHostStateStore(HostStateStore):
    """Process-local hint store.

    SYNC-ONLY internals: no await between read and write, so asyncio
    cooperative scheduling keeps each operation atomic without a lock.
    """

    def __init__(self, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._entries: dict[tuple[HostHint, str], HintEntry] = {}

    async def mark(self, kind: HostHint, key: str, ttl: timedelta, timestamp: datetime | None = None) -> None:
        _check_ttl(ttl)
        marked_at = _effective_mark_time(timestamp, self._clock())
        self._entries[(kind, key)] = HintEntry(marked_at=marked_at, expires_at=marked_at + ttl)

    async def is_set(self, kind: HostHint, key: str) -> bool:
        return self.get(kind, key) is not None

    async def unmark(self, kind: HostHint, key: str) -> None:
        self._entries.pop((kind, key), None)

    def get(self, kind: HostHint, key: str) -> HintEntry | None:
        """Return the live entry, evicting it if expired."""
        entry = self._entries.get((kind, key))
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[(kind, key)]
            return None
        return entry

    def __len__(self) -> int:
        return len(self._entries)


class RedisHostStateStore(HostStateStore):
    """Hint store shared through Redis.

    Each hint is one key holding its mark timestamp, written with a PX
    expiry so Redis drops it when the TTL elapses.
    """

    def __init__(self, client: Redis, key_prefix: str, clock: Clock = utc_now) -> None:
        self._client = client
        self._key_prefix = key_prefix
        self._clock = clock

    def _key(self, kind: HostHint, key: str) -> str:
        return f"{self._key_prefix}:{kind.value}:{key}"

    async def mark(self, kind: HostHint, key: str, ttl: timedelta, timestamp: datetime | None = None) -> None:
        _check_ttl(ttl)
        now = self._clock()
        marked_at = _effective_mark_time(timestamp, now)
        remaining_ms = math.ceil((marked_at + ttl - now).total_seconds() * 1000)
        if remaining_ms <= 0:
            await self._client.delete(self._key(kind, key))
            return
        await self._client.set(self._key(kind, key), marked_at.isoformat(), px=remaining_ms)

    async def is_set(self, kind: HostHint, key: str) -> bool:
        return bool(await self._client.exists(self._key(kind, key)))

    async def unmark(self, kind: HostHint, key: str) -> None:
        await self._client.delete(self._key(kind, key))


class HostStateTracker:
    """Named hint operations over a HostStateStore.

    Host ids are compared case-insensitively, so every key is lower-cased
    before it reaches the store.
    """

    def __init__(self, store: HostStateStore, ttl: timedelta) -> None:
        _check_ttl(ttl)
        self._store = store
        self._ttl = ttl

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    @property
    def store(self) -> HostStateStore:
        return self._store

    async def mark(
        self,
        kind: HostHint,
        host_id: str,
        ttl: timedelta | None = None,
        timestamp: datetime | None = None,
    ) -> None:
        await self._store.mark(kind, host_id.lower(), self._ttl if ttl is None else ttl, timestamp)
        logger.debug("Host hint set", extra={"hint": kind.value, "host_id": host_id})

    async def is_set(self, kind: HostHint, host_id: str) -> bool:
        return await self._store.is_set(kind, host_id.lower())

    async def unmark(self, kind: HostHint, host_id: str) -> None:
        await self._store.unmark(kind, host_id.lower())
        logger.debug("Host hint cleared", extra={"hint": kind.value, "host_id": host_id})

    async def mark_in_usage(self, host_id: str) -> None:
        await self.mark(HostHint.IN_USAGE, host_id)

    async def is_in_usage(self, host_id: str) -> bool:
        return await self.is_set(HostHint.IN_USAGE, host_id)

    async def mark_at_capacity(self, host_id: str) -> None:
        await self.mark(HostHint.AT_CAPACITY, host_id)

    async def is_at_capacity(self, host_id: str) -> bool:
        return await self.is_set(HostHint.AT_CAPACITY, host_id)

    async def mark_for_deletion(self, host_id: str) -> None:
        await self.mark(HostHint.MARKED_FOR_DELETION, host_id)

    async def is_marked_for_deletion(self, host_id: str) -> bool:
        return await self.is_set(HostHint.MARKED_FOR_DELETION, host_id)

    async def unmark_for_deletion(self, host_id: str) -> None:
        await self.unmark(HostHint.MARKED_FOR_DELETION, host_id)
