"""Tests for host state hints and their TTL expiry.

In-memory store uses an injected clock; Redis store uses an AsyncMock
client and checks the commands issued.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from dedicated_hosts.state import (
    HostHint,
    HostStateTracker,
    InMemoryHostStateStore,
    RedisHostStateStore,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


HOST = "/subscriptions/sub-1/resourceGroups/rg/providers/Microsoft.Compute/hostGroups/hg/hosts/host-1"

# ============================================================================
# In-memory store
# ============================================================================


class TestInMemoryHostStateStore:
    async def test_unset_hint_reads_false(self) -> None:
        store = InMemoryHostStateStore()
        assert await store.is_set(HostHint.IN_USAGE, "h") is False

    async def test_hint_expires_after_ttl(self) -> None:
        clock = FakeClock()
        store = InMemoryHostStateStore(clock=clock)
        await store.mark(HostHint.IN_USAGE, "h", timedelta(minutes=3))

        clock.advance(timedelta(minutes=2, seconds=59))
        assert await store.is_set(HostHint.IN_USAGE, "h") is True

        clock.advance(timedelta(seconds=1))
        assert await store.is_set(HostHint.IN_USAGE, "h") is False
        assert len(store) == 0  # evicted on read

    async def test_one_millisecond_ttl_with_real_clock(self) -> None:
        store = InMemoryHostStateStore()
        await store.mark(HostHint.AT_CAPACITY, "h", timedelta(milliseconds=1))
        await asyncio.sleep(0.01)
        assert await store.is_set(HostHint.AT_CAPACITY, "h") is False

    async def test_past_timestamp_shortens_lifetime(self) -> None:
        clock = FakeClock()
        store = InMemoryHostStateStore(clock=clock)
        await store.mark(HostHint.IN_USAGE, "h", timedelta(minutes=3), timestamp=clock.now - timedelta(minutes=2))

        clock.advance(timedelta(minutes=1))
        assert await store.is_set(HostHint.IN_USAGE, "h") is False

    async def test_future_timestamp_cannot_outlive_ttl(self) -> None:
        clock = FakeClock()
        store = InMemoryHostStateStore(clock=clock)
        await store.mark(HostHint.IN_USAGE, "h", timedelta(minutes=3), timestamp=clock.now + timedelta(hours=1))

        entry = store.get(HostHint.IN_USAGE, "h")
        assert entry is not None
        assert entry.expires_at == clock.now + timedelta(minutes=3)

    async def test_kinds_are_independent(self) -> None:
        store = InMemoryHostStateStore()
        await store.mark(HostHint.IN_USAGE, "h", timedelta(minutes=1))
        assert await store.is_set(HostHint.AT_CAPACITY, "h") is False
        assert await store.is_set(HostHint.MARKED_FOR_DELETION, "h") is False

    async def test_unmark_absent_is_noop(self) -> None:
        store = InMemoryHostStateStore()
        await store.unmark(HostHint.IN_USAGE, "missing")

    @pytest.mark.parametrize("ttl", [timedelta(0), timedelta(seconds=-1)])
    async def test_non_positive_ttl_rejected(self, ttl: timedelta) -> None:
        store = InMemoryHostStateStore()
        with pytest.raises(ValueError, match="positive"):
            await store.mark(HostHint.IN_USAGE, "h", ttl)


# ============================================================================
# Redis store
# ============================================================================


class TestRedisHostStateStore:
    async def test_mark_sets_key_with_remaining_ttl(self) -> None:
        clock = FakeClock()
        client = AsyncMock()
        store = RedisHostStateStore(client, key_prefix="dh:state", clock=clock)

        await store.mark(HostHint.IN_USAGE, "h", timedelta(minutes=3))

        client.set.assert_awaited_once_with("dh:state:in-usage:h", clock.now.isoformat(), px=180_000)

    async def test_mark_with_old_timestamp_uses_remaining_time(self) -> None:
        clock = FakeClock()
        client = AsyncMock()
        store = RedisHostStateStore(client, key_prefix="dh:state", clock=clock)

        marked_at = clock.now - timedelta(minutes=1)
        await store.mark(HostHint.AT_CAPACITY, "h", timedelta(minutes=3), timestamp=marked_at)

        client.set.assert_awaited_once_with("dh:state:at-capacity:h", marked_at.isoformat(), px=120_000)

    async def test_mark_already_expired_deletes_key(self) -> None:
        clock = FakeClock()
        client = AsyncMock()
        store = RedisHostStateStore(client, key_prefix="dh:state", clock=clock)

        await store.mark(HostHint.IN_USAGE, "h", timedelta(minutes=3), timestamp=clock.now - timedelta(minutes=5))

        client.set.assert_not_awaited()
        client.delete.assert_awaited_once_with("dh:state:in-usage:h")

    async def test_is_set_and_unmark(self) -> None:
        client = AsyncMock()
        client.exists.return_value = 1
        store = RedisHostStateStore(client, key_prefix="dh:state")

        assert await store.is_set(HostHint.MARKED_FOR_DELETION, "h") is True
        client.exists.assert_awaited_once_with("dh:state:marked-for-deletion:h")

        client.exists.return_value = 0
        assert await store.is_set(HostHint.MARKED_FOR_DELETION, "h") is False

        await store.unmark(HostHint.MARKED_FOR_DELETION, "h")
        client.delete.assert_awaited_once_with("dh:state:marked-for-deletion:h")


# ============================================================================
# Tracker
# ============================================================================


class TestHostStateTracker:
    async def test_named_operations(self) -> None:
        tracker = HostStateTracker(InMemoryHostStateStore(), ttl=timedelta(minutes=3))

        await tracker.mark_in_usage(HOST)
        await tracker.mark_at_capacity(HOST)
        await tracker.mark_for_deletion(HOST)
        assert await tracker.is_in_usage(HOST)
        assert await tracker.is_at_capacity(HOST)
        assert await tracker.is_marked_for_deletion(HOST)

        await tracker.unmark_for_deletion(HOST)
        assert not await tracker.is_marked_for_deletion(HOST)
        assert await tracker.is_in_usage(HOST)

    async def test_host_ids_compare_case_insensitively(self) -> None:
        tracker = HostStateTracker(InMemoryHostStateStore(), ttl=timedelta(minutes=3))
        await tracker.mark_in_usage(HOST.upper())
        assert await tracker.is_in_usage(HOST.lower())

    async def test_tracker_ttl_applies(self) -> None:
        clock = FakeClock()
        tracker = HostStateTracker(InMemoryHostStateStore(clock=clock), ttl=timedelta(minutes=3))
        await tracker.mark_at_capacity(HOST)

        clock.advance(timedelta(minutes=3))
        assert not await tracker.is_at_capacity(HOST)

    async def test_explicit_ttl_overrides_default(self) -> None:
        clock = FakeClock()
        tracker = HostStateTracker(InMemoryHostStateStore(clock=clock), ttl=timedelta(minutes=3))
        await tracker.mark(HostHint.IN_USAGE, HOST, ttl=timedelta(seconds=10))

        clock.advance(timedelta(seconds=10))
        assert not await tracker.is_in_usage(HOST)

    def test_zero_ttl_rejected(self) -> None:
        with pytest.raises(ValueError):
            HostStateTracker(InMemoryHostStateStore(), ttl=timedelta(0))

    async def test_explicit_zero_ttl_rejected_not_defaulted(self) -> None:
        tracker = HostStateTracker(InMemoryHostStateStore(), ttl=timedelta(minutes=3))
        with pytest.raises(ValueError):
            await tracker.mark(HostHint.IN_USAGE, HOST, ttl=timedelta(0))
        assert not await tracker.is_in_usage(HOST)
