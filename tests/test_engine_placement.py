"""Tests for DedicatedHostEngine.get_host_for_vm_placement.

Covers the lock-free fast path, host (and group) creation when the pool is
full, the double-checked lock under concurrency, configuration failures
before any control-plane call, and the caller timeout.
"""

import asyncio
import logging
from unittest.mock import AsyncMock, patch

import pytest

from dedicated_hosts.compute import host_group_resource_id
from dedicated_hosts.engine import DedicatedHostEngine
from dedicated_hosts.exceptions import (
    CloudError,
    HostPlacementTimeoutError,
    ParameterValidationError,
    SkuMappingError,
)
from dedicated_hosts.locking import InMemoryLockProvider
from dedicated_hosts.models import CloudContext
from tests.conftest import HOST_GROUP, HOST_SKU, LOCATION, RESOURCE_GROUP, make_config
from tests.fakes import DEFAULT_VM_SIZE, FakeControlPlane, FakeProvider

LOCK_KEY = host_group_resource_id("sub-1", RESOURCE_GROUP, HOST_GROUP).lower()


async def _place(engine: DedicatedHostEngine, context: CloudContext, vm_name: str = "vm-1", **kwargs: object) -> str:
    return await engine.get_host_for_vm_placement(
        context, RESOURCE_GROUP, HOST_GROUP, DEFAULT_VM_SIZE, vm_name, LOCATION, **kwargs
    )


# ============================================================================
# Basic placement
# ============================================================================


class TestPlacement:
    async def test_existing_host_used_without_lock(
        self, engine: DedicatedHostEngine, context: CloudContext, plane: FakeControlPlane
    ) -> None:
        plane.seed_group(RESOURCE_GROUP, HOST_GROUP)
        host = plane.seed_host(RESOURCE_GROUP, HOST_GROUP, "existing")

        assert await _place(engine, context) == host.id
        assert plane.count("create_or_update_host") == 0
        assert plane.count("get_host_group") == 0

    async def test_full_pool_grows_by_one_host(
        self, engine: DedicatedHostEngine, context: CloudContext, plane: FakeControlPlane
    ) -> None:
        plane.seed_group(RESOURCE_GROUP, HOST_GROUP)
        plane.seed_host(RESOURCE_GROUP, HOST_GROUP, "full", capacity={DEFAULT_VM_SIZE: 0})

        host_id = await _place(engine, context)

        created = plane.host_by_id(host_id)
        assert created is not None
        assert created.name.startswith("host-")
        assert created.sku == HOST_SKU
        assert plane.count("create_or_update_host") == 1

    async def test_missing_group_created_lazily(
        self, engine: DedicatedHostEngine, context: CloudContext, plane: FakeControlPlane
    ) -> None:
        host_id = await _place(engine, context)

        group = plane.host_groups[(RESOURCE_GROUP, HOST_GROUP)]
        assert group.platform_fault_domain_count == 1
        assert group.location == LOCATION
        assert plane.host_by_id(host_id) is not None
        assert plane.count("create_or_update_host_group") == 1

    async def test_missing_group_concurrent_callers_create_one_group_and_host(self, context: CloudContext) -> None:
        plane = FakeControlPlane(create_host_delay=0.02)
        locks = InMemoryLockProvider()

        async with DedicatedHostEngine(FakeProvider(plane), make_config(), lock_provider=locks) as engine:
            ids = await asyncio.gather(*(_place(engine, context, f"vm-{i}") for i in range(5)))

        assert len(set(ids)) == 1
        assert plane.count("create_or_update_host_group") == 1
        assert plane.count("create_or_update_host") == 1
        assert not locks.locked(LOCK_KEY)

    async def test_transient_failure_in_critical_section_retries_loop(self, context: CloudContext) -> None:
        plane = FakeControlPlane()
        plane.seed_group(RESOURCE_GROUP, HOST_GROUP)
        plane.fail("create_or_update_host", CloudError("quota check failed", code="OperationNotAllowed"))

        async with DedicatedHostEngine(FakeProvider(plane), make_config(host_group_create_retry_count=0)) as engine:
            host_id = await _place(engine, context)

        assert plane.host_by_id(host_id) is not None
        assert plane.count("create_or_update_host") == 2

    async def test_lock_released_after_placement(self, context: CloudContext, plane: FakeControlPlane) -> None:
        locks = InMemoryLockProvider()
        async with DedicatedHostEngine(FakeProvider(plane), make_config(), lock_provider=locks) as engine:
            await _place(engine, context)
        assert not locks.locked(LOCK_KEY)


# ============================================================================
# Concurrency
# ============================================================================


class TestConcurrentPlacement:
    async def test_concurrent_callers_create_exactly_one_host(self, context: CloudContext) -> None:
        plane = FakeControlPlane(create_host_delay=0.02)
        plane.seed_group(RESOURCE_GROUP, HOST_GROUP)

        async with DedicatedHostEngine(FakeProvider(plane), make_config()) as engine:
            ids = await asyncio.gather(*(_place(engine, context, f"vm-{i}") for i in range(10)))

        assert len(set(ids)) == 1
        assert plane.count("create_or_update_host") == 1

    async def test_engines_sharing_a_lock_create_one_host(self, context: CloudContext) -> None:
        plane = FakeControlPlane(create_host_delay=0.02)
        plane.seed_group(RESOURCE_GROUP, HOST_GROUP)
        locks = InMemoryLockProvider()

        first = DedicatedHostEngine(FakeProvider(plane), make_config(), lock_provider=locks)
        second = DedicatedHostEngine(FakeProvider(plane), make_config(), lock_provider=locks)
        ids = await asyncio.gather(
            *(_place(engine, context, f"vm-{i}") for i, engine in enumerate([first, second] * 4))
        )

        assert len(set(ids)) == 1
        assert plane.count("create_or_update_host") == 1

    async def test_lock_contention_exhaustion_restarts_loop(
        self, context: CloudContext, caplog: pytest.LogCaptureFixture
    ) -> None:
        plane = FakeControlPlane()
        plane.seed_group(RESOURCE_GROUP, HOST_GROUP)
        locks = InMemoryLockProvider(wait_seconds=0)
        token = await locks.acquire(LOCK_KEY)

        async def release_later() -> None:
            await asyncio.sleep(0.05)
            await locks.release(LOCK_KEY, token)

        releaser = asyncio.create_task(release_later())
        async with DedicatedHostEngine(
            FakeProvider(plane), make_config(lock_retry_count=1), lock_provider=locks
        ) as engine:
            with caplog.at_level(logging.WARNING, logger="dedicated_hosts"):
                host_id = await _place(engine, context)
        await releaser

        assert plane.host_by_id(host_id) is not None
        assert "Could not acquire host group lock" in caplog.text


# ============================================================================
# Failures before and around the loop
# ============================================================================


class TestPlacementFailures:
    async def test_unmapped_vm_size_fails_before_any_call(
        self,
        engine: DedicatedHostEngine,
        context: CloudContext,
        plane: FakeControlPlane,
        provider: FakeProvider,
    ) -> None:
        with pytest.raises(SkuMappingError):
            await engine.get_host_for_vm_placement(
                context, RESOURCE_GROUP, HOST_GROUP, "Standard_Unknown", "vm-1", LOCATION
            )
        assert plane.calls == []
        assert provider.contexts == []

    async def test_timeout_bounds_unbounded_loop(self, context: CloudContext) -> None:
        plane = FakeControlPlane()
        plane.seed_group(RESOURCE_GROUP, HOST_GROUP)
        plane.always_fail("create_or_update_host", CloudError("quota exceeded", code="QuotaExceeded"))
        locks = InMemoryLockProvider()

        async with DedicatedHostEngine(
            FakeProvider(plane), make_config(host_group_create_retry_count=0), lock_provider=locks
        ) as engine:
            with pytest.raises(HostPlacementTimeoutError):
                await _place(engine, context, timeout=0.05)

        assert not locks.locked(LOCK_KEY)
        assert plane.count("create_or_update_host") >= 1

    async def test_cancellation_releases_lock(self, context: CloudContext) -> None:
        plane = FakeControlPlane(create_host_delay=10)
        plane.seed_group(RESOURCE_GROUP, HOST_GROUP)
        locks = InMemoryLockProvider()

        async with DedicatedHostEngine(FakeProvider(plane), make_config(), lock_provider=locks) as engine:
            task = asyncio.create_task(_place(engine, context))
            while not locks.locked(LOCK_KEY):
                await asyncio.sleep(0.001)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert not locks.locked(LOCK_KEY)

    @pytest.mark.parametrize("field", ["resource_group", "host_group", "vm_size", "vm_name", "location"])
    async def test_empty_parameter_named(
        self, engine: DedicatedHostEngine, context: CloudContext, plane: FakeControlPlane, field: str
    ) -> None:
        args = {
            "resource_group": RESOURCE_GROUP,
            "host_group": HOST_GROUP,
            "vm_size": DEFAULT_VM_SIZE,
            "vm_name": "vm-1",
            "location": LOCATION,
        }
        args[field] = "  "
        with pytest.raises(ParameterValidationError) as exc_info:
            await engine.get_host_for_vm_placement(context, **args)
        assert exc_info.value.parameter == field
        assert plane.calls == []

    async def test_missing_context_rejected(self, engine: DedicatedHostEngine) -> None:
        with pytest.raises(ParameterValidationError) as exc_info:
            await engine.get_host_for_vm_placement(
                None,  # type: ignore[arg-type]
                RESOURCE_GROUP,
                HOST_GROUP,
                DEFAULT_VM_SIZE,
                "vm-1",
                LOCATION,
            )
        assert exc_info.value.parameter == "context"

    async def test_empty_token_rejected(self, engine: DedicatedHostEngine) -> None:
        context = CloudContext(token="", cloud_name="AzureCloud", tenant_id="t", subscription_id="s")
        with pytest.raises(ParameterValidationError) as exc_info:
            await _place(engine, context)
        assert exc_info.value.parameter == "token"

    async def test_empty_host_id_logged_as_error_only(
        self, engine: DedicatedHostEngine, context: CloudContext, caplog: pytest.LogCaptureFixture
    ) -> None:
        with (
            patch.object(engine, "_find_or_create_host", AsyncMock(return_value="")),
            caplog.at_level(logging.INFO, logger="dedicated_hosts"),
        ):
            assert await _place(engine, context) == ""

        assert "Could not find a matching host" in caplog.text
        assert "Found host for VM" not in caplog.text
