"""Shared pytest fixtures for dedicated-hosts tests."""

from collections.abc import AsyncGenerator

import pytest

from dedicated_hosts.config import EngineConfig
from dedicated_hosts.engine import DedicatedHostEngine
from dedicated_hosts.locking import InMemoryLockProvider
from dedicated_hosts.models import CloudContext, HostCapacity
from tests.fakes import DEFAULT_VM_SIZE, FakeControlPlane, FakeProvider

RESOURCE_GROUP = "rg-hosts"
HOST_GROUP = "hg-1"
LOCATION = "westus2"
HOST_SKU = "DSv3-Type1"


def make_config(**overrides: object) -> EngineConfig:
    """EngineConfig with no backoff or poll waits, for fast deterministic tests."""
    values: dict[str, object] = {
        "retry_backoff_seconds": 0,
        "min_vm_poll_interval_seconds": 0,
        "max_vm_poll_interval_seconds": 0,
        "vm_to_host_mapping": {DEFAULT_VM_SIZE: HOST_SKU},
        "host_capacity": {
            "default": {DEFAULT_VM_SIZE: HostCapacity(host_sku=HOST_SKU, vm_capacity_per_host=2)},
        },
    }
    values.update(overrides)
    return EngineConfig(**values)


@pytest.fixture
def context() -> CloudContext:
    return CloudContext(token="token-abc", cloud_name="AzureCloud", tenant_id="tenant-1", subscription_id="sub-1")


@pytest.fixture
def plane() -> FakeControlPlane:
    return FakeControlPlane()


@pytest.fixture
def provider(plane: FakeControlPlane) -> FakeProvider:
    return FakeProvider(plane)


@pytest.fixture
def config() -> EngineConfig:
    return make_config()


@pytest.fixture
async def engine(provider: FakeProvider, config: EngineConfig) -> AsyncGenerator[DedicatedHostEngine, None]:
    async with DedicatedHostEngine(provider, config, lock_provider=InMemoryLockProvider(wait_seconds=5)) as eng:
        yield eng
