"""dedicated-hosts: VM placement onto dedicated single-tenant hosts.

An async library that places VMs onto a pool of dedicated hosts grouped by
host group, grows the pool on demand, spreads pre-provisioned hosts across
fault domains, and reclaims hosts that become empty.

Quick Start (single VM):
    ```python
    from dedicated_hosts import CloudContext, DedicatedHostEngine, EngineConfig, VirtualMachine

    config = EngineConfig(vm_to_host_mapping={"Standard_D2s_v3": "DSv3-Type1"})
    context = CloudContext(token=token, cloud_name="AzureCloud", tenant_id=tenant, subscription_id=sub)

    async with DedicatedHostEngine(provider, config) as engine:
        vm = await engine.place_vm(
            context, "rg", "group", "Standard_D2s_v3", "vm-1", "westus2",
            VirtualMachine(name="vm-1", location="westus2", vm_size="Standard_D2s_v3"),
        )
    ```

Bulk provisioning across fault domains:
    ```python
    hosts = await engine.prepare_host_group(context, "rg", "group", "Standard_D2s_v3", vm_instances=100)
    ```

Shared coordination across engine instances:
    DEDICATED_HOSTS_REDIS_URL=redis://cache:6379/0, then
    DedicatedHostEngine.from_settings(provider, config).

The cloud SDK is supplied by the caller as a ControlPlaneProvider (see
dedicated_hosts.compute).

Requirements:
    - Python 3.12+
    - Redis 6+ for multi-instance coordination (optional)
"""

from dedicated_hosts._logging import ContextFormatter, configure_logging
from dedicated_hosts.compute import ControlPlaneClient, ControlPlaneProvider
from dedicated_hosts.config import EngineConfig
from dedicated_hosts.engine import DedicatedHostEngine
from dedicated_hosts.exceptions import (
    CapacityTableError,
    CloudError,
    ConfigurationError,
    DedicatedHostError,
    FaultDomainValidationError,
    HostGroupNotFoundError,
    HostPlacementTimeoutError,
    HostProvisioningError,
    InputValidationError,
    LockContentionError,
    ParameterValidationError,
    PermanentError,
    ResourceNotFoundError,
    SkuMappingError,
    TransientError,
)
from dedicated_hosts.locking import InMemoryLockProvider, RedisLockProvider, SerializationProvider
from dedicated_hosts.models import (
    CloudContext,
    Host,
    HostCapacity,
    HostGroup,
    HostGroupPage,
    ProvisioningState,
    VirtualMachine,
    VmDeletionResult,
)
from dedicated_hosts.settings import Settings
from dedicated_hosts.state import HostStateTracker, InMemoryHostStateStore, RedisHostStateStore

__all__ = [
    "CapacityTableError",
    "CloudContext",
    "CloudError",
    "ConfigurationError",
    "ContextFormatter",
    "ControlPlaneClient",
    "ControlPlaneProvider",
    "DedicatedHostEngine",
    "DedicatedHostError",
    "EngineConfig",
    "FaultDomainValidationError",
    "Host",
    "HostCapacity",
    "HostGroup",
    "HostGroupNotFoundError",
    "HostGroupPage",
    "HostPlacementTimeoutError",
    "HostProvisioningError",
    "HostStateTracker",
    "InMemoryHostStateStore",
    "InMemoryLockProvider",
    "InputValidationError",
    "LockContentionError",
    "ParameterValidationError",
    "PermanentError",
    "ProvisioningState",
    "RedisHostStateStore",
    "RedisLockProvider",
    "ResourceNotFoundError",
    "SerializationProvider",
    "Settings",
    "SkuMappingError",
    "TransientError",
    "VirtualMachine",
    "VmDeletionResult",
    "configure_logging",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("dedicated-hosts")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
