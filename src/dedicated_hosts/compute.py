"""Control-plane collaborator contract.

The engine never talks to a cloud SDK directly. A ControlPlaneProvider
turns a CloudContext (token, cloud, tenant, subscription) into a
ControlPlaneClient scoped to that subscription; the client wraps the
SDK's host group, host and VM operations.

Error contract for implementations:
- Raise ResourceNotFoundError when the resource does not exist.
- Raise CloudError(code=...) for every other control-plane failure,
  carrying the cloud's structured error code. The engine branches on
  code == "AllocationFailed" only.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from dedicated_hosts.models import CloudContext, Host, HostGroup, HostGroupPage, VirtualMachine


@runtime_checkable
class ControlPlaneClient(Protocol):
    """Async host group, host and VM operations for one subscription."""

    async def create_or_update_host_group(self, resource_group: str, name: str, group: HostGroup) -> HostGroup: ...

    async def get_host_group(self, resource_group: str, name: str) -> HostGroup: ...

    async def list_host_groups(self, cursor: str | None = None) -> HostGroupPage: ...

    async def list_hosts(self, resource_group: str, host_group: str) -> list[Host]: ...

    async def create_or_update_host(self, resource_group: str, host_group: str, name: str, host: Host) -> Host: ...

    async def get_host(
        self,
        resource_group: str,
        host_group: str,
        name: str,
        include_instance_view: bool = False,
    ) -> Host: ...

    async def delete_host(self, resource_group: str, host_group: str, name: str) -> None: ...

    async def create_or_update_vm(self, resource_group: str, name: str, vm: VirtualMachine) -> VirtualMachine: ...

    async def get_vm(self, resource_group: str, name: str) -> VirtualMachine: ...

    async def delete_vm(self, resource_group: str, name: str) -> None: ...

    async def deallocate_vm(self, resource_group: str, name: str) -> None: ...

    async def start_vm(self, resource_group: str, name: str) -> None: ...


@runtime_checkable
class ControlPlaneProvider(Protocol):
    """Builds a ControlPlaneClient for a caller's identity and subscription."""

    async def get_client(self, context: CloudContext) -> ControlPlaneClient: ...


# =============================================================================
# Resource ids
# =============================================================================


def host_group_resource_id(subscription_id: str, resource_group: str, host_group: str) -> str:
    return (
        f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}"
        f"/providers/Microsoft.Compute/hostGroups/{host_group}"
    )


def host_resource_id(subscription_id: str, resource_group: str, host_group: str, host: str) -> str:
    return f"{host_group_resource_id(subscription_id, resource_group, host_group)}/hosts/{host}"


def resource_name(resource_id: str) -> str:
    """Last path segment of a resource id (the resource's own name)."""
    return resource_id.rstrip("/").rsplit("/", 1)[-1]
