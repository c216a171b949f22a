"""Data models for dedicated-hosts."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ProvisioningState(str, Enum):
    """VM provisioning states the engine branches on.

    The control plane reports states as free-form strings; compare with
    is_state() rather than equality since casing is not guaranteed.
    """

    CREATING = "Creating"
    UPDATING = "Updating"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    DELETING = "Deleting"


def is_state(value: str | None, state: ProvisioningState) -> bool:
    """Case-insensitive provisioning state comparison."""
    return value is not None and value.casefold() == state.value.casefold()


class CloudContext(BaseModel):
    """Identity and scope of a control-plane call."""

    model_config = ConfigDict(frozen=True)

    token: str = Field(repr=False, description="Bearer token for the control plane")
    cloud_name: str = Field(description="Cloud environment name (e.g. AzureCloud)")
    tenant_id: str
    subscription_id: str


class HostGroup(BaseModel):
    """A collection of dedicated hosts sharing a region and fault-domain count."""

    id: str | None = Field(default=None, description="Cloud resource id (set by the control plane)")
    name: str
    location: str
    platform_fault_domain_count: int = Field(default=1, ge=1)
    availability_zone: str | None = None


class HostGroupPage(BaseModel):
    """One page of a host group listing."""

    items: list[HostGroup] = Field(default_factory=list)
    next_cursor: str | None = None


class Host(BaseModel):
    """A dedicated host.

    available_capacity and virtual_machines are only populated when the host
    is fetched with its instance view, and are point-in-time snapshots.
    """

    id: str | None = None
    name: str
    location: str
    sku: str
    platform_fault_domain: int = Field(default=0, ge=0)
    available_capacity: dict[str, int] = Field(
        default_factory=dict,
        description="VM size -> number of additional VMs of that size the host can accept",
    )
    virtual_machines: list[str] = Field(default_factory=list, description="Ids of VMs placed on the host")

    @property
    def attached_vm_count(self) -> int:
        return len(self.virtual_machines)

    def capacity_for(self, vm_size: str) -> int:
        """Advertised capacity for a VM size (VM size names compare case-insensitively)."""
        wanted = vm_size.casefold()
        for size, count in self.available_capacity.items():
            if size.casefold() == wanted:
                return count
        return 0


class VirtualMachine(BaseModel):
    """VM spec submitted to the control plane.

    properties carries the rest of the VM definition (image, network, disks)
    untouched; the engine only manages host assignment and provisioning state.
    """

    id: str | None = None
    name: str
    location: str
    vm_size: str
    host_id: str | None = None
    provisioning_state: str | None = None
    properties: dict[str, Any] = Field(default_factory=dict)


class HostCapacity(BaseModel):
    """Host SKU and VM density for one (location, VM SKU) capacity table row."""

    model_config = ConfigDict(frozen=True)

    host_sku: str
    vm_capacity_per_host: int = Field(ge=1)


# =============================================================================
# Placement outcomes
# =============================================================================


@dataclass(frozen=True, slots=True)
class Placed:
    """Control plane accepted the VM create/update."""

    vm: VirtualMachine


@dataclass(frozen=True, slots=True)
class CapacityExhausted:
    """Control plane rejected the VM with AllocationFailed; try another host."""

    error: Exception


@dataclass(frozen=True, slots=True)
class Fatal:
    """Any other error; the placement call must fail."""

    error: Exception


PlacementOutcome = Placed | CapacityExhausted | Fatal


@dataclass(frozen=True, slots=True)
class VmDeletionResult:
    """What delete_vm did."""

    vm_name: str
    host_id: str | None
    host_deleted: bool
