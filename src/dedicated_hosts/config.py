"""Engine configuration for dedicated-hosts.

EngineConfig holds the tuning knobs and the two static tables the engine
needs: the VM size -> host SKU mapping used when a single placement has to
grow the pool, and the location-aware capacity table used for bulk
fault-domain provisioning.

Example:
    ```python
    from dedicated_hosts import DedicatedHostEngine, EngineConfig, HostCapacity

    config = EngineConfig(
        vm_to_host_mapping={"Standard_D2s_v3": "DSv3-Type1"},
        host_capacity={
            "default": {"Standard_D2s_v3": HostCapacity(host_sku="DSv3-Type1", vm_capacity_per_host=32)},
            "westus2": {"Standard_D2s_v3": HostCapacity(host_sku="DSv3-Type2", vm_capacity_per_host=40)},
        },
    )
    engine = DedicatedHostEngine(provider, config=config)
    ```
"""

from __future__ import annotations

from typing import Self, TypeVar

from pydantic import BaseModel, ConfigDict, Field, model_validator

from dedicated_hosts import constants
from dedicated_hosts.exceptions import CapacityTableError, SkuMappingError
from dedicated_hosts.models import HostCapacity


class EngineConfig(BaseModel):
    """Configuration for DedicatedHostEngine.

    Attributes:
        host_group_create_retry_count: Retries for host group create and reads.
        lock_retry_count: Retries for acquiring the per-group placement lock.
            Exhaustion restarts the placement loop instead of failing.
        retry_count_to_check_vm_state: Retries for VM/host reads on transient errors.
        max_retries_to_create_vm: Iterations of the VM provisioning loop.
        host_state_ttl_minutes: Lifetime of host state hints.
        min_vm_poll_interval_seconds / max_vm_poll_interval_seconds: Bounds of
            the randomized wait before each provisioning state read.
        retry_backoff_seconds: Retry N waits retry_backoff_seconds * N.
            0 disables waiting (tests).
        vm_to_host_mapping: VM size -> host SKU.
        host_capacity: location (or "default") -> VM SKU -> HostCapacity.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

    # Retries
    host_group_create_retry_count: int = Field(default=constants.HOST_GROUP_CREATE_RETRY_COUNT, ge=0)
    lock_retry_count: int = Field(default=constants.LOCK_RETRY_COUNT, ge=0)
    retry_count_to_check_vm_state: int = Field(default=constants.RETRY_COUNT_TO_CHECK_VM_STATE, ge=0)
    max_retries_to_create_vm: int = Field(default=constants.MAX_RETRIES_TO_CREATE_VM, ge=1)
    retry_backoff_seconds: float = Field(default=constants.RETRY_BACKOFF_SECONDS, ge=0)

    # Hints
    host_state_ttl_minutes: float = Field(default=constants.HOST_STATE_TTL_MINUTES, gt=0)

    # VM provisioning poll
    min_vm_poll_interval_seconds: float = Field(default=constants.MIN_VM_POLL_INTERVAL_SECONDS, ge=0)
    max_vm_poll_interval_seconds: float = Field(default=constants.MAX_VM_POLL_INTERVAL_SECONDS, ge=0)

    # Static tables
    vm_to_host_mapping: dict[str, str] = Field(default_factory=dict)
    host_capacity: dict[str, dict[str, HostCapacity]] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_poll_window(self) -> Self:
        if self.min_vm_poll_interval_seconds > self.max_vm_poll_interval_seconds:
            raise ValueError("min_vm_poll_interval_seconds must not exceed max_vm_poll_interval_seconds")
        return self

    def host_sku_for(self, vm_size: str) -> str:
        """Resolve the host SKU that hosts a VM size.

        Raises:
            SkuMappingError: No (non-empty) mapping exists for vm_size
        """
        sku = _lookup(self.vm_to_host_mapping, vm_size)
        if not sku:
            raise SkuMappingError(vm_size)
        return sku

    def capacity_for(self, location: str, vm_sku: str) -> HostCapacity:
        """Resolve host SKU and VM density for a location.

        Exact location row first, then the "default" row.

        Raises:
            CapacityTableError: Neither row has an entry for vm_sku
        """
        for row_key in (location, constants.DEFAULT_CAPACITY_LOCATION):
            row = _lookup(self.host_capacity, row_key)
            if row is None:
                continue
            entry = _lookup(row, vm_sku)
            if entry is not None:
                return entry
        raise CapacityTableError(location, vm_sku)


_T = TypeVar("_T")


def _lookup(table: dict[str, _T], key: str) -> _T | None:
    """Case-insensitive dict lookup (cloud SKU and region names are case-insensitive)."""
    if key in table:
        return table[key]
    wanted = key.casefold()
    for name, value in table.items():
        if name.casefold() == wanted:
            return value
    return None
