"""Placement and lifecycle engine for VMs on dedicated hosts.

Operations:
- create_host_group / create_host / list_host_groups: thin control-plane
  wrappers with validation and retries.
- get_host_for_vm_placement: find a host with room for a VM size, growing
  the pool by one host when none has room. Check-then-create runs under a
  per-host-group lock with a double check, so concurrent callers never
  create redundant hosts while the common case (room exists) takes no lock.
- place_vm: VM provisioning state machine. Submits the VM, polls its
  provisioning state, and moves a Failed VM to another host, until it
  succeeds or max_retries_to_create_vm iterations have run.
- prepare_host_group: pre-provision hosts across fault domains for a
  target VM count.
- delete_vm: delete a VM and reclaim its host when it becomes empty,
  guarded by best-effort TTL hints rather than a lock.

Capacity exhaustion (control-plane code "AllocationFailed") is an expected
outcome, not an error: each VM submission is classified into a
PlacementOutcome and only Fatal outcomes propagate.
"""

from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import TYPE_CHECKING, Self, TypeVar

from redis.asyncio import Redis

from dedicated_hosts._logging import get_logger
from dedicated_hosts.compute import host_group_resource_id, resource_name
from dedicated_hosts.config import EngineConfig
from dedicated_hosts.exceptions import (
    CloudError,
    ConfigurationError,
    HostGroupNotFoundError,
    HostPlacementTimeoutError,
    HostProvisioningError,
    InputValidationError,
    LockContentionError,
    ParameterValidationError,
    ResourceNotFoundError,
)
from dedicated_hosts.locking import InMemoryLockProvider, RedisLockProvider, SerializationProvider
from dedicated_hosts.models import (
    CapacityExhausted,
    CloudContext,
    Fatal,
    Host,
    HostGroup,
    Placed,
    PlacementOutcome,
    ProvisioningState,
    VirtualMachine,
    VmDeletionResult,
    is_state,
)
from dedicated_hosts.planner import generate_host_name, plan_fault_domains, validate_requested_fault_domain
from dedicated_hosts.retry import run_with_retry
from dedicated_hosts.selector import HostSelector, fetch_instance_views
from dedicated_hosts.settings import Settings
from dedicated_hosts.state import HostStateStore, HostStateTracker, InMemoryHostStateStore, RedisHostStateStore

if TYPE_CHECKING:
    from types import TracebackType

    from dedicated_hosts.compute import ControlPlaneClient, ControlPlaneProvider

logger = get_logger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


def _require(**params: object) -> None:
    """Fail fast on the first empty/None parameter, naming it."""
    for name, value in params.items():
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ParameterValidationError(name)


def _require_context(context: CloudContext | None) -> None:
    if context is None:
        raise ParameterValidationError("context")
    _require(
        token=context.token,
        cloud_name=context.cloud_name,
        tenant_id=context.tenant_id,
        subscription_id=context.subscription_id,
    )


async def _classify(operation: Callable[[], Awaitable[VirtualMachine]]) -> PlacementOutcome:
    """Run a VM submission and classify how it ended."""
    try:
        vm = await operation()
    except CloudError as e:
        if e.is_allocation_failure:
            return CapacityExhausted(e)
        return Fatal(e)
    return Placed(vm)


class DedicatedHostEngine:
    """Places VMs onto dedicated hosts, growing and reclaiming the host pool.

    Without explicit backends the engine coordinates within one process
    (in-memory lock and hints). Use from_settings() to share both through
    Redis across engine instances.

    Usage:
        async with DedicatedHostEngine.from_settings(provider, config) as engine:
            vm = await engine.place_vm(context, "rg", "group", "Standard_D2s_v3", "vm-1", "westus2", vm_definition)
    """

    def __init__(
        self,
        provider: ControlPlaneProvider,
        config: EngineConfig | None = None,
        *,
        lock_provider: SerializationProvider | None = None,
        state_store: HostStateStore | None = None,
        rng: random.Random | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._provider = provider
        self._config = config or EngineConfig()
        self._locks = lock_provider or InMemoryLockProvider()
        self._state = HostStateTracker(
            state_store or InMemoryHostStateStore(),
            ttl=timedelta(minutes=self._config.host_state_ttl_minutes),
        )
        self._selector = HostSelector(self._state)
        self._random = rng or random.Random()
        self._sleep = sleep
        self._owned_redis: Redis | None = None

    @classmethod
    def from_settings(
        cls,
        provider: ControlPlaneProvider,
        config: EngineConfig | None = None,
        settings: Settings | None = None,
    ) -> Self:
        """Build an engine whose lock and hint backends follow Settings.

        DEDICATED_HOSTS_REDIS_URL set: Redis lock + Redis hints (shared).
        Unset: in-memory backends (this process only).
        """
        settings = settings or Settings()
        if settings.redis_url is None:
            return cls(provider, config, lock_provider=InMemoryLockProvider(wait_seconds=settings.lock_wait_seconds))

        client = Redis.from_url(settings.redis_url)
        engine = cls(
            provider,
            config,
            lock_provider=RedisLockProvider(
                client,
                key_prefix=settings.lock_key_prefix,
                lease_seconds=settings.lock_lease_seconds,
                wait_seconds=settings.lock_wait_seconds,
                poll_interval_seconds=settings.lock_poll_interval_seconds,
            ),
            state_store=RedisHostStateStore(client, key_prefix=settings.state_key_prefix),
        )
        engine._owned_redis = client
        logger.info("Using Redis for placement locks and host hints", extra={"lock_prefix": settings.lock_key_prefix})
        return engine

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def state(self) -> HostStateTracker:
        return self._state

    @property
    def lock_provider(self) -> SerializationProvider:
        return self._locks

    async def aclose(self) -> None:
        await self._locks.aclose()
        await self._state.store.aclose()
        if self._owned_redis is not None:
            await self._owned_redis.aclose()
            self._owned_redis = None

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    # =========================================================================
    # Retry helpers
    # =========================================================================

    async def _read(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        """Control-plane read with the VM-state retry budget."""
        return await run_with_retry(
            operation,
            retries=self._config.retry_count_to_check_vm_state,
            description=description,
            backoff_seconds=self._config.retry_backoff_seconds,
        )

    async def _write(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        """Host group / host create-or-update with the create retry budget."""
        return await run_with_retry(
            operation,
            retries=self._config.host_group_create_retry_count,
            description=description,
            backoff_seconds=self._config.retry_backoff_seconds,
        )

    # =========================================================================
    # Host groups and hosts
    # =========================================================================

    async def create_host_group(
        self,
        context: CloudContext,
        resource_group: str,
        host_group: str,
        location: str,
        platform_fault_domain_count: int = 1,
        availability_zone: str | None = None,
    ) -> HostGroup:
        """Create or update a host group (zone pinned only when given)."""
        _require_context(context)
        _require(resource_group=resource_group, host_group=host_group, location=location)
        if platform_fault_domain_count < 1:
            raise ParameterValidationError("platform_fault_domain_count", "must be at least 1")

        group = HostGroup(
            name=host_group,
            location=location,
            platform_fault_domain_count=platform_fault_domain_count,
            availability_zone=availability_zone or None,
        )
        client = await self._provider.get_client(context)
        return await self._write(
            lambda: client.create_or_update_host_group(resource_group, host_group, group),
            f"Create host group {host_group}",
        )

    async def create_host(
        self,
        context: CloudContext,
        resource_group: str,
        host_group: str,
        host_name: str,
        host_sku: str,
        location: str,
        platform_fault_domain: int = 0,
    ) -> Host:
        """Create a host, creating its group (one fault domain) if missing."""
        _require_context(context)
        _require(
            resource_group=resource_group,
            host_group=host_group,
            host_name=host_name,
            host_sku=host_sku,
            location=location,
        )
        client = await self._provider.get_client(context)
        await self._ensure_host_group(client, resource_group, host_group, location)
        return await self._create_host(
            client, resource_group, host_group, host_name, host_sku, location, platform_fault_domain
        )

    async def _ensure_host_group(
        self,
        client: ControlPlaneClient,
        resource_group: str,
        host_group: str,
        location: str,
    ) -> None:
        try:
            await self._read(
                lambda: client.get_host_group(resource_group, host_group),
                f"Get host group {host_group}",
            )
        except ResourceNotFoundError:
            logger.info("Host group missing, creating it", extra={"host_group": host_group, "location": location})
            await self._write(
                lambda: client.create_or_update_host_group(
                    resource_group,
                    host_group,
                    HostGroup(name=host_group, location=location, platform_fault_domain_count=1),
                ),
                f"Create host group {host_group}",
            )

    async def _create_host(
        self,
        client: ControlPlaneClient,
        resource_group: str,
        host_group: str,
        host_name: str,
        host_sku: str,
        location: str,
        platform_fault_domain: int = 0,
    ) -> Host:
        spec = Host(name=host_name, location=location, sku=host_sku, platform_fault_domain=platform_fault_domain)
        host = await self._write(
            lambda: client.create_or_update_host(resource_group, host_group, host_name, spec),
            f"Create host {host_name}",
        )
        logger.info(
            "Created dedicated host",
            extra={"host_id": host.id, "sku": host_sku, "fault_domain": platform_fault_domain},
        )
        return host

    async def list_host_groups(self, context: CloudContext) -> list[HostGroup]:
        """Every host group in the subscription, following pagination."""
        _require_context(context)
        client = await self._provider.get_client(context)

        groups: list[HostGroup] = []
        cursor: str | None = None
        while True:
            page = await self._read(
                lambda cursor=cursor: client.list_host_groups(cursor),
                "List host groups",
            )
            groups.extend(page.items)
            cursor = page.next_cursor
            if not cursor:
                return groups

    # =========================================================================
    # Single VM host placement
    # =========================================================================

    async def get_host_for_vm_placement(
        self,
        context: CloudContext,
        resource_group: str,
        host_group: str,
        vm_size: str,
        vm_name: str,
        location: str,
        *,
        timeout: float | None = None,
    ) -> str:
        """Return the id of a host with room for vm_size, creating one if needed.

        The loop has no attempt bound: it ends when a host is found or
        created. Pass timeout (seconds) or cancel the task to bound it.

        Raises:
            ParameterValidationError: Empty parameter
            SkuMappingError: vm_size has no host SKU (raised before any control-plane call)
            HostPlacementTimeoutError: timeout elapsed first
        """
        _require_context(context)
        _require(
            resource_group=resource_group,
            host_group=host_group,
            vm_size=vm_size,
            vm_name=vm_name,
            location=location,
        )
        host_sku = self._config.host_sku_for(vm_size)
        client = await self._provider.get_client(context)
        return await self._find_host(
            client, context, resource_group, host_group, vm_size, vm_name, location, host_sku, timeout
        )

    async def _find_host(
        self,
        client: ControlPlaneClient,
        context: CloudContext,
        resource_group: str,
        host_group: str,
        vm_size: str,
        vm_name: str,
        location: str,
        host_sku: str,
        timeout: float | None,
    ) -> str:
        started = time.monotonic()
        try:
            async with asyncio.timeout(timeout):
                host_id = await self._find_or_create_host(
                    client, context, resource_group, host_group, vm_size, vm_name, location, host_sku
                )
        except TimeoutError:
            raise HostPlacementTimeoutError(
                f"No host found or created for {vm_name} ({vm_size}) within {timeout}s",
                context={"vm_name": vm_name, "vm_size": vm_size, "host_group": host_group},
            ) from None

        elapsed = time.monotonic() - started
        if not host_id:
            logger.error(
                "Could not find a matching host",
                extra={"vm_name": vm_name, "vm_size": vm_size, "elapsed_seconds": round(elapsed, 3)},
            )
        else:
            logger.info(
                "Found host for VM",
                extra={
                    "host_id": host_id,
                    "vm_name": vm_name,
                    "vm_size": vm_size,
                    "elapsed_seconds": round(elapsed, 3),
                },
            )
        return host_id

    async def _select(self, client: ControlPlaneClient, resource_group: str, host_group: str, vm_size: str) -> str | None:
        return await self._read(
            lambda: self._selector.select_host(client, resource_group, host_group, vm_size),
            f"Select host in {host_group}",
        )

    async def _host_group_lock_key(
        self,
        client: ControlPlaneClient,
        context: CloudContext,
        resource_group: str,
        host_group: str,
    ) -> str:
        try:
            group = await self._read(
                lambda: client.get_host_group(resource_group, host_group),
                f"Get host group {host_group}",
            )
            group_id = group.id
        except ResourceNotFoundError:
            # Group is created lazily with the first host; lock on its future id
            group_id = None
        return (group_id or host_group_resource_id(context.subscription_id, resource_group, host_group)).lower()

    async def _find_or_create_host(
        self,
        client: ControlPlaneClient,
        context: CloudContext,
        resource_group: str,
        host_group: str,
        vm_size: str,
        vm_name: str,
        location: str,
        host_sku: str,
    ) -> str:
        async def _check_then_create() -> str | None:
            try:
                # Another caller may have created a host while we waited for the lock
                found = await self._select(client, resource_group, host_group, vm_size)
                if found:
                    return found
                logger.info(
                    "No host has capacity, creating a new host",
                    extra={"host_group": host_group, "vm_size": vm_size, "host_sku": host_sku},
                )
                await self._ensure_host_group(client, resource_group, host_group, location)
                host = await self._create_host(
                    client, resource_group, host_group, generate_host_name(), host_sku, location
                )
                return host.id
            except (ConfigurationError, InputValidationError):
                raise
            except Exception:  # noqa: BLE001
                logger.exception("Error while finding a host", extra={"host_group": host_group, "vm_name": vm_name})
                return None

        host_id: str | None = None
        while not host_id:
            host_id = await self._select(client, resource_group, host_group, vm_size)
            if host_id:
                break

            lock_key = await self._host_group_lock_key(client, context, resource_group, host_group)
            try:
                host_id = await run_with_retry(
                    lambda: self._locks.run_exclusive(lock_key, _check_then_create),
                    retries=self._config.lock_retry_count,
                    description=f"Lock host group {host_group}",
                    retry_on=(LockContentionError,),
                    never_retry=(),
                    backoff_seconds=self._config.retry_backoff_seconds,
                )
            except LockContentionError:
                logger.warning(
                    "Could not acquire host group lock, retrying host lookup",
                    extra={"lock_key": lock_key, "lock_retry_count": self._config.lock_retry_count},
                )

            if not host_id:
                logger.info("Retry to find a host", extra={"vm_name": vm_name, "vm_size": vm_size})
                await self._sleep(self._config.retry_backoff_seconds)

        return host_id

    # =========================================================================
    # VM provisioning state machine
    # =========================================================================

    async def place_vm(
        self,
        context: CloudContext,
        resource_group: str,
        host_group: str,
        vm_size: str,
        vm_name: str,
        location: str,
        vm: VirtualMachine,
        *,
        placement_timeout: float | None = None,
    ) -> VirtualMachine | None:
        """Create a VM on a dedicated host and drive it to Succeeded.

        Each iteration either places an unplaced VM on a host, or moves a
        Failed VM to a different host (marking the old one at capacity),
        then waits a randomized interval and re-reads the provisioning state.

        Returns:
            The last create/update response. None if no submission was ever
            accepted (every attempt hit AllocationFailed). Exhausting
            max_retries_to_create_vm is not an error; callers check the
            returned provisioning state.

        Raises:
            ParameterValidationError: Empty parameter
            SkuMappingError: vm_size has no host SKU
            CloudError: Control-plane error other than AllocationFailed
        """
        _require_context(context)
        _require(
            resource_group=resource_group,
            host_group=host_group,
            vm_size=vm_size,
            vm_name=vm_name,
            location=location,
            vm=vm,
        )
        host_sku = self._config.host_sku_for(vm_size)
        client = await self._provider.get_client(context)

        async def _host() -> str:
            return await self._find_host(
                client, context, resource_group, host_group, vm_size, vm_name, location, host_sku, placement_timeout
            )

        async def _submit() -> VirtualMachine:
            return await client.create_or_update_vm(resource_group, vm_name, vm)

        async def _start() -> VirtualMachine:
            await client.start_vm(resource_group, vm_name)
            return vm

        response: VirtualMachine | None = None
        provisioning_state = vm.provisioning_state
        attempts = 0

        while not is_state(provisioning_state, ProvisioningState.SUCCEEDED) and attempts < self._config.max_retries_to_create_vm:
            if not provisioning_state:
                host_id = await _host()
                await self._state.mark_in_usage(host_id)
                vm.host_id = host_id
                response = self._resolve(await _classify(_submit), response, vm_name, host_id)

            elif is_state(provisioning_state, ProvisioningState.FAILED):
                previous_host = vm.host_id
                if previous_host:
                    await self._state.mark_at_capacity(previous_host)
                logger.warning(
                    "VM provisioning failed, moving it to another host",
                    extra={"vm_name": vm_name, "previous_host_id": previous_host, "attempt": attempts + 1},
                )
                host_id = await _host()
                await self._state.mark_in_usage(host_id)
                await self._read(
                    lambda: client.deallocate_vm(resource_group, vm_name),
                    f"Deallocate VM {vm_name}",
                )
                vm.host_id = host_id
                response = self._resolve(await _classify(_submit), response, vm_name, host_id)
                self._resolve(await _classify(_start), None, vm_name, host_id)

            # Provisioning state converges asynchronously in the control plane
            await self._sleep(
                self._random.uniform(
                    self._config.min_vm_poll_interval_seconds,
                    self._config.max_vm_poll_interval_seconds,
                )
            )
            provisioning_state = await self._provisioning_state(client, resource_group, vm_name)
            attempts += 1
            logger.info(
                "VM provisioning state",
                extra={"vm_name": vm_name, "provisioning_state": provisioning_state, "attempt": attempts},
            )

        if not is_state(provisioning_state, ProvisioningState.SUCCEEDED):
            logger.warning(
                "VM did not reach Succeeded within the retry budget",
                extra={
                    "vm_name": vm_name,
                    "provisioning_state": provisioning_state,
                    "max_retries_to_create_vm": self._config.max_retries_to_create_vm,
                },
            )
        return response

    @staticmethod
    def _resolve(
        outcome: PlacementOutcome,
        previous: VirtualMachine | None,
        vm_name: str,
        host_id: str,
    ) -> VirtualMachine | None:
        match outcome:
            case Placed(vm=placed):
                return placed
            case CapacityExhausted(error=error):
                logger.info(
                    "Host out of capacity for VM, will retry",
                    extra={"vm_name": vm_name, "host_id": host_id, "error": str(error)},
                )
                return previous
            case Fatal(error=error):
                raise error

    async def _provisioning_state(self, client: ControlPlaneClient, resource_group: str, vm_name: str) -> str | None:
        try:
            current = await self._read(
                lambda: client.get_vm(resource_group, vm_name),
                f"Get provisioning state for {vm_name}",
            )
        except ResourceNotFoundError:
            # Creation was never accepted; treat as not yet placed
            return None
        return current.provisioning_state

    # =========================================================================
    # Bulk fault-domain provisioning
    # =========================================================================

    async def prepare_host_group(
        self,
        context: CloudContext,
        resource_group: str,
        host_group: str,
        vm_sku: str,
        vm_instances: int,
        fault_domain: int | None = None,
    ) -> list[Host]:
        """Pre-provision hosts so the group can take vm_instances VMs of vm_sku.

        With fault_domain=None the instances are spread evenly over every
        fault domain of the group; otherwise all go to that domain.

        Returns:
            Newly created hosts (empty when existing capacity suffices)

        Raises:
            FaultDomainValidationError: fault_domain unsupported or out of range
            HostGroupNotFoundError: host group does not exist
            CapacityTableError: no capacity row for the group's location and vm_sku
            HostProvisioningError: one or more host creations failed
        """
        _require_context(context)
        _require(resource_group=resource_group, host_group=host_group, vm_sku=vm_sku)
        if vm_instances is None or vm_instances < 1:
            raise ParameterValidationError("vm_instances", "must be at least 1")
        validate_requested_fault_domain(fault_domain)

        client = await self._provider.get_client(context)
        try:
            group = await self._read(
                lambda: client.get_host_group(resource_group, host_group),
                f"Get host group {host_group}",
            )
        except ResourceNotFoundError:
            raise HostGroupNotFoundError(
                f"Host group {host_group} not found in {resource_group}",
                context={"resource_group": resource_group, "host_group": host_group},
            ) from None

        listed = await self._read(lambda: client.list_hosts(resource_group, host_group), f"List hosts in {host_group}")
        hosts = await self._read(
            lambda: fetch_instance_views(client, resource_group, host_group, listed),
            f"Get host instance views in {host_group}",
        )
        capacity = self._config.capacity_for(group.location, vm_sku)
        plan = plan_fault_domains(
            hosts,
            vm_sku=vm_sku,
            vm_instances=vm_instances,
            platform_fault_domain_count=group.platform_fault_domain_count,
            vm_capacity_per_host=capacity.vm_capacity_per_host,
            requested_fault_domain=fault_domain,
        )
        logger.info(
            "Fault domain plan",
            extra={
                "host_group": host_group,
                "vm_sku": vm_sku,
                "vm_instances": vm_instances,
                "host_sku": capacity.host_sku,
                "plan": [(a.fault_domain, a.hosts_to_add) for a in plan],
            },
        )
        if not plan:
            return []

        creations = [
            self._create_host(
                client,
                resource_group,
                host_group,
                generate_host_name(),
                capacity.host_sku,
                group.location,
                allocation.fault_domain,
            )
            for allocation in plan
            for _ in range(allocation.hosts_to_add)
        ]
        results = await asyncio.gather(*creations, return_exceptions=True)

        created = [r for r in results if isinstance(r, Host)]
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            for error in errors:
                logger.error("Host creation failed", extra={"host_group": host_group, "error": str(error)})
            raise HostProvisioningError(errors, requested=len(creations), created=created)
        return created

    # =========================================================================
    # Deletion
    # =========================================================================

    async def delete_vm(
        self,
        context: CloudContext,
        resource_group: str,
        host_group: str,
        vm_name: str,
    ) -> VmDeletionResult:
        """Delete a VM, then its host if the host is left empty and unclaimed.

        No lock is taken: a host claimed by a concurrent placement is
        detected through its in_usage hint. The remaining race window is
        accepted.
        """
        _require_context(context)
        _require(resource_group=resource_group, host_group=host_group, vm_name=vm_name)
        client = await self._provider.get_client(context)

        vm = await self._read(lambda: client.get_vm(resource_group, vm_name), f"Get VM {vm_name}")
        host_id = vm.host_id
        await self._read(lambda: client.delete_vm(resource_group, vm_name), f"Delete VM {vm_name}")

        if not host_id:
            logger.info("Could not find host for VM", extra={"vm_name": vm_name})
            return VmDeletionResult(vm_name=vm_name, host_id=None, host_deleted=False)

        host_name = resource_name(host_id)
        try:
            host = await self._read(
                lambda: client.get_host(resource_group, host_group, host_name, include_instance_view=True),
                f"Get host {host_name}",
            )
        except ResourceNotFoundError:
            logger.info("Host already gone", extra={"host_id": host_id, "vm_name": vm_name})
            return VmDeletionResult(vm_name=vm_name, host_id=host_id, host_deleted=False)

        if host.attached_vm_count > 0:
            return VmDeletionResult(vm_name=vm_name, host_id=host_id, host_deleted=False)

        await self._state.mark_for_deletion(host_id)
        if await self._state.is_in_usage(host_id):
            logger.info("Empty host is in use by a placement, keeping it", extra={"host_id": host_id})
            return VmDeletionResult(vm_name=vm_name, host_id=host_id, host_deleted=False)

        await self._read(
            lambda: client.delete_host(resource_group, host_group, host.name),
            f"Delete host {host.name}",
        )
        await self._state.unmark_for_deletion(host_id)
        logger.info("Deleted empty host", extra={"host_id": host_id, "vm_name": vm_name})
        return VmDeletionResult(vm_name=vm_name, host_id=host_id, host_deleted=True)
