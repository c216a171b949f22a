"""Fault-domain capacity planning for bulk host provisioning.

Given a VM SKU and instance count, work out how many hosts each targeted
fault domain is short of:

    vms_needed_per_domain = ceil(instances / number_of_target_domains)
    available[d]          = sum of advertised capacity for the SKU on hosts in d
    hosts_to_add[d]       = ceil((needed - available[d]) / vm_capacity_per_host)

Both divisions round up: under-provisioning is the unsafe direction.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from uuid import uuid4

from dedicated_hosts import constants
from dedicated_hosts.exceptions import FaultDomainValidationError, ParameterValidationError
from dedicated_hosts.models import Host


@dataclass(frozen=True, slots=True)
class FaultDomainAllocation:
    """Hosts to add in one fault domain."""

    fault_domain: int
    hosts_to_add: int


FaultDomainPlan = list[FaultDomainAllocation]


def _ceil_div(numerator: int, denominator: int) -> int:
    return -(-numerator // denominator)


def validate_requested_fault_domain(fault_domain: int | None) -> None:
    """Reject fault domains that can never be targeted, before any API call.

    Raises:
        FaultDomainValidationError: fault_domain is not None and not one of 0, 1, 2
    """
    if fault_domain is not None and fault_domain not in constants.SUPPORTED_FAULT_DOMAINS:
        raise FaultDomainValidationError(
            f"Fault domain {fault_domain} is not supported; use one of "
            f"{sorted(constants.SUPPORTED_FAULT_DOMAINS)} or None for all",
            context={"fault_domain": fault_domain},
        )


def target_fault_domains(platform_fault_domain_count: int, requested: int | None) -> list[int]:
    """Fault domains to provision into.

    Raises:
        FaultDomainValidationError: requested is outside the group's domain range
    """
    validate_requested_fault_domain(requested)
    if requested is None:
        return list(range(platform_fault_domain_count))
    if requested >= platform_fault_domain_count:
        raise FaultDomainValidationError(
            f"Fault domain {requested} is out of range for a host group with "
            f"{platform_fault_domain_count} fault domain(s)",
            context={"fault_domain": requested, "platform_fault_domain_count": platform_fault_domain_count},
        )
    return [requested]


def vms_needed_per_domain(vm_instances: int, domain_count: int) -> int:
    return _ceil_div(vm_instances, domain_count)


def hosts_to_add(vms_needed: int, vms_available: int, vm_capacity_per_host: int) -> int:
    if vms_needed <= vms_available:
        return 0
    return _ceil_div(vms_needed - vms_available, vm_capacity_per_host)


def available_capacity_by_domain(hosts: Iterable[Host], vm_sku: str) -> dict[int, int]:
    """Sum advertised capacity for vm_sku per fault domain."""
    totals: dict[int, int] = defaultdict(int)
    for host in hosts:
        totals[host.platform_fault_domain] += max(0, host.capacity_for(vm_sku))
    return dict(totals)


def plan_fault_domains(
    hosts: Iterable[Host],
    vm_sku: str,
    vm_instances: int,
    platform_fault_domain_count: int,
    vm_capacity_per_host: int,
    requested_fault_domain: int | None = None,
) -> FaultDomainPlan:
    """Compute hosts to add per fault domain.

    Domains that already have enough capacity are omitted from the plan.
    """
    if vm_instances < 1:
        raise ParameterValidationError("vm_instances", "must be at least 1")
    if vm_capacity_per_host < 1:
        raise ParameterValidationError("vm_capacity_per_host", "must be at least 1")

    domains = target_fault_domains(platform_fault_domain_count, requested_fault_domain)
    needed = vms_needed_per_domain(vm_instances, len(domains))
    available = available_capacity_by_domain(hosts, vm_sku)

    plan: FaultDomainPlan = []
    for domain in domains:
        count = hosts_to_add(needed, available.get(domain, 0), vm_capacity_per_host)
        if count > 0:
            plan.append(FaultDomainAllocation(fault_domain=domain, hosts_to_add=count))
    return plan


def generate_host_name(prefix: str = constants.HOST_NAME_PREFIX) -> str:
    """Collision-resistant host name, e.g. host-3f2a9c81d04e."""
    return f"{prefix}-{uuid4().hex[:12]}"
