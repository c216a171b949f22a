"""Exception hierarchy for dedicated-hosts.

All exceptions inherit from DedicatedHostError.

Hierarchy:
    DedicatedHostError (base)
    ├── TransientError (retryable marker base)
    │   ├── CloudError                 ← control-plane error with a structured code
    │   │   └── ResourceNotFoundError  ← 404 from the control plane
    │   ├── LockContentionError        ← serialization lock held elsewhere
    │   └── HostPlacementTimeoutError  ← caller deadline hit while finding a host
    ├── PermanentError (non-retryable marker base)
    │   ├── ConfigurationError
    │   │   ├── SkuMappingError        ← VM size has no host SKU
    │   │   └── CapacityTableError     ← no capacity row for location/VM SKU
    │   ├── HostGroupNotFoundError     ← host group missing when it must exist
    │   └── HostProvisioningError      ← one or more bulk host creations failed
    └── InputValidationError (caller-bug marker base)
        ├── ParameterValidationError   ← empty/None required parameter
        └── FaultDomainValidationError ← fault domain outside the group's range

AllocationFailed is deliberately not an exception the engine raises: the
VM placement loop classifies it as capacity exhaustion and moves on to
another host.
"""

from __future__ import annotations

from typing import Any

ALLOCATION_FAILED_CODE = "AllocationFailed"


class DedicatedHostError(Exception):
    """Base exception for all dedicated-hosts errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Transient vs Permanent Error Base Classes
# =============================================================================


class TransientError(DedicatedHostError):
    """Base for transient errors that may succeed on retry."""


class PermanentError(DedicatedHostError):
    """Base for permanent errors that won't succeed on retry."""


# =============================================================================
# Control plane
# =============================================================================


class CloudError(TransientError):
    """Error surfaced by the cloud control plane.

    Any control-plane error the engine does not specifically recognize is
    treated as transient and retried with backoff.

    Attributes:
        code: Structured error code from the control plane (e.g. "AllocationFailed")
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        ctx = context or {}
        ctx.setdefault("code", code)
        super().__init__(message, ctx)
        self.code = code

    @property
    def is_allocation_failure(self) -> bool:
        """True when the control plane reported the host as out of capacity."""
        return self.code == ALLOCATION_FAILED_CODE


class ResourceNotFoundError(CloudError):
    """Requested resource does not exist in the control plane."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message, code="ResourceNotFound", context=context)


# =============================================================================
# Coordination
# =============================================================================


class LockContentionError(TransientError):
    """Serialization lock could not be acquired.

    Raised by SerializationProvider.acquire() when another caller (in this
    or another process) holds the lock past the wait budget.
    """

    def __init__(self, message: str, lock_key: str):
        super().__init__(message, context={"lock_key": lock_key})
        self.lock_key = lock_key


class HostPlacementTimeoutError(TransientError):
    """No host could be found or created before the caller's deadline."""


# =============================================================================
# Permanent errors
# =============================================================================


class ConfigurationError(PermanentError):
    """Static configuration cannot satisfy the request.

    These never self-resolve, so they are never retried.
    """


class SkuMappingError(ConfigurationError):
    """No host SKU is mapped for the requested VM size."""

    def __init__(self, vm_size: str):
        super().__init__(
            f"Cannot find a dedicated host SKU for VM size {vm_size!r}: no vm-to-host mapping",
            context={"vm_size": vm_size},
        )
        self.vm_size = vm_size


class CapacityTableError(ConfigurationError):
    """No capacity row for (location, VM SKU), including the default row."""

    def __init__(self, location: str, vm_sku: str):
        super().__init__(
            f"No host capacity entry for VM SKU {vm_sku!r} in location {location!r} or the default table",
            context={"location": location, "vm_sku": vm_sku},
        )
        self.location = location
        self.vm_sku = vm_sku


class HostGroupNotFoundError(PermanentError):
    """Host group does not exist."""


class HostProvisioningError(PermanentError):
    """One or more hosts failed to provision during bulk preparation.

    Attributes:
        errors: Every failure raised by the parallel host creations
        created: Hosts that were created before/alongside the failures
    """

    def __init__(self, errors: list[BaseException], requested: int, created: list[Any] | None = None):
        details = "; ".join(str(e) for e in errors)
        super().__init__(
            f"{len(errors)} of {requested} host creations failed: {details}",
            context={"failed": len(errors), "requested": requested},
        )
        self.errors = errors
        self.created = created or []


# =============================================================================
# Input validation
# =============================================================================


class InputValidationError(DedicatedHostError):
    """Base for input validation errors (caller bugs, never retried)."""


class ParameterValidationError(InputValidationError):
    """A required parameter was empty or None.

    Attributes:
        parameter: Name of the offending parameter
    """

    def __init__(self, parameter: str, reason: str = "must not be empty"):
        super().__init__(f"{parameter} {reason}", context={"parameter": parameter})
        self.parameter = parameter


class FaultDomainValidationError(InputValidationError):
    """Requested fault domain is not valid for the host group."""
