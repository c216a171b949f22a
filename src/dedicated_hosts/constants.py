"""Constants for dedicated-hosts configuration and limits."""

from typing import Final

# ============================================================================
# Control-plane retries
# ============================================================================

HOST_GROUP_CREATE_RETRY_COUNT: Final[int] = 3
"""Retries for host group create/update (and host group reads)."""

RETRY_COUNT_TO_CHECK_VM_STATE: Final[int] = 3
"""Retries for reading VM/host state after a transient control-plane error."""

RETRY_BACKOFF_SECONDS: Final[float] = 2.0
"""Retry delay multiplier: attempt N waits backoff * N seconds (2s, 4s, 6s, ...)."""

# ============================================================================
# Placement
# ============================================================================

LOCK_RETRY_COUNT: Final[int] = 5
"""Retries for acquiring the per-host-group serialization lock."""

MAX_RETRIES_TO_CREATE_VM: Final[int] = 5
"""Iterations of the VM provisioning state machine before giving up."""

MIN_VM_POLL_INTERVAL_SECONDS: Final[float] = 10.0
"""Lower bound of the randomized wait before re-reading VM provisioning state."""

MAX_VM_POLL_INTERVAL_SECONDS: Final[float] = 20.0
"""Upper bound of the randomized wait before re-reading VM provisioning state."""

HOST_NAME_PREFIX: Final[str] = "host"
"""Prefix for generated host names (host-<12 hex chars>)."""

# ============================================================================
# Host state hints
# ============================================================================

HOST_STATE_TTL_MINUTES: Final[int] = 3
"""Lifetime of in-usage / at-capacity / marked-for-deletion hints."""

# ============================================================================
# Fault domains and capacity table
# ============================================================================

SUPPORTED_FAULT_DOMAINS: Final[frozenset[int]] = frozenset({0, 1, 2})
"""Fault domains that can be targeted individually (None targets all)."""

DEFAULT_CAPACITY_LOCATION: Final[str] = "default"
"""Fallback row of the host capacity table."""

# ============================================================================
# Distributed coordination (Redis)
# ============================================================================

LOCK_KEY_PREFIX: Final[str] = "dedicated-hosts:lock"
STATE_KEY_PREFIX: Final[str] = "dedicated-hosts:state"

LOCK_LEASE_SECONDS: Final[float] = 60.0
"""Lock lease: a crashed holder's lock expires after this long."""

LOCK_WAIT_SECONDS: Final[float] = 10.0
"""How long acquire() polls for a held lock before raising LockContentionError."""

LOCK_POLL_INTERVAL_SECONDS: Final[float] = 0.1
"""Poll interval while waiting for a held lock."""
