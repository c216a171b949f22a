"""Host selection: first host in a group with advertised room for a VM size.

No scoring and no load balancing: any host with capacity is acceptable,
and listing order decides ties. The selector only reads; growing the pool
is the engine's job.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from dedicated_hosts._logging import get_logger
from dedicated_hosts.exceptions import ResourceNotFoundError

if TYPE_CHECKING:
    from dedicated_hosts.compute import ControlPlaneClient
    from dedicated_hosts.models import Host
    from dedicated_hosts.state import HostStateTracker

logger = get_logger(__name__)


async def fetch_instance_views(
    client: ControlPlaneClient,
    resource_group: str,
    host_group: str,
    hosts: list[Host],
) -> list[Host]:
    """Fetch live instance views for hosts concurrently.

    Hosts deleted between listing and fetching are dropped. Order of the
    input listing is preserved.
    """

    async def _fetch(host: Host) -> Host | None:
        try:
            return await client.get_host(resource_group, host_group, host.name, include_instance_view=True)
        except ResourceNotFoundError:
            logger.debug("Host disappeared before instance view fetch", extra={"host": host.name})
            return None

    views = await asyncio.gather(*(_fetch(host) for host in hosts))
    return [view for view in views if view is not None]


class HostSelector:
    """Picks an existing host with free capacity for a VM size.

    When a HostStateTracker is given, hosts hinted at_capacity are skipped
    until the hint expires, even if their advertised capacity says
    otherwise (the control plane's numbers lag behind failed placements).
    """

    def __init__(self, state: HostStateTracker | None = None) -> None:
        self._state = state

    async def select_host(
        self,
        client: ControlPlaneClient,
        resource_group: str,
        host_group: str,
        vm_size: str,
    ) -> str | None:
        """Return the id of the first host with capacity for vm_size, or None.

        A host group that does not exist yet has no hosts.
        """
        try:
            hosts = await client.list_hosts(resource_group, host_group)
        except ResourceNotFoundError:
            logger.debug("Host group does not exist", extra={"host_group": host_group})
            return None
        if not hosts:
            logger.debug("Host group has no hosts", extra={"host_group": host_group})
            return None

        for host in await fetch_instance_views(client, resource_group, host_group, hosts):
            if host.id is None or host.capacity_for(vm_size) <= 0:
                continue
            if self._state is not None and await self._state.is_at_capacity(host.id):
                logger.debug("Skipping host hinted at capacity", extra={"host_id": host.id})
                continue
            logger.debug(
                "Selected host",
                extra={"host_id": host.id, "vm_size": vm_size, "available": host.capacity_for(vm_size)},
            )
            return host.id

        return None
