"""Network fabric: the host-side devices realizing a topology's links.

The orchestrator only needs ``create``, ``destroy`` and the per-node
interface list handed to the hypervisor backend. ``LinuxBridgeFabric``
realizes each link as a bridge with one tap device per endpoint.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from labrig.errors import FabricError
from labrig.network.cmd import ip, ip_link_exists
from labrig.network.naming import bridge_name, tap_name
from labrig.schemas import Deployment, Node

logger = logging.getLogger(__name__)


@dataclass
class NodeInterface:
    """A host device backing one of a node's guest NICs."""
    device: str
    mac: str | None = None

    def backend_arg(self) -> str:
        return f"{self.device}={self.mac}" if self.mac else self.device


class NetworkFabric(ABC):
    """Creates and destroys the devices backing a deployment's links."""

    name: str = ""

    @abstractmethod
    async def create(self, deployment: Deployment) -> None:
        """Create every link device. Raises FabricError on failure."""

    @abstractmethod
    async def destroy(self, deployment: Deployment) -> list[str]:
        """Remove every link device, best effort.

        Returns warnings for devices that could not be removed.
        """

    @abstractmethod
    def interfaces(self, deployment: Deployment, node: Node) -> list[NodeInterface]:
        """The node's interfaces in link declaration order."""


class LinuxBridgeFabric(NetworkFabric):
    """One Linux bridge per link, one tap per link endpoint."""

    name = "linux-bridge"

    def interfaces(self, deployment: Deployment, node: Node) -> list[NodeInterface]:
        result = []
        for index, link in deployment.links_for(node.name):
            endpoint = link.endpoints.index(node.name)
            mac = link.mac if endpoint == 1 else None
            result.append(NodeInterface(device=tap_name(deployment.name, index, endpoint), mac=mac))
        return result

    async def _ip_checked(self, *args: str) -> None:
        code, _, stderr = await ip(*args)
        if code != 0:
            raise FabricError(f"ip {' '.join(args)} failed: {stderr.strip()}")

    async def create(self, deployment: Deployment) -> None:
        for index, link in enumerate(deployment.links):
            bridge = bridge_name(deployment.name, index)
            if await ip_link_exists(bridge):
                logger.info(f"Bridge {bridge} already exists")
            else:
                await self._ip_checked("link", "add", "name", bridge, "type", "bridge")
                logger.info(f"Created bridge {bridge} for {link.endpoints[0]} <-> {link.endpoints[1]}")
            await self._ip_checked("link", "set", bridge, "up")

            for endpoint in (0, 1):
                tap = tap_name(deployment.name, index, endpoint)
                if not await ip_link_exists(tap):
                    await self._ip_checked("tuntap", "add", "dev", tap, "mode", "tap")
                    logger.debug(f"Created tap {tap} for {link.endpoints[endpoint]}")
                await self._ip_checked("link", "set", tap, "master", bridge)
                await self._ip_checked("link", "set", tap, "up")

    async def destroy(self, deployment: Deployment) -> list[str]:
        warnings: list[str] = []
        for index, _link in enumerate(deployment.links):
            devices = [tap_name(deployment.name, index, 0), tap_name(deployment.name, index, 1)]
            devices.append(bridge_name(deployment.name, index))
            for device in devices:
                if not await ip_link_exists(device):
                    continue
                code, _, stderr = await ip("link", "del", device)
                if code != 0:
                    message = f"failed to delete {device}: {stderr.strip()}"
                    logger.warning(message)
                    warnings.append(message)
                else:
                    logger.debug(f"Deleted {device}")
        return warnings


def get_network_fabric() -> NetworkFabric:
    """Return the fabric used for this host."""
    return LinuxBridgeFabric()
