"""Network fabric implementations."""

from labrig.network.fabric import LinuxBridgeFabric, NetworkFabric, get_network_fabric

__all__ = ["LinuxBridgeFabric", "NetworkFabric", "get_network_fabric"]
