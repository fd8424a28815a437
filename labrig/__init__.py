"""labrig: lifecycle orchestration for single-host virtual test topologies."""

from labrig.topology import Topology, gb, mb

__all__ = ["Topology", "gb", "mb"]
