"""Hypervisor backend control."""

from labrig.hypervisor.client import HypervisorClient, InstanceState

__all__ = ["HypervisorClient", "InstanceState"]
