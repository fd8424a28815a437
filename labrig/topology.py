"""Declarative topology builder.

A topology script declares nodes and links, then hands the result to the
CLI::

    from labrig import Topology, gb
    from labrig.cli import run

    topo = Topology("duo")
    violin = topo.node("violin", "helios-1.1", 2, gb(2))
    piano = topo.node("piano", "helios-1.1", 2, gb(2))
    topo.link(violin, piano)

    raise SystemExit(run(topo))
"""

from __future__ import annotations

from labrig.errors import UsageError
from labrig.schemas import Deployment, Link, Mount, Node


def gb(n: int) -> int:
    """Gibibytes expressed in MiB, the unit used for node memory."""
    return n * 1024


def mb(n: int) -> int:
    return n


class Topology:
    """Builder for a ``Deployment``."""

    def __init__(self, name: str):
        self.deployment = Deployment(name=name)

    @property
    def name(self) -> str:
        return self.deployment.name

    def node(self, name: str, image: str, cores: int, memory: int) -> str:
        """Declare a node and return its name for use in links and mounts."""
        if name in self.deployment.node_names():
            raise UsageError(f"duplicate node name: {name}")
        self.deployment.nodes.append(
            Node(name=name, image=image, cores=cores, memory=memory)
        )
        return name

    def link(self, a: str, b: str, mac: str | None = None) -> Link:
        """Connect two declared nodes.

        Each link adds one interface to both endpoints.
        """
        if a == b:
            raise UsageError(f"cannot link node {a} to itself")
        node_a = self._lookup(a)
        node_b = self._lookup(b)
        link = Link(endpoints=(a, b), mac=mac)
        self.deployment.links.append(link)
        node_a.radix += 1
        node_b.radix += 1
        return link

    def mount(self, node: str, source: str, destination: str) -> None:
        """Expose a host directory inside a node."""
        self._lookup(node).mounts.append(Mount(source=source, destination=destination))

    def _lookup(self, name: str) -> Node:
        for node in self.deployment.nodes:
            if node.name == name:
                return node
        raise UsageError(f"node {name} is not declared in topology {self.name}")
