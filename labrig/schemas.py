"""Deployment data model.

These Pydantic models define the declared topology persisted in the state
directory. Runtime handles are plain dataclasses: they are never serialized
as a unit, each field lives in its own file.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass

from pydantic import BaseModel, Field

from labrig.errors import NotFoundError


class Mount(BaseModel):
    """Host directory exposed to a node."""
    source: str
    destination: str


class Node(BaseModel):
    """A declared virtual machine."""
    name: str
    image: str
    cores: int = 1
    memory: int = 1024  # MiB
    radix: int = 0  # number of interfaces, one per link endpoint
    mounts: list[Mount] = Field(default_factory=list)
    # Generated when the node is declared; namespaces its storage volume
    id: uuid.UUID = Field(default_factory=uuid.uuid4)


class Link(BaseModel):
    """Point-to-point connection between two nodes."""
    endpoints: tuple[str, str]
    mac: str | None = None  # applied to the second endpoint's interface


class Deployment(BaseModel):
    """The declared topology."""
    name: str
    nodes: list[Node] = Field(default_factory=list)
    links: list[Link] = Field(default_factory=list)

    def find_node(self, name: str) -> Node:
        for node in self.nodes:
            if node.name == name:
                return node
        raise NotFoundError(name, f"no such node in deployment {self.name}")

    def node_names(self) -> list[str]:
        return [node.name for node in self.nodes]

    def links_for(self, name: str) -> list[tuple[int, Link]]:
        """Links touching a node, with their index in declaration order."""
        return [
            (index, link)
            for index, link in enumerate(self.links)
            if name in link.endpoints
        ]


@dataclass
class RuntimeHandle:
    """What is recorded while a node's backend runs.

    Every field is optional: each one is persisted in its own file and can
    be present or absent independently of the others.
    """
    name: str
    port: int | None = None
    instance_id: uuid.UUID | None = None
    pid: int | None = None

    @property
    def empty(self) -> bool:
        return self.port is None and self.instance_id is None and self.pid is None

    @property
    def complete(self) -> bool:
        return self.port is not None and self.instance_id is not None and self.pid is not None
