from __future__ import annotations

import os

import pytest

from labrig.config import settings
from labrig.network.fabric import NetworkFabric, NodeInterface
from labrig.schemas import Deployment, Node
from labrig.store import TopologyStore
from labrig.topology import Topology, gb


@pytest.fixture(autouse=True)
def _isolate_state(monkeypatch, tmp_path):
    """Point the state directory at a temp dir so tests never touch ./.labrig."""
    monkeypatch.setattr(settings, "state_dir", str(tmp_path / "state"))
    monkeypatch.setattr(settings, "backend_binary", "propolis-server")
    monkeypatch.setattr(settings, "vm_destroy_command", "bhyvectl")
    yield


class FakeFabric(NetworkFabric):
    """Records create/destroy calls instead of touching host devices."""

    name = "fake"

    def __init__(self, destroy_warnings: list[str] | None = None):
        self.created: list[str] = []
        self.destroyed: list[str] = []
        self.destroy_warnings = destroy_warnings or []

    async def create(self, deployment: Deployment) -> None:
        self.created.append(deployment.name)

    async def destroy(self, deployment: Deployment) -> list[str]:
        self.destroyed.append(deployment.name)
        return list(self.destroy_warnings)

    def interfaces(self, deployment: Deployment, node: Node) -> list[NodeInterface]:
        return [NodeInterface(device=f"tap-{node.name}-{i}") for i in range(node.radix)]


@pytest.fixture
def fake_fabric():
    return FakeFabric()


@pytest.fixture
def store(tmp_path):
    return TopologyStore(tmp_path / "state")


@pytest.fixture
def trio() -> Deployment:
    """Three-node topology: router linked to violin and piano."""
    topo = Topology("trio")
    router = topo.node("router", "helios-1.1", 2, gb(2))
    violin = topo.node("violin", "helios-1.1", 2, gb(2))
    piano = topo.node("piano", "debian-12", 1, gb(1))
    topo.link(router, violin, mac="a8:e1:de:01:70:1c")
    topo.link(router, piano)
    topo.mount(violin, "/opt/cargo", "/opt/cargo")
    return topo.deployment


@pytest.fixture
def dead_pid() -> int:
    """A pid that is very unlikely to belong to a live process."""
    pid = 4_000_000
    while True:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return pid
        except PermissionError:
            pass
        pid -= 1
