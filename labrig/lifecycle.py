"""Lifecycle commands composed from the store, fabric, storage, process
manager and control client.

Every command runs sequentially in one invocation and reconstructs what it
needs from the state directory. Teardown commands collect warnings instead
of failing, so they can be rerun against half-stopped deployments.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from labrig.errors import BackendError, InvalidStateError, LabrigError, NotFoundError, UsageError
from labrig.hypervisor.client import HypervisorClient, InstanceState
from labrig.network.fabric import NetworkFabric, get_network_fabric
from labrig.process import TeardownReport, VMProcessManager, is_alive
from labrig.schemas import Deployment, Node, RuntimeHandle
from labrig.snapshot import SnapshotResult, snapshot_node
from labrig.storage import StoragePool
from labrig.store import TopologyStore

logger = logging.getLogger(__name__)


@dataclass
class StopResult:
    """Result of stopping one or more nodes."""
    reports: list[TeardownReport] = field(default_factory=list)

    @property
    def warnings(self) -> list[str]:
        return [f"{r.node_name}: {w}" for r in self.reports for w in r.warnings]

    @property
    def clean(self) -> bool:
        return all(r.clean for r in self.reports)


@dataclass
class DestroyResult(StopResult):
    """Result of tearing down a whole deployment."""
    teardown_warnings: list[str] = field(default_factory=list)

    @property
    def warnings(self) -> list[str]:
        return super().warnings + self.teardown_warnings

    @property
    def clean(self) -> bool:
        return super().clean and not self.teardown_warnings


@dataclass
class NodeStatusRow:
    """One node as seen by ``info``."""
    node: Node
    handle: RuntimeHandle
    status: str
    detail: str = ""
    live_state: str | None = None


@dataclass
class InfoResult:
    deployment: Deployment
    rows: list[NodeStatusRow] = field(default_factory=list)
    # Handle files naming nodes that are not in the declared topology
    orphans: list[str] = field(default_factory=list)


def node_status(handle: RuntimeHandle) -> tuple[str, str]:
    """Classify a node's runtime handle against the OS process table.

    Returns (status, detail). ``stale`` means the pid file outlived its
    process; ``partial`` means the handle files disagree with each other.
    """
    if handle.empty:
        return "stopped", ""
    if handle.pid is not None and not is_alive(handle.pid):
        return "stale", f"pid {handle.pid} is not running"
    if not handle.complete:
        missing = [
            label
            for label, value in (("port", handle.port), ("uuid", handle.instance_id), ("pid", handle.pid))
            if value is None
        ]
        return "partial", f"missing {', '.join(missing)}"
    return "running", ""


class LabOrchestrator:
    """Runs one lifecycle command against one state directory."""

    def __init__(
        self,
        store: TopologyStore | None = None,
        fabric: NetworkFabric | None = None,
        pool: StoragePool | None = None,
    ):
        self.store = store or TopologyStore()
        self.fabric = fabric or get_network_fabric()
        self.pool = pool or StoragePool()
        self.manager = VMProcessManager(self.store, self.fabric, self.pool)

    def deployment(self) -> Deployment:
        return self.store.load()

    def _refuse_running(self, names: list[str], hint: str) -> None:
        """Raise UsageError if any named node still has a live backend."""
        running = [
            name for name in names
            if node_status(self.store.read_handle(name))[0] == "running"
        ]
        if running:
            raise UsageError(f"nodes already running: {', '.join(running)} ({hint})")

    # --- launch / destroy ---

    async def launch(self, deployment: Deployment, backend_binary: str | None = None) -> list[RuntimeHandle]:
        """Persist, wire up and start a whole deployment."""
        self._refuse_running(deployment.node_names(), "destroy first")

        self.store.save(deployment)
        await self.fabric.create(deployment)
        for node in deployment.nodes:
            self.pool.clone_node_volume(deployment, node)
        handles = self.manager.start_all(deployment, backend_binary)
        logger.info(f"Launched {deployment.name}: {len(handles)} nodes")
        return handles

    async def destroy(self, declared: Deployment | None = None) -> DestroyResult:
        """Stop every node and remove volumes, fabric and state.

        Uses the persisted topology when there is one, falling back to the
        declared topology if the state directory is already gone.
        """
        try:
            deployment = self.store.load()
        except NotFoundError:
            if declared is None:
                raise
            deployment = declared

        result = DestroyResult(reports=self.manager.stop_all(deployment))
        for node in deployment.nodes:
            try:
                self.pool.destroy_node_volume(deployment, node)
            except LabrigError as e:
                logger.warning(f"{node.name}: {e}")
                result.teardown_warnings.append(f"{node.name}: {e}")
        result.teardown_warnings.extend(await self.fabric.destroy(deployment))

        if result.clean:
            self.store.purge()
        else:
            # Keep handles around so a later destroy can retry
            logger.warning(f"Destroy of {deployment.name} incomplete, keeping {self.store.state_dir}")
        return result

    # --- hypervisor start / stop ---

    def hyperstart(self, names: list[str] | None, backend_binary: str | None = None) -> list[RuntimeHandle]:
        """Start backends for the named nodes, or all nodes when names is None."""
        deployment = self.store.load()
        selected = names if names is not None else deployment.node_names()
        for name in selected:
            deployment.find_node(name)
        self._refuse_running(selected, "hyperstop first")
        return self.manager.start_all(deployment, backend_binary, names=names)

    def hyperstop(self, names: list[str] | None) -> StopResult:
        """Stop backends for the named nodes, or all nodes when names is None."""
        deployment = self.store.load()
        return StopResult(reports=self.manager.stop_all(deployment, names=names))

    # --- network only ---

    async def netcreate(self) -> None:
        await self.fabric.create(self.store.load())

    async def netdestroy(self) -> list[str]:
        return await self.fabric.destroy(self.store.load())

    # --- control API ---

    async def reboot(self, name: str) -> None:
        deployment = self.store.load()
        deployment.find_node(name)
        client = HypervisorClient.for_node(self.store, name)
        instance = await client.resolve_instance(name)
        await client.request_state(instance, InstanceState.REBOOT)

    # --- storage ---

    def snapshot(self, name: str, new_image: str) -> SnapshotResult:
        deployment = self.store.load()
        node = self.store.find_node(deployment, name)
        return snapshot_node(self.pool, deployment, node, new_image)

    # --- reporting ---

    async def info(self, live: bool = False) -> InfoResult:
        deployment = self.store.load()
        result = InfoResult(deployment=deployment)
        for node in deployment.nodes:
            try:
                handle = self.store.read_handle(node.name)
            except InvalidStateError as e:
                result.rows.append(
                    NodeStatusRow(node=node, handle=RuntimeHandle(name=node.name), status="invalid", detail=str(e))
                )
                continue
            status, detail = node_status(handle)
            row = NodeStatusRow(node=node, handle=handle, status=status, detail=detail)
            if live and status == "running":
                row.live_state = await self._live_state(handle)
            result.rows.append(row)

        declared = set(deployment.node_names())
        result.orphans = [name for name in self.store.handle_names() if name not in declared]
        for name in result.orphans:
            logger.warning(f"Runtime handle files for {name}, which is not in topology {deployment.name}")
        return result

    @staticmethod
    async def _live_state(handle: RuntimeHandle) -> str:
        client = HypervisorClient(port=handle.port)
        try:
            instance: dict[str, Any] = await client.get_instance(handle.instance_id)
        except BackendError as e:
            logger.info(f"{handle.name}: {e}")
            return "unreachable"
        return str(instance.get("state", "unknown"))
