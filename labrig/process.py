"""Hypervisor backend process management.

Each node runs one backend process serving the VM and its control API on a
loopback port. Starting a node allocates the port and an instance UUID,
spawns the backend detached from this process, and records port, uuid and
pid in the state directory. Nothing waits for the backend to become ready.

Stopping is best effort and idempotent: every failure along the way is
collected as a warning and the teardown carries on.
"""

from __future__ import annotations

import logging
import os
import signal
import socket
import subprocess
import uuid
from dataclasses import dataclass, field

from labrig.config import settings
from labrig.errors import InvalidStateError, NotFoundError, SpawnError, StateIOError
from labrig.network.fabric import NetworkFabric
from labrig.schemas import Deployment, Node, RuntimeHandle
from labrig.storage import StoragePool
from labrig.store import TopologyStore

logger = logging.getLogger(__name__)


@dataclass
class TeardownReport:
    """Outcome of stopping one node."""
    node_name: str
    warnings: list[str] = field(default_factory=list)
    killed_pid: int | None = None
    destroyed_instance: uuid.UUID | None = None

    @property
    def clean(self) -> bool:
        return not self.warnings

    def warn(self, message: str) -> None:
        logger.warning(f"{self.node_name}: {message}")
        self.warnings.append(message)


def build_backend_command(
    binary: str,
    node: Node,
    instance_id: uuid.UUID,
    port: int,
    volume: str,
    nics: list[str],
    host: str | None = None,
) -> list[str]:
    """Command line for one node's backend process."""
    cmd = [
        binary,
        "run",
        "--name", node.name,
        "--uuid", str(instance_id),
        "--cpus", str(node.cores),
        "--memory", str(node.memory),
        "--image", volume,
    ]
    for nic in nics:
        cmd.extend(["--nic", nic])
    for mount in node.mounts:
        cmd.extend(["--mount", f"{mount.source}:{mount.destination}"])
    cmd.append(f"{host or settings.backend_host}:{port}")
    return cmd


def is_alive(pid: int) -> bool:
    """Whether a process with this pid exists."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else
        return True
    return True


class VMProcessManager:
    """Starts and stops hypervisor backends for the nodes of a deployment."""

    def __init__(
        self,
        store: TopologyStore,
        fabric: NetworkFabric,
        pool: StoragePool | None = None,
    ):
        self.store = store
        self.fabric = fabric
        self.pool = pool or StoragePool()
        # Ports handed out during this invocation
        self._allocated_ports: set[int] = set()

    # --- Port allocation ---

    def _ports_in_use(self, deployment: Deployment, exclude: str) -> set[int]:
        used = set(self._allocated_ports)
        for other in deployment.nodes:
            if other.name == exclude:
                continue
            try:
                used.add(self.store.read_port(other.name))
            except (NotFoundError, InvalidStateError):
                continue
        return used

    @staticmethod
    def _bind_free_port(host: str) -> int:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind((host, 0))
            return s.getsockname()[1]

    def allocate_port(self, deployment: Deployment, node_name: str) -> int:
        """Pick a free loopback port not held by another node of the deployment."""
        used = self._ports_in_use(deployment, exclude=node_name)
        while True:
            port = self._bind_free_port(settings.backend_host)
            if port not in used:
                self._allocated_ports.add(port)
                return port
            logger.debug(f"Port {port} already assigned in {deployment.name}, retrying")

    # --- Start ---

    def start(self, deployment: Deployment, node: Node, backend_binary: str | None = None) -> RuntimeHandle:
        """Spawn the backend for one node and record its runtime handle."""
        binary = backend_binary or settings.backend_binary
        port = self.allocate_port(deployment, node.name)
        instance_id = uuid.uuid4()
        nics = [iface.backend_arg() for iface in self.fabric.interfaces(deployment, node)]
        cmd = build_backend_command(
            binary,
            node,
            instance_id,
            port,
            self.pool.node_volume(deployment, node),
            nics,
        )

        self.store.ensure_dir()
        output_path = self.store.output_path(node.name)
        logger.debug(f"Spawning backend for {node.name}: {' '.join(cmd)}")
        try:
            with open(output_path, "ab") as output:
                process = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=output,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError as e:
            self._allocated_ports.discard(port)
            raise SpawnError(f"failed to start backend for {node.name} ({binary}): {e}") from e

        self.store.write_port(node.name, port)
        self.store.write_uuid(node.name, instance_id)
        self.store.write_pid(node.name, process.pid)
        logger.info(f"Started backend for {node.name}: pid={process.pid} port={port} uuid={instance_id}")
        return RuntimeHandle(name=node.name, port=port, instance_id=instance_id, pid=process.pid)

    def start_all(
        self,
        deployment: Deployment,
        backend_binary: str | None = None,
        names: list[str] | None = None,
    ) -> list[RuntimeHandle]:
        """Start nodes in declaration order (all nodes unless names are given)."""
        nodes = self._select(deployment, names)
        return [self.start(deployment, node, backend_binary) for node in nodes]

    # --- Stop ---

    def _destroy_instance(self, instance_id: uuid.UUID) -> tuple[bool, str]:
        cmd = [settings.vm_destroy_command, "--destroy", f"--vm={instance_id}"]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            return False, str(e)
        if result.returncode != 0:
            return False, result.stderr.strip() or f"exit status {result.returncode}"
        return True, ""

    def stop(self, name: str) -> TeardownReport:
        """Kill the node's backend and destroy its VM instance.

        Missing pid or uuid files mean that half is already stopped and is
        skipped. Everything else that goes wrong becomes a warning.
        """
        report = TeardownReport(node_name=name)

        # pid half
        pid = None
        clear_pid = False
        try:
            pid = self.store.read_pid(name)
        except NotFoundError:
            logger.debug(f"{name}: no pid file, backend not running")
        except (InvalidStateError, StateIOError) as e:
            report.warn(f"could not read pid file: {e}")
            clear_pid = True
        if pid is not None:
            try:
                os.kill(pid, signal.SIGKILL)
                report.killed_pid = pid
                clear_pid = True
            except ProcessLookupError:
                report.warn(f"backend pid {pid} was not running")
                clear_pid = True
            except OSError as e:
                # Process may still exist, keep tracking it
                report.warn(f"could not signal backend pid {pid}: {e}")
        if clear_pid:
            try:
                self.store.clear_pid(name)
            except StateIOError as e:
                report.warn(str(e))

        # instance half
        instance_id = None
        try:
            instance_id = self.store.read_uuid(name)
        except NotFoundError:
            logger.debug(f"{name}: no uuid file, no instance to destroy")
        except (InvalidStateError, StateIOError) as e:
            report.warn(f"could not read uuid file: {e}")
        if instance_id is not None:
            ok, detail = self._destroy_instance(instance_id)
            if ok:
                report.destroyed_instance = instance_id
                try:
                    self.store.clear_uuid(name)
                except StateIOError as e:
                    report.warn(str(e))
            else:
                report.warn(f"could not destroy instance {instance_id}: {detail}")

        try:
            self.store.clear_port(name)
        except StateIOError as e:
            report.warn(str(e))

        if report.clean:
            logger.info(f"Stopped {name}")
        return report

    def stop_all(self, deployment: Deployment, names: list[str] | None = None) -> list[TeardownReport]:
        """Stop nodes in declaration order (all nodes unless names are given).

        Unknown names abort before any node is touched; per-node warnings
        never abort.
        """
        nodes = self._select(deployment, names)
        return [self.stop(node.name) for node in nodes]

    @staticmethod
    def _select(deployment: Deployment, names: list[str] | None) -> list[Node]:
        if names is None:
            return list(deployment.nodes)
        wanted = [deployment.find_node(name) for name in names]
        order = {node.name: index for index, node in enumerate(deployment.nodes)}
        return sorted(wanted, key=lambda node: order[node.name])

