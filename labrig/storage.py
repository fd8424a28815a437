"""ZFS storage substrate for node volumes and base images.

Layout under the storage root::

    <root>/img/<image>                  base image, snapshot <image>@base
    <root>/topo/<deployment>/<node-id>  clone backing a running node

Every operation is a single blocking ``zfs`` invocation with no deadline.
"""

from __future__ import annotations

import logging
import subprocess

from labrig.config import settings
from labrig.errors import StorageCommandError
from labrig.schemas import Deployment, Node

logger = logging.getLogger(__name__)


class StoragePool:
    """Thin wrapper over the zfs command line."""

    def __init__(
        self,
        root: str | None = None,
        zfs_binary: str | None = None,
        tag: str | None = None,
    ):
        self.root = (root or settings.storage_root).rstrip("/")
        self.zfs_binary = zfs_binary or settings.zfs_binary
        self.tag = tag or settings.snapshot_tag

    # --- Paths ---

    def image_path(self, image: str) -> str:
        return f"{self.root}/img/{image}"

    def node_volume(self, deployment: Deployment, node: Node) -> str:
        return f"{self.root}/topo/{deployment.name}/{node.id}"

    def tagged(self, dataset: str) -> str:
        return f"{dataset}@{self.tag}"

    # --- Commands ---

    def _zfs(self, *args: str) -> str:
        cmd = [self.zfs_binary, *args]
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            raise StorageCommandError(cmd, str(e)) from e
        if result.returncode != 0:
            raise StorageCommandError(cmd, result.stderr, result.returncode)
        return result.stdout

    def snapshot(self, snapshot: str) -> None:
        self._zfs("snapshot", snapshot)

    def clone(self, snapshot: str, dest: str) -> None:
        self._zfs("clone", "-p", snapshot, dest)

    def promote(self, dataset: str) -> None:
        self._zfs("promote", dataset)

    def destroy(self, dataset: str, recursive: bool = False) -> None:
        args = ["destroy"]
        if recursive:
            args.append("-r")
        self._zfs(*args, dataset)

    def exists(self, dataset: str) -> bool:
        try:
            self._zfs("list", "-H", "-o", "name", dataset)
        except StorageCommandError:
            return False
        return True

    # --- Node volumes ---

    def clone_node_volume(self, deployment: Deployment, node: Node) -> str:
        """Clone the node's base image into its per-node volume.

        Reuses an existing volume so a relaunch keeps the node's disk.
        """
        volume = self.node_volume(deployment, node)
        if self.exists(volume):
            logger.info(f"Volume for {node.name} already exists: {volume}")
            return volume
        self.clone(self.tagged(self.image_path(node.image)), volume)
        logger.info(f"Cloned {node.image} for {node.name}: {volume}")
        return volume

    def destroy_node_volume(self, deployment: Deployment, node: Node) -> None:
        volume = self.node_volume(deployment, node)
        if not self.exists(volume):
            logger.debug(f"No volume to destroy for {node.name}")
            return
        self.destroy(volume, recursive=True)
        logger.info(f"Destroyed volume for {node.name}: {volume}")
