"""Turn a node's live volume into a reusable base image.

The pipeline runs four storage commands in order:

1. snapshot the node volume as ``<volume>@base``
2. clone that snapshot to ``<root>/img/<new-image>``
3. promote the clone so it no longer depends on the node volume
4. snapshot the promoted clone as ``<root>/img/<new-image>@base``

The first failing step aborts the pipeline. Steps that already completed
are NOT rolled back: a failure at step 3 leaves the step 1 snapshot and
the step 2 clone in place, and they have to be cleaned up by hand (or
reused by rerunning the remaining steps). The error names the artifacts
left behind.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from labrig.errors import StorageCommandError
from labrig.schemas import Deployment, Node
from labrig.storage import StoragePool

logger = logging.getLogger(__name__)


@dataclass
class SnapshotResult:
    """Artifacts created by a snapshot run, in creation order."""
    node_name: str
    image: str
    completed: list[str] = field(default_factory=list)
    artifacts: list[str] = field(default_factory=list)

    @property
    def base_snapshot(self) -> str | None:
        if "base snapshot" not in self.completed:
            return None
        return self.artifacts[-1]


class SnapshotError(StorageCommandError):
    """A pipeline step failed; carries the artifacts already created."""

    def __init__(self, step: str, cause: StorageCommandError, result: SnapshotResult):
        self.step = step
        self.result = result
        left = ", ".join(result.artifacts) or "none"
        super().__init__(
            cause.command,
            cause.stderr,
            cause.returncode,
            message=(
                f"snapshot of {result.node_name} failed at {step}: {cause.stderr.strip()} "
                f"(left in place: {left})"
            ),
        )


def snapshot_node(
    pool: StoragePool,
    deployment: Deployment,
    node: Node,
    new_image: str,
) -> SnapshotResult:
    """Create base image ``new_image`` from the node's current volume."""
    source = pool.node_volume(deployment, node)
    source_snapshot = pool.tagged(source)
    dest = pool.image_path(new_image)
    dest_snapshot = pool.tagged(dest)

    result = SnapshotResult(node_name=node.name, image=new_image)
    steps = [
        ("snapshot", lambda: pool.snapshot(source_snapshot), source_snapshot),
        ("clone", lambda: pool.clone(source_snapshot, dest), dest),
        ("promote", lambda: pool.promote(dest), None),
        ("base snapshot", lambda: pool.snapshot(dest_snapshot), dest_snapshot),
    ]

    for step, run, artifact in steps:
        try:
            run()
        except StorageCommandError as e:
            error = SnapshotError(step, e, result)
            logger.error(str(error))
            raise error from e
        result.completed.append(step)
        if artifact is not None:
            result.artifacts.append(artifact)
        logger.info(f"Snapshot {node.name} -> {new_image}: {step} done")

    return result
