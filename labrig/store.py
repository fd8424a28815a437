"""On-disk deployment state.

The state directory holds the declared topology plus one file per runtime
handle field for each node::

    topology.json     serialized Deployment
    <node>.port       decimal control port
    <node>.uuid       canonical instance UUID
    <node>.pid        decimal backend pid

The topology record says what should exist. Handle files say what the last
invocation started, and can drift from reality when a backend dies on its
own. Each handle file is read independently; nothing assumes port, uuid and
pid are present together.

There is no locking: one lifecycle command at a time per deployment.
"""

from __future__ import annotations

import logging
import shutil
import uuid
from pathlib import Path

from pydantic import ValidationError

from labrig.config import settings
from labrig.errors import (
    CorruptStateError,
    InvalidStateError,
    NotFoundError,
    StateIOError,
)
from labrig.schemas import Deployment, Node, RuntimeHandle

logger = logging.getLogger(__name__)

TOPOLOGY_FILE = "topology.json"
HANDLE_SUFFIXES = (".port", ".uuid", ".pid")


def _parse_port(text: str) -> int:
    port = int(text)
    if not 0 <= port <= 0xFFFF:
        raise ValueError(f"port {port} out of range")
    return port


def _parse_uuid(text: str) -> uuid.UUID:
    value = uuid.UUID(text)
    if str(value) != text.lower():
        raise ValueError(f"not a canonical uuid: {text!r}")
    return value


class TopologyStore:
    """Reads and writes deployment state under a state directory."""

    def __init__(self, state_dir: str | Path | None = None):
        self.state_dir = Path(state_dir if state_dir is not None else settings.state_dir)

    @property
    def topology_path(self) -> Path:
        return self.state_dir / TOPOLOGY_FILE

    def _handle_path(self, name: str, suffix: str) -> Path:
        return self.state_dir / f"{name}{suffix}"

    def output_path(self, name: str) -> Path:
        """Where a node's backend stdout/stderr is appended."""
        return self.state_dir / f"{name}.out"

    def ensure_dir(self) -> None:
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StateIOError(f"create state directory {self.state_dir}: {e}") from e

    # --- Declared topology ---

    def save(self, deployment: Deployment) -> None:
        """Persist the deployment, replacing any previous record."""
        self.ensure_dir()
        try:
            self.topology_path.write_text(deployment.model_dump_json(indent=2))
        except OSError as e:
            raise StateIOError(f"write {self.topology_path}: {e}") from e
        logger.debug(f"Saved topology {deployment.name} to {self.topology_path}")

    def load(self) -> Deployment:
        """Load the persisted deployment."""
        if not self.state_dir.is_dir():
            raise NotFoundError(str(self.state_dir), "state directory missing, has the topology been launched?")
        try:
            raw = self.topology_path.read_text()
        except FileNotFoundError:
            raise NotFoundError(str(self.topology_path), "no topology record") from None
        except UnicodeDecodeError as e:
            raise CorruptStateError(f"cannot decode {self.topology_path}: {e}") from e
        except OSError as e:
            raise StateIOError(f"read {self.topology_path}: {e}") from e
        try:
            return Deployment.model_validate_json(raw)
        except ValidationError as e:
            raise CorruptStateError(f"cannot parse {self.topology_path}: {e}") from e

    @staticmethod
    def find_node(deployment: Deployment, name: str) -> Node:
        return deployment.find_node(name)

    def purge(self) -> None:
        """Remove the whole state directory."""
        if not self.state_dir.exists():
            return
        try:
            shutil.rmtree(self.state_dir)
        except OSError as e:
            raise StateIOError(f"remove {self.state_dir}: {e}") from e

    # --- Runtime handles ---

    def _read_field(self, name: str, suffix: str, parse):
        path = self._handle_path(name, suffix)
        try:
            text = path.read_text().strip()
        except FileNotFoundError:
            raise NotFoundError(str(path)) from None
        except UnicodeDecodeError as e:
            raise InvalidStateError(f"invalid content in {path}: {e}") from e
        except OSError as e:
            raise StateIOError(f"read {path}: {e}") from e
        try:
            return parse(text)
        except ValueError as e:
            raise InvalidStateError(f"invalid content in {path}: {e}") from e

    def _write_field(self, name: str, suffix: str, value: object) -> None:
        self.ensure_dir()
        path = self._handle_path(name, suffix)
        try:
            path.write_text(f"{value}\n")
        except OSError as e:
            raise StateIOError(f"write {path}: {e}") from e

    def _clear_field(self, name: str, suffix: str) -> None:
        path = self._handle_path(name, suffix)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StateIOError(f"remove {path}: {e}") from e

    def read_port(self, name: str) -> int:
        return self._read_field(name, ".port", _parse_port)

    def read_uuid(self, name: str) -> uuid.UUID:
        return self._read_field(name, ".uuid", _parse_uuid)

    def read_pid(self, name: str) -> int:
        return self._read_field(name, ".pid", int)

    def write_port(self, name: str, port: int) -> None:
        self._write_field(name, ".port", port)

    def write_uuid(self, name: str, instance_id: uuid.UUID) -> None:
        self._write_field(name, ".uuid", instance_id)

    def write_pid(self, name: str, pid: int) -> None:
        self._write_field(name, ".pid", pid)

    def clear_port(self, name: str) -> None:
        self._clear_field(name, ".port")

    def clear_uuid(self, name: str) -> None:
        self._clear_field(name, ".uuid")

    def clear_pid(self, name: str) -> None:
        self._clear_field(name, ".pid")

    def read_handle(self, name: str) -> RuntimeHandle:
        """Collect whichever handle fields are present for a node.

        Absent files leave the field as None; malformed files still raise.
        """
        handle = RuntimeHandle(name=name)
        try:
            handle.port = self.read_port(name)
        except NotFoundError:
            pass
        try:
            handle.instance_id = self.read_uuid(name)
        except NotFoundError:
            pass
        try:
            handle.pid = self.read_pid(name)
        except NotFoundError:
            pass
        return handle

    def handle_names(self) -> list[str]:
        """Names of every node owning at least one handle file."""
        if not self.state_dir.is_dir():
            return []
        names = {
            path.stem
            for path in self.state_dir.iterdir()
            if path.suffix in HANDLE_SUFFIXES and path.is_file()
        }
        return sorted(names)
