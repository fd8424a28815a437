"""Error kinds raised by labrig components.

Every command-level failure is a ``LabrigError``; the CLI prints the message
and exits non-zero. Messages carry the node and operation they concern.
"""

from __future__ import annotations


class LabrigError(Exception):
    """Base class for all labrig failures."""


class NotFoundError(LabrigError):
    """A state file, node or instance does not exist."""

    def __init__(self, what: str, detail: str = ""):
        self.what = what
        message = f"not found: {what}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class InvalidStateError(LabrigError):
    """A runtime handle file holds content of the wrong type."""


class CorruptStateError(LabrigError):
    """The persisted topology record cannot be parsed."""


class StateIOError(LabrigError):
    """Filesystem failure while reading or writing state."""


class SpawnError(LabrigError):
    """A hypervisor backend process could not be created."""


class BackendError(LabrigError):
    """RPC or network failure talking to a hypervisor backend."""

    def __init__(self, operation: str, cause: object):
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation}: {cause}")


class StorageCommandError(LabrigError):
    """A storage command exited unsuccessfully."""

    def __init__(
        self,
        command: list[str],
        stderr: str,
        returncode: int | None = None,
        message: str | None = None,
    ):
        self.command = command
        self.stderr = stderr
        self.returncode = returncode
        super().__init__(message or f"{' '.join(command)} failed: {stderr.strip()}")


class FabricError(LabrigError):
    """A network fabric command failed."""


class TerminalError(LabrigError):
    """The local terminal mode could not be changed or restored."""


class UsageError(LabrigError):
    """Command line contract violation."""
