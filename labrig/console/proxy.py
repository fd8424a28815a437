"""Interactive serial console over a backend's websocket.

The proxy races two waits on one event loop: a byte from local stdin and a
message from the remote session. Whichever finishes first is handled and
only that wait is re-armed.

- stdin byte: the quit sentinel (Ctrl-Q) closes the session and is never
  forwarded; any other byte goes to the remote as a binary frame.
- remote binary message: written to stdout and flushed immediately.
- remote close or end of stream: closes the session.
- any other remote message: ignored.

The local terminal is raw for the whole active phase and restored exactly
once on every exit path.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from enum import Enum
from typing import Any, BinaryIO

from websockets.exceptions import ConnectionClosed, WebSocketException

from labrig.config import settings
from labrig.console.terminal import TerminalModeGuard
from labrig.errors import BackendError, TerminalError
from labrig.hypervisor.client import HypervisorClient
from labrig.store import TopologyStore

logger = logging.getLogger(__name__)


class ConsoleState(str, Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSED = "closed"


class CloseReason(str, Enum):
    QUIT = "quit"
    LOCAL_EOF = "local_eof"
    REMOTE_CLOSED = "remote_closed"


class ConsoleProxy:
    """Pump bytes between the local terminal and a remote console session."""

    def __init__(
        self,
        guard: TerminalModeGuard,
        stdin_fd: int,
        stdout: BinaryIO,
        quit_byte: int | None = None,
        name: str = "console",
    ):
        self.guard = guard
        self.name = name
        self.stdin_fd = stdin_fd
        self.stdout = stdout
        self.quit_byte = settings.console_quit_byte if quit_byte is None else quit_byte
        self.state = ConsoleState.CONNECTING

    async def run(self, session: Any) -> CloseReason:
        """Run until quit, local EOF or remote close.

        ``session`` needs async ``send(bytes)`` and ``recv()``, with
        ``recv`` raising ConnectionClosed once the remote goes away.
        """
        self.guard.acquire()
        self.state = ConsoleState.ACTIVE
        failed = False
        try:
            reason = await self._pump(session)
            logger.debug(f"Console closed: {reason.value}")
            return reason
        except BaseException:
            failed = True
            raise
        finally:
            self.state = ConsoleState.CLOSED
            self._restore_terminal(failed)

    def _restore_terminal(self, failed: bool) -> None:
        try:
            self.guard.release()
        except TerminalError as e:
            if not failed:
                raise
            # Keep the original exit cause
            logger.error(str(e))

    async def _read_stdin_byte(self) -> bytes:
        loop = asyncio.get_running_loop()
        data_available = asyncio.Event()
        loop.add_reader(self.stdin_fd, data_available.set)
        try:
            await data_available.wait()
        finally:
            loop.remove_reader(self.stdin_fd)
        return os.read(self.stdin_fd, 1)

    async def _pump(self, session: Any) -> CloseReason:
        stdin_task: asyncio.Future | None = None
        remote_task: asyncio.Future | None = None
        try:
            while True:
                if stdin_task is None:
                    stdin_task = asyncio.ensure_future(self._read_stdin_byte())
                if remote_task is None:
                    remote_task = asyncio.ensure_future(session.recv())

                done, _ = await asyncio.wait(
                    {stdin_task, remote_task},
                    return_when=asyncio.FIRST_COMPLETED,
                )

                if stdin_task in done:
                    task, stdin_task = stdin_task, None
                    try:
                        data = task.result()
                    except OSError as e:
                        raise TerminalError(f"{self.name}: read from local terminal failed: {e}") from e
                    if not data:
                        return CloseReason.LOCAL_EOF
                    if data[0] == self.quit_byte:
                        return CloseReason.QUIT
                    try:
                        await session.send(data)
                    except ConnectionClosed:
                        return CloseReason.REMOTE_CLOSED
                    except (OSError, WebSocketException) as e:
                        raise BackendError(f"console send to {self.name}", f"{type(e).__name__}: {e}") from e

                if remote_task in done:
                    task, remote_task = remote_task, None
                    try:
                        message = task.result()
                    except ConnectionClosed:
                        return CloseReason.REMOTE_CLOSED
                    except (OSError, WebSocketException) as e:
                        raise BackendError(f"console receive from {self.name}", f"{type(e).__name__}: {e}") from e
                    if isinstance(message, (bytes, bytearray)):
                        try:
                            self.stdout.write(message)
                            self.stdout.flush()
                        except OSError as e:
                            raise TerminalError(f"{self.name}: write to local terminal failed: {e}") from e
        finally:
            pending = [t for t in (stdin_task, remote_task) if t is not None]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)


def quit_key_name(quit_byte: int | None = None) -> str:
    value = settings.console_quit_byte if quit_byte is None else quit_byte
    if value < 0x20:
        return f"Ctrl-{chr(value + 0x40)}"
    return repr(chr(value))


async def serial_console(store: TopologyStore, name: str) -> CloseReason:
    """Attach the local terminal to a node's serial console."""
    client = HypervisorClient.for_node(store, name)
    instance = await client.resolve_instance(name)
    async with client.open_console_session(instance) as session:
        sys.stderr.write(f"connected to {name} serial console, {quit_key_name()} to quit\r\n")
        sys.stderr.flush()
        stdin_fd = sys.stdin.fileno()
        proxy = ConsoleProxy(TerminalModeGuard(stdin_fd), stdin_fd, sys.stdout.buffer, name=name)
        return await proxy.run(session)
