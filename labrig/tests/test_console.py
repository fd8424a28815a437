"""Tests for the serial console proxy.

stdin is a real pipe so the event loop reader path is exercised; the remote
session is an in-memory stand-in for a websocket connection.
"""

from __future__ import annotations

import asyncio
import io
import os
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from websockets.exceptions import ConnectionClosedOK

from labrig.console.proxy import CloseReason, ConsoleProxy, ConsoleState, quit_key_name, serial_console
from labrig.console.terminal import TerminalModeGuard
from labrig.errors import BackendError, TerminalError


class FakeSession:
    """Queue-backed remote console session."""

    def __init__(self):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: list[bytes] = []
        self.send_error: Exception | None = None

    async def send(self, data: bytes) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(bytes(data))

    async def recv(self):
        item = await self.incoming.get()
        if isinstance(item, Exception):
            raise item
        return item


class FakeGuard:
    """Counts raw-mode transitions instead of touching a real tty."""

    def __init__(self, fail_release: bool = False):
        self.acquired = 0
        self.released = 0
        self.fail_release = fail_release

    def acquire(self) -> None:
        self.acquired += 1

    def release(self) -> None:
        self.released += 1
        if self.fail_release:
            raise TerminalError("failed to restore terminal mode")


@pytest.fixture
def stdin_pipe():
    read_fd, write_fd = os.pipe()
    open_fds = {read_fd, write_fd}

    def close_writer():
        os.close(write_fd)
        open_fds.discard(write_fd)

    yield read_fd, write_fd, close_writer
    for fd in open_fds:
        os.close(fd)


def _proxy(guard, read_fd, stdout=None):
    return ConsoleProxy(guard, read_fd, stdout or io.BytesIO(), quit_byte=0x11, name="violin")


@pytest.mark.asyncio
async def test_quit_sentinel_closes_without_forwarding(stdin_pipe):
    read_fd, write_fd, _ = stdin_pipe
    guard = FakeGuard()
    session = FakeSession()
    proxy = _proxy(guard, read_fd)
    os.write(write_fd, b"ls\x11")

    reason = await asyncio.wait_for(proxy.run(session), timeout=5)

    assert reason == CloseReason.QUIT
    assert session.sent == [b"l", b"s"]
    assert b"\x11" not in b"".join(session.sent)
    assert proxy.state == ConsoleState.CLOSED
    assert guard.acquired == 1
    assert guard.released == 1


@pytest.mark.asyncio
async def test_remote_close_ends_session(stdin_pipe):
    read_fd, _, _ = stdin_pipe
    guard = FakeGuard()
    session = FakeSession()
    stdout = io.BytesIO()
    proxy = _proxy(guard, read_fd, stdout)
    session.incoming.put_nowait(b"login: ")
    session.incoming.put_nowait("text frames are ignored")
    session.incoming.put_nowait(b"\r\n")
    session.incoming.put_nowait(ConnectionClosedOK(None, None))

    reason = await asyncio.wait_for(proxy.run(session), timeout=5)

    assert reason == CloseReason.REMOTE_CLOSED
    assert stdout.getvalue() == b"login: \r\n"
    assert guard.released == 1
    assert proxy.state == ConsoleState.CLOSED


@pytest.mark.asyncio
async def test_output_is_flushed_per_message(stdin_pipe):
    read_fd, _, _ = stdin_pipe
    stdout = MagicMock()
    session = FakeSession()
    proxy = _proxy(FakeGuard(), read_fd, stdout)
    session.incoming.put_nowait(b"a")
    session.incoming.put_nowait(b"b")
    session.incoming.put_nowait(ConnectionClosedOK(None, None))

    await asyncio.wait_for(proxy.run(session), timeout=5)

    assert stdout.write.call_count == 2
    assert stdout.flush.call_count == 2


@pytest.mark.asyncio
async def test_local_eof_closes(stdin_pipe):
    read_fd, _, close_writer = stdin_pipe
    guard = FakeGuard()
    close_writer()

    reason = await asyncio.wait_for(_proxy(guard, read_fd).run(FakeSession()), timeout=5)

    assert reason == CloseReason.LOCAL_EOF
    assert guard.released == 1


@pytest.mark.asyncio
async def test_send_error_restores_terminal_and_propagates(stdin_pipe):
    read_fd, write_fd, _ = stdin_pipe
    guard = FakeGuard()
    session = FakeSession()
    session.send_error = ConnectionResetError("peer went away")
    os.write(write_fd, b"x")

    with pytest.raises(BackendError) as exc:
        await asyncio.wait_for(_proxy(guard, read_fd).run(session), timeout=5)

    assert exc.value.operation == "console send to violin"
    assert "ConnectionResetError" in exc.value.cause
    assert guard.released == 1


@pytest.mark.asyncio
async def test_remote_close_during_send_ends_session(stdin_pipe):
    read_fd, write_fd, _ = stdin_pipe
    guard = FakeGuard()
    session = FakeSession()
    session.send_error = ConnectionClosedOK(None, None)
    os.write(write_fd, b"x")

    reason = await asyncio.wait_for(_proxy(guard, read_fd).run(session), timeout=5)

    assert reason == CloseReason.REMOTE_CLOSED
    assert guard.released == 1


@pytest.mark.asyncio
async def test_stdout_write_failure_is_terminal_error(stdin_pipe):
    read_fd, _, _ = stdin_pipe
    stdout = MagicMock()
    stdout.write.side_effect = BrokenPipeError("stdout closed")
    session = FakeSession()
    session.incoming.put_nowait(b"login: ")
    guard = FakeGuard()

    with pytest.raises(TerminalError) as exc:
        await asyncio.wait_for(_proxy(guard, read_fd, stdout).run(session), timeout=5)

    assert str(exc.value).startswith("violin:")
    assert guard.released == 1


@pytest.mark.asyncio
async def test_restore_failure_after_clean_exit_raises(stdin_pipe):
    read_fd, write_fd, _ = stdin_pipe
    guard = FakeGuard(fail_release=True)
    os.write(write_fd, b"\x11")

    with pytest.raises(TerminalError):
        await asyncio.wait_for(_proxy(guard, read_fd).run(FakeSession()), timeout=5)

    assert guard.released == 1


@pytest.mark.asyncio
async def test_restore_failure_does_not_mask_original_error(stdin_pipe):
    read_fd, write_fd, _ = stdin_pipe
    guard = FakeGuard(fail_release=True)
    session = FakeSession()
    session.send_error = ConnectionResetError("peer went away")
    os.write(write_fd, b"x")

    with pytest.raises(BackendError):
        await asyncio.wait_for(_proxy(guard, read_fd).run(session), timeout=5)

    assert guard.released == 1


@pytest.mark.asyncio
async def test_stdin_reader_removed_after_close(stdin_pipe):
    read_fd, write_fd, _ = stdin_pipe
    os.write(write_fd, b"\x11")

    await asyncio.wait_for(_proxy(FakeGuard(), read_fd).run(FakeSession()), timeout=5)

    loop = asyncio.get_running_loop()
    # Nothing is still registered on the fd
    assert loop.remove_reader(read_fd) is False


def test_quit_key_name():
    assert quit_key_name(0x11) == "Ctrl-Q"
    assert quit_key_name(0x1D) == "Ctrl-]"
    assert quit_key_name(ord("~")) == "'~'"


# ---------------------------------------------------------------------------
# Terminal guard
# ---------------------------------------------------------------------------


def test_terminal_guard_on_non_tty(stdin_pipe):
    read_fd, _, _ = stdin_pipe
    guard = TerminalModeGuard(read_fd)

    with pytest.raises(TerminalError):
        guard.acquire()
    assert not guard.held
    # Nothing held, nothing to restore
    guard.release()


def test_terminal_guard_restores_saved_mode():
    with patch("labrig.console.terminal.termios") as mock_termios:
        with patch("labrig.console.terminal.tty") as mock_tty:
            mock_termios.error = OSError
            mock_termios.tcgetattr.return_value = ["saved"]
            guard = TerminalModeGuard(7)

            guard.acquire()
            guard.release()
            guard.release()

    mock_tty.setraw.assert_called_once_with(7, mock_termios.TCSAFLUSH)
    mock_termios.tcsetattr.assert_called_once_with(7, mock_termios.TCSADRAIN, ["saved"])


# ---------------------------------------------------------------------------
# serial_console wiring
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_serial_console_resolves_instance_then_runs_proxy(store):
    store.write_port("violin", 41000)
    session = FakeSession()
    instance = "0b6b6d9c-7f36-4f5b-9a57-6a3f1c1e2d10"

    client = MagicMock()
    client.resolve_instance = AsyncMock(return_value=instance)
    opened = MagicMock()
    opened.__aenter__ = AsyncMock(return_value=session)
    opened.__aexit__ = AsyncMock(return_value=False)
    client.open_console_session.return_value = opened

    with patch("labrig.console.proxy.HypervisorClient.for_node", return_value=client) as for_node:
        with patch.object(ConsoleProxy, "run", AsyncMock(return_value=CloseReason.QUIT)) as run:
            with patch("labrig.console.proxy.sys") as mock_sys:
                mock_sys.stdin.fileno.return_value = 0
                reason = await serial_console(store, "violin")

    assert reason == CloseReason.QUIT
    for_node.assert_called_once_with(store, "violin")
    client.resolve_instance.assert_awaited_once_with("violin")
    client.open_console_session.assert_called_once_with(instance)
    run.assert_awaited_once_with(session)
