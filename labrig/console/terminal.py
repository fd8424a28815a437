"""Raw terminal mode with explicit save and restore."""

from __future__ import annotations

import logging
import termios
import tty

from labrig.errors import TerminalError

logger = logging.getLogger(__name__)


class TerminalModeGuard:
    """Switch a tty to raw mode and put it back.

    ``acquire`` saves the current attributes before going raw; ``release``
    restores them and is a no-op if nothing is held, so it is safe to call
    from every exit path.
    """

    def __init__(self, fd: int):
        self.fd = fd
        self._saved: list | None = None

    @property
    def held(self) -> bool:
        return self._saved is not None

    def acquire(self) -> None:
        try:
            saved = termios.tcgetattr(self.fd)
            tty.setraw(self.fd, termios.TCSAFLUSH)
        except termios.error as e:
            raise TerminalError(f"failed to set raw mode on fd {self.fd}: {e}") from e
        self._saved = saved
        logger.debug(f"Terminal fd {self.fd} in raw mode")

    def release(self) -> None:
        if self._saved is None:
            return
        saved, self._saved = self._saved, None
        try:
            termios.tcsetattr(self.fd, termios.TCSADRAIN, saved)
        except termios.error as e:
            raise TerminalError(f"failed to restore terminal mode on fd {self.fd}: {e}") from e
        logger.debug(f"Terminal fd {self.fd} restored")
