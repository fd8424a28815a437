"""Serial console proxy."""

from labrig.console.proxy import CloseReason, ConsoleProxy, ConsoleState, serial_console
from labrig.console.terminal import TerminalModeGuard

__all__ = ["CloseReason", "ConsoleProxy", "ConsoleState", "TerminalModeGuard", "serial_console"]
