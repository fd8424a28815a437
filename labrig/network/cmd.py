"""Shared async command utilities for fabric modules."""

import asyncio
import logging

logger = logging.getLogger(__name__)


async def run_cmd(cmd: list[str]) -> tuple[int, str, str]:
    """Run a command asynchronously.

    Args:
        cmd: Command and arguments as list

    Returns:
        Tuple of (return_code, stdout, stderr)
    """
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        return 127, "", str(e)
    stdout, stderr = await process.communicate()
    return (
        process.returncode or 0,
        stdout.decode(errors="replace"),
        stderr.decode(errors="replace"),
    )


async def ip(*args: str) -> tuple[int, str, str]:
    """Run an ``ip`` command.

    Args:
        args: Arguments to ip

    Returns:
        Tuple of (return_code, stdout, stderr)
    """
    return await run_cmd(["ip", *args])


async def ip_link_exists(name: str) -> bool:
    """Check if a network interface exists."""
    code, _, _ = await ip("link", "show", name)
    return code == 0
