"""Logging setup for labrig invocations.

Logging is configured once per CLI invocation. Records go to stderr so
they never interleave with command output or a serial console session on
stdout.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

from labrig.config import settings

# Attributes present on every LogRecord; anything else was passed via extra=
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime"}


def _record_extras(record: logging.LogRecord) -> dict:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RESERVED_ATTRS and not key.startswith("_")
    }


class LabrigJSONFormatter(logging.Formatter):
    """Format records as single-line JSON objects."""

    def __init__(self, deployment: str = ""):
        super().__init__()
        self.deployment = deployment

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": "labrig",
            "deployment": self.deployment,
        }
        extras = _record_extras(record)
        if extras:
            payload["extra"] = extras
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class LabrigTextFormatter(logging.Formatter):
    """Human readable formatter: time, level, deployment, logger, message."""

    def __init__(self, deployment: str = ""):
        super().__init__(datefmt="%H:%M:%S")
        self.deployment = deployment

    def format(self, record: logging.LogRecord) -> str:
        timestamp = self.formatTime(record, self.datefmt)
        scope = f"[{self.deployment}] " if self.deployment else ""
        line = f"{timestamp} {record.levelname:<7} {scope}{record.name}: {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def verbosity_to_level(verbose: int) -> str:
    """Map a repeated -v count onto a level name."""
    if verbose >= 2:
        return "DEBUG"
    if verbose == 1:
        return "INFO"
    return settings.log_level


def setup_logging(deployment: str = "", level: str | None = None, fmt: str | None = None) -> None:
    """Configure the root logger for this invocation.

    Replaces any handlers installed by a previous call so repeated calls
    (tests, scripts calling ``run`` more than once) do not duplicate output.
    """
    level_name = (level or settings.log_level).upper()
    log_format = (fmt or settings.log_format).lower()

    handler = logging.StreamHandler(sys.stderr)
    if log_format == "json":
        handler.setFormatter(LabrigJSONFormatter(deployment=deployment))
    else:
        handler.setFormatter(LabrigTextFormatter(deployment=deployment))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level_name, logging.WARNING))

    # Quiet noisy client libraries unless debugging
    if level_name != "DEBUG":
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("websockets").setLevel(logging.WARNING)
