"""labrig version, shown by ``labrig --version``."""

import subprocess
from pathlib import Path

_PACKAGE_DIR = Path(__file__).parent
UNKNOWN_VERSION = "0.0.0"


def _from_git_tag() -> str | None:
    """Latest tag of a source checkout, without a leading ``v``."""
    try:
        result = subprocess.run(
            ["git", "describe", "--tags", "--abbrev=0"],
            capture_output=True,
            text=True,
            timeout=5,
            cwd=_PACKAGE_DIR,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip().removeprefix("v") or None


def get_version() -> str:
    """The shipped VERSION file wins; a git tag covers unpackaged checkouts."""
    version_file = _PACKAGE_DIR / "VERSION"
    if version_file.exists():
        try:
            shipped = version_file.read_text().strip()
        except OSError:
            shipped = ""
        if shipped:
            return shipped
    return _from_git_tag() or UNKNOWN_VERSION


__version__ = get_version()
