"""Naming conventions for fabric devices.

Linux interface names are limited to 15 characters, so device names are
built from a short hash of the deployment name plus link and endpoint
indexes rather than from node names.
"""

import hashlib
import re

from labrig.config import settings


def deployment_tag(deployment_name: str) -> str:
    """Four hex characters identifying a deployment in device names."""
    return hashlib.sha1(deployment_name.encode()).hexdigest()[:4]


def sanitize_id(value: str, max_len: int = 0) -> str:
    """Strip all characters except alphanumeric, underscore, and dash.

    Optionally truncates to max_len if > 0.
    """
    safe = re.sub(r"[^a-zA-Z0-9_-]", "", value)
    if max_len > 0:
        safe = safe[:max_len]
    return safe


def bridge_name(deployment_name: str, link_index: int) -> str:
    """Bridge realizing one link.

    Format: {bridge_prefix}{tag}{link_index}, e.g. lrb3fa20
    """
    return f"{sanitize_id(settings.bridge_prefix, 4)}{deployment_tag(deployment_name)}{link_index}"


def tap_name(deployment_name: str, link_index: int, endpoint: int) -> str:
    """Tap device for one end of a link.

    Format: {tap_prefix}{tag}{link_index}{a|b}, e.g. lrt3fa20b
    """
    side = "ab"[endpoint]
    return f"{sanitize_id(settings.tap_prefix, 4)}{deployment_tag(deployment_name)}{link_index}{side}"
